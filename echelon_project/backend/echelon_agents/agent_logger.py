"""
Agent event logging - one line per event with key=value context, so every
decision and outcome can be reconstructed from the log
"""
import logging
from typing import Any, Optional

from .helpers import format_address
from .models import CycleResult, ExecutionRecord, MarketSnapshot, SpecialistAgent, SwapOpportunity


def _format_context(context: dict) -> str:
    return " ".join(f"{key}={value}" for key, value in context.items() if value is not None)


class AgentLogger:
    """Wraps a named logger with the agent's event vocabulary"""

    def __init__(self, agent_name: str, logger: Optional[logging.Logger] = None):
        self.agent_name = agent_name
        self.logger = logger or logging.getLogger(f"echelon_agents.agent.{agent_name}")

    def _emit(self, level: int, message: str, **context: Any):
        details = _format_context(context)
        self.logger.log(level, f"[{self.agent_name}] {message}" + (f" | {details}" if details else ""))

    def info(self, message: str, **context: Any):
        self._emit(logging.INFO, message, **context)

    def warning(self, message: str, **context: Any):
        self._emit(logging.WARNING, message, **context)

    def error(self, message: str, error: Optional[BaseException] = None, **context: Any):
        if error is not None:
            context["error"] = f"{type(error).__name__}: {error}"
        self._emit(logging.ERROR, message, **context)

    def log_lifecycle(self, event: str, **context: Any):
        self._emit(logging.INFO, f"Agent {event}", **context)

    def log_cycle(self, result: CycleResult):
        level = logging.ERROR if result.outcome.value == "error" else logging.INFO
        record = result.record
        self._emit(
            level,
            f"Cycle {result.cycle_number} {result.outcome.value}",
            reason=result.reason,
            duration_ms=result.duration_ms,
            decision=result.decision,
            tx=record.tx_hash if record else None,
            status=record.status if record else None,
        )

    def log_market_analysis(self, snapshot: MarketSnapshot, strategy: str, risk_factor: float):
        self._emit(
            logging.INFO,
            "Market analysis",
            volatility=f"{snapshot.volatility:.4f}",
            trend=snapshot.trend.value,
            avg_pl=f"{snapshot.avg_profit_loss:.4f}",
            samples=snapshot.sample_size,
            yield_rate=snapshot.best_yield_rate,
            target_strategy=strategy,
            risk_factor=risk_factor,
        )

    def log_specialist_selected(self, specialist: SpecialistAgent):
        self._emit(
            logging.INFO,
            "Specialist selected",
            agent_id=specialist.id,
            name=specialist.name,
            strategy=specialist.strategy_type,
            reputation=specialist.reputation_score,
            wallet=format_address(specialist.wallet_address),
        )

    def log_swap_opportunity(self, opportunity: SwapOpportunity):
        self._emit(
            logging.INFO,
            "Swap opportunity",
            token_in=opportunity.token_in,
            token_out=opportunity.token_out,
            amount_in=opportunity.amount_in,
            expected_out=opportunity.expected_out,
            min_out=opportunity.min_amount_out,
            profit_pct=f"{opportunity.profit_percent:.4f}",
            user=opportunity.user_address,
            fee=opportunity.pool_fee,
        )

    def log_execution_record(self, record: ExecutionRecord):
        level = logging.INFO if record.success or record.status == "pending" else logging.WARNING
        self._emit(
            level,
            "Execution record",
            key=record.idempotency_key,
            status=record.status,
            tx=record.tx_hash,
            amount_out=record.amount_out,
            gas_used=record.gas_used,
            block=record.block_number,
            duplicate=record.duplicate or None,
            error=record.error_message,
        )

    def log_redelegation(self, child_agent_id: int, user_address: str, amount: int, duration: int, tx_hash: Optional[str]):
        self._emit(
            logging.INFO,
            "Redelegation submitted",
            child_agent=child_agent_id,
            user=user_address,
            amount=amount,
            duration=duration,
            tx=tx_hash,
        )
