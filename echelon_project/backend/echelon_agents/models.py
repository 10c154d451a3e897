"""
Data models for the Echelon agent runtime
"""
import hashlib
import json
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, SecretStr, model_validator

from .errors import InvariantViolation


class TrendDirection(str, Enum):
    UP = "up"
    DOWN = "down"
    NEUTRAL = "neutral"


class CycleOutcome(str, Enum):
    """Outcome tag of one scheduler tick"""
    SUCCESS = "success"
    SKIPPED = "skipped"
    ERROR = "error"
    PENDING = "pending"


class AgentIdentity(BaseModel):
    """Per-process identity, built once from validated settings"""
    model_config = ConfigDict(frozen=True)

    agent_id: int
    wallet_address: str
    private_key: SecretStr
    registry_address: str
    execution_address: str
    permission_address: str
    chain_id: int


# ============================================
# Indexer records
# ============================================

class SpecialistAgent(BaseModel):
    """Leaderboard entry used for specialist selection"""
    id: int
    wallet_address: str
    name: str
    strategy_type: str
    reputation_score: int
    win_rate: float = 0.0
    total_executions: int = 0
    total_profit_loss: Decimal = Decimal("0")


class IndexedAgent(BaseModel):
    """Full agent record from the indexer"""
    id: int
    wallet_address: str
    owner_address: Optional[str] = None
    name: str
    strategy_type: str
    risk_level: int = 0
    registered_at: int = 0
    is_active: bool = True
    metadata_uri: Optional[str] = None
    total_executions: int = 0
    successful_executions: int = 0
    failed_executions: int = 0
    total_volume_in: int = 0
    total_volume_out: int = 0
    total_profit_loss: Decimal = Decimal("0")
    win_rate: float = 0.0
    reputation_score: int = 0
    last_execution_at: Optional[int] = None


class Permission(BaseModel):
    """Delegated allowance as mirrored by the indexer"""
    id: str
    user_address: str
    agent_id: int
    permission_type: str = ""
    token_address: str
    token_symbol: Optional[str] = None
    amount_per_period: int = 0
    period_duration: int = 0
    total_amount: int = 0
    granted_at: int = 0
    expires_at: int
    revoked_at: Optional[int] = None
    is_active: bool
    amount_used: int = 0
    amount_remaining: int

    def is_usable(self, now: int) -> bool:
        return (
            self.is_active
            and self.revoked_at is None
            and self.amount_remaining > 0
            and self.expires_at > now
        )


class IndexedExecution(BaseModel):
    """Completed execution as mirrored by the indexer"""
    id: str
    agent_id: int
    agent_name: str = ""
    user_address: str
    amount_in: int
    amount_out: int
    token_in: str
    token_out: str
    profit_loss: Decimal = Decimal("0")
    profit_loss_percent: float = 0.0
    result: str
    started_at: int
    completed_at: Optional[int] = None
    start_tx_hash: Optional[str] = None
    complete_tx_hash: Optional[str] = None


class AgentPerformance(BaseModel):
    total_executions: int = 0
    successful_executions: int = 0
    failed_executions: int = 0
    win_rate: float = 0.0
    total_profit_loss: Decimal = Decimal("0")
    reputation_score: int = 0
    avg_profit_per_trade: Decimal = Decimal("0")


# ============================================
# Chain reads
# ============================================

class PermissionState(BaseModel):
    """Permission as read from the permission contract"""
    amount_remaining: int
    expires_at: int
    is_active: bool

    def is_usable(self, now: int) -> bool:
        return self.is_active and self.amount_remaining > 0 and self.expires_at > now


class QuoteResult(BaseModel):
    amount_out: int
    gas_estimate: int = 0


class TxHandle(BaseModel):
    """Broadcast transaction, returned before it is mined"""
    tx_hash: str
    nonce: int
    to: str
    method: str
    submitted_at: datetime = Field(default_factory=datetime.now)


# ============================================
# Decisions
# ============================================

class MarketSnapshot(BaseModel):
    """Market view derived from a bounded window of recent executions"""
    volatility: float = 0.0
    best_yield_rate: float = 0.0
    trend: TrendDirection = TrendDirection.NEUTRAL
    avg_profit_loss: float = 0.0
    sample_size: int = 0


def _hash_fields(fields: Dict[str, Any]) -> str:
    payload = json.dumps(fields, sort_keys=True, default=str)
    return hashlib.sha256(payload.encode()).hexdigest()


class AllocationDecision(BaseModel):
    """Fund-manager output: redelegate part of a user's allowance to a specialist"""
    model_config = ConfigDict(frozen=True)

    kind: Literal["allocation"] = "allocation"
    target_agent_id: int
    target_agent_address: str
    target_strategy: str
    amount: int = Field(ge=0)
    duration: int = Field(gt=0)
    risk_factor: float = Field(ge=0.0, le=1.0)
    user_address: str
    token_address: str
    permission_id: str

    @property
    def decision_key(self) -> str:
        return _hash_fields({
            "kind": self.kind,
            "target_agent_id": self.target_agent_id,
            "user": self.user_address.lower(),
            "token": self.token_address.lower(),
            "amount": self.amount,
            "duration": self.duration,
        })


class SwapOpportunity(BaseModel):
    """Swap-agent output: a quoted exact-input swap on behalf of a delegating user"""
    model_config = ConfigDict(frozen=True)

    kind: Literal["swap"] = "swap"
    token_in: str
    token_out: str
    amount_in: int = Field(gt=0)
    expected_out: int = Field(ge=0)
    min_amount_out: int = Field(ge=0)
    profit_percent: Decimal
    user_address: str
    pool_fee: int
    permission_id: str

    @model_validator(mode="after")
    def _check_min_amount_out(self):
        if self.min_amount_out > self.expected_out:
            raise InvariantViolation(
                f"minAmountOut {self.min_amount_out} exceeds expectedOut {self.expected_out}"
            )
        return self

    @property
    def decision_key(self) -> str:
        return swap_decision_key(
            self.user_address, self.token_in, self.token_out, self.amount_in, self.pool_fee
        )


def swap_decision_key(user_address: str, token_in: str, token_out: str, amount_in: int, pool_fee: int) -> str:
    """Decision key of a swap, computable before the quote is requested"""
    return _hash_fields({
        "kind": "swap",
        "user": user_address.lower(),
        "token_in": token_in.lower(),
        "token_out": token_out.lower(),
        "amount_in": amount_in,
        "pool_fee": pool_fee,
    })


Decision = Union[AllocationDecision, SwapOpportunity]


# ============================================
# Outcomes
# ============================================

class ExecutionRecord(BaseModel):
    """Observed result of one attempted action"""
    idempotency_key: str
    decision_key: str
    status: str
    success: bool = False
    tx_hash: Optional[str] = None
    amount_out: Optional[int] = None
    gas_used: Optional[int] = None
    block_number: Optional[int] = None
    error_message: Optional[str] = None
    duplicate: bool = False
    timestamp: datetime = Field(default_factory=datetime.now)


class CycleResult(BaseModel):
    """Bookkeeping for one scheduler tick"""
    cycle_number: int
    started_at: datetime = Field(default_factory=datetime.now)
    finished_at: Optional[datetime] = None
    outcome: CycleOutcome = CycleOutcome.SKIPPED
    reason: Optional[str] = None
    decision: Optional[Dict[str, Any]] = None
    record: Optional[ExecutionRecord] = None

    @property
    def duration_ms(self) -> Optional[int]:
        if self.finished_at is None:
            return None
        return int((self.finished_at - self.started_at).total_seconds() * 1000)
