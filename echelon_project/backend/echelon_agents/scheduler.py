"""
Agent runtime - start/stop lifecycle and the fixed-interval polling loop

Each tick runs exactly one decide-execute cycle. Cycles never overlap: a
slow cycle delays the next tick instead of stacking on top of it.
"""
import asyncio
import logging
import time
from datetime import datetime
from enum import Enum
from typing import Optional

from .agent_logger import AgentLogger
from .cancellation import CancellationToken
from .chain_client import ChainClient
from .config import AgentSettings
from .errors import (
    TRANSIENT_ERRORS,
    CycleCancelled,
    InvariantViolation,
    RegistrationError,
    StaleDecisionError,
)
from .execution_coordinator import ExecutionCoordinator
from .helpers import now_seconds
from .ledger import SubmissionStatus
from .metrics import CycleStats
from .models import AgentIdentity, CycleOutcome, CycleResult, ExecutionRecord
from .strategies import Strategy, StrategyContext

logger = logging.getLogger(__name__)


class RuntimeState(str, Enum):
    STOPPED = "stopped"
    RUNNING = "running"
    STOPPING = "stopping"


def outcome_for_record(record: ExecutionRecord) -> CycleOutcome:
    if record.duplicate:
        return CycleOutcome.SKIPPED
    if record.status == SubmissionStatus.CONFIRMED.value:
        return CycleOutcome.SUCCESS
    if record.status in (SubmissionStatus.PENDING.value, SubmissionStatus.SUBMITTING.value):
        return CycleOutcome.PENDING
    return CycleOutcome.ERROR


class AgentRuntime:
    """Drives one strategy for one agent identity"""

    def __init__(
        self,
        settings: AgentSettings,
        chain: ChainClient,
        strategy: Strategy,
        coordinator: ExecutionCoordinator,
        token: Optional[CancellationToken] = None,
        agent_logger: Optional[AgentLogger] = None,
        stats: Optional[CycleStats] = None,
        identity: Optional[AgentIdentity] = None
    ):
        self.settings = settings
        self.chain = chain
        self.identity = identity or settings.identity(chain.address)
        self.strategy = strategy
        self.coordinator = coordinator
        self.token = token or CancellationToken()
        self.agent_logger = agent_logger or AgentLogger(strategy.name)
        self.stats = stats or CycleStats()

        self.state = RuntimeState.STOPPED
        self.cycle_count = 0
        self.fatal_error: Optional[BaseException] = None
        self.run_id = str(int(time.time()))
        self._task: Optional[asyncio.Task] = None
        self._cycle_lock = asyncio.Lock()

    @property
    def is_running(self) -> bool:
        return self.state == RuntimeState.RUNNING

    async def verify_registration(self):
        """
        Check that the signing wallet is registered under the configured agent id

        Raises:
            RegistrationError: not registered, or registered under another id
        """
        identity = self.identity
        agent_id = await self.chain.get_registered_agent_id(identity.registry_address)
        if agent_id is None:
            raise RegistrationError(f"Wallet {identity.wallet_address} is not a registered agent")
        if agent_id != identity.agent_id:
            raise RegistrationError(
                f"Wallet {identity.wallet_address} is registered as agent {agent_id}, "
                f"configured AGENT_ID is {identity.agent_id}"
            )
        self.agent_logger.log_lifecycle("registration verified", agent_id=agent_id, wallet=identity.wallet_address)

    async def start(self):
        """Begin the polling loop; a no-op unless stopped"""
        if self.state != RuntimeState.STOPPED:
            logger.debug(f"start() ignored, runtime is {self.state.value}")
            return

        if self.token.cancelled:
            self.token = CancellationToken()
        self.fatal_error = None
        self.state = RuntimeState.RUNNING
        self._task = asyncio.create_task(self._run_loop())
        self.agent_logger.log_lifecycle(
            "started",
            agent_id=self.identity.agent_id,
            strategy=self.strategy.name,
            interval_ms=self.settings.polling_interval_ms,
        )

    async def stop(self):
        """
        Request a stop and wait for the loop to exit

        The in-flight cycle sees the request at its next suspension point.
        After the grace period the loop task is cancelled outright. Calling
        stop() on a stopped runtime does nothing.
        """
        if self.state == RuntimeState.STOPPED:
            return
        if self.state == RuntimeState.RUNNING:
            self.state = RuntimeState.STOPPING
            self.agent_logger.log_lifecycle("stopping")
        self.token.cancel()

        task = self._task
        if task is not None and not task.done():
            try:
                await asyncio.wait_for(asyncio.shield(task), timeout=self.settings.stop_grace_seconds)
            except asyncio.TimeoutError:
                logger.warning(f"Cycle did not finish within {self.settings.stop_grace_seconds}s, cancelling it")
                task.cancel()
                await asyncio.gather(task, return_exceptions=True)

        self._mark_stopped()

    async def wait(self):
        """
        Wait until the loop exits (stop request, signal or fatal error)

        A cancelled token gets the same grace period as stop(): a cycle still
        running after it is cancelled.
        """
        task = self._task
        if task is not None and not task.done():
            cancelled = asyncio.ensure_future(self.token.wait())
            try:
                await asyncio.wait({task, cancelled}, return_when=asyncio.FIRST_COMPLETED)
            finally:
                cancelled.cancel()
            if not task.done():
                await self.stop()
                return
        if task is not None:
            await asyncio.gather(task, return_exceptions=True)
        self._mark_stopped()

    def _mark_stopped(self):
        if self.state == RuntimeState.STOPPED:
            return
        if self.state == RuntimeState.RUNNING:
            self.state = RuntimeState.STOPPING
        self.state = RuntimeState.STOPPED
        self.agent_logger.log_lifecycle("stopped", **self.stats.summary())

    async def _run_loop(self):
        interval = self.settings.polling_interval_seconds
        loop = asyncio.get_running_loop()

        while not self.token.cancelled:
            started = loop.time()
            await self.run_cycle()
            if self.fatal_error is not None:
                break

            delay = max(0.0, interval - (loop.time() - started))
            if await self.token.sleep(delay):
                break

    async def run_cycle(self) -> CycleResult:
        """
        Run one decide-execute cycle

        Never raises: every failure becomes a CycleResult. An invariant
        violation additionally records ``fatal_error`` and cancels the token.
        """
        async with self._cycle_lock:
            self.cycle_count += 1
            result = CycleResult(cycle_number=self.cycle_count)
            cycle_id = f"{self.run_id}-{self.cycle_count}"

            try:
                await self._cycle(result, cycle_id)
            except CycleCancelled:
                result.outcome = CycleOutcome.SKIPPED
                result.reason = "cancelled"
            except StaleDecisionError as e:
                result.outcome = CycleOutcome.SKIPPED
                result.reason = f"stale: {e}"
            except TRANSIENT_ERRORS as e:
                logger.warning(f"Cycle {result.cycle_number} skipped on transient error: {e}")
                result.outcome = CycleOutcome.SKIPPED
                result.reason = f"transient: {e}"
            except InvariantViolation as e:
                logger.critical(f"Invariant violated in cycle {result.cycle_number}: {e}", exc_info=True)
                result.outcome = CycleOutcome.ERROR
                result.reason = f"invariant violation: {e}"
                self.fatal_error = e
                self.token.cancel()
            except Exception as e:
                logger.error(f"Cycle {result.cycle_number} failed: {e}", exc_info=True)
                result.outcome = CycleOutcome.ERROR
                result.reason = f"{type(e).__name__}: {e}"

            result.finished_at = datetime.now()
            self.stats.record(result)
            self.agent_logger.log_cycle(result)
            return result

    async def _cycle(self, result: CycleResult, cycle_id: str):
        token = self.token
        token.raise_if_cancelled()

        resolved = await self.coordinator.reconcile(token)
        if resolved:
            logger.info(f"Resolved {len(resolved)} earlier submission(s)")

        context = StrategyContext(
            agent_id=self.identity.agent_id,
            agent_wallet=self.identity.wallet_address,
            now=now_seconds(),
            pending_keys=self.coordinator.pending_decision_keys(),
        )
        decision = await token.guard(self.strategy.evaluate(context))
        if decision is None:
            result.outcome = CycleOutcome.SKIPPED
            result.reason = "no action"
            return

        result.decision = decision.model_dump(mode="json")
        record = await self.coordinator.execute(decision, cycle_id, token)
        result.record = record
        result.outcome = outcome_for_record(record)
        if record.duplicate:
            result.reason = "duplicate submission"
        elif result.outcome != CycleOutcome.SUCCESS:
            result.reason = record.error_message or record.status
