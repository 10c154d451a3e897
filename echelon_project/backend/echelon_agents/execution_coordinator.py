"""
Execution Coordinator - validates a decision against live chain state,
submits it and records the outcome

Writes are strictly sequential: at most one transaction of this agent is
outstanding at any time, and every broadcast is preceded by a ledger entry
keyed by its idempotency key.
"""
import asyncio
import logging
from typing import Any, Dict, List, Optional, Sequence, Tuple

from .abis import AGENT_EXECUTION_ABI, ERC20_ABI, UNISWAP_V3_ROUTER_ABI
from .agent_logger import AgentLogger
from .cancellation import CancellationToken
from .chain_client import ChainClient
from .config import AgentSettings
from .errors import (
    CycleCancelled,
    EchelonError,
    InsufficientFundsError,
    InvariantViolation,
    NonceError,
    ReceiptTimeoutError,
    RevertError,
    RevertedError,
    RpcError,
    StaleDecisionError,
)
from .helpers import compute_min_amount_out, now_seconds
from .ledger import Submission, SubmissionLedger, SubmissionStage, SubmissionStatus
from .models import AllocationDecision, Decision, ExecutionRecord, SwapOpportunity

logger = logging.getLogger(__name__)

EXECUTION_RESULT_SUCCESS = 1
EXECUTION_RESULT_FAILURE = 2


def idempotency_key_for(cycle_id: str, decision: Decision) -> str:
    return f"{cycle_id}:{decision.decision_key}"


class ExecutionCoordinator:
    """Turns decisions into confirmed on-chain effects"""

    def __init__(
        self,
        settings: AgentSettings,
        chain: ChainClient,
        ledger: SubmissionLedger,
        agent_logger: Optional[AgentLogger] = None
    ):
        self.settings = settings
        self.chain = chain
        self.ledger = ledger
        self.agent_logger = agent_logger or AgentLogger("Coordinator")

        self.chain.register_contract(settings.execution_address, AGENT_EXECUTION_ABI)
        if settings.router_address:
            self.chain.register_contract(settings.router_address, UNISWAP_V3_ROUTER_ABI)

    # ============================================
    # Public API
    # ============================================

    def pending_decision_keys(self):
        return self.ledger.blocking_decision_keys()

    async def execute(
        self,
        decision: Decision,
        cycle_id: str,
        token: Optional[CancellationToken] = None
    ) -> ExecutionRecord:
        """
        Validate, submit and confirm one decision

        Returns:
            ExecutionRecord with status confirmed, reverted or pending; or the
            existing record when the idempotency key was already used

        Raises:
            InvariantViolation: the decision is unsafe to submit
            StaleDecisionError: live chain state no longer supports it, or
                another transaction is still outstanding
            CycleCancelled: stop requested before anything was broadcast
        """
        token = token or CancellationToken()
        key = idempotency_key_for(cycle_id, decision)

        existing = self.ledger.get(key)
        if existing is not None:
            logger.info(f"Decision {key} already submitted ({existing.status}), not resubmitting")
            return self._record_from(existing, duplicate=True)

        self.check_invariants(decision)

        if self.ledger.has_outstanding():
            raise StaleDecisionError("outstanding transaction still awaiting its receipt")

        token.raise_if_cancelled()
        await token.guard(self.validate(decision))

        if isinstance(decision, SwapOpportunity):
            approval = await self._ensure_allowance(decision, cycle_id, token)
            if approval is not None:
                return approval
            address = self.settings.router_address
            method = "exactInputSingle"
            args = [(
                decision.token_in,
                decision.token_out,
                decision.pool_fee,
                self.chain.address,
                decision.amount_in,
                decision.min_amount_out,
                0,
            )]
        else:
            address = self.settings.execution_address
            method = "logRedelegation"
            args = [decision.target_agent_id, decision.user_address, decision.amount, decision.duration]

        token.raise_if_cancelled()
        submission, created = self.ledger.reserve(
            key,
            decision.decision_key,
            cycle_id,
            decision.kind,
            SubmissionStage.ACTION,
            decision.model_dump(mode="json"),
        )
        if not created:
            return self._record_from(submission, duplicate=True)

        record, receipt = await self._submit_and_wait(key, address, method, args, token)

        if isinstance(decision, AllocationDecision):
            if record.status == SubmissionStatus.CONFIRMED.value:
                self.agent_logger.log_redelegation(
                    decision.target_agent_id, decision.user_address, decision.amount, decision.duration, record.tx_hash
                )
        elif record.status in (SubmissionStatus.CONFIRMED.value, SubmissionStatus.REVERTED.value):
            record = await self._finish_swap(key, cycle_id, decision, record, receipt, token)

        self.agent_logger.log_execution_record(record)
        return record

    def check_invariants(self, decision: Decision):
        """Safety checks that must hold for anything reaching the chain"""
        if isinstance(decision, SwapOpportunity):
            if decision.min_amount_out > decision.expected_out:
                raise InvariantViolation(
                    f"minAmountOut {decision.min_amount_out} exceeds expectedOut {decision.expected_out}"
                )
            slippage_floor = compute_min_amount_out(decision.expected_out, self.settings.slippage_tolerance)
            if decision.min_amount_out < slippage_floor:
                raise InvariantViolation(
                    f"minAmountOut {decision.min_amount_out} is looser than the slippage floor {slippage_floor}"
                )
            if decision.profit_percent < self.settings.min_profit_percent:
                raise InvariantViolation(
                    f"Swap with profit {decision.profit_percent}% below threshold "
                    f"{self.settings.min_profit_percent}% reached execution"
                )
        elif decision.amount <= 0:
            raise InvariantViolation(f"Allocation amount must be positive, got {decision.amount}")

    async def validate(self, decision: Decision):
        """
        Re-check balances and permission state directly on chain

        Raises:
            StaleDecisionError: any check fails
        """
        if isinstance(decision, SwapOpportunity):
            token_address, amount = decision.token_in, decision.amount_in
        else:
            token_address, amount = decision.token_address, decision.amount

        reads = [
            self.chain.get_native_balance(),
            self.chain.get_permission_state(self.settings.permission_address, decision.user_address, token_address),
        ]
        if isinstance(decision, SwapOpportunity):
            reads.append(self.chain.get_token_balance(decision.token_in))
        results = await asyncio.gather(*reads)

        native_balance, permission = results[0], results[1]
        if native_balance < self.settings.min_gas_balance_wei:
            raise StaleDecisionError(
                f"wallet balance {native_balance} wei below gas floor {self.settings.min_gas_balance_wei}"
            )
        now = now_seconds()
        if not permission.is_usable(now):
            if not permission.is_active:
                reason = "is no longer active"
            elif permission.expires_at <= now:
                reason = f"expired at {permission.expires_at}"
            else:
                reason = "is exhausted"
            raise StaleDecisionError(f"permission of {decision.user_address} {reason}")
        if permission.amount_remaining < amount:
            raise StaleDecisionError(
                f"permission allows {permission.amount_remaining}, decision needs {amount}"
            )
        if isinstance(decision, SwapOpportunity) and results[2] < amount:
            raise StaleDecisionError(f"token balance {results[2]} below swap amount {amount}")

    # ============================================
    # Reconciliation
    # ============================================

    async def reconcile(self, token: Optional[CancellationToken] = None) -> List[ExecutionRecord]:
        """
        Resolve submissions left pending by earlier cycles

        Mined transactions become confirmed or reverted (swaps are then
        recorded on chain); a mined logExecutionStart is followed by its
        logExecutionComplete. Transactions the node no longer knows about
        after the expiry window become failed.
        """
        token = token or CancellationToken()
        resolved = []

        for submission in self.ledger.unresolved():
            token.raise_if_cancelled()
            expired = self.ledger.is_expired(submission, self.settings.pending_expiry_seconds)

            if submission.tx_hash is None:
                if expired:
                    updated = self.ledger.mark_outcome(
                        submission.idempotency_key, SubmissionStatus.FAILED, "abandoned before broadcast"
                    )
                    resolved.append(self._record_from(updated))
                continue

            receipt = await token.guard(self.chain.get_receipt(submission.tx_hash))
            if receipt is None:
                if expired and not await token.guard(self.chain.transaction_known(submission.tx_hash)):
                    logger.warning(f"Transaction {submission.tx_hash} dropped from the pool")
                    updated = self.ledger.mark_outcome(
                        submission.idempotency_key, SubmissionStatus.FAILED, "dropped by the node"
                    )
                    resolved.append(self._record_from(updated))
                continue

            record = await self._resolve_mined(submission, receipt, token)
            self.agent_logger.log_execution_record(record)
            resolved.append(record)

        return resolved

    async def _resolve_mined(
        self,
        submission: Submission,
        receipt: Dict[str, Any],
        token: CancellationToken
    ) -> ExecutionRecord:
        succeeded = receipt["status"] == 1

        if submission.stage != SubmissionStage.ACTION.value:
            status = SubmissionStatus.RELEASED if succeeded else SubmissionStatus.REVERTED
            updated = self.ledger.mark_outcome(
                submission.idempotency_key,
                status,
                error_message=None if succeeded else f"{submission.stage} reverted",
                gas_used=receipt["gasUsed"],
                block_number=receipt["blockNumber"],
            )
            if succeeded and submission.stage == SubmissionStage.RECORD_START.value:
                await self._complete_execution(
                    submission.idempotency_key.rsplit(":", 1)[0],
                    submission.cycle_id,
                    submission.decision_key,
                    submission.decision_payload(),
                    receipt,
                    token,
                )
            return self._record_from(updated)

        status = SubmissionStatus.CONFIRMED if succeeded else SubmissionStatus.REVERTED
        updated = self.ledger.mark_outcome(
            submission.idempotency_key,
            status,
            error_message=None if succeeded else "execution reverted",
            gas_used=receipt["gasUsed"],
            block_number=receipt["blockNumber"],
        )
        record = self._record_from(updated)

        if submission.kind == "swap":
            decision = SwapOpportunity.model_validate(submission.decision_payload())
            record = await self._finish_swap(
                submission.idempotency_key, submission.cycle_id, decision, record, receipt, token
            )
        return record

    # ============================================
    # Submission
    # ============================================

    async def _submit_and_wait(
        self,
        key: str,
        address: str,
        method: str,
        args: Sequence[Any],
        token: CancellationToken
    ) -> Tuple[ExecutionRecord, Optional[Dict[str, Any]]]:
        """
        Sign, record the hash, broadcast and wait for the receipt

        Until the broadcast starts a stop request aborts cleanly. After it,
        the transaction is irrevocable: cancellation or a receipt timeout
        only leaves the submission pending for a later cycle to resolve.
        """
        try:
            prepared = await token.guard(self.chain.prepare_transaction(address, method, args))
        except CycleCancelled:
            self.ledger.mark_outcome(key, SubmissionStatus.FAILED, "cancelled before broadcast")
            raise
        except EchelonError as e:
            self.ledger.mark_outcome(key, SubmissionStatus.FAILED, str(e))
            raise

        self.ledger.mark_pending(key, prepared.tx_hash, prepared.nonce)

        try:
            handle = await self.chain.broadcast(prepared)
        except (InsufficientFundsError, NonceError, RevertError) as e:
            self.ledger.mark_outcome(key, SubmissionStatus.FAILED, str(e))
            raise
        except RpcError as e:
            logger.warning(f"Broadcast of {prepared.tx_hash} failed with unknown outcome: {e}")
            return self._record_from(self.ledger.get(key), error_message=str(e)), None

        try:
            receipt = await token.guard(
                self.chain.wait_for_receipt(handle, self.settings.receipt_timeout_seconds)
            )
        except ReceiptTimeoutError as e:
            logger.warning(f"{e}; leaving it pending")
            return self._record_from(self.ledger.get(key), error_message=str(e)), None
        except CycleCancelled:
            logger.warning(f"Stop requested while waiting for {handle.tx_hash}; leaving it pending")
            return self._record_from(self.ledger.get(key), error_message="stopped while waiting for receipt"), None
        except RevertedError as e:
            updated = self.ledger.mark_outcome(
                key,
                SubmissionStatus.REVERTED,
                error_message=e.reason,
                gas_used=e.receipt.get("gasUsed"),
                block_number=e.receipt.get("blockNumber"),
            )
            return self._record_from(updated), e.receipt

        updated = self.ledger.mark_outcome(
            key,
            SubmissionStatus.CONFIRMED,
            gas_used=receipt["gasUsed"],
            block_number=receipt["blockNumber"],
        )
        return self._record_from(updated), receipt

    async def _ensure_allowance(
        self,
        opportunity: SwapOpportunity,
        cycle_id: str,
        token: CancellationToken
    ) -> Optional[ExecutionRecord]:
        """
        Approve the router for the swap amount when the allowance is short

        Returns:
            None when the swap may proceed, otherwise the approval's record
        """
        router = self.settings.router_address
        allowance = await token.guard(self.chain.get_allowance(opportunity.token_in, router))
        if allowance >= opportunity.amount_in:
            return None

        key = f"{idempotency_key_for(cycle_id, opportunity)}:{SubmissionStage.APPROVAL.value}"
        submission, created = self.ledger.reserve(
            key,
            opportunity.decision_key,
            cycle_id,
            opportunity.kind,
            SubmissionStage.APPROVAL,
            opportunity.model_dump(mode="json"),
        )
        if not created:
            return self._record_from(submission, duplicate=True)

        logger.info(f"Approving router for {opportunity.amount_in} of {opportunity.token_in} (allowance {allowance})")
        self.chain.register_contract(opportunity.token_in, ERC20_ABI)
        record, _receipt = await self._submit_and_wait(
            key, opportunity.token_in, "approve", [router, opportunity.amount_in], token
        )

        if record.status == SubmissionStatus.CONFIRMED.value:
            self.ledger.mark_outcome(key, SubmissionStatus.RELEASED)
            return None
        return record

    async def _finish_swap(
        self,
        key: str,
        cycle_id: str,
        opportunity: SwapOpportunity,
        record: ExecutionRecord,
        receipt: Optional[Dict[str, Any]],
        token: CancellationToken
    ) -> ExecutionRecord:
        """Realized output from the receipt, then the outcome recorded on chain"""
        amount_out = 0
        if record.status == SubmissionStatus.CONFIRMED.value and receipt is not None:
            amount_out = self.chain.transfer_amount_from_receipt(receipt, opportunity.token_out, self.chain.address)
            self.ledger.mark_outcome(key, SubmissionStatus.CONFIRMED, amount_out=amount_out)
            record = record.model_copy(update={"amount_out": amount_out})

        result = EXECUTION_RESULT_SUCCESS if record.success else EXECUTION_RESULT_FAILURE
        await self._record_execution(key, cycle_id, opportunity, amount_out, result, token)
        return record

    async def _record_execution(
        self,
        key: str,
        cycle_id: str,
        opportunity: SwapOpportunity,
        amount_out: int,
        result: int,
        token: CancellationToken
    ):
        """
        logExecutionStart, then logExecutionComplete with the emitted execution id

        Both writes are ledger entries of their own: a receipt that does not
        arrive in time leaves the entry pending, which blocks new submissions
        until reconcile() resolves it and sends the completion. Failures are
        logged, not retried.
        """
        payload = {**opportunity.model_dump(mode="json"), "amount_out": amount_out, "result": result}
        start_key = f"{key}:{SubmissionStage.RECORD_START.value}"
        _submission, created = self.ledger.reserve(
            start_key, opportunity.decision_key, cycle_id, opportunity.kind, SubmissionStage.RECORD_START, payload
        )
        if not created:
            return

        try:
            start, start_receipt = await self._submit_and_wait(
                start_key,
                self.settings.execution_address,
                "logExecutionStart",
                [opportunity.user_address, opportunity.amount_in, opportunity.token_in, opportunity.token_out],
                token,
            )
        except EchelonError as e:
            logger.warning(f"Failed to record swap outcome on chain: {e}")
            return

        if start.status != SubmissionStatus.CONFIRMED.value:
            logger.warning(f"logExecutionStart {start.tx_hash} is {start.status}, completion deferred")
            return
        self.ledger.mark_outcome(start_key, SubmissionStatus.RELEASED)
        await self._complete_execution(key, cycle_id, opportunity.decision_key, payload, start_receipt, token)

    async def _complete_execution(
        self,
        key: str,
        cycle_id: str,
        decision_key: str,
        payload: Dict[str, Any],
        start_receipt: Dict[str, Any],
        token: CancellationToken
    ):
        execution_address = self.settings.execution_address
        execution_id = self.chain.execution_id_from_receipt(start_receipt, execution_address)
        if execution_id is None:
            logger.warning(
                f"No ExecutionStarted event in {start_receipt.get('transactionHash')}, execution not completed on chain"
            )
            return

        complete_key = f"{key}:{SubmissionStage.RECORD_COMPLETE.value}"
        _submission, created = self.ledger.reserve(
            complete_key, decision_key, cycle_id, payload["kind"], SubmissionStage.RECORD_COMPLETE, payload
        )
        if not created:
            return

        try:
            complete, _receipt = await self._submit_and_wait(
                complete_key,
                execution_address,
                "logExecutionComplete",
                [execution_id, payload["user_address"], payload["amount_in"], payload["amount_out"], payload["result"]],
                token,
            )
        except EchelonError as e:
            logger.warning(f"Failed to complete execution {execution_id} on chain: {e}")
            return

        if complete.status == SubmissionStatus.CONFIRMED.value:
            self.ledger.mark_outcome(complete_key, SubmissionStatus.RELEASED)
            logger.info(
                f"Recorded execution {execution_id} on chain "
                f"(result {payload['result']}, amountOut {payload['amount_out']})"
            )

    @staticmethod
    def _record_from(
        submission: Submission,
        duplicate: bool = False,
        error_message: Optional[str] = None
    ) -> ExecutionRecord:
        return ExecutionRecord(
            idempotency_key=submission.idempotency_key,
            decision_key=submission.decision_key,
            status=submission.status,
            success=submission.status == SubmissionStatus.CONFIRMED.value,
            tx_hash=submission.tx_hash,
            amount_out=int(submission.amount_out) if submission.amount_out is not None else None,
            gas_used=submission.gas_used,
            block_number=submission.block_number,
            error_message=error_message or submission.error_message,
            duplicate=duplicate,
        )
