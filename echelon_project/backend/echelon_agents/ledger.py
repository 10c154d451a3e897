"""
Submission ledger - local record of every transaction the agent attempts

Each row is keyed by an idempotency key (``cycle_id:decision_key`` plus a
stage suffix for approvals and outcome records). A key that already exists
is never broadcast again, and rows still waiting for a receipt block both new
submissions and re-selection of the same decision.
"""
import json
import logging
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Dict, FrozenSet, List, Optional, Tuple

from sqlalchemy import Column, DateTime, Integer, String, Text, create_engine
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import declarative_base, sessionmaker

logger = logging.getLogger(__name__)

Base = declarative_base()


class SubmissionStatus(str, Enum):
    SUBMITTING = "submitting"  # reserved, not yet signed
    PENDING = "pending"  # signed and (possibly) broadcast, no receipt yet
    CONFIRMED = "confirmed"
    REVERTED = "reverted"
    FAILED = "failed"  # never reached the chain, or dropped by it
    RELEASED = "released"  # mined approval or outcome record, no longer blocks anything


class SubmissionStage(str, Enum):
    APPROVAL = "approval"
    ACTION = "action"
    RECORD_START = "record_start"
    RECORD_COMPLETE = "record_complete"


BLOCKING_STATUSES = (SubmissionStatus.SUBMITTING, SubmissionStatus.PENDING)


class Submission(Base):
    """One attempted transaction"""
    __tablename__ = "submissions"

    id = Column(Integer, primary_key=True, autoincrement=True)
    idempotency_key = Column(String(160), unique=True, nullable=False, index=True)
    decision_key = Column(String(64), nullable=False, index=True)
    cycle_id = Column(String(64), nullable=False)
    kind = Column(String(20), nullable=False)  # allocation | swap
    stage = Column(String(20), nullable=False, default=SubmissionStage.ACTION.value)
    status = Column(String(20), nullable=False, default=SubmissionStatus.SUBMITTING.value, index=True)

    tx_hash = Column(String(66), nullable=True)
    nonce = Column(Integer, nullable=True)
    payload = Column(Text, nullable=True)  # JSON of the decision

    amount_out = Column(String(78), nullable=True)  # uint256 as decimal string
    gas_used = Column(Integer, nullable=True)
    block_number = Column(Integer, nullable=True)
    error_message = Column(Text, nullable=True)

    created_at = Column(DateTime, default=datetime.now, nullable=False)
    updated_at = Column(DateTime, default=datetime.now, onupdate=datetime.now, nullable=False)

    def decision_payload(self) -> Dict[str, Any]:
        return json.loads(self.payload) if self.payload else {}


class SubmissionLedger:
    """SQLAlchemy-backed store of submissions"""

    def __init__(self, database_url: str = "sqlite:///echelon_ledger.db"):
        self.engine = create_engine(database_url, echo=False)
        Base.metadata.create_all(self.engine)
        self.Session = sessionmaker(bind=self.engine, expire_on_commit=False)

    def get(self, idempotency_key: str) -> Optional[Submission]:
        with self.Session() as session:
            return session.query(Submission).filter_by(idempotency_key=idempotency_key).first()

    def reserve(
        self,
        idempotency_key: str,
        decision_key: str,
        cycle_id: str,
        kind: str,
        stage: SubmissionStage = SubmissionStage.ACTION,
        payload: Optional[Dict[str, Any]] = None
    ) -> Tuple[Submission, bool]:
        """
        Create a submission row unless the key already exists

        Returns:
            (submission, created) - created is False when the key was already recorded
        """
        with self.Session() as session:
            existing = session.query(Submission).filter_by(idempotency_key=idempotency_key).first()
            if existing:
                logger.info(f"Idempotent submission found: {idempotency_key} ({existing.status})")
                return existing, False

            submission = Submission(
                idempotency_key=idempotency_key,
                decision_key=decision_key,
                cycle_id=cycle_id,
                kind=kind,
                stage=stage.value,
                status=SubmissionStatus.SUBMITTING.value,
                payload=json.dumps(payload) if payload is not None else None,
            )
            session.add(submission)
            try:
                session.commit()
            except IntegrityError:
                session.rollback()
                existing = session.query(Submission).filter_by(idempotency_key=idempotency_key).first()
                return existing, False
            return submission, True

    def mark_pending(self, idempotency_key: str, tx_hash: str, nonce: int) -> Submission:
        return self._update(
            idempotency_key,
            status=SubmissionStatus.PENDING.value,
            tx_hash=tx_hash,
            nonce=nonce,
        )

    def mark_outcome(
        self,
        idempotency_key: str,
        status: SubmissionStatus,
        error_message: Optional[str] = None,
        amount_out: Optional[int] = None,
        gas_used: Optional[int] = None,
        block_number: Optional[int] = None
    ) -> Submission:
        return self._update(
            idempotency_key,
            status=status.value,
            error_message=error_message,
            amount_out=str(amount_out) if amount_out is not None else None,
            gas_used=gas_used,
            block_number=block_number,
        )

    def _update(self, idempotency_key: str, **fields) -> Submission:
        with self.Session() as session:
            submission = session.query(Submission).filter_by(idempotency_key=idempotency_key).first()
            if submission is None:
                raise KeyError(f"No submission recorded for {idempotency_key}")
            for name, value in fields.items():
                if value is not None:
                    setattr(submission, name, value)
            session.commit()
            return submission

    def unresolved(self) -> List[Submission]:
        """Submissions still submitting or waiting for a receipt, oldest first"""
        with self.Session() as session:
            return (
                session.query(Submission)
                .filter(Submission.status.in_([s.value for s in BLOCKING_STATUSES]))
                .order_by(Submission.created_at, Submission.id)
                .all()
            )

    def blocking_decision_keys(self) -> FrozenSet[str]:
        return frozenset(submission.decision_key for submission in self.unresolved())

    def has_outstanding(self) -> bool:
        return bool(self.unresolved())

    def is_expired(self, submission: Submission, expiry_seconds: int, now: Optional[datetime] = None) -> bool:
        now = now or datetime.now()
        return now - submission.created_at > timedelta(seconds=expiry_seconds)

    def close(self):
        self.engine.dispose()
