from datetime import datetime, timedelta

import pytest

from echelon_agents.ledger import SubmissionLedger, SubmissionStage, SubmissionStatus


def reserve(ledger, key="run-1:abc", decision_key="abc", stage=SubmissionStage.ACTION):
    return ledger.reserve(key, decision_key, "run-1", "allocation", stage, {"amount": 5})


def test_reserve_is_idempotent(ledger):
    first, created = reserve(ledger)
    second, created_again = reserve(ledger)

    assert created
    assert not created_again
    assert second.id == first.id
    assert second.status == SubmissionStatus.SUBMITTING.value
    assert second.decision_payload() == {"amount": 5}


def test_reserved_and_pending_entries_block(ledger):
    reserve(ledger, "run-1:abc", "abc")
    reserve(ledger, "run-1:def", "def")
    ledger.mark_pending("run-1:def", "0xfeed", 3)

    assert ledger.has_outstanding()
    assert ledger.blocking_decision_keys() == frozenset({"abc", "def"})
    assert [s.idempotency_key for s in ledger.unresolved()] == ["run-1:abc", "run-1:def"]


@pytest.mark.parametrize("status", [
    SubmissionStatus.CONFIRMED,
    SubmissionStatus.REVERTED,
    SubmissionStatus.FAILED,
    SubmissionStatus.RELEASED,
])
def test_resolved_entries_do_not_block(ledger, status):
    reserve(ledger)
    ledger.mark_outcome("run-1:abc", status)

    assert not ledger.has_outstanding()
    assert ledger.blocking_decision_keys() == frozenset()


def test_outcome_keeps_earlier_fields(ledger):
    reserve(ledger)
    ledger.mark_pending("run-1:abc", "0xfeed", 7)
    ledger.mark_outcome("run-1:abc", SubmissionStatus.CONFIRMED, gas_used=21000, block_number=9)
    submission = ledger.mark_outcome("run-1:abc", SubmissionStatus.CONFIRMED, amount_out=10 ** 20)

    assert submission.tx_hash == "0xfeed"
    assert submission.nonce == 7
    assert submission.gas_used == 21000
    assert submission.amount_out == str(10 ** 20)
    assert ledger.get("run-1:abc").block_number == 9


def test_unknown_key_cannot_be_updated(ledger):
    with pytest.raises(KeyError):
        ledger.mark_pending("missing", "0x01", 0)


def test_entries_survive_reopening(tmp_path):
    url = f"sqlite:///{tmp_path / 'ledger.db'}"
    first = SubmissionLedger(url)
    reserve(first)
    first.mark_pending("run-1:abc", "0xfeed", 1)
    first.close()

    reopened = SubmissionLedger(url)
    try:
        assert reopened.blocking_decision_keys() == frozenset({"abc"})
        assert reopened.get("run-1:abc").tx_hash == "0xfeed"
    finally:
        reopened.close()


def test_expiry(ledger):
    submission, _ = reserve(ledger)

    assert not ledger.is_expired(submission, 60, now=submission.created_at + timedelta(seconds=30))
    assert ledger.is_expired(submission, 60, now=submission.created_at + timedelta(seconds=61))
    assert not ledger.is_expired(submission, 1800, now=datetime.now())
