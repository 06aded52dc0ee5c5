import asyncio
from decimal import Decimal

import pytest

from services.errors import AlreadyDecided, SessionExpired
from services.ledger import Ledger
from services.recharge import InvalidAmount, RechargeSessions, RechargeStep, StepKind
from services.store import ShopStore


class FakeClock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self):
        return self.now


def _run(coro):
    return asyncio.run(coro)


@pytest.fixture
def store(tmp_path):
    shop_store = ShopStore(tmp_path / "recharge.db")
    shop_store.init_db()
    return shop_store


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def sessions(store, clock):
    return RechargeSessions(
        store,
        Ledger(store),
        allowed_amounts=[500, 1000, 2000, 5000, 10000],
        ttl_minutes=30,
        clock=clock,
    )


def _escalate(sessions, party_id=7, amount="1000"):
    sessions.start(party_id)
    sessions.handle_message(party_id, text=amount)
    return sessions.handle_message(party_id, photo_file_id="proof-file").review


def test_scenario_c_amount_validation(sessions):
    sessions.start(7)

    outcome = sessions.handle_message(7, text="abc")
    assert outcome.kind is StepKind.AMOUNT_REJECTED
    assert outcome.error.not_a_number is True

    outcome = sessions.handle_message(7, text="750")
    assert outcome.kind is StepKind.AMOUNT_REJECTED
    assert outcome.error.not_a_number is False
    assert "500, 1000, 2000, 5000, 10000" in outcome.error.user_message()
    assert sessions.get(7).step is RechargeStep.AWAITING_AMOUNT

    outcome = sessions.handle_message(7, text=" 1000 ")
    assert outcome.kind is StepKind.AMOUNT_ACCEPTED
    assert outcome.session.step is RechargeStep.AWAITING_PROOF
    assert outcome.session.amount == 1000


def test_non_ascii_digits_are_not_a_number(sessions):
    with pytest.raises(InvalidAmount) as exc:
        sessions.validate_amount("１０００")
    assert exc.value.not_a_number is True


def test_proof_step_requires_a_photo(sessions):
    sessions.start(7)
    sessions.handle_message(7, text="1000")
    outcome = sessions.handle_message(7, text="I paid")
    assert outcome.kind is StepKind.PROOF_REQUIRED
    assert sessions.get(7).step is RechargeStep.AWAITING_PROOF


def test_escalation_creates_pending_review_and_ends_session(sessions):
    review = _escalate(sessions)
    assert review.status == "pending"
    assert review.amount == 1000
    assert review.proof_file_id == "proof-file"
    assert sessions.get(7) is None
    assert [r.id for r in sessions.pending_reviews()] == [review.id]


def test_no_session_means_message_is_not_for_recharge(sessions):
    assert sessions.handle_message(7, text="1000") is None


def test_scenario_d_confirm_credits_exactly_once(sessions):
    review = _escalate(sessions)
    decided = _run(sessions.decide(review.id, approve=True, actor_id=1))
    assert decided.status == "confirmed"
    assert decided.decided_by == 1
    assert sessions.ledger.balance(7) == Decimal(1000)

    with pytest.raises(AlreadyDecided) as exc:
        _run(sessions.decide(review.id, approve=True, actor_id=1))
    assert exc.value.status == "confirmed"
    assert sessions.ledger.balance(7) == Decimal(1000)

    with pytest.raises(AlreadyDecided):
        _run(sessions.decide(review.id, approve=False, actor_id=2))
    assert sessions.review(review.id).status == "confirmed"


def test_reject_leaves_balance_unchanged(sessions):
    review = _escalate(sessions, amount="500")
    decided = _run(sessions.decide(review.id, approve=False, actor_id=1))
    assert decided.status == "rejected"
    assert sessions.ledger.balance(7) == Decimal(0)
    assert sessions.pending_reviews() == []


def test_unknown_review_is_reported_as_decided(sessions):
    with pytest.raises(AlreadyDecided) as exc:
        _run(sessions.decide(999, approve=True, actor_id=1))
    assert exc.value.status == "removed"


def test_cancel_ends_session(sessions):
    sessions.start(7)
    assert sessions.cancel(7) is True
    assert sessions.cancel(7) is False
    assert sessions.handle_message(7, text="1000") is None


def test_sessions_expire(sessions, clock):
    sessions.start(7)
    sessions.handle_message(7, text="1000")
    clock.now += 31 * 60
    assert sessions.handle_message(7, photo_file_id="late") is None
    assert sessions.pending_reviews() == []


def test_purge_expired_counts_stale_sessions(sessions, clock):
    sessions.start(7)
    clock.now += 20 * 60
    sessions.start(8)
    clock.now += 15 * 60
    assert sessions.purge_expired() == 1
    assert sessions.active_count() == 1
    assert sessions.get(8) is not None


def test_restart_invalidates_stale_continuation(sessions):
    first = sessions.start(7)
    second = sessions.start(7)
    assert first.token != second.token
    with pytest.raises(SessionExpired):
        sessions.submit_amount(7, "1000", expected_token=first.token)
    outcome = sessions.submit_amount(7, "1000", expected_token=second.token)
    assert outcome.kind is StepKind.AMOUNT_ACCEPTED


def test_sessions_are_per_party(sessions):
    sessions.start(7)
    sessions.start(8)
    sessions.handle_message(7, text="1000")
    assert sessions.get(8).step is RechargeStep.AWAITING_AMOUNT
    assert sessions.get(7).step is RechargeStep.AWAITING_PROOF
