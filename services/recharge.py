"""Recharge (deposit) conversations.

Per party::

    AWAITING_AMOUNT --valid amount--> AWAITING_PROOF --photo--> escalated
          |                                 |
          +------------ cancel -------------+--> cancelled

Escalation removes the session and stores a ``recharge_reviews`` row in
``pending``. That row is the decision token: confirm/reject flip it out of
``pending`` in the same transaction as the balance credit, so a replayed
confirm cannot credit twice.

Sessions expire after ``ttl_minutes`` and carry a random token; callers that
captured a token before awaiting can pass it back so that a session replaced
in the meantime by a new /recharge is not advanced by the stale continuation.
"""
import logging
import secrets
import time
from dataclasses import dataclass, replace
from decimal import Decimal
from enum import Enum
from typing import Callable, Dict, List, Optional, Sequence

from services.errors import AlreadyDecided, SessionExpired, ShopError
from services.ledger import Ledger
from services.store import ShopStore

logger = logging.getLogger(__name__)


class RechargeStep(str, Enum):
    AWAITING_AMOUNT = "awaiting_amount"
    AWAITING_PROOF = "awaiting_proof"


class StepKind(str, Enum):
    AMOUNT_ACCEPTED = "amount_accepted"
    AMOUNT_REJECTED = "amount_rejected"
    PROOF_REQUIRED = "proof_required"
    ESCALATED = "escalated"


class InvalidAmount(ShopError):
    def __init__(self, allowed: Sequence[int], not_a_number: bool = False):
        self.allowed = list(allowed)
        self.not_a_number = not_a_number
        if not_a_number:
            message = "Please send a valid number amount (e.g., 500, 1000)"
        else:
            message = f"Allowed amounts are {', '.join(str(a) for a in self.allowed)} only."
        super().__init__(message)


@dataclass(frozen=True)
class RechargeSession:
    party_id: int
    step: RechargeStep
    token: str
    started_at: float
    amount: Optional[int] = None


@dataclass(frozen=True)
class ReviewRequest:
    id: int
    party_id: int
    amount: int
    proof_file_id: str
    status: str
    decided_by: Optional[int] = None


@dataclass(frozen=True)
class StepOutcome:
    kind: StepKind
    session: Optional[RechargeSession] = None
    review: Optional[ReviewRequest] = None
    error: Optional[InvalidAmount] = None


def _row_to_review(row) -> ReviewRequest:
    return ReviewRequest(
        id=int(row["id"]),
        party_id=int(row["party_id"]),
        amount=int(row["amount"]),
        proof_file_id=str(row["proof_file_id"]),
        status=str(row["status"]),
        decided_by=int(row["decided_by"]) if row["decided_by"] is not None else None,
    )


class RechargeSessions:
    def __init__(
        self,
        store: ShopStore,
        ledger: Ledger,
        *,
        allowed_amounts: Sequence[int],
        ttl_minutes: float = 30,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.store = store
        self.ledger = ledger
        self.allowed_amounts = sorted({int(a) for a in allowed_amounts})
        self.ttl_seconds = float(ttl_minutes) * 60
        self._clock = clock
        self._sessions: Dict[int, RechargeSession] = {}

    # -- session lifecycle -------------------------------------------------

    def start(self, party_id: int) -> RechargeSession:
        previous = self._sessions.get(int(party_id))
        if previous is not None:
            logger.info("Recharge session for %s replaced (was %s)", party_id, previous.step.value)
        session = RechargeSession(
            party_id=int(party_id),
            step=RechargeStep.AWAITING_AMOUNT,
            token=secrets.token_hex(8),
            started_at=self._clock(),
        )
        self._sessions[int(party_id)] = session
        return session

    def _expired(self, session: RechargeSession) -> bool:
        return self.ttl_seconds > 0 and self._clock() - session.started_at > self.ttl_seconds

    def get(self, party_id: int) -> Optional[RechargeSession]:
        session = self._sessions.get(int(party_id))
        if session is None:
            return None
        if self._expired(session):
            del self._sessions[int(party_id)]
            logger.info("Recharge session for %s expired", party_id)
            return None
        return session

    def _require(self, party_id: int, expected_token: Optional[str]) -> RechargeSession:
        session = self.get(party_id)
        if session is None or (expected_token is not None and session.token != expected_token):
            raise SessionExpired()
        return session

    def cancel(self, party_id: int) -> bool:
        return self.get(party_id) is not None and self._sessions.pop(int(party_id), None) is not None

    def purge_expired(self) -> int:
        stale = [pid for pid, s in self._sessions.items() if self._expired(s)]
        for pid in stale:
            del self._sessions[pid]
        return len(stale)

    def active_count(self) -> int:
        return len(self._sessions)

    # -- steps ---------------------------------------------------------------

    def validate_amount(self, text: Optional[str]) -> int:
        raw = (text or "").strip()
        if not raw or not raw.isascii() or not raw.isdigit():
            raise InvalidAmount(self.allowed_amounts, not_a_number=True)
        amount = int(raw)
        if amount not in self.allowed_amounts:
            raise InvalidAmount(self.allowed_amounts)
        return amount

    def submit_amount(self, party_id: int, text: Optional[str], *, expected_token: Optional[str] = None) -> StepOutcome:
        session = self._require(party_id, expected_token)
        if session.step is not RechargeStep.AWAITING_AMOUNT:
            return StepOutcome(kind=StepKind.PROOF_REQUIRED, session=session)
        try:
            amount = self.validate_amount(text)
        except InvalidAmount as exc:
            return StepOutcome(kind=StepKind.AMOUNT_REJECTED, session=session, error=exc)
        advanced = replace(session, step=RechargeStep.AWAITING_PROOF, amount=amount)
        self._sessions[int(party_id)] = advanced
        return StepOutcome(kind=StepKind.AMOUNT_ACCEPTED, session=advanced)

    def submit_proof(self, party_id: int, proof_file_id: str, *, expected_token: Optional[str] = None) -> StepOutcome:
        session = self._require(party_id, expected_token)
        if session.step is not RechargeStep.AWAITING_PROOF or session.amount is None:
            return self.submit_amount(party_id, None, expected_token=session.token)

        with self.store.transaction() as con:
            cur = con.execute(
                "INSERT INTO recharge_reviews (party_id, amount, proof_file_id) VALUES (?, ?, ?)",
                (int(party_id), int(session.amount), str(proof_file_id)),
            )
            review_id = int(cur.lastrowid)
        self._sessions.pop(int(party_id), None)
        review = ReviewRequest(
            id=review_id,
            party_id=int(party_id),
            amount=int(session.amount),
            proof_file_id=str(proof_file_id),
            status="pending",
        )
        logger.info("Recharge #%s escalated: party %s amount %s", review_id, party_id, session.amount)
        return StepOutcome(kind=StepKind.ESCALATED, review=review)

    def handle_message(
        self,
        party_id: int,
        *,
        text: Optional[str] = None,
        photo_file_id: Optional[str] = None,
        expected_token: Optional[str] = None,
    ) -> Optional[StepOutcome]:
        """Route one inbound private message. ``None`` means no session applies."""
        session = self.get(party_id)
        if session is None:
            return None
        token = expected_token or session.token
        if session.step is RechargeStep.AWAITING_AMOUNT:
            return self.submit_amount(party_id, text, expected_token=token)
        if photo_file_id:
            return self.submit_proof(party_id, photo_file_id, expected_token=token)
        return StepOutcome(kind=StepKind.PROOF_REQUIRED, session=session)

    # -- adjudication --------------------------------------------------------

    def review(self, review_id: int) -> Optional[ReviewRequest]:
        with self.store.read() as con:
            row = con.execute("SELECT * FROM recharge_reviews WHERE id = ?", (int(review_id),)).fetchone()
        return _row_to_review(row) if row else None

    def pending_reviews(self) -> List[ReviewRequest]:
        with self.store.read() as con:
            rows = con.execute(
                "SELECT * FROM recharge_reviews WHERE status = 'pending' ORDER BY id ASC"
            ).fetchall()
        return [_row_to_review(row) for row in rows]

    async def decide(self, review_id: int, *, approve: bool, actor_id: int) -> ReviewRequest:
        """Confirm (credit) or reject a pending review exactly once."""
        current = self.review(review_id)
        if current is None:
            raise AlreadyDecided(int(review_id), "removed")
        status = "confirmed" if approve else "rejected"

        async with self.ledger.lock_for(current.party_id):
            with self.store.transaction() as con:
                cur = con.execute(
                    """
                    UPDATE recharge_reviews
                    SET status = ?, decided_by = ?, decided_at = CURRENT_TIMESTAMP
                    WHERE id = ? AND status = 'pending'
                    """,
                    (status, int(actor_id), int(review_id)),
                )
                if cur.rowcount == 0:
                    row = con.execute(
                        "SELECT status FROM recharge_reviews WHERE id = ?", (int(review_id),)
                    ).fetchone()
                    raise AlreadyDecided(int(review_id), str(row["status"]) if row else "removed")
                if approve:
                    self.ledger.credit_in(
                        con,
                        current.party_id,
                        Decimal(current.amount),
                        actor_id=actor_id,
                        reason="recharge_confirmed",
                        note=f"review {review_id}",
                    )
        logger.info("Recharge #%s %s by %s", review_id, status, actor_id)
        return replace(current, status=status, decided_by=int(actor_id))
