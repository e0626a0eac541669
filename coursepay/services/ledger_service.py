"""
Reconciliation ledger: payment intents, confirmation events and the
compare-and-set transitions that make confirmation idempotent.

Every method opens and commits its own short session, so no database
transaction is ever held open across a gateway call. Status changes are
conditional UPDATEs (`... WHERE status IN (...)`); the affected row count
decides which concurrent caller wins a transition.
"""

import enum
import json
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional, Sequence

from sqlalchemy import and_, or_, update
from sqlalchemy.orm import Session, sessionmaker

from coursepay.models import (
    LIVE_STATUSES,
    ConfirmationEvent,
    EventSource,
    GatewayEvent,
    GrantStatus,
    IntentStatus,
    PaymentIntent,
    PaymentTransition,
)
from coursepay.services.paystack_service import generate_payment_reference

logger = logging.getLogger(__name__)


class LedgerOutcome(str, enum.Enum):
    FIRST_CONFIRMATION = "first_confirmation"
    ALREADY_CONFIRMED = "already_confirmed"
    NOT_YET_SUCCESSFUL = "not_yet_successful"
    UNKNOWN_REFERENCE = "unknown_reference"
    EXPIRED = "expired"
    REQUIRES_REVIEW = "requires_review"


@dataclass(frozen=True)
class ConfirmationEventIn:
    source: EventSource
    raw_payload_hash: str
    gateway_status: str
    signature_valid: Optional[bool] = None
    amount_minor_units: Optional[int] = None
    currency: Optional[str] = None


@dataclass(frozen=True)
class LedgerResult:
    outcome: LedgerOutcome
    intent: Optional[PaymentIntent]


@dataclass(frozen=True)
class PaymentHistory:
    intent: PaymentIntent
    transitions: List[PaymentTransition]
    events: List[ConfirmationEvent]


class ReconciliationLedger:
    def __init__(
        self,
        session_factory: sessionmaker,
        *,
        intent_ttl: timedelta = timedelta(hours=24),
        grant_retry_after: timedelta = timedelta(minutes=5),
        clock: Callable[[], datetime] = datetime.utcnow,
    ):
        self._session_factory = session_factory
        self._intent_ttl = intent_ttl
        self._grant_retry_after = grant_retry_after
        self._clock = clock

    def now(self) -> datetime:
        return self._clock()

    # Intents

    def create_intent(
        self,
        *,
        email: str,
        amount_minor_units: int,
        currency: str,
        metadata: Dict[str, Any],
    ) -> PaymentIntent:
        """Create a payment intent in the created state"""
        now = self.now()
        intent = PaymentIntent(
            reference=generate_payment_reference(),
            email=email,
            amount_minor_units=amount_minor_units,
            currency=currency,
            metadata_json=json.dumps(metadata, sort_keys=True),
            status=IntentStatus.CREATED,
            grant_attempts=0,
            created_at=now,
            last_transition_at=now,
            expires_at=now + self._intent_ttl,
        )
        with self._session_factory() as db:
            db.add(intent)
            self._append_transition(db, intent.reference, None, IntentStatus.CREATED, "initiate", now)
            db.commit()
            db.refresh(intent)
        logger.info("Created payment intent %s for %s minor units", intent.reference, amount_minor_units)
        return intent

    def get_intent(self, reference: str) -> Optional[PaymentIntent]:
        with self._session_factory() as db:
            return db.query(PaymentIntent).filter(PaymentIntent.reference == reference).first()

    def mark_initialized(self, reference: str, *, authorization_url: str, access_code: str) -> bool:
        """created -> pending_confirmation, storing the checkout details"""
        with self._session_factory() as db:
            moved = self._transition(
                db,
                reference,
                (IntentStatus.CREATED,),
                IntentStatus.PENDING_CONFIRMATION,
                cause="gateway_initialized",
                authorization_url=authorization_url,
                access_code=access_code,
            )
            if not moved:
                # A webhook may already have confirmed it; keep the checkout details anyway.
                db.execute(
                    update(PaymentIntent)
                    .where(PaymentIntent.reference == reference)
                    .values(authorization_url=authorization_url, access_code=access_code)
                )
            db.commit()
        return moved

    def mark_failed(self, reference: str, reason: str) -> bool:
        with self._session_factory() as db:
            moved = self._transition(
                db,
                reference,
                LIVE_STATUSES,
                IntentStatus.FAILED,
                cause="gateway_rejected",
                failure_reason=reason,
            )
            db.commit()
        return moved

    # Confirmation

    def record_event(self, reference: str, event: ConfirmationEventIn) -> LedgerResult:
        """
        Record a confirmation event and apply its transition.
        FIRST_CONFIRMATION is returned to exactly one caller per reference.
        """
        with self._session_factory() as db:
            outcome = self._apply_event(db, reference, event)
            db.add(
                ConfirmationEvent(
                    reference=reference,
                    source=event.source,
                    raw_payload_hash=event.raw_payload_hash,
                    signature_valid=event.signature_valid,
                    gateway_status=event.gateway_status,
                    amount_minor_units=event.amount_minor_units,
                    currency=event.currency,
                    outcome=outcome.value,
                    received_at=self.now(),
                )
            )
            db.commit()
            intent = self._load(db, reference)

        if outcome == LedgerOutcome.UNKNOWN_REFERENCE:
            logger.warning("Confirmation via %s for unknown reference %s", event.source.value, reference)
        elif outcome == LedgerOutcome.REQUIRES_REVIEW:
            logger.error(
                "Payment %s needs review: gateway reported %s %s %s, intent is %s %s %s",
                reference,
                event.gateway_status,
                event.amount_minor_units,
                event.currency,
                intent.status.value,
                intent.amount_minor_units,
                intent.currency,
            )
        elif outcome == LedgerOutcome.EXPIRED and event.gateway_status == "success":
            logger.warning("Late success via %s for expired payment %s rejected", event.source.value, reference)
        else:
            logger.info("Payment %s via %s: %s", reference, event.source.value, outcome.value)
        return LedgerResult(outcome=outcome, intent=intent)

    def _apply_event(self, db: Session, reference: str, event: ConfirmationEventIn) -> LedgerOutcome:
        intent = self._load(db, reference)
        if intent is None:
            return LedgerOutcome.UNKNOWN_REFERENCE

        now = self.now()
        if intent.is_expired(now):
            self._transition(db, reference, LIVE_STATUSES, IntentStatus.EXPIRED, cause="ttl_elapsed")
            return self._outcome_for(self._load(db, reference).status)

        if intent.status != IntentStatus.CONFIRMED and event.gateway_status == "success":
            if intent.status == IntentStatus.FAILED or not self._matches(intent, event):
                return LedgerOutcome.REQUIRES_REVIEW
            won = self._transition(
                db,
                reference,
                LIVE_STATUSES,
                IntentStatus.CONFIRMED,
                cause=f"{event.source.value}_success",
                grant_status=GrantStatus.PENDING,
                grant_attempted_at=now,
            )
            if won:
                return LedgerOutcome.FIRST_CONFIRMATION
            # Lost the race; report whatever the winner left behind.
            return self._outcome_for(self._load(db, reference).status)

        if event.gateway_status == "failed" and intent.status == IntentStatus.PENDING_CONFIRMATION:
            self._transition(
                db,
                reference,
                (IntentStatus.PENDING_CONFIRMATION,),
                IntentStatus.FAILED,
                cause=f"{event.source.value}_failed",
                failure_reason="Gateway reported the payment as failed",
            )
            return self._outcome_for(self._load(db, reference).status)

        return self._outcome_for(intent.status)

    @staticmethod
    def _matches(intent: PaymentIntent, event: ConfirmationEventIn) -> bool:
        if event.amount_minor_units is not None and event.amount_minor_units != intent.amount_minor_units:
            return False
        if event.currency and event.currency.upper() != intent.currency.upper():
            return False
        return True

    @staticmethod
    def _outcome_for(status: IntentStatus) -> LedgerOutcome:
        if status == IntentStatus.CONFIRMED:
            return LedgerOutcome.ALREADY_CONFIRMED
        if status == IntentStatus.EXPIRED:
            return LedgerOutcome.EXPIRED
        return LedgerOutcome.NOT_YET_SUCCESSFUL

    # Expiry

    def expire(self, reference: str) -> bool:
        with self._session_factory() as db:
            intent = self._load(db, reference)
            if intent is None or not intent.is_expired(self.now()):
                return False
            moved = self._transition(db, reference, LIVE_STATUSES, IntentStatus.EXPIRED, cause="ttl_elapsed")
            db.commit()
        return moved

    def expire_stale(self) -> List[str]:
        """Expire every live intent past its TTL, returning the references moved"""
        now = self.now()
        with self._session_factory() as db:
            candidates = [
                row.reference
                for row in db.query(PaymentIntent.reference).filter(
                    PaymentIntent.status.in_(LIVE_STATUSES),
                    PaymentIntent.expires_at <= now,
                )
            ]
            expired = [
                reference
                for reference in candidates
                if self._transition(db, reference, LIVE_STATUSES, IntentStatus.EXPIRED, cause="ttl_elapsed")
            ]
            db.commit()
        if expired:
            logger.info("Expired %d stale payment intents", len(expired))
        return expired

    # Grant bookkeeping

    def claim_grant_retry(self, reference: str) -> bool:
        """
        Claim a confirmed intent whose grant failed, or whose grant attempt is
        older than the retry lease. Only one concurrent caller gets True.
        """
        now = self.now()
        stale_before = now - self._grant_retry_after
        with self._session_factory() as db:
            result = db.execute(
                update(PaymentIntent)
                .where(
                    PaymentIntent.reference == reference,
                    PaymentIntent.status == IntentStatus.CONFIRMED,
                    or_(
                        PaymentIntent.grant_status == GrantStatus.FAILED,
                        and_(
                            PaymentIntent.grant_status == GrantStatus.PENDING,
                            PaymentIntent.grant_attempted_at <= stale_before,
                        ),
                    ),
                )
                .values(grant_status=GrantStatus.PENDING, grant_attempted_at=now)
                .execution_options(synchronize_session=False)
            )
            db.commit()
        return result.rowcount == 1

    def grant_retry_candidates(self) -> List[str]:
        stale_before = self.now() - self._grant_retry_after
        with self._session_factory() as db:
            rows = db.query(PaymentIntent.reference).filter(
                PaymentIntent.status == IntentStatus.CONFIRMED,
                or_(
                    PaymentIntent.grant_status == GrantStatus.FAILED,
                    and_(
                        PaymentIntent.grant_status == GrantStatus.PENDING,
                        PaymentIntent.grant_attempted_at <= stale_before,
                    ),
                ),
            )
            return [row.reference for row in rows]

    def mark_granted(self, reference: str) -> None:
        with self._session_factory() as db:
            db.execute(
                update(PaymentIntent)
                .where(PaymentIntent.reference == reference, PaymentIntent.status == IntentStatus.CONFIRMED)
                .values(
                    grant_status=GrantStatus.GRANTED,
                    grant_attempts=PaymentIntent.grant_attempts + 1,
                    last_grant_error=None,
                )
                .execution_options(synchronize_session=False)
            )
            db.commit()

    def mark_grant_failed(self, reference: str, error: str) -> None:
        """Persist the GrantPending marker so the sweep retries the grant"""
        with self._session_factory() as db:
            db.execute(
                update(PaymentIntent)
                .where(
                    PaymentIntent.reference == reference,
                    PaymentIntent.status == IntentStatus.CONFIRMED,
                    PaymentIntent.grant_status != GrantStatus.GRANTED,
                )
                .values(
                    grant_status=GrantStatus.FAILED,
                    grant_attempts=PaymentIntent.grant_attempts + 1,
                    last_grant_error=error[:2000],
                )
                .execution_options(synchronize_session=False)
            )
            db.commit()

    # Auxiliary events and audit

    def record_gateway_event(self, event_type: str, reference: Optional[str], raw_payload_hash: str) -> None:
        with self._session_factory() as db:
            db.add(
                GatewayEvent(
                    event_type=event_type,
                    reference=reference,
                    payload_hash=raw_payload_hash,
                    received_at=self.now(),
                )
            )
            db.commit()

    def history(self, reference: str) -> Optional[PaymentHistory]:
        with self._session_factory() as db:
            intent = self._load(db, reference)
            if intent is None:
                return None
            transitions = (
                db.query(PaymentTransition)
                .filter(PaymentTransition.reference == reference)
                .order_by(PaymentTransition.id)
                .all()
            )
            events = (
                db.query(ConfirmationEvent)
                .filter(ConfirmationEvent.reference == reference)
                .order_by(ConfirmationEvent.id)
                .all()
            )
            return PaymentHistory(intent=intent, transitions=transitions, events=events)

    # Internals

    @staticmethod
    def _load(db: Session, reference: str) -> Optional[PaymentIntent]:
        return (
            db.query(PaymentIntent)
            .populate_existing()
            .filter(PaymentIntent.reference == reference)
            .first()
        )

    def _transition(
        self,
        db: Session,
        reference: str,
        from_statuses: Sequence[IntentStatus],
        to_status: IntentStatus,
        *,
        cause: str,
        **values: Any,
    ) -> bool:
        """
        Compare-and-set the intent status; appends an audit row when it moves.
        One conditional UPDATE per source status, so the matching statement
        names the status the row actually left.
        """
        now = self.now()
        for previous in from_statuses:
            result = db.execute(
                update(PaymentIntent)
                .where(PaymentIntent.reference == reference, PaymentIntent.status == previous)
                .values(status=to_status, last_transition_at=now, **values)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount == 1:
                self._append_transition(db, reference, previous, to_status, cause, now)
                return True
        return False

    @staticmethod
    def _append_transition(
        db: Session,
        reference: str,
        from_status: Optional[IntentStatus],
        to_status: IntentStatus,
        cause: str,
        now: datetime,
    ) -> None:
        db.add(
            PaymentTransition(
                reference=reference,
                from_status=from_status.value if from_status is not None else None,
                to_status=to_status.value,
                cause=cause,
                created_at=now,
            )
        )
