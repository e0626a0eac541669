"""
Database models for the payment ledger and entitlements
"""

from sqlalchemy import BigInteger, Boolean, Column, DateTime, Enum, Integer, String, Text
from datetime import datetime
import enum
import json
from coursepay.database import Base


class IntentStatus(str, enum.Enum):
    CREATED = "created"
    PENDING_CONFIRMATION = "pending_confirmation"
    CONFIRMED = "confirmed"
    FAILED = "failed"
    EXPIRED = "expired"


LIVE_STATUSES = (IntentStatus.CREATED, IntentStatus.PENDING_CONFIRMATION)


class GrantStatus(str, enum.Enum):
    PENDING = "pending"
    GRANTED = "granted"
    FAILED = "failed"


class PayoutStatus(str, enum.Enum):
    OWED = "owed"
    SETTLED = "settled"


class EventSource(str, enum.Enum):
    REDIRECT = "redirect"
    WEBHOOK = "webhook"


class PaymentIntent(Base):
    __tablename__ = "payment_intents"

    id = Column(Integer, primary_key=True, index=True)
    reference = Column(String(64), unique=True, index=True, nullable=False)
    email = Column(String, nullable=False)
    amount_minor_units = Column(BigInteger, nullable=False)  # Amount in kobo
    currency = Column(String(3), nullable=False)
    metadata_json = Column(Text, default="{}")
    status = Column(Enum(IntentStatus), default=IntentStatus.CREATED, nullable=False)
    authorization_url = Column(String, nullable=True)  # Paystack hosted checkout
    access_code = Column(String, nullable=True)  # Paystack inline widget
    failure_reason = Column(Text, nullable=True)

    # Entitlement bookkeeping, set once the intent is confirmed
    grant_status = Column(Enum(GrantStatus), nullable=True)
    grant_attempts = Column(Integer, default=0, nullable=False)
    grant_attempted_at = Column(DateTime, nullable=True)
    last_grant_error = Column(Text, nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    last_transition_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    expires_at = Column(DateTime, nullable=False)

    @property
    def payment_metadata(self) -> dict:
        """Caller-supplied metadata as a dict"""
        if not self.metadata_json:
            return {}
        try:
            value = json.loads(self.metadata_json)
        except ValueError:
            return {}
        return value if isinstance(value, dict) else {}

    def is_expired(self, now: datetime) -> bool:
        return self.status in LIVE_STATUSES and now >= self.expires_at


class PaymentTransition(Base):
    """Append-only audit trail of intent status changes"""

    __tablename__ = "payment_transitions"

    id = Column(Integer, primary_key=True, index=True)
    reference = Column(String(64), index=True, nullable=False)
    from_status = Column(String, nullable=True)
    to_status = Column(String, nullable=False)
    cause = Column(String, nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)


class ConfirmationEvent(Base):
    __tablename__ = "confirmation_events"

    id = Column(Integer, primary_key=True, index=True)
    reference = Column(String(64), index=True, nullable=False)  # No FK: unknown references are kept too
    source = Column(Enum(EventSource), nullable=False)
    raw_payload_hash = Column(String(64), nullable=False)
    signature_valid = Column(Boolean, nullable=True)  # None for the redirect path
    gateway_status = Column(String, nullable=False)
    amount_minor_units = Column(BigInteger, nullable=True)
    currency = Column(String(3), nullable=True)
    outcome = Column(String, nullable=False)
    received_at = Column(DateTime, default=datetime.utcnow, nullable=False)


class GatewayEvent(Base):
    """Non-charge webhook events (transfers, subscriptions)"""

    __tablename__ = "gateway_events"

    id = Column(Integer, primary_key=True, index=True)
    event_type = Column(String, index=True, nullable=False)
    reference = Column(String, nullable=True)
    payload_hash = Column(String(64), nullable=False)
    received_at = Column(DateTime, default=datetime.utcnow, nullable=False)


class EntitlementGrant(Base):
    __tablename__ = "entitlement_grants"

    id = Column(Integer, primary_key=True, index=True)
    reference = Column(String(64), unique=True, index=True, nullable=False)
    student_id = Column(String, index=True, nullable=False)
    course_id = Column(String, nullable=False)
    lesson_id = Column(String, nullable=True)
    amount_minor_units = Column(BigInteger, nullable=False)
    teacher_id = Column(String, nullable=True)
    teacher_payout_minor_units = Column(BigInteger, nullable=True)
    granted_at = Column(DateTime, default=datetime.utcnow, nullable=False)


class TeacherPayout(Base):
    __tablename__ = "teacher_payouts"

    id = Column(Integer, primary_key=True, index=True)
    reference = Column(String(64), unique=True, index=True, nullable=False)
    teacher_id = Column(String, index=True, nullable=False)
    amount_minor_units = Column(BigInteger, nullable=False)  # Teacher share
    platform_share_minor_units = Column(BigInteger, nullable=False)
    status = Column(Enum(PayoutStatus), default=PayoutStatus.OWED, nullable=False)
    transfer_code = Column(String, nullable=True)  # Paystack transfer that paid it
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    settled_at = Column(DateTime, nullable=True)


class CourseAccess(Base):
    """Unlocked courses/lessons, one row per confirmed payment"""

    __tablename__ = "course_access"

    id = Column(Integer, primary_key=True, index=True)
    reference = Column(String(64), unique=True, index=True, nullable=False)
    student_id = Column(String, index=True, nullable=False)
    course_id = Column(String, index=True, nullable=False)
    lesson_id = Column(String, nullable=True)
    unlocked_at = Column(DateTime, default=datetime.utcnow, nullable=False)
