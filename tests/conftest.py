from __future__ import annotations

import asyncio
import hashlib
import hmac
import json
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Union

import pytest

from coursepay.config import Settings
from coursepay.database import create_db_engine, create_session_factory, init_db
from coursepay.services.entitlement_service import DatabaseAccessControl, EntitlementGrantor
from coursepay.services.ledger_service import ReconciliationLedger
from coursepay.services.payment_service import ConfirmationOrchestrator
from coursepay.services.paystack_service import (
    Bank,
    GatewayError,
    InitializedTransaction,
    VerifiedTransaction,
    payload_hash,
)

WEBHOOK_SECRET = "whsec_course_test"


class FakeClock:
    def __init__(self, start: datetime = datetime(2026, 1, 5, 12, 0, 0)):
        self.current = start

    def __call__(self) -> datetime:
        return self.current

    def advance(self, **kwargs) -> None:
        self.current = self.current + timedelta(**kwargs)


class FakeGateway:
    """In-memory stand-in for PaystackClient"""

    def __init__(self):
        self.initialize_result: Optional[Union[InitializedTransaction, GatewayError]] = None
        self.verify_results: Dict[str, Union[VerifiedTransaction, GatewayError]] = {}
        self.banks: Union[List[Bank], GatewayError] = [
            Bank(name="Access Bank", code="044", slug="access-bank", pay_with_bank=True),
            Bank(name="Zenith Bank", code="057", slug="zenith-bank"),
        ]
        self.initialize_calls: List[Dict[str, Any]] = []
        self.verify_calls: List[str] = []

    async def initialize(self, *, email, amount_minor_units, currency, metadata, callback_url, reference):
        self.initialize_calls.append(
            {
                "email": email,
                "amount_minor_units": amount_minor_units,
                "currency": currency,
                "metadata": metadata,
                "callback_url": callback_url,
                "reference": reference,
            }
        )
        if self.initialize_result is not None:
            return self.initialize_result
        return InitializedTransaction(
            authorization_url=f"https://checkout.paystack.com/{reference}",
            access_code=f"ac_{reference[-8:]}",
            reference=reference,
        )

    async def verify(self, reference: str):
        self.verify_calls.append(reference)
        await asyncio.sleep(0)
        result = self.verify_results.get(reference)
        if result is None:
            return VerifiedTransaction(
                reference=reference,
                status="pending",
                amount_minor_units=None,
                currency=None,
                paid_at=None,
                raw_payload_hash=payload_hash(b"pending"),
            )
        return result

    async def list_banks(self, currency: str):
        return self.banks

    def succeed(self, reference: str, amount_minor_units: int, currency: str = "NGN") -> None:
        self.verify_results[reference] = VerifiedTransaction(
            reference=reference,
            status="success",
            amount_minor_units=amount_minor_units,
            currency=currency,
            paid_at="2026-01-05T12:01:00.000Z",
            raw_payload_hash=payload_hash(f"verify:{reference}".encode()),
        )


class RecordingAccessControl:
    """Access store that can be told to fail"""

    def __init__(self):
        self.unlocked: List[Dict[str, Any]] = []
        self.failures_left = 0

    def unlock(self, *, reference, student_id, course_id, lesson_id=None):
        if self.failures_left > 0:
            self.failures_left -= 1
            raise RuntimeError("course catalogue unavailable")
        self.unlocked.append(
            {"reference": reference, "student_id": student_id, "course_id": course_id, "lesson_id": lesson_id}
        )


def sign(body: bytes, secret: str = WEBHOOK_SECRET) -> str:
    return hmac.new(secret.encode(), body, hashlib.sha512).hexdigest()


def charge_success_body(reference: str, amount: int, currency: str = "NGN") -> bytes:
    return json.dumps(
        {
            "event": "charge.success",
            "data": {
                "reference": reference,
                "status": "success",
                "amount": amount,
                "currency": currency,
                "customer": {"email": "ada@example.com"},
            },
        }
    ).encode()


COURSE_METADATA = {"courseId": "course-42", "studentId": "student-7", "teacherId": "teacher-3"}


@pytest.fixture
def settings(tmp_path) -> Settings:
    return Settings(
        paystack_secret_key="sk_test_0123456789abcdef",
        paystack_public_key="pk_test_0123456789abcdef",
        paystack_webhook_secret=WEBHOOK_SECRET,
        base_url="https://courses.example.com",
        database_url=f"sqlite:///{tmp_path / 'coursepay.db'}",
        sweep_interval_seconds=0,
    )


@pytest.fixture
def session_factory(settings):
    engine = create_db_engine(settings.database_url)
    init_db(engine)
    yield create_session_factory(engine)
    engine.dispose()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def ledger(session_factory, clock) -> ReconciliationLedger:
    return ReconciliationLedger(
        session_factory,
        intent_ttl=timedelta(hours=24),
        grant_retry_after=timedelta(minutes=5),
        clock=clock,
    )


@pytest.fixture
def access_control() -> RecordingAccessControl:
    return RecordingAccessControl()


@pytest.fixture
def grantor(session_factory, ledger, access_control) -> EntitlementGrantor:
    return EntitlementGrantor(session_factory, ledger, access_control, teacher_share_percent=70)


@pytest.fixture
def gateway() -> FakeGateway:
    return FakeGateway()


@pytest.fixture
def orchestrator(settings, gateway, ledger, grantor) -> ConfirmationOrchestrator:
    return ConfirmationOrchestrator(settings, gateway, ledger, grantor)


@pytest.fixture
def database_access_control(session_factory) -> DatabaseAccessControl:
    return DatabaseAccessControl(session_factory)
