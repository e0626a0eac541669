"""
Confirmation orchestrator: the public payment operations

Ties the gateway client, the reconciliation ledger and the entitlement
grantor together for both delivery paths (redirect verification and
webhook push), plus the periodic reconciliation sweep.
"""

import json
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional, Protocol, Union

from coursepay.config import Settings
from coursepay.errors import (
    GrantPending,
    InitiationFailed,
    InvalidSignature,
    MalformedNotification,
    UnknownReference,
)
from coursepay.models import EntitlementGrant, EventSource, GrantStatus, IntentStatus, PaymentIntent
from coursepay.services.entitlement_service import EntitlementGrantor
from coursepay.services.ledger_service import (
    ConfirmationEventIn,
    LedgerOutcome,
    PaymentHistory,
    ReconciliationLedger,
)
from coursepay.services.paystack_service import (
    Bank,
    GatewayError,
    GatewayErrorKind,
    InitializedTransaction,
    VerifiedTransaction,
    payload_hash,
    verify_webhook_signature,
)

logger = logging.getLogger(__name__)

CHARGE_SUCCESS = "charge.success"
TRANSFER_SUCCESS = "transfer.success"
AUXILIARY_EVENTS = (TRANSFER_SUCCESS, "subscription.create")

MESSAGE_NOT_STARTED = "Payment could not be started."
MESSAGE_GRANTED = "Payment successful. Course access granted."
MESSAGE_ACCESS_PENDING = "Payment received. Your access will be activated shortly."
MESSAGE_NOT_COMPLETED = "Payment not completed"
MESSAGE_AWAITING = "Payment not completed yet"
MESSAGE_GATEWAY_DOWN = "Could not reach the payment gateway. Please try again shortly."
MESSAGE_EXPIRED = "Payment window expired. Please start a new payment."
MESSAGE_REVIEW = "Payment is under review. Please contact support."


class PaymentGateway(Protocol):
    async def initialize(
        self,
        *,
        email: str,
        amount_minor_units: int,
        currency: str,
        metadata: Dict[str, Any],
        callback_url: str,
        reference: str,
    ) -> Union[InitializedTransaction, GatewayError]:
        ...

    async def verify(self, reference: str) -> Union[VerifiedTransaction, GatewayError]:
        ...

    async def list_banks(self, currency: str) -> Union[List[Bank], GatewayError]:
        ...


class ConfirmationStatus:
    GRANTED = "granted"
    CONFIRMED = "confirmed"
    PENDING = "pending"
    FAILED = "failed"
    EXPIRED = "expired"
    REVIEW = "review"


@dataclass(frozen=True)
class InitiationResult:
    reference: str
    authorization_url: str
    access_code: str


@dataclass(frozen=True)
class ConfirmationResult:
    status: str
    reference: str
    message: str
    retryable: bool = False
    grant: Optional[EntitlementGrant] = None


@dataclass(frozen=True)
class WebhookResult:
    outcome: str
    event: Optional[str] = None
    reference: Optional[str] = None


@dataclass
class SweepReport:
    expired: List[str] = field(default_factory=list)
    granted: List[str] = field(default_factory=list)
    still_pending: List[str] = field(default_factory=list)


class ConfirmationOrchestrator:
    def __init__(
        self,
        settings: Settings,
        gateway: PaymentGateway,
        ledger: ReconciliationLedger,
        grantor: EntitlementGrantor,
    ):
        self._settings = settings
        self._gateway = gateway
        self._ledger = ledger
        self._grantor = grantor

    # Initiation

    async def initiate(self, email: str, amount_minor_units: int, metadata: Dict[str, Any]) -> InitiationResult:
        """Create an intent and open the matching Paystack transaction"""
        intent = self._ledger.create_intent(
            email=email,
            amount_minor_units=amount_minor_units,
            currency=self._settings.currency,
            metadata=metadata,
        )
        gateway_metadata = {**metadata, "platform": self._settings.platform_name}

        result = await self._gateway.initialize(
            email=email,
            amount_minor_units=amount_minor_units,
            currency=intent.currency,
            metadata=gateway_metadata,
            callback_url=self._settings.callback_url,
            reference=intent.reference,
        )
        if isinstance(result, GatewayError):
            self._ledger.mark_failed(intent.reference, result.message)
            logger.warning("Initiation of %s failed (%s): %s", intent.reference, result.kind.value, result.message)
            message = result.message if result.kind == GatewayErrorKind.REJECTED else MESSAGE_NOT_STARTED
            raise InitiationFailed(message or MESSAGE_NOT_STARTED, reference=intent.reference, retryable=result.retryable)

        self._ledger.mark_initialized(
            intent.reference,
            authorization_url=result.authorization_url,
            access_code=result.access_code,
        )
        return InitiationResult(
            reference=intent.reference,
            authorization_url=result.authorization_url,
            access_code=result.access_code,
        )

    # Redirect path

    async def confirm_by_redirect(self, reference: str) -> ConfirmationResult:
        """Verify with the gateway after the payer returns from checkout"""
        intent = self._ledger.get_intent(reference)
        if intent is None:
            raise UnknownReference(reference)

        settled = self._settled_result(intent)
        if settled is not None:
            return settled

        if intent.is_expired(self._ledger.now()):
            self._ledger.expire(reference)
            return ConfirmationResult(ConfirmationStatus.EXPIRED, reference, MESSAGE_EXPIRED)

        # No ledger session is open while awaiting the gateway.
        verified = await self._gateway.verify(reference)
        if isinstance(verified, GatewayError):
            if verified.retryable:
                return ConfirmationResult(ConfirmationStatus.PENDING, reference, MESSAGE_GATEWAY_DOWN, retryable=True)
            return ConfirmationResult(ConfirmationStatus.FAILED, reference, MESSAGE_NOT_COMPLETED, retryable=True)

        recorded = self._ledger.record_event(
            reference,
            ConfirmationEventIn(
                source=EventSource.REDIRECT,
                raw_payload_hash=verified.raw_payload_hash,
                gateway_status=verified.status,
                signature_valid=None,
                amount_minor_units=verified.amount_minor_units,
                currency=verified.currency,
            ),
        )
        outcome = recorded.outcome

        if outcome == LedgerOutcome.FIRST_CONFIRMATION:
            return self._granted_or_pending(reference, self._try_grant(recorded.intent))
        if outcome == LedgerOutcome.ALREADY_CONFIRMED:
            return self._settled_result(recorded.intent)
        if outcome == LedgerOutcome.EXPIRED:
            return ConfirmationResult(ConfirmationStatus.EXPIRED, reference, MESSAGE_EXPIRED)
        if outcome == LedgerOutcome.REQUIRES_REVIEW:
            return ConfirmationResult(ConfirmationStatus.REVIEW, reference, MESSAGE_REVIEW)
        if outcome == LedgerOutcome.UNKNOWN_REFERENCE:
            raise UnknownReference(reference)
        if verified.status == "pending":
            return ConfirmationResult(ConfirmationStatus.PENDING, reference, MESSAGE_AWAITING, retryable=True)
        return ConfirmationResult(ConfirmationStatus.FAILED, reference, MESSAGE_NOT_COMPLETED, retryable=True)

    def _settled_result(self, intent: PaymentIntent) -> Optional[ConfirmationResult]:
        """Result for an intent that no longer needs the gateway, else None"""
        reference = intent.reference
        if intent.status == IntentStatus.CONFIRMED:
            grant = self._grantor.get_grant(reference)
            if grant is None and self._ledger.claim_grant_retry(reference):
                grant = self._try_grant(intent)
            return self._granted_or_pending(reference, grant)
        if intent.status == IntentStatus.EXPIRED:
            return ConfirmationResult(ConfirmationStatus.EXPIRED, reference, MESSAGE_EXPIRED)
        if intent.status == IntentStatus.FAILED:
            return ConfirmationResult(ConfirmationStatus.FAILED, reference, MESSAGE_NOT_COMPLETED, retryable=True)
        return None

    @staticmethod
    def _granted_or_pending(reference: str, grant: Optional[EntitlementGrant]) -> ConfirmationResult:
        if grant is None:
            return ConfirmationResult(ConfirmationStatus.CONFIRMED, reference, MESSAGE_ACCESS_PENDING)
        return ConfirmationResult(ConfirmationStatus.GRANTED, reference, MESSAGE_GRANTED, grant=grant)

    def _try_grant(self, intent: PaymentIntent) -> Optional[EntitlementGrant]:
        try:
            return self._grantor.grant(intent)
        except GrantPending:
            # Marker is persisted; the sweep or the next delivery retries.
            return None

    # Webhook path

    async def handle_webhook(
        self,
        raw_body: bytes,
        signature: Optional[str],
        source_ip: Optional[str] = None,
    ) -> WebhookResult:
        """
        Ingest a Paystack notification. The signature is checked over the raw
        bytes before anything is parsed or stored.
        """
        if not verify_webhook_signature(raw_body, signature, self._settings.webhook_secret_bytes):
            logger.warning(
                "Rejected webhook with invalid signature from %s at %s",
                source_ip or "unknown",
                datetime.utcnow().isoformat(),
            )
            raise InvalidSignature()

        try:
            payload = json.loads(raw_body)
        except ValueError as exc:
            raise MalformedNotification("Webhook body is not valid JSON") from exc
        if not isinstance(payload, dict):
            raise MalformedNotification("Webhook body is not a JSON object")

        event_type = str(payload.get("event") or "")
        data = payload.get("data")
        if not isinstance(data, dict):
            data = {}
        body_hash = payload_hash(raw_body)

        if event_type == CHARGE_SUCCESS:
            return self._handle_charge_success(data, body_hash)

        if event_type in AUXILIARY_EVENTS:
            reference = data.get("reference") or data.get("subscription_code")
            self._ledger.record_gateway_event(event_type, reference, body_hash)
            logger.info("Recorded %s webhook for %s", event_type, reference)
            if event_type == TRANSFER_SUCCESS and reference:
                amount = data.get("amount")
                self._grantor.settle_payout(
                    str(reference),
                    transfer_code=data.get("transfer_code"),
                    amount_minor_units=amount if isinstance(amount, int) and not isinstance(amount, bool) else None,
                )
            return WebhookResult(outcome="recorded", event=event_type, reference=reference)

        logger.info("Ignored %s webhook", event_type or "untyped")
        return WebhookResult(outcome="ignored", event=event_type or None)

    def _handle_charge_success(self, data: Dict[str, Any], body_hash: str) -> WebhookResult:
        reference = data.get("reference")
        if not reference:
            logger.warning("charge.success webhook without a reference")
            return WebhookResult(outcome=LedgerOutcome.UNKNOWN_REFERENCE.value, event=CHARGE_SUCCESS)

        reference = str(reference)
        amount = data.get("amount")
        recorded = self._ledger.record_event(
            reference,
            ConfirmationEventIn(
                source=EventSource.WEBHOOK,
                raw_payload_hash=body_hash,
                gateway_status=str(data.get("status") or "success").lower(),
                signature_valid=True,
                amount_minor_units=amount if isinstance(amount, int) and not isinstance(amount, bool) else None,
                currency=data.get("currency"),
            ),
        )

        if recorded.outcome == LedgerOutcome.FIRST_CONFIRMATION:
            self._try_grant(recorded.intent)
        elif recorded.outcome == LedgerOutcome.ALREADY_CONFIRMED:
            intent = recorded.intent
            if intent.grant_status != GrantStatus.GRANTED and self._ledger.claim_grant_retry(reference):
                self._try_grant(intent)

        return WebhookResult(outcome=recorded.outcome.value, event=CHARGE_SUCCESS, reference=reference)

    # Sweep and queries

    def reconcile(self) -> SweepReport:
        """Expire stale intents and retry grants left pending"""
        report = SweepReport(expired=self._ledger.expire_stale())
        for reference in self._ledger.grant_retry_candidates():
            if not self._ledger.claim_grant_retry(reference):
                continue
            intent = self._ledger.get_intent(reference)
            if self._try_grant(intent) is None:
                report.still_pending.append(reference)
            else:
                report.granted.append(reference)
        if report.expired or report.granted or report.still_pending:
            logger.info(
                "Reconciliation sweep: %d expired, %d granted, %d still pending",
                len(report.expired),
                len(report.granted),
                len(report.still_pending),
            )
        return report

    def payment_status(self, reference: str) -> PaymentHistory:
        history = self._ledger.history(reference)
        if history is None:
            raise UnknownReference(reference)
        return history

    async def list_banks(self) -> Union[List[Bank], GatewayError]:
        return await self._gateway.list_banks(self._settings.currency)
