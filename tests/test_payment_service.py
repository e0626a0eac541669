from __future__ import annotations

import asyncio
import json

import pytest

from coursepay.errors import InitiationFailed, InvalidSignature, MalformedNotification, UnknownReference
from coursepay.models import GatewayEvent, GrantStatus, IntentStatus, PayoutStatus, TeacherPayout
from coursepay.services.payment_service import ConfirmationStatus
from coursepay.services.paystack_service import GatewayError, GatewayErrorKind

from conftest import COURSE_METADATA, charge_success_body, sign


async def _start(orchestrator, amount: int = 500000):
    return await orchestrator.initiate("ada@example.com", amount, dict(COURSE_METADATA))


@pytest.mark.asyncio
async def test_initiate_opens_transaction_with_callback_and_platform(orchestrator, gateway, ledger):
    result = await _start(orchestrator)

    call = gateway.initialize_calls[0]
    assert call["reference"] == result.reference
    assert call["amount_minor_units"] == 500000
    assert call["currency"] == "NGN"
    assert call["callback_url"] == "https://courses.example.com/payment/verify"
    assert call["metadata"]["platform"] == "Course Platform"
    assert call["metadata"]["courseId"] == "course-42"
    assert result.authorization_url == f"https://checkout.paystack.com/{result.reference}"
    assert ledger.get_intent(result.reference).status == IntentStatus.PENDING_CONFIRMATION


@pytest.mark.asyncio
async def test_initiate_rejection_fails_intent_with_gateway_message(orchestrator, gateway, ledger):
    gateway.initialize_result = GatewayError(GatewayErrorKind.REJECTED, "Invalid Email Address Passed", 400)

    with pytest.raises(InitiationFailed) as exc_info:
        await _start(orchestrator)

    error = exc_info.value
    assert error.message == "Invalid Email Address Passed"
    assert error.retryable is False
    assert ledger.get_intent(error.reference).status == IntentStatus.FAILED


@pytest.mark.asyncio
async def test_initiate_unreachable_gateway_is_retryable(orchestrator, gateway):
    gateway.initialize_result = GatewayError(GatewayErrorKind.UNREACHABLE, "Payment gateway timed out")

    with pytest.raises(InitiationFailed) as exc_info:
        await _start(orchestrator)

    assert exc_info.value.retryable is True
    assert exc_info.value.message == "Payment could not be started."


@pytest.mark.asyncio
async def test_redirect_confirmation_grants_access(orchestrator, gateway, access_control):
    started = await _start(orchestrator)
    gateway.succeed(started.reference, 500000)

    result = await orchestrator.confirm_by_redirect(started.reference)

    assert result.status == ConfirmationStatus.GRANTED
    assert result.grant.course_id == "course-42"
    assert len(access_control.unlocked) == 1


@pytest.mark.asyncio
async def test_repeated_redirect_does_not_call_gateway_again(orchestrator, gateway, access_control):
    started = await _start(orchestrator)
    gateway.succeed(started.reference, 500000)
    await orchestrator.confirm_by_redirect(started.reference)

    again = await orchestrator.confirm_by_redirect(started.reference)

    assert again.status == ConfirmationStatus.GRANTED
    assert gateway.verify_calls == [started.reference]
    assert len(access_control.unlocked) == 1


@pytest.mark.asyncio
async def test_redirect_while_payment_still_pending(orchestrator):
    started = await _start(orchestrator)

    result = await orchestrator.confirm_by_redirect(started.reference)

    assert result.status == ConfirmationStatus.PENDING
    assert result.retryable is True


@pytest.mark.asyncio
async def test_redirect_when_gateway_is_down(orchestrator, gateway, ledger):
    started = await _start(orchestrator)
    gateway.verify_results[started.reference] = GatewayError(GatewayErrorKind.UNREACHABLE, "down")

    result = await orchestrator.confirm_by_redirect(started.reference)

    assert result.status == ConfirmationStatus.PENDING
    assert result.retryable is True
    assert ledger.get_intent(started.reference).status == IntentStatus.PENDING_CONFIRMATION


@pytest.mark.asyncio
async def test_redirect_for_unknown_reference(orchestrator):
    with pytest.raises(UnknownReference):
        await orchestrator.confirm_by_redirect("crs_nope")


@pytest.mark.asyncio
async def test_redirect_after_ttl_expires_without_gateway_call(orchestrator, gateway, clock, ledger):
    started = await _start(orchestrator)
    clock.advance(hours=25)

    result = await orchestrator.confirm_by_redirect(started.reference)

    assert result.status == ConfirmationStatus.EXPIRED
    assert gateway.verify_calls == []
    assert ledger.get_intent(started.reference).status == IntentStatus.EXPIRED


@pytest.mark.asyncio
async def test_webhook_confirms_and_grants(orchestrator, access_control):
    started = await _start(orchestrator)
    body = charge_success_body(started.reference, 500000)

    result = await orchestrator.handle_webhook(body, sign(body), "52.31.139.75")

    assert result.outcome == "first_confirmation"
    assert result.reference == started.reference
    assert len(access_control.unlocked) == 1


@pytest.mark.asyncio
async def test_duplicate_webhook_is_acknowledged_without_second_grant(orchestrator, access_control):
    started = await _start(orchestrator)
    body = charge_success_body(started.reference, 500000)
    await orchestrator.handle_webhook(body, sign(body))

    again = await orchestrator.handle_webhook(body, sign(body))

    assert again.outcome == "already_confirmed"
    assert len(access_control.unlocked) == 1


@pytest.mark.asyncio
async def test_redirect_and_webhook_racing_grant_once(orchestrator, gateway, access_control, ledger):
    started = await _start(orchestrator)
    gateway.succeed(started.reference, 500000)
    body = charge_success_body(started.reference, 500000)

    redirect, webhook = await asyncio.gather(
        orchestrator.confirm_by_redirect(started.reference),
        orchestrator.handle_webhook(body, sign(body)),
    )

    assert redirect.status in (ConfirmationStatus.GRANTED, ConfirmationStatus.CONFIRMED)
    assert webhook.outcome in ("first_confirmation", "already_confirmed")
    assert len(access_control.unlocked) == 1
    history = ledger.history(started.reference)
    assert sorted(e.outcome for e in history.events) == ["already_confirmed", "first_confirmation"]


@pytest.mark.asyncio
async def test_webhook_with_bad_signature_changes_nothing(orchestrator, ledger):
    started = await _start(orchestrator)
    body = charge_success_body(started.reference, 500000)

    with pytest.raises(InvalidSignature):
        await orchestrator.handle_webhook(body, sign(body, "wrong-secret"), "10.0.0.1")

    assert ledger.get_intent(started.reference).status == IntentStatus.PENDING_CONFIRMATION
    assert ledger.history(started.reference).events == []


@pytest.mark.asyncio
async def test_signed_but_malformed_webhook(orchestrator):
    body = b"{not json"

    with pytest.raises(MalformedNotification):
        await orchestrator.handle_webhook(body, sign(body))


@pytest.mark.asyncio
async def test_webhook_with_mismatched_amount_needs_review(orchestrator, access_control):
    started = await _start(orchestrator)
    body = charge_success_body(started.reference, 100)

    result = await orchestrator.handle_webhook(body, sign(body))

    assert result.outcome == "requires_review"
    assert access_control.unlocked == []


@pytest.mark.asyncio
async def test_auxiliary_events_are_recorded(orchestrator, session_factory):
    body = json.dumps({"event": "transfer.success", "data": {"reference": "trf_1", "amount": 700000}}).encode()

    result = await orchestrator.handle_webhook(body, sign(body))

    assert result.outcome == "recorded"
    with session_factory() as db:
        stored = db.query(GatewayEvent).one()
    assert stored.event_type == "transfer.success"
    assert stored.reference == "trf_1"


@pytest.mark.asyncio
async def test_other_events_are_ignored(orchestrator):
    body = json.dumps({"event": "invoice.create", "data": {}}).encode()

    result = await orchestrator.handle_webhook(body, sign(body))

    assert result.outcome == "ignored"


@pytest.mark.asyncio
async def test_failed_grant_is_retried_by_sweep(orchestrator, access_control, ledger, clock):
    started = await _start(orchestrator)
    access_control.failures_left = 1
    body = charge_success_body(started.reference, 500000)

    result = await orchestrator.handle_webhook(body, sign(body))

    assert result.outcome == "first_confirmation"
    assert ledger.get_intent(started.reference).grant_status == GrantStatus.FAILED

    report = orchestrator.reconcile()

    assert report.granted == [started.reference]
    assert ledger.get_intent(started.reference).grant_status == GrantStatus.GRANTED
    assert len(access_control.unlocked) == 1


@pytest.mark.asyncio
async def test_redirect_retries_grant_left_pending(orchestrator, gateway, access_control):
    started = await _start(orchestrator)
    access_control.failures_left = 1
    gateway.succeed(started.reference, 500000)

    first = await orchestrator.confirm_by_redirect(started.reference)
    second = await orchestrator.confirm_by_redirect(started.reference)

    assert first.status == ConfirmationStatus.CONFIRMED
    assert first.message == "Payment received. Your access will be activated shortly."
    assert second.status == ConfirmationStatus.GRANTED
    assert len(access_control.unlocked) == 1


@pytest.mark.asyncio
async def test_sweep_expires_abandoned_intents(orchestrator, clock):
    started = await _start(orchestrator)
    clock.advance(hours=24)

    report = orchestrator.reconcile()

    assert report.expired == [started.reference]
    assert report.granted == []


@pytest.mark.asyncio
async def test_payment_status_for_unknown_reference(orchestrator):
    with pytest.raises(UnknownReference):
        orchestrator.payment_status("crs_nope")


@pytest.mark.asyncio
async def test_minimal_charge_success_body_round_trip(orchestrator, grantor, access_control):
    started = await orchestrator.initiate("a@b.com", 500000, {"courseId": "c1", "studentId": "s1"})
    body = json.dumps({"event": "charge.success", "data": {"reference": started.reference, "amount": 500000}}).encode()

    first = await orchestrator.handle_webhook(body, sign(body))
    second = await orchestrator.handle_webhook(body, sign(body))

    assert first.outcome == "first_confirmation"
    assert second.outcome == "already_confirmed"
    grant = grantor.get_grant(started.reference)
    assert (grant.student_id, grant.course_id, grant.amount_minor_units) == ("s1", "c1", 500000)
    assert len(access_control.unlocked) == 1


@pytest.mark.asyncio
async def test_grant_write_failure_still_reports_payment_received(orchestrator, gateway, ledger, session_factory):
    started = await _start(orchestrator)
    gateway.succeed(started.reference, 500000)
    with session_factory() as db:
        TeacherPayout.__table__.drop(bind=db.get_bind())

    result = await orchestrator.confirm_by_redirect(started.reference)

    assert result.status == ConfirmationStatus.CONFIRMED
    assert result.message == "Payment received. Your access will be activated shortly."
    stored = ledger.get_intent(started.reference)
    assert stored.status == IntentStatus.CONFIRMED
    assert stored.grant_status == GrantStatus.FAILED

    with session_factory() as db:
        TeacherPayout.__table__.create(bind=db.get_bind())
    report = orchestrator.reconcile()

    assert report.granted == [started.reference]


@pytest.mark.asyncio
async def test_grant_write_failure_on_webhook_is_acknowledged(orchestrator, ledger, session_factory):
    started = await _start(orchestrator)
    body = charge_success_body(started.reference, 500000)
    with session_factory() as db:
        TeacherPayout.__table__.drop(bind=db.get_bind())

    result = await orchestrator.handle_webhook(body, sign(body))

    assert result.outcome == "first_confirmation"
    assert ledger.get_intent(started.reference).grant_status == GrantStatus.FAILED


@pytest.mark.asyncio
async def test_transfer_success_settles_teacher_payout(orchestrator, grantor):
    started = await _start(orchestrator)
    charge = charge_success_body(started.reference, 500000)
    await orchestrator.handle_webhook(charge, sign(charge))
    transfer = json.dumps(
        {
            "event": "transfer.success",
            "data": {"reference": started.reference, "amount": 350000, "transfer_code": "TRF_1ptvuv321ahaa7q"},
        }
    ).encode()

    result = await orchestrator.handle_webhook(transfer, sign(transfer))

    assert result.outcome == "recorded"
    payout = grantor.get_payout(started.reference)
    assert payout.status == PayoutStatus.SETTLED
    assert payout.transfer_code == "TRF_1ptvuv321ahaa7q"
