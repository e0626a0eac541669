"""
Payment routes for initiation, confirmation and the Paystack webhook
"""

from fastapi import APIRouter, HTTPException, status, Depends, Request
from typing import List
from coursepay.errors import InitiationFailed, InvalidSignature, MalformedNotification, UnknownReference
from coursepay.schemas import (
    BankResponse,
    ConfirmationEventResponse,
    ConfirmPaymentResponse,
    EntitlementGrantResponse,
    InitiatePaymentRequest,
    InitiatePaymentResponse,
    PaymentStatusResponse,
    PaymentTransitionResponse,
    WebhookResponse,
)
from coursepay.services.payment_service import ConfirmationOrchestrator
from coursepay.services.paystack_service import SIGNATURE_HEADER, GatewayError

router = APIRouter(prefix="/payments", tags=["Payments"])


def get_orchestrator(request: Request) -> ConfirmationOrchestrator:
    return request.app.state.orchestrator


def get_min_amount(request: Request) -> int:
    return request.app.state.settings.min_payment_amount


@router.post(
    "/initiate",
    response_model=InitiatePaymentResponse,
    status_code=201,
    summary="Start Payment",
    description="Create a payment intent and open a Paystack transaction. Amount is in minor units (kobo).",
)
async def initiate_payment(
    request: InitiatePaymentRequest,
    orchestrator: ConfirmationOrchestrator = Depends(get_orchestrator),
    min_amount: int = Depends(get_min_amount),
):
    """
    Start a payment
    Returns the hosted checkout URL and the access code for the inline widget
    """
    if request.amount < min_amount:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"Minimum payment amount is {min_amount} minor units"
        )

    try:
        result = await orchestrator.initiate(request.email, request.amount, request.metadata)
    except InitiationFailed as e:
        raise HTTPException(
            status_code=(
                status.HTTP_503_SERVICE_UNAVAILABLE if e.retryable else status.HTTP_502_BAD_GATEWAY
            ),
            detail=e.message,
        )

    return InitiatePaymentResponse(
        authorization_url=result.authorization_url,
        reference=result.reference,
        access_code=result.access_code,
    )


@router.get("/confirm/{reference}", response_model=ConfirmPaymentResponse, response_model_exclude_none=True)
async def confirm_payment(
    reference: str,
    orchestrator: ConfirmationOrchestrator = Depends(get_orchestrator),
):
    """
    Confirm a payment after the payer is redirected back from checkout
    Safe to call repeatedly; access is granted at most once
    """
    try:
        result = await orchestrator.confirm_by_redirect(reference)
    except UnknownReference:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Payment not found"
        )

    return ConfirmPaymentResponse(
        status=result.status,
        reference=result.reference,
        message=result.message,
        retryable=result.retryable,
        grant=EntitlementGrantResponse.model_validate(result.grant) if result.grant else None,
    )


@router.post("/webhook", response_model=WebhookResponse)
async def paystack_webhook(
    request: Request,
    orchestrator: ConfirmationOrchestrator = Depends(get_orchestrator),
):
    """
    Paystack webhook endpoint
    The signature is verified over the raw body before anything else happens
    """
    payload = await request.body()
    signature = request.headers.get(SIGNATURE_HEADER, "")
    source_ip = request.client.host if request.client else None

    try:
        result = await orchestrator.handle_webhook(payload, signature, source_ip)
    except InvalidSignature:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid webhook"
        )
    except MalformedNotification:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Invalid JSON payload"
        )

    return WebhookResponse(status=True, outcome=result.outcome)


@router.get("/banks", response_model=List[BankResponse])
async def list_banks(orchestrator: ConfirmationOrchestrator = Depends(get_orchestrator)):
    """Banks available for bank transfer and USSD payments"""
    banks = await orchestrator.list_banks()
    if isinstance(banks, GatewayError):
        raise HTTPException(
            status_code=(
                status.HTTP_503_SERVICE_UNAVAILABLE if banks.retryable else status.HTTP_502_BAD_GATEWAY
            ),
            detail="Failed to fetch banks"
        )
    return [
        BankResponse(name=bank.name, code=bank.code, slug=bank.slug, pay_with_bank=bank.pay_with_bank)
        for bank in banks
    ]


@router.get("/{reference}", response_model=PaymentStatusResponse)
async def get_payment_status(
    reference: str,
    orchestrator: ConfirmationOrchestrator = Depends(get_orchestrator),
):
    """
    Payment status with its full audit trail
    Reads the ledger only; never calls Paystack or grants access
    """
    try:
        history = orchestrator.payment_status(reference)
    except UnknownReference:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Payment not found"
        )

    intent = history.intent
    return PaymentStatusResponse(
        reference=intent.reference,
        status=intent.status.value,
        amount_minor_units=intent.amount_minor_units,
        currency=intent.currency,
        grant_status=intent.grant_status.value if intent.grant_status else None,
        created_at=intent.created_at,
        last_transition_at=intent.last_transition_at,
        expires_at=intent.expires_at,
        transitions=[
            PaymentTransitionResponse(
                from_status=t.from_status,
                to_status=t.to_status,
                cause=t.cause,
                created_at=t.created_at,
            )
            for t in history.transitions
        ],
        events=[
            ConfirmationEventResponse(
                source=e.source.value,
                gateway_status=e.gateway_status,
                signature_valid=e.signature_valid,
                amount_minor_units=e.amount_minor_units,
                outcome=e.outcome,
                received_at=e.received_at,
            )
            for e in history.events
        ],
    )
