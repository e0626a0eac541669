"""
Pydantic schemas for request/response validation
"""

from pydantic import BaseModel, EmailStr, Field, field_validator
from pydantic.alias_generators import to_camel
from typing import Any, Dict, List, Optional
from datetime import datetime


class CamelModel(BaseModel):
    """Serializes with camelCase keys for the checkout UI"""

    class Config:
        alias_generator = to_camel
        populate_by_name = True
        from_attributes = True


# Payment Schemas
class InitiatePaymentRequest(BaseModel):
    email: EmailStr
    amount: int = Field(..., gt=0)  # Amount in kobo
    metadata: Dict[str, Any] = Field(default_factory=dict)

    @field_validator("amount", mode="before")
    @classmethod
    def reject_fractional_amounts(cls, value):
        # Minor units only, never rounded
        if isinstance(value, bool) or not isinstance(value, int):
            raise ValueError("amount must be an integer number of minor units")
        return value

    @field_validator("metadata")
    @classmethod
    def require_course_and_student(cls, value: Dict[str, Any]) -> Dict[str, Any]:
        missing = [
            key
            for key, alias in (("courseId", "course_id"), ("studentId", "student_id"))
            if not value.get(key) and not value.get(alias)
        ]
        if missing:
            raise ValueError(f"metadata must include {', '.join(missing)}")
        return value


class InitiatePaymentResponse(CamelModel):
    authorization_url: str
    reference: str
    access_code: str


class EntitlementGrantResponse(CamelModel):
    reference: str
    student_id: str
    course_id: str
    lesson_id: Optional[str] = None
    amount_minor_units: int
    teacher_id: Optional[str] = None
    teacher_payout_minor_units: Optional[int] = None
    granted_at: datetime


class ConfirmPaymentResponse(CamelModel):
    status: str
    reference: str
    message: str
    retryable: bool = False
    grant: Optional[EntitlementGrantResponse] = None


class PaymentTransitionResponse(CamelModel):
    from_status: Optional[str] = None
    to_status: str
    cause: str
    created_at: datetime


class ConfirmationEventResponse(CamelModel):
    source: str
    gateway_status: str
    signature_valid: Optional[bool] = None
    amount_minor_units: Optional[int] = None
    outcome: str
    received_at: datetime


class PaymentStatusResponse(CamelModel):
    reference: str
    status: str
    amount_minor_units: int
    currency: str
    grant_status: Optional[str] = None
    created_at: datetime
    last_transition_at: datetime
    expires_at: datetime
    transitions: List[PaymentTransitionResponse] = Field(default_factory=list)
    events: List[ConfirmationEventResponse] = Field(default_factory=list)


class BankResponse(CamelModel):
    name: str
    code: str
    slug: Optional[str] = None
    pay_with_bank: bool = False


# Webhook Schemas
class WebhookResponse(BaseModel):
    status: bool
    outcome: str
