"""Payment webhook envelope - headers, body shape and required fields.

Everything here runs before a database connection is acquired, so a
rejected delivery never touches the pool.
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Any, Literal, Mapping

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from .signature import SIGNATURE_HEADER

SERVICE_NAME_HEADER = "X-Service-Name"
REQUEST_ID_HEADER = "X-Request-ID"
TIMESTAMP_HEADER = "X-Timestamp"

REQUIRED_HEADERS = (
    SIGNATURE_HEADER,
    SERVICE_NAME_HEADER,
    REQUEST_ID_HEADER,
    TIMESTAMP_HEADER,
)
REQUIRED_FIELDS = ("eventType", "paymentIntentId", "status")

PAYMENT_SERVICE_NAME = "payment-service"

INVALID_SIGNATURE = "INVALID_SIGNATURE"
MISSING_REQUIRED_FIELDS = "MISSING_REQUIRED_FIELDS"
VALIDATION_ERROR = "VALIDATION_ERROR"


class WebhookEnvelopeError(Exception):
    """Base for deliveries rejected before processing."""

    status_code: int = 400
    code: str | None = None

    def __init__(self, message: str, *, errors: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.errors = errors


class InvalidRequestFormatError(WebhookEnvelopeError):
    """Body missing, not JSON, or not a JSON object."""


class MissingHeadersError(WebhookEnvelopeError):
    status_code = 401
    code = INVALID_SIGNATURE


class ServiceNameMismatchError(WebhookEnvelopeError):
    status_code = 401
    code = INVALID_SIGNATURE


class InvalidSignatureError(WebhookEnvelopeError):
    status_code = 401
    code = INVALID_SIGNATURE


class MissingRequiredFieldsError(WebhookEnvelopeError):
    code = MISSING_REQUIRED_FIELDS


class InvalidFieldsError(WebhookEnvelopeError):
    code = VALIDATION_ERROR


@dataclass(frozen=True)
class WebhookHeaders:
    """The four headers every payment-service delivery carries."""

    signature: str
    service_name: str
    request_id: str
    timestamp: str


class PaymentWebhookData(BaseModel):
    """Payment details attached to a delivery. Unknown keys are kept."""

    model_config = ConfigDict(extra="allow")

    source: str | None = None
    payment_service_id: str | None = None
    gateway: Literal["stripe", "paypal", "cinetpay"] | None = None
    amount: Decimal | None = None
    currency: str | None = None
    completed_at: datetime | None = None
    error_message: str | None = None
    template_id: int | None = None
    event_id: int | None = None
    ticket_ids: list[int] | None = None
    user_id: int | None = None


class PaymentWebhookPayload(BaseModel):
    """Body posted by the payment service."""

    model_config = ConfigDict(extra="allow", populate_by_name=True)

    event_type: str = Field(alias="eventType", min_length=1)
    payment_intent_id: str = Field(alias="paymentIntentId", min_length=1)
    status: str = Field(min_length=1)
    timestamp: datetime | None = None
    data: PaymentWebhookData | None = None


def parse_headers(headers: Mapping[str, str]) -> WebhookHeaders:
    """Extract and check the delivery headers.

    Raises:
        MissingHeadersError: A required header is absent or empty.
        ServiceNameMismatchError: X-Service-Name is not payment-service.
    """
    missing = [name for name in REQUIRED_HEADERS if not headers.get(name)]
    if missing:
        raise MissingHeadersError(
            "Missing webhook headers", errors={"headers": missing}
        )

    service_name = headers[SERVICE_NAME_HEADER]
    if service_name != PAYMENT_SERVICE_NAME:
        raise ServiceNameMismatchError("Unknown webhook sender")

    return WebhookHeaders(
        signature=headers[SIGNATURE_HEADER],
        service_name=service_name,
        request_id=headers[REQUEST_ID_HEADER],
        timestamp=headers[TIMESTAMP_HEADER],
    )


def _reject_constant(name: str) -> Any:
    # NaN and Infinity are not JSON and cannot be stored as jsonb
    raise ValueError(f"non-standard JSON constant {name}")


def parse_body(raw: bytes) -> dict[str, Any]:
    """Decode the raw body into a JSON object.

    Raises:
        InvalidRequestFormatError: Empty body, invalid JSON (including NaN or
            Infinity) or not an object.
    """
    if not raw or not raw.strip():
        raise InvalidRequestFormatError("Invalid request format")
    try:
        body = json.loads(raw, parse_constant=_reject_constant)
    except ValueError as e:
        raise InvalidRequestFormatError("Invalid request format") from e
    if not isinstance(body, dict):
        raise InvalidRequestFormatError("Invalid request format")
    return body


def parse_payload(body: Mapping[str, Any]) -> PaymentWebhookPayload:
    """Validate required fields and field types.

    Raises:
        MissingRequiredFieldsError: eventType, paymentIntentId or status absent/empty.
        InvalidFieldsError: A field is present but of the wrong type.
    """
    missing = [name for name in REQUIRED_FIELDS if not body.get(name)]
    if missing:
        raise MissingRequiredFieldsError(
            "eventType, paymentIntentId and status are required",
            errors={"fields": missing},
        )

    try:
        return PaymentWebhookPayload.model_validate(body)
    except ValidationError as e:
        errors = {
            ".".join(str(part) for part in error["loc"]): error["msg"]
            for error in e.errors()
        }
        raise InvalidFieldsError("Invalid webhook payload", errors=errors) from e
