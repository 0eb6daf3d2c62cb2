"""Payment webhook reconciliation.

One accepted delivery = one transaction:
1. insert the audit row into payment_webhooks (RETURNING id);
2. run the handler registered for the event type;
3. commit.

Any exception rolls back both steps, so a payment never changes state
without its audit row, and a failed delivery leaves no trace.

Idempotency comes from the data, not from request_id dedup:
- payments only move out of ``pending`` (``WHERE status = 'pending'``);
- template entitlements are upserted on (user_id, template_id).
The payment service delivers at least once and may replay freely.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Mapping

from psycopg2.extensions import cursor as PgCursor

from eventcore.infra.db import ConnectionPool
from eventcore.infra.repositories import entitlements_repository, payments_repository
from eventcore.infra.repositories.payment_webhooks_repository import (
    WebhookAuditRecord,
    insert_webhook,
)
from eventcore.infra.time import utc_now
from eventcore.observability.logging import get_logger
from eventcore.observability.redaction import id_prefix, safe_log_context
from eventcore.webhooks.envelope import (
    PaymentWebhookData,
    PaymentWebhookPayload,
    WebhookHeaders,
)

logger = get_logger(__name__)

PAYMENT_COMPLETED = "payment.completed"
PAYMENT_FAILED = "payment.failed"
PAYMENT_CANCELED = "payment.canceled"

TICKET_STATUS_PAID = "paid"
TICKET_STATUS_PAYMENT_FAILED = "payment_failed"
TICKET_STATUS_CANCELED = "canceled"


@dataclass(frozen=True)
class WebhookDelivery:
    """A delivery that passed envelope and signature checks."""

    headers: WebhookHeaders
    payload: PaymentWebhookPayload
    body: Mapping[str, Any]

    def audit_record(self) -> WebhookAuditRecord:
        timestamp = self.payload.timestamp
        return WebhookAuditRecord(
            event_type=self.payload.event_type,
            payment_intent_id=self.payload.payment_intent_id,
            status=self.payload.status,
            timestamp=timestamp.isoformat() if timestamp else None,
            service_name=self.headers.service_name,
            request_id=self.headers.request_id,
            webhook_timestamp=self.headers.timestamp,
            signature=self.headers.signature,
            raw_data=dict(self.body),
        )


@dataclass
class ReconciliationResult:
    """What a handler changed."""

    event_type: str
    handled: bool = False
    payment_updated: bool = False
    entitlement_granted: bool = False
    tickets_updated: int = 0

    def as_dict(self) -> dict[str, Any]:
        return {
            "eventType": self.event_type,
            "handled": self.handled,
            "paymentUpdated": self.payment_updated,
            "entitlementGranted": self.entitlement_granted,
            "ticketsUpdated": self.tickets_updated,
        }


@dataclass(frozen=True)
class ProcessedWebhook:
    webhook_id: int
    processed_at: datetime
    result: ReconciliationResult


EventHandler = Callable[[PgCursor, int, PaymentWebhookPayload], ReconciliationResult]


def _log_context(payload: PaymentWebhookPayload, **extra: Any) -> dict[str, Any]:
    return {
        "extra_fields": safe_log_context(
            event_type=payload.event_type,
            payment_intent_prefix=id_prefix(payload.payment_intent_id),
            **extra,
        )
    }


def _update_tickets(
    cur: PgCursor,
    data: PaymentWebhookData,
    status: str,
    result: ReconciliationResult,
) -> None:
    if data.event_id is not None and data.ticket_ids:
        result.tickets_updated = entitlements_repository.set_tickets_status(
            cur, ticket_ids=data.ticket_ids, status=status
        )


def _resolve_purchaser(cur: PgCursor, data: PaymentWebhookData) -> int | None:
    """User to entitle: explicit user_id, else the payment's owner."""
    if data.user_id is not None:
        return data.user_id
    if not data.payment_service_id:
        return None
    payment = payments_repository.get_payment(cur, data.payment_service_id)
    if payment is None or payment["user_id"] is None:
        return None
    return int(payment["user_id"])


def handle_payment_completed(
    cur: PgCursor,
    webhook_id: int,
    payload: PaymentWebhookPayload,
) -> ReconciliationResult:
    """pending -> completed, then grant the template and mark tickets paid."""
    result = ReconciliationResult(event_type=payload.event_type, handled=True)
    data = payload.data

    if data is None or (data.template_id is None and data.event_id is None):
        logger.info(
            "completed payment carries no template or event, nothing to reconcile",
            extra=_log_context(payload),
        )
        return result

    if data.payment_service_id:
        result.payment_updated = payments_repository.mark_completed(
            cur,
            payment_service_id=data.payment_service_id,
            webhook_id=webhook_id,
        )
    else:
        logger.warning(
            "completed payment without payment_service_id",
            extra=_log_context(payload),
        )

    if data.template_id is not None:
        user_id = _resolve_purchaser(cur, data)
        if user_id is None:
            logger.warning(
                "cannot resolve purchaser for template entitlement, skipping grant",
                extra=_log_context(payload, template_id=data.template_id),
            )
        else:
            entitlements_repository.grant_template(
                cur,
                user_id=user_id,
                template_id=data.template_id,
                webhook_id=webhook_id,
            )
            result.entitlement_granted = True

    _update_tickets(cur, data, TICKET_STATUS_PAID, result)
    return result


def handle_payment_failed(
    cur: PgCursor,
    webhook_id: int,
    payload: PaymentWebhookPayload,
) -> ReconciliationResult:
    """pending -> failed, recording the gateway error message."""
    result = ReconciliationResult(event_type=payload.event_type, handled=True)
    data = payload.data or PaymentWebhookData()

    if data.payment_service_id:
        result.payment_updated = payments_repository.mark_failed(
            cur,
            payment_service_id=data.payment_service_id,
            webhook_id=webhook_id,
            error_message=data.error_message,
        )
    else:
        logger.warning("failed payment without payment_service_id", extra=_log_context(payload))

    _update_tickets(cur, data, TICKET_STATUS_PAYMENT_FAILED, result)
    return result


def handle_payment_canceled(
    cur: PgCursor,
    webhook_id: int,
    payload: PaymentWebhookPayload,
) -> ReconciliationResult:
    """pending -> canceled."""
    result = ReconciliationResult(event_type=payload.event_type, handled=True)
    data = payload.data or PaymentWebhookData()

    if data.payment_service_id:
        result.payment_updated = payments_repository.mark_canceled(
            cur,
            payment_service_id=data.payment_service_id,
            webhook_id=webhook_id,
        )
    else:
        logger.warning("canceled payment without payment_service_id", extra=_log_context(payload))

    _update_tickets(cur, data, TICKET_STATUS_CANCELED, result)
    return result


EVENT_HANDLERS: dict[str, EventHandler] = {
    PAYMENT_COMPLETED: handle_payment_completed,
    PAYMENT_FAILED: handle_payment_failed,
    PAYMENT_CANCELED: handle_payment_canceled,
}


def apply_event(
    cur: PgCursor,
    webhook_id: int,
    payload: PaymentWebhookPayload,
) -> ReconciliationResult:
    """Dispatch to the handler for payload.event_type.

    Unknown event types are logged and left unhandled; the caller still
    commits the audit row.
    """
    handler = EVENT_HANDLERS.get(payload.event_type)
    if handler is None:
        logger.warning("unhandled payment webhook event type", extra=_log_context(payload))
        return ReconciliationResult(event_type=payload.event_type)
    return handler(cur, webhook_id, payload)


def reconcile_webhook(pool: ConnectionPool, delivery: WebhookDelivery) -> ProcessedWebhook:
    """Persist the audit row and apply the event in a single transaction.

    Blocking: call from a worker thread, not the event loop.

    Raises:
        PoolTimeoutError: No connection available.
        psycopg2.Error: Any SQL failure (transaction rolled back).
    """
    processed_at = utc_now()
    with pool.transaction() as cur:
        webhook_id = insert_webhook(
            cur, delivery.audit_record(), processed_at=processed_at
        )
        result = apply_event(cur, webhook_id, delivery.payload)

    return ProcessedWebhook(webhook_id=webhook_id, processed_at=processed_at, result=result)
