"""Payment-service webhook route - internal endpoint for payment state changes.

Security rules:
- Check sender headers and HMAC signature before touching the database.
- Signature is computed over the raw request bytes.
- Never log payload, signature or secret.
- Audit row and state transition commit together or not at all.
"""

import time

from fastapi import APIRouter, Depends, Request, Response
from starlette.concurrency import run_in_threadpool

from eventcore.api.dependencies import get_pool
from eventcore.api.handlers import route_handler
from eventcore.api.responses import error_response, json_response, success_response
from eventcore.domain.payment_webhooks import WebhookDelivery, reconcile_webhook
from eventcore.infra.db import ConnectionPool, DatabaseUnavailableError
from eventcore.infra.settings import is_development
from eventcore.infra.time import iso_timestamp
from eventcore.observability.correlation import get_correlation_id
from eventcore.observability.logging import get_logger
from eventcore.observability.redaction import id_prefix, safe_log_context
from eventcore.webhooks.envelope import (
    InvalidSignatureError,
    WebhookEnvelopeError,
    parse_body,
    parse_headers,
    parse_payload,
)
from eventcore.webhooks.signature import WebhookSecretNotConfiguredError, verify_signature

router = APIRouter(tags=["webhooks"])

logger = get_logger(__name__)

INTERNAL_ERROR = "INTERNAL_ERROR"


def _elapsed_ms(start: float) -> int:
    return int((time.perf_counter() - start) * 1000)


@router.post("/payment-webhook")
@route_handler()
async def receive_payment_webhook(
    request: Request,
    pool: ConnectionPool | None = Depends(get_pool),
) -> Response:
    """Receive a payment lifecycle event from the payment service.

    Returns:
        200 with webhookId once the audit row and transition are committed.
        400 if the body is malformed or required fields are missing.
        401 if sender headers or the signature are wrong.
        500 if persistence fails (nothing is committed).
        504 if the route deadline passes first.
    """
    start = time.perf_counter()
    correlation_id = get_correlation_id()
    raw_body = await request.body()

    try:
        body = parse_body(raw_body)
        headers = parse_headers(request.headers)
        payload = parse_payload(body)
        if not verify_signature(raw_body, headers.signature):
            raise InvalidSignatureError("Invalid signature")
    except WebhookEnvelopeError as e:
        logger.warning(
            "payment webhook rejected",
            extra={
                "extra_fields": safe_log_context(
                    correlationId=correlation_id,
                    reason=type(e).__name__,
                    status_code=e.status_code,
                )
            },
        )
        return json_response(error_response(e.message, e.errors, e.code), e.status_code)
    except WebhookSecretNotConfiguredError:
        logger.error(
            "payment webhook secret not configured",
            extra={"extra_fields": safe_log_context(correlationId=correlation_id)},
        )
        return json_response(
            error_response("Webhook processing unavailable", code=INTERNAL_ERROR), 500
        )

    logger.info(
        "payment webhook received",
        extra={
            "extra_fields": safe_log_context(
                correlationId=correlation_id,
                event_type=payload.event_type,
                payment_intent_prefix=id_prefix(payload.payment_intent_id),
            )
        },
    )

    delivery = WebhookDelivery(headers=headers, payload=payload, body=body)
    try:
        if pool is None:
            raise DatabaseUnavailableError("database pool not initialised")
        processed = await run_in_threadpool(reconcile_webhook, pool, delivery)
    except Exception as e:
        # Transaction rolled back - nothing persisted
        logger.exception(
            "payment webhook processing failed",
            extra={
                "extra_fields": safe_log_context(
                    correlationId=correlation_id,
                    event_type=payload.event_type,
                    processing_time_ms=_elapsed_ms(start),
                )
            },
        )
        error_body = error_response("Webhook processing failed", code=INTERNAL_ERROR)
        if is_development():
            error_body["details"] = str(e)
        error_body["processingTimeMs"] = _elapsed_ms(start)
        return json_response(error_body, 500)

    processing_ms = _elapsed_ms(start)
    logger.info(
        "payment webhook processed",
        extra={
            "extra_fields": safe_log_context(
                correlationId=correlation_id,
                event_type=payload.event_type,
                webhook_id=processed.webhook_id,
                handled=processed.result.handled,
                payment_updated=processed.result.payment_updated,
                processing_time_ms=processing_ms,
            )
        },
    )

    response = success_response(
        "Webhook processed",
        {
            "eventType": payload.event_type,
            "paymentIntentId": payload.payment_intent_id,
            "status": payload.status,
            "processingTimeMs": processing_ms,
            "result": processed.result.as_dict(),
        },
    )
    response["webhookId"] = processed.webhook_id
    response["processedAt"] = iso_timestamp(processed.processed_at)
    return json_response(response, 200)
