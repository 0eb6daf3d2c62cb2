"""End-to-end payment webhook tests against a live PostgreSQL.

Skipped unless DATABASE_URL is set. Every row created here is keyed by a
per-test prefix and removed afterwards.
"""

import threading
import uuid
from unittest.mock import patch

import pytest
from fastapi.testclient import TestClient

from eventcore.api.factory import create_app
from eventcore.domain.payment_webhooks import WebhookDelivery, reconcile_webhook
from eventcore.webhooks.envelope import WebhookHeaders, parse_payload
from helpers import make_payload, post_webhook


@pytest.fixture
def prefix():
    return f"t{uuid.uuid4().hex[:10]}"


@pytest.fixture
def client(db_pool, webhook_secret):
    return TestClient(create_app(pool=db_pool))


@pytest.fixture
def cleanup(db_pool, prefix):
    created = {"users": [], "templates": []}
    yield created
    with db_pool.transaction() as cur:
        cur.execute(
            "DELETE FROM user_template_purchases WHERE template_id = ANY(%s) OR user_id = ANY(%s)",
            (created["templates"], created["users"]),
        )
        cur.execute("DELETE FROM payments WHERE payment_service_id LIKE %s", (f"{prefix}%",))
        cur.execute(
            "DELETE FROM user_template_purchases WHERE webhook_id IN "
            "(SELECT id FROM payment_webhooks WHERE request_id LIKE %s)",
            (f"{prefix}%",),
        )
        cur.execute("DELETE FROM payment_webhooks WHERE request_id LIKE %s", (f"{prefix}%",))


def _seed_payment(db_pool, payment_service_id, *, user_id=None, template_id=None):
    with db_pool.transaction() as cur:
        cur.execute(
            """
            INSERT INTO payments (payment_service_id, user_id, template_id, amount, status)
            VALUES (%s, %s, %s, 25.00, 'pending')
            """,
            (payment_service_id, user_id, template_id),
        )


def _payment(db_pool, payment_service_id):
    with db_pool.transaction() as cur:
        cur.execute(
            """
            SELECT status, webhook_id, completed_at, failed_at, canceled_at, error_message
            FROM payments WHERE payment_service_id = %s
            """,
            (payment_service_id,),
        )
        row = cur.fetchone()
    keys = ("status", "webhook_id", "completed_at", "failed_at", "canceled_at", "error_message")
    return dict(zip(keys, row))


def _webhook_count(db_pool, request_id):
    with db_pool.transaction() as cur:
        cur.execute("SELECT count(*) FROM payment_webhooks WHERE request_id = %s", (request_id,))
        return cur.fetchone()[0]


def _entitlements(db_pool, user_id, template_id):
    with db_pool.transaction() as cur:
        cur.execute(
            "SELECT webhook_id FROM user_template_purchases WHERE user_id = %s AND template_id = %s",
            (user_id, template_id),
        )
        return [row[0] for row in cur.fetchall()]


def _purchase_date(db_pool, user_id, template_id):
    with db_pool.transaction() as cur:
        cur.execute(
            "SELECT purchase_date FROM user_template_purchases WHERE user_id = %s AND template_id = %s",
            (user_id, template_id),
        )
        return cur.fetchone()[0]


def _ids():
    # High, random ids so entitlement rows never collide with real data.
    base = 900_000_000 + uuid.uuid4().int % 90_000_000
    return base, base + 1


def _post(client, prefix, payload, suffix="1"):
    request_id = f"{prefix}-req-{suffix}"
    return post_webhook(client, payload, headers={"X-Request-ID": request_id}), request_id


def test_completed_updates_payment_and_grants_template(client, db_pool, prefix, cleanup):
    user_id, template_id = _ids()
    cleanup["users"].append(user_id)
    cleanup["templates"].append(template_id)
    ps_id = f"{prefix}_ps"
    _seed_payment(db_pool, ps_id, user_id=user_id, template_id=template_id)

    payload = make_payload(
        data={"payment_service_id": ps_id, "template_id": template_id, "user_id": user_id}
    )
    response, request_id = _post(client, prefix, payload)

    assert response.status_code == 200
    webhook_id = response.json()["webhookId"]
    payment = _payment(db_pool, ps_id)
    assert payment["status"] == "completed"
    assert payment["webhook_id"] == webhook_id
    assert payment["completed_at"] is not None
    assert _entitlements(db_pool, user_id, template_id) == [webhook_id]
    assert _webhook_count(db_pool, request_id) == 1


def test_purchaser_taken_from_payment(client, db_pool, prefix, cleanup):
    user_id, template_id = _ids()
    cleanup["users"].append(user_id)
    cleanup["templates"].append(template_id)
    ps_id = f"{prefix}_ps"
    _seed_payment(db_pool, ps_id, user_id=user_id, template_id=template_id)

    payload = make_payload(data={"payment_service_id": ps_id, "template_id": template_id})
    response, _ = _post(client, prefix, payload)

    assert response.status_code == 200
    assert response.json()["data"]["result"]["entitlementGranted"] is True
    assert len(_entitlements(db_pool, user_id, template_id)) == 1


def test_failed_records_error(client, db_pool, prefix, cleanup):
    ps_id = f"{prefix}_ps"
    _seed_payment(db_pool, ps_id)

    payload = make_payload(
        event_type="payment.failed",
        status="failed",
        data={"payment_service_id": ps_id, "error_message": "Card declined"},
    )
    response, _ = _post(client, prefix, payload)

    assert response.status_code == 200
    payment = _payment(db_pool, ps_id)
    assert payment["status"] == "failed"
    assert payment["failed_at"] is not None
    assert payment["error_message"] == "Card declined"


def test_failed_without_message_uses_default(client, db_pool, prefix, cleanup):
    ps_id = f"{prefix}_ps"
    _seed_payment(db_pool, ps_id)

    payload = make_payload(
        event_type="payment.failed", status="failed", data={"payment_service_id": ps_id}
    )
    _post(client, prefix, payload)

    assert _payment(db_pool, ps_id)["error_message"] == "Payment failed"


def test_canceled(client, db_pool, prefix, cleanup):
    ps_id = f"{prefix}_ps"
    _seed_payment(db_pool, ps_id)

    payload = make_payload(
        event_type="payment.canceled", status="canceled", data={"payment_service_id": ps_id}
    )
    response, _ = _post(client, prefix, payload)

    assert response.status_code == 200
    payment = _payment(db_pool, ps_id)
    assert payment["status"] == "canceled"
    assert payment["canceled_at"] is not None


def test_replay_audited_payment_unchanged_entitlement_refreshed(client, db_pool, prefix, cleanup):
    user_id, template_id = _ids()
    cleanup["users"].append(user_id)
    cleanup["templates"].append(template_id)
    ps_id = f"{prefix}_ps"
    _seed_payment(db_pool, ps_id, user_id=user_id, template_id=template_id)
    payload = make_payload(
        data={"payment_service_id": ps_id, "template_id": template_id, "user_id": user_id}
    )

    first, request_id = _post(client, prefix, payload)
    first_purchase_date = _purchase_date(db_pool, user_id, template_id)
    second, _ = _post(client, prefix, payload)

    assert first.status_code == 200
    assert second.status_code == 200
    assert second.json()["webhookId"] != first.json()["webhookId"]
    assert second.json()["data"]["result"]["paymentUpdated"] is False
    assert _webhook_count(db_pool, request_id) == 2
    assert _payment(db_pool, ps_id)["webhook_id"] == first.json()["webhookId"]
    assert _entitlements(db_pool, user_id, template_id) == [second.json()["webhookId"]]
    assert _purchase_date(db_pool, user_id, template_id) > first_purchase_date


def test_failure_after_completion_ignored(client, db_pool, prefix, cleanup):
    ps_id = f"{prefix}_ps"
    _seed_payment(db_pool, ps_id)

    _post(client, prefix, make_payload(data={"payment_service_id": ps_id, "event_id": 1}), "1")
    late, _ = _post(
        client,
        prefix,
        make_payload(event_type="payment.failed", status="failed", data={"payment_service_id": ps_id}),
        "2",
    )

    assert late.status_code == 200
    assert _payment(db_pool, ps_id)["status"] == "completed"


def test_handler_error_rolls_back_audit_row(client, db_pool, prefix, cleanup):
    user_id, template_id = _ids()
    cleanup["users"].append(user_id)
    cleanup["templates"].append(template_id)
    ps_id = f"{prefix}_ps"
    _seed_payment(db_pool, ps_id, user_id=user_id, template_id=template_id)
    payload = make_payload(
        data={"payment_service_id": ps_id, "template_id": template_id, "user_id": user_id}
    )

    with patch(
        "eventcore.domain.payment_webhooks.entitlements_repository.grant_template",
        side_effect=RuntimeError("entitlement store down"),
    ):
        response, request_id = _post(client, prefix, payload)

    assert response.status_code == 500
    assert _webhook_count(db_pool, request_id) == 0
    assert _payment(db_pool, ps_id)["status"] == "pending"


def test_unknown_event_type_audited(client, db_pool, prefix, cleanup):
    response, request_id = _post(
        client, prefix, make_payload(event_type="payment.refunded", status="refunded")
    )
    assert response.status_code == 200
    assert _webhook_count(db_pool, request_id) == 1


def test_rejected_signature_leaves_no_row(client, db_pool, prefix, cleanup):
    request_id = f"{prefix}-req-bad"
    response = post_webhook(
        client,
        make_payload(),
        headers={"X-Request-ID": request_id, "X-Webhook-Signature": "0" * 64},
    )
    assert response.status_code == 401
    assert _webhook_count(db_pool, request_id) == 0


def test_concurrent_duplicates_transition_once(db_pool, prefix, cleanup):
    """N threads deliver the same completion at once => exactly 1 transition."""
    user_id, template_id = _ids()
    cleanup["users"].append(user_id)
    cleanup["templates"].append(template_id)
    ps_id = f"{prefix}_ps"
    _seed_payment(db_pool, ps_id, user_id=user_id, template_id=template_id)

    body = make_payload(
        data={"payment_service_id": ps_id, "template_id": template_id, "user_id": user_id}
    )
    delivery = WebhookDelivery(
        headers=WebhookHeaders(
            signature="0" * 64,
            service_name="payment-service",
            request_id=f"{prefix}-req-dup",
            timestamp="1768473000000",
        ),
        payload=parse_payload(body),
        body=body,
    )

    num_threads = 4
    results = {"updated": 0, "noop": 0, "error": 0}
    results_lock = threading.Lock()
    barrier = threading.Barrier(num_threads)

    def deliver():
        try:
            barrier.wait()
            processed = reconcile_webhook(db_pool, delivery)
            with results_lock:
                results["updated" if processed.result.payment_updated else "noop"] += 1
        except Exception:
            with results_lock:
                results["error"] += 1

    threads = [threading.Thread(target=deliver) for _ in range(num_threads)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert results == {"updated": 1, "noop": num_threads - 1, "error": 0}
    assert _payment(db_pool, ps_id)["status"] == "completed"
    assert _webhook_count(db_pool, f"{prefix}-req-dup") == num_threads
    assert len(_entitlements(db_pool, user_id, template_id)) == 1
