"""Service-to-service routes, mounted under /api/internal.

Callers authenticate per route (payment webhooks carry an HMAC signature).
"""

from fastapi import APIRouter

from eventcore.api.routes import payment_webhook

router = APIRouter(prefix="/api/internal")
router.include_router(payment_webhook.router)
