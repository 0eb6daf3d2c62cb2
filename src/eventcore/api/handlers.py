"""Route handler wrappers: error envelope and deadline.

- ``route_handler(timeout=...)`` wraps an async endpoint. Escaped exceptions
  become a 500 ``ASYNC_HANDLER_ERROR`` envelope; if the endpoint is still
  running when the deadline passes, a 504 ``ROUTE_TIMEOUT`` envelope is sent.
  The deadline is cooperative: the endpoint keeps running in the background
  and its late outcome is only logged.
- ``HandlerErrorMiddleware`` is the last line for exceptions that escape
  every other layer. Once the response has started nothing can be corrected,
  so it logs and re-raises.
"""

from __future__ import annotations

import asyncio
import functools
from typing import Any, Awaitable, Callable

from fastapi import HTTPException, Request
from starlette.types import ASGIApp, Message, Receive, Scope, Send

from eventcore.infra.settings import env_seconds, is_development
from eventcore.observability.logging import get_logger
from eventcore.observability.redaction import safe_log_context

from .responses import error_response, json_response

logger = get_logger(__name__)

DEFAULT_ROUTE_TIMEOUT_MS = 10_000

ASYNC_HANDLER_ERROR = "ASYNC_HANDLER_ERROR"
ROUTE_TIMEOUT = "ROUTE_TIMEOUT"


def default_route_timeout() -> float:
    """Route deadline in seconds (WEBHOOK_ROUTE_TIMEOUT_MS, default 10s)."""
    return env_seconds("WEBHOOK_ROUTE_TIMEOUT_MS", DEFAULT_ROUTE_TIMEOUT_MS)


def handler_error_body(path: str, exc: BaseException) -> dict[str, Any]:
    body = error_response("Internal server error", code=ASYNC_HANDLER_ERROR)
    body["path"] = path
    if is_development():
        body["message"] = str(exc)
    return body


def timeout_body(path: str, timeout: float) -> dict[str, Any]:
    body = error_response("Request timeout", code=ROUTE_TIMEOUT)
    body["timeout"] = int(timeout * 1000)
    body["path"] = path
    return body


def _find_request(args: tuple, kwargs: dict) -> Request | None:
    for value in (*args, *kwargs.values()):
        if isinstance(value, Request):
            return value
    return None


def _log_late_outcome(path: str) -> Callable[[asyncio.Future], None]:
    def callback(task: asyncio.Future) -> None:
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error(
                "route handler failed after deadline",
                exc_info=exc,
                extra={"extra_fields": safe_log_context(path=path)},
            )
        else:
            logger.warning(
                "route handler finished after deadline",
                extra={"extra_fields": safe_log_context(path=path)},
            )

    return callback


def route_handler(
    timeout: float | None | Callable[[], float] = default_route_timeout,
) -> Callable[[Callable[..., Awaitable[Any]]], Callable[..., Awaitable[Any]]]:
    """Decorate an async FastAPI endpoint with error envelope and deadline.

    Args:
        timeout: Seconds, a zero-arg callable returning seconds (read per
            request), or None for no deadline.

    The endpoint should accept a ``Request`` parameter so the envelope can
    report the path.
    """

    def decorator(endpoint: Callable[..., Awaitable[Any]]) -> Callable[..., Awaitable[Any]]:
        @functools.wraps(endpoint)
        async def wrapper(*args: Any, **kwargs: Any) -> Any:
            request = _find_request(args, kwargs)
            path = request.url.path if request is not None else endpoint.__name__
            deadline = timeout() if callable(timeout) else timeout

            task = asyncio.ensure_future(endpoint(*args, **kwargs))
            try:
                if deadline is None:
                    return await task
                # shield: the deadline decides the response, it does not stop the work
                return await asyncio.wait_for(asyncio.shield(task), deadline)
            except asyncio.TimeoutError as exc:
                if task.done() and not task.cancelled():
                    # the endpoint raised TimeoutError itself
                    logger.exception(
                        "route handler raised",
                        extra={"extra_fields": safe_log_context(path=path)},
                    )
                    return json_response(handler_error_body(path, exc), 500)
                task.add_done_callback(_log_late_outcome(path))
                logger.error(
                    "route deadline exceeded",
                    extra={
                        "extra_fields": safe_log_context(
                            path=path, timeout_ms=int(deadline * 1000)
                        )
                    },
                )
                return json_response(timeout_body(path, deadline), 504)
            except HTTPException:
                raise
            except Exception as exc:
                logger.exception(
                    "route handler raised",
                    extra={"extra_fields": safe_log_context(path=path)},
                )
                return json_response(handler_error_body(path, exc), 500)

        return wrapper

    return decorator


class HandlerErrorMiddleware:
    """Pure ASGI middleware converting escaped exceptions to the 500 envelope."""

    def __init__(self, app: ASGIApp) -> None:
        self.app = app

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        response_started = False

        async def send_wrapper(message: Message) -> None:
            nonlocal response_started
            if message["type"] == "http.response.start":
                response_started = True
            await send(message)

        try:
            await self.app(scope, receive, send_wrapper)
        except Exception as exc:
            path = scope.get("path", "")
            if response_started:
                logger.error(
                    "cannot send error response - headers already sent",
                    exc_info=exc,
                    extra={"extra_fields": safe_log_context(path=path)},
                )
                raise
            logger.exception(
                "unhandled error reached middleware",
                extra={"extra_fields": safe_log_context(path=path)},
            )
            response = json_response(handler_error_body(path, exc), 500)
            await response(scope, receive, send)
