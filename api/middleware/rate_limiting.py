"""Per-caller request rate limiting for the REST API, using Redis."""

import logging
from collections.abc import Callable
from datetime import UTC, datetime

from fastapi import Request, Response
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

from shared.auth import InvalidTokenError, decode_access_token, user_from_payload
from shared.config import get_settings
from shared.redis_client import get_redis_client, with_timeout

logger = logging.getLogger(__name__)

RATE_LIMIT_WINDOW_SECONDS = 60
EXEMPT_PATHS = ("/health", "/")


class RateLimitMiddleware(BaseHTTPMiddleware):
    """
    Fixed one-minute window per caller.

    Authenticated callers are keyed by user id so that tabs behind one NAT
    do not share a budget; anonymous callers are keyed by source IP.
    Returns 429 Too Many Requests when the limit is exceeded. Redis
    failures let the request through.
    """

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        if request.url.path in EXEMPT_PATHS or request.scope.get("type") != "http":
            return await call_next(request)

        caller = self._caller_key(request)
        limit = get_settings().API_RATE_LIMIT_PER_MINUTE

        try:
            current_minute = datetime.now(UTC).strftime("%Y-%m-%d:%H:%M")
            redis_key = f"rate_limit:{caller}:{current_minute}"
            redis_client = get_redis_client()

            request_count = await with_timeout(redis_client.incr(redis_key))
            if request_count == 1:
                await with_timeout(redis_client.expire(redis_key, RATE_LIMIT_WINDOW_SECONDS))

        except Exception as e:
            logger.error(f"Rate limit check failed for {caller}: {e}")
            return await call_next(request)

        if request_count > limit:
            logger.warning(f"Rate limit exceeded for {caller}: {request_count} requests")
            return JSONResponse(
                status_code=429,
                content={"error": "rate_limited", "detail": "Rate limit exceeded"},
                headers={
                    "X-RateLimit-Remaining": "0",
                    "Retry-After": str(RATE_LIMIT_WINDOW_SECONDS),
                },
            )

        response: Response = await call_next(request)
        response.headers["X-RateLimit-Remaining"] = str(max(0, limit - request_count))
        return response

    def _caller_key(self, request: Request) -> str:
        auth_header = request.headers.get("authorization", "")
        if auth_header.startswith("Bearer "):
            try:
                user = user_from_payload(decode_access_token(auth_header.split(" ", 1)[1]))
                return f"user:{user.user_id}"
            except InvalidTokenError:
                # Invalid token - fall through to IP keying
                pass

        client_ip = request.client.host if request.client else "unknown"
        forwarded_for = request.headers.get("x-forwarded-for")
        if forwarded_for:
            client_ip = forwarded_for.split(",")[0].strip()
        return f"ip:{client_ip}"
