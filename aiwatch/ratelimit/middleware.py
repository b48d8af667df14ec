"""HTTP admission control middleware.

Runs before any handler. The tier is picked from the request path; health
and metrics endpoints are never limited.
"""

import asyncio

from fastapi import Request
from fastapi.responses import JSONResponse
from loguru import logger

from aiwatch.ratelimit.limiter import RateLimitResult, RateLimitTier, client_identifier

EXEMPT_PATH_PREFIXES = ("/health", "/metrics")


def resolve_tier(path: str, auth_prefixes: list[str], ai_prefixes: list[str]) -> RateLimitTier | None:
    """Map a request path to its tier, or None for exempt paths."""
    if path.startswith(EXEMPT_PATH_PREFIXES):
        return None
    if any(path.startswith(prefix) for prefix in auth_prefixes):
        return RateLimitTier.AUTH
    if any(path.startswith(prefix) for prefix in ai_prefixes):
        return RateLimitTier.AI
    return RateLimitTier.API


def rate_limit_headers(result: RateLimitResult) -> dict[str, str]:
    return {
        "X-RateLimit-Limit": str(result.limit),
        "X-RateLimit-Remaining": str(result.remaining),
        "X-RateLimit-Reset": str(result.reset_seconds),
    }


async def rate_limit_middleware(request: Request, call_next):
    """Reject over-limit clients with 429; annotate admitted responses."""
    services = request.app.state.services
    settings = services.settings
    tier = resolve_tier(request.url.path, settings.auth_path_prefixes, settings.ai_path_prefixes)
    if tier is None:
        return await call_next(request)

    peer_host = request.client.host if request.client else None
    identifier = client_identifier(request.headers, peer_host)
    # Redis-backed stores do network I/O
    result = await asyncio.to_thread(services.rate_limiter.check_tier, tier, identifier)

    if not result.allowed:
        logger.bind(tier=tier.value, identifier=identifier, path=request.url.path).warning(
            f"[RATE_LIMIT] {tier.value} limit exceeded for {identifier}"
        )
        services.metrics.track_rate_limit_hit(tier.value)
        headers = rate_limit_headers(result)
        headers["Retry-After"] = str(result.retry_after)
        return JSONResponse(
            status_code=429,
            content={
                "error": "Rate limit exceeded",
                "message": f"Too many requests. Please try again in {result.retry_after} seconds.",
                "retryAfter": result.retry_after,
            },
            headers=headers,
        )

    response = await call_next(request)
    for name, value in rate_limit_headers(result).items():
        response.headers[name] = value
    return response
