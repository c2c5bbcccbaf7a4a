"""Rate-limiting middleware backed by the shared state store.

Counts requests per client in fixed one-minute windows stored in the
``rate_limit_counters`` table, so every API replica enforces the same
budget and a restart does not reset it.  Each counter row carries an
explicit ``expires_at``; expired rows are purged at most once per window by
each process.

The limiter fails open: if the store cannot be reached the request is
served and the failure is logged.
"""

from __future__ import annotations

import fnmatch
import logging
from collections.abc import Callable
from datetime import UTC, datetime
from typing import Any

from billing_engine.state.database import transaction
from billing_engine.state.repository import RateLimitRepository
from pydantic import BaseModel
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import JSONResponse, Response

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------


class RateLimitConfig(BaseModel):
    """Rate-limiting configuration parameters.

    Attributes:
        enabled: Master toggle.  When ``False`` the middleware is a no-op.
        default_requests_per_minute: Baseline request budget per client.
        burst_multiplier: Multiplier applied to the per-minute limit that
            allows short traffic spikes.
        admin_requests_per_minute: Lower budget for ``/api/v1/admin/*``.
        expensive_endpoints: ``fnmatch`` path patterns mapped to their own
            per-minute limits.
        exempt_paths: Paths that bypass rate limiting (probes and the metrics scrape).
        window_seconds: Length of one counting window.
    """

    enabled: bool = True
    default_requests_per_minute: int = 60
    burst_multiplier: float = 1.5
    admin_requests_per_minute: int = 30
    expensive_endpoints: dict[str, int] = {
        "/api/v1/admin/billing/reconcile": 5,
    }
    exempt_paths: set[str] = {"/api/v1/health", "/ready", "/metrics"}
    window_seconds: int = 60


def _utcnow() -> datetime:
    return datetime.now(UTC)


class RateLimitMiddleware(BaseHTTPMiddleware):
    """Starlette middleware enforcing per-client fixed-window limits.

    Clients are keyed by IP address.  Responses carry ``X-RateLimit-Limit``,
    ``X-RateLimit-Remaining`` and ``X-RateLimit-Reset``; over-budget requests
    get ``429 Too Many Requests`` with ``Retry-After``.

    Parameters
    ----------
    session_factory:
        Zero-argument callable returning the ``async_sessionmaker``.  It is
        resolved per request because the engine is created in the app
        lifespan, after middleware construction.
    """

    def __init__(
        self,
        app: Any,
        session_factory: Callable[[], async_sessionmaker[AsyncSession]],
        config: RateLimitConfig | None = None,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        super().__init__(app)
        self._config: RateLimitConfig = config or RateLimitConfig()
        self._session_factory = session_factory
        self._clock = clock
        self._last_purge_window: int | None = None
        logger.info(
            "RateLimitMiddleware initialised (enabled=%s, rpm=%d, burst=%.1fx)",
            self._config.enabled,
            self._config.default_requests_per_minute,
            self._config.burst_multiplier,
        )

    # -- Helpers -------------------------------------------------------------

    def _client_key(self, request: Request) -> str:
        ip = request.client.host if request.client else "unknown"
        return f"ip:{ip}"

    def _tier_for(self, path: str) -> tuple[str, int] | None:
        """``(tier name, per-minute limit)`` for *path*; ``None`` when exempt.

        Each tier has its own counter, so a burst of admin calls does not
        eat into the client-facing budget.
        """
        if path in self._config.exempt_paths:
            return None
        for pattern, limit in self._config.expensive_endpoints.items():
            if fnmatch.fnmatch(path, pattern):
                return pattern, limit
        if path.startswith("/api/v1/admin"):
            return "admin", self._config.admin_requests_per_minute
        return "default", self._config.default_requests_per_minute

    def _seconds_to_reset(self, now: datetime) -> int:
        window = self._config.window_seconds
        return max(window - int(now.timestamp()) % window, 1)

    async def _hit(self, counter_key: str, now: datetime) -> int:
        window = self._config.window_seconds
        async with transaction(self._session_factory()) as session:
            repo = RateLimitRepository(session)
            count = await repo.hit(counter_key, window, now)

            window_index = int(now.timestamp()) // window
            if self._last_purge_window != window_index:
                self._last_purge_window = window_index
                removed = await repo.purge_expired(now)
                if removed:
                    logger.debug("Purged %d expired rate-limit counters", removed)
        return count

    # -- Dispatch ------------------------------------------------------------

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        if not self._config.enabled:
            return await call_next(request)

        path = request.url.path
        tier = self._tier_for(path)
        if tier is None:
            return await call_next(request)

        tier_name, per_minute = tier
        limit = int(per_minute * self._config.burst_multiplier)
        client_key = self._client_key(request)

        now = self._clock()
        try:
            count = await self._hit(f"{client_key}:{tier_name}", now)
        except (SQLAlchemyError, RuntimeError) as exc:
            logger.warning("Rate-limit store unavailable; allowing request to %s: %s", path, exc)
            return await call_next(request)

        reset = self._seconds_to_reset(now)
        headers = _limit_headers(limit, max(limit - count, 0), reset)

        if count > limit:
            logger.warning(
                "Rate limit exceeded: client=%s tier=%s count=%d limit=%d",
                client_key,
                tier_name,
                count,
                limit,
            )
            return JSONResponse(
                status_code=429,
                content={"detail": "Rate limit exceeded. Try again later.", "retry_after": reset},
                headers={"Retry-After": str(reset), **headers},
            )

        response = await call_next(request)
        response.headers.update(headers)
        return response


def _limit_headers(limit: int, remaining: int, reset: int) -> dict[str, str]:
    return {
        "X-RateLimit-Limit": str(limit),
        "X-RateLimit-Remaining": str(remaining),
        "X-RateLimit-Reset": str(reset),
    }
