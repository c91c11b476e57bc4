"""
Rate limiting for OSS Hero API routes.

Per-tenant, per-IP fixed windows with a nested burst window, bot-aware
thresholds, risk scoring, violator retention and a hard IP block list.
State lives in process memory, so limits are per instance.
"""

import asyncio
import math
import re
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, Iterable, Iterator, Optional, Tuple

from fastapi import Request, Response, status
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.types import ASGIApp

from ..logging_config import get_logger
from ..metrics_collector import get_metrics_collector

DEFAULT_SENSITIVE_ROUTES = ('/api/admin', '/api/auth', '/api/webhooks', '/api/payments')
VIOLATOR_RETENTION_MS = 60 * 60 * 1000

BOT_USER_AGENT_PATTERN = re.compile(
    r'bot|crawl|spider|slurp|scraper|curl|wget|python-requests|python-urllib|aiohttp|httpx|'
    r'go-http-client|java/|okhttp|libwww|scrapy|headless|phantomjs|selenium|puppeteer|playwright',
    re.IGNORECASE
)


class RouteClass(str, Enum):
    """Route classes with their own limits."""
    ADMIN = "admin"
    AUTH = "auth"
    API = "api"
    WEBHOOK = "webhook"
    PUBLIC = "public"


class RiskLevel(str, Enum):
    """Heuristic client risk."""
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


@dataclass(frozen=True)
class RateLimitConfig:
    """Limits for one route class."""
    window_ms: int
    max_requests: int
    burst_window_ms: int
    burst_max_requests: int
    bot_multiplier: float = 0.5


ROUTE_LIMITS: Dict[RouteClass, RateLimitConfig] = {
    RouteClass.ADMIN: RateLimitConfig(
        window_ms=60_000, max_requests=30, burst_window_ms=10_000, burst_max_requests=10, bot_multiplier=0.1
    ),
    RouteClass.AUTH: RateLimitConfig(
        window_ms=60_000, max_requests=10, burst_window_ms=10_000, burst_max_requests=5, bot_multiplier=0.2
    ),
    RouteClass.API: RateLimitConfig(
        window_ms=60_000, max_requests=100, burst_window_ms=10_000, burst_max_requests=20, bot_multiplier=0.5
    ),
    RouteClass.WEBHOOK: RateLimitConfig(
        window_ms=60_000, max_requests=200, burst_window_ms=10_000, burst_max_requests=50, bot_multiplier=0.5
    ),
    RouteClass.PUBLIC: RateLimitConfig(
        window_ms=60_000, max_requests=60, burst_window_ms=10_000, burst_max_requests=15, bot_multiplier=0.5
    ),
}


@dataclass
class RateLimitEntry:
    """Counter state for one key. Times are epoch milliseconds."""
    count: int
    reset_time: int
    first_seen: int
    violations: int = 0
    last_violation: Optional[int] = None
    is_bot: bool = False
    user_agent: Optional[str] = None


@dataclass
class RateLimitResult:
    """Outcome of a rate limit check."""
    allowed: bool
    remaining: int
    reset_time: int
    limit: int
    retry_after: Optional[int] = None
    violations: int = 0
    is_bot: bool = False
    risk_level: RiskLevel = RiskLevel.LOW
    block_reason: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        data = {
            'allowed': self.allowed,
            'remaining': self.remaining,
            'reset_time': self.reset_time,
            'violations': self.violations,
            'is_bot': self.is_bot,
            'risk_level': self.risk_level.value,
        }
        if self.retry_after is not None:
            data['retry_after'] = self.retry_after
        if self.block_reason:
            data['block_reason'] = self.block_reason
        return data


@dataclass
class IPBlock:
    reason: Optional[str]
    blocked_at: int
    expires_at: Optional[int] = None


class RateLimitStore(ABC):
    """Key/value storage for rate limit entries."""

    @abstractmethod
    def get(self, key: str) -> Optional[RateLimitEntry]: ...

    @abstractmethod
    def set(self, key: str, entry: RateLimitEntry) -> None: ...

    @abstractmethod
    def delete(self, key: str) -> None: ...

    @abstractmethod
    def items(self) -> Iterator[Tuple[str, RateLimitEntry]]: ...

    @abstractmethod
    def clear(self) -> None: ...

    @abstractmethod
    def __len__(self) -> int: ...


class InMemoryRateLimitStore(RateLimitStore):
    """Process-local store."""

    def __init__(self):
        self._entries: Dict[str, RateLimitEntry] = {}

    def get(self, key: str) -> Optional[RateLimitEntry]:
        return self._entries.get(key)

    def set(self, key: str, entry: RateLimitEntry) -> None:
        self._entries[key] = entry

    def delete(self, key: str) -> None:
        self._entries.pop(key, None)

    def items(self) -> Iterator[Tuple[str, RateLimitEntry]]:
        return iter(list(self._entries.items()))

    def clear(self) -> None:
        self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)


def detect_bot(user_agent: Optional[str]) -> bool:
    """Treat a missing User-Agent or a known automation client as a bot."""
    if not user_agent or not user_agent.strip():
        return True
    return bool(BOT_USER_AGENT_PATTERN.search(user_agent))


def classify_route(path: str) -> RouteClass:
    """Map a request path to its route class."""
    if path.startswith('/api/admin'):
        return RouteClass.ADMIN
    if path.startswith('/api/auth'):
        return RouteClass.AUTH
    if path.startswith('/api/webhooks') or path.startswith('/webhooks'):
        return RouteClass.WEBHOOK
    if path.startswith('/api'):
        return RouteClass.API
    return RouteClass.PUBLIC


def get_route_config(route_class: RouteClass) -> RateLimitConfig:
    """Get limits for a route class."""
    return ROUTE_LIMITS[route_class]


def effective_limit(max_requests: int, is_bot: bool, bot_multiplier: float) -> int:
    """Bots get ceil(max * multiplier), never less than one request."""
    if not is_bot:
        return max_requests
    return max(1, math.ceil(max_requests * bot_multiplier))


class RateLimiter:
    """Windowed rate limiter with burst protection and risk scoring."""

    def __init__(
        self,
        store: Optional[RateLimitStore] = None,
        clock: Callable[[], float] = time.time,
        sensitive_routes: Iterable[str] = DEFAULT_SENSITIVE_ROUTES,
        violator_retention_ms: int = VIOLATOR_RETENTION_MS,
    ):
        self.logger = get_logger(__name__, 'rate_limiter')
        self.metrics = get_metrics_collector()

        self.store = store if store is not None else InMemoryRateLimitStore()
        self._clock = clock
        self.sensitive_routes = tuple(sensitive_routes)
        self.violator_retention_ms = violator_retention_ms
        self.blocked_ips: Dict[str, IPBlock] = {}

        self.stats = {
            'requests_processed': 0,
            'requests_allowed': 0,
            'requests_denied': 0,
            'burst_denials': 0,
            'ip_block_denials': 0,
            'bot_requests': 0,
        }

    def _now_ms(self) -> int:
        return int(self._clock() * 1000)

    @staticmethod
    def make_key(tenant_id: str, ip: str, window_ms: int) -> str:
        return f"{tenant_id}:{ip}:{window_ms}"

    def get_entry(self, tenant_id: str, ip: str, window_ms: int) -> Optional[RateLimitEntry]:
        """Current main-window entry for a client, if any."""
        return self.store.get(self.make_key(tenant_id, ip, window_ms))

    async def check_rate_limit(
        self,
        tenant_id: str,
        config: RateLimitConfig,
        ip: str,
        user_agent: Optional[str] = None,
        is_bot: Optional[bool] = None,
        route: Optional[str] = None,
    ) -> RateLimitResult:
        """
        Count a request against the client's windows.

        The request is denied when either the burst or the main counter would
        exceed its effective maximum. Denials increment ``violations``, which
        survive window resets.
        """
        now = self._now_ms()
        if is_bot is None:
            is_bot = detect_bot(user_agent)

        self.stats['requests_processed'] += 1
        if is_bot:
            self.stats['bot_requests'] += 1

        key = self.make_key(tenant_id, ip, config.window_ms)
        burst_key = f"{key}:burst"
        max_requests = effective_limit(config.max_requests, is_bot, config.bot_multiplier)
        burst_max = effective_limit(config.burst_max_requests, is_bot, config.bot_multiplier)

        if self.is_ip_blocked(ip):
            return self._deny_blocked(ip, key, config, max_requests, is_bot, route, now)

        entry = self.store.get(key)
        if entry is None or now > entry.reset_time:
            entry = RateLimitEntry(
                count=0,
                reset_time=now + config.window_ms,
                first_seen=entry.first_seen if entry else now,
                violations=entry.violations if entry else 0,
                last_violation=entry.last_violation if entry else None,
                is_bot=is_bot,
                user_agent=user_agent,
            )
            self.store.set(key, entry)
            self.store.delete(burst_key)

        entry.is_bot = is_bot
        if user_agent:
            entry.user_agent = user_agent

        burst = self.store.get(burst_key)
        if burst is None or now > burst.reset_time:
            burst = RateLimitEntry(
                count=0,
                reset_time=now + config.burst_window_ms,
                first_seen=now,
                is_bot=is_bot,
                user_agent=user_agent,
            )
            self.store.set(burst_key, burst)

        denying = None
        if burst.count + 1 > burst_max:
            denying = burst
            self.stats['burst_denials'] += 1
        elif entry.count + 1 > max_requests:
            denying = entry

        if denying is not None:
            entry.violations += 1
            entry.last_violation = now
            self.stats['requests_denied'] += 1

            risk_level = self.calculate_risk_level(entry, is_bot, route, now)
            window = 'burst' if denying is burst else 'main'
            self.metrics.get_counter('rate_limit_requests_denied_total').increment(
                1, tenant=tenant_id, window=window
            )
            self.logger.warning(
                "Request denied by rate limiter",
                operation="rate_limit_deny",
                tenant_id=tenant_id,
                client_ip=ip,
                window=window,
                violations=entry.violations,
                risk_level=risk_level.value,
            )

            return RateLimitResult(
                allowed=False,
                remaining=0,
                reset_time=denying.reset_time,
                limit=burst_max if denying is burst else max_requests,
                retry_after=math.ceil((denying.reset_time - now) / 1000),
                violations=entry.violations,
                is_bot=is_bot,
                risk_level=risk_level,
            )

        entry.count += 1
        burst.count += 1
        self.stats['requests_allowed'] += 1
        self.metrics.get_counter('rate_limit_requests_allowed_total').increment(1, tenant=tenant_id)

        return RateLimitResult(
            allowed=True,
            remaining=max(0, min(max_requests - entry.count, burst_max - burst.count)),
            reset_time=entry.reset_time,
            limit=max_requests,
            violations=entry.violations,
            is_bot=is_bot,
            risk_level=self.calculate_risk_level(entry, is_bot, route, now),
        )

    def _deny_blocked(
        self,
        ip: str,
        key: str,
        config: RateLimitConfig,
        max_requests: int,
        is_bot: bool,
        route: Optional[str],
        now: int,
    ) -> RateLimitResult:
        block = self.blocked_ips[ip]
        reset_time = block.expires_at if block.expires_at is not None else now + config.window_ms
        entry = self.store.get(key)

        self.stats['requests_denied'] += 1
        self.stats['ip_block_denials'] += 1
        self.metrics.get_counter('rate_limit_requests_denied_total').increment(1, window='ip_block')

        return RateLimitResult(
            allowed=False,
            remaining=0,
            reset_time=reset_time,
            limit=max_requests,
            retry_after=math.ceil((reset_time - now) / 1000),
            violations=entry.violations if entry else 0,
            is_bot=is_bot,
            risk_level=RiskLevel.HIGH,
            block_reason="ip_blocked",
        )

    def calculate_risk_level(
        self,
        entry: RateLimitEntry,
        is_bot: bool,
        route: Optional[str],
        now: Optional[int] = None,
    ) -> RiskLevel:
        """
        Score a client: bot +1; violations >10 +3, >5 +2, >0 +1; request rate
        over the entry lifetime >10/s +2, >5/s +1; sensitive route +1.
        Score >= 4 is high, >= 2 medium.
        """
        now = self._now_ms() if now is None else now
        score = 0

        if is_bot:
            score += 1

        if entry.violations > 10:
            score += 3
        elif entry.violations > 5:
            score += 2
        elif entry.violations > 0:
            score += 1

        lifetime_seconds = (now - entry.first_seen) / 1000
        request_rate = entry.count / max(lifetime_seconds, 1)
        if request_rate > 10:
            score += 2
        elif request_rate > 5:
            score += 1

        if route and any(route.startswith(prefix) for prefix in self.sensitive_routes):
            score += 1

        if score >= 4:
            return RiskLevel.HIGH
        if score >= 2:
            return RiskLevel.MEDIUM
        return RiskLevel.LOW

    async def cleanup_expired_entries(self) -> int:
        """
        Delete expired entries. Entries with violations are kept for an extra
        retention period past expiry. Expired IP blocks are dropped too.
        """
        now = self._now_ms()
        removed = 0

        for key, entry in self.store.items():
            if now <= entry.reset_time:
                continue
            if entry.violations > 0 and now <= entry.reset_time + self.violator_retention_ms:
                continue
            self.store.delete(key)
            removed += 1

        for ip, block in list(self.blocked_ips.items()):
            if block.expires_at is not None and now >= block.expires_at:
                del self.blocked_ips[ip]

        if removed:
            self.logger.info(f"Cleaned up {removed} expired rate limit entries", operation="cleanup")

        return removed

    def block_ip(self, ip: str, reason: Optional[str] = None, duration_seconds: Optional[int] = None):
        """Block an address unconditionally, optionally for a limited time."""
        now = self._now_ms()
        expires_at = now + duration_seconds * 1000 if duration_seconds else None
        self.blocked_ips[ip] = IPBlock(reason=reason, blocked_at=now, expires_at=expires_at)
        self.logger.warning(
            "IP address blocked",
            operation="block_ip",
            client_ip=ip,
            reason=reason,
            duration_seconds=duration_seconds,
        )

    def unblock_ip(self, ip: str) -> bool:
        """Remove an address from the block list."""
        if self.blocked_ips.pop(ip, None) is None:
            return False
        self.logger.info("IP address unblocked", operation="unblock_ip", client_ip=ip)
        return True

    def is_ip_blocked(self, ip: str) -> bool:
        block = self.blocked_ips.get(ip)
        if block is None:
            return False
        if block.expires_at is not None and self._now_ms() >= block.expires_at:
            del self.blocked_ips[ip]
            return False
        return True

    def get_stats(self) -> Dict[str, Any]:
        """Get rate limiter statistics."""
        return {
            **self.stats,
            'active_keys': len(self.store),
            'blocked_ips': len(self.blocked_ips),
        }

    def reset(self):
        """Drop all counters, blocks and statistics."""
        self.store.clear()
        self.blocked_ips.clear()
        for key in self.stats:
            self.stats[key] = 0


class RateLimitMiddleware(BaseHTTPMiddleware):
    """Rate limiting middleware for FastAPI."""

    def __init__(
        self,
        app: ASGIApp,
        rate_limiter: Optional[RateLimiter] = None,
        default_tenant: str = "default",
        trust_forwarded_for: bool = False,
        trust_tenant_header: bool = False,
    ):
        super().__init__(app)
        self.rate_limiter = rate_limiter or get_rate_limiter()
        self.default_tenant = default_tenant
        self.trust_forwarded_for = trust_forwarded_for
        self.trust_tenant_header = trust_tenant_header
        self.logger = get_logger(__name__, 'rate_limit_middleware')

    def _client_ip(self, request: Request) -> str:
        if self.trust_forwarded_for:
            forwarded = request.headers.get('x-forwarded-for')
            if forwarded:
                return forwarded.split(',')[0].strip()
        return request.client.host if request.client else 'unknown'

    def _tenant_id(self, request: Request) -> str:
        # request.state.tenant_id is set by upstream authentication
        tenant_id = getattr(request.state, 'tenant_id', None)
        if not tenant_id and self.trust_tenant_header:
            tenant_id = request.headers.get('x-tenant-id')
        return tenant_id or self.default_tenant

    @staticmethod
    def _headers(result: RateLimitResult) -> Dict[str, str]:
        return {
            'X-RateLimit-Limit': str(result.limit),
            'X-RateLimit-Remaining': str(result.remaining),
            'X-RateLimit-Reset': str(math.ceil(result.reset_time / 1000)),
        }

    async def dispatch(self, request: Request, call_next) -> Response:
        """Process request through rate limiting middleware."""
        tenant_id = self._tenant_id(request)
        path = str(request.url.path)
        config = get_route_config(classify_route(path))

        result = await self.rate_limiter.check_rate_limit(
            tenant_id,
            config,
            self._client_ip(request),
            user_agent=request.headers.get('user-agent'),
            route=path,
        )

        if not result.allowed:
            headers = self._headers(result)
            headers['Retry-After'] = str(result.retry_after)
            return JSONResponse(
                status_code=status.HTTP_429_TOO_MANY_REQUESTS,
                content={
                    'error': 'rate_limit_exceeded',
                    'message': 'Too many requests',
                    **result.to_dict(),
                },
                headers=headers,
            )

        response = await call_next(request)
        response.headers.update(self._headers(result))
        return response


async def start_rate_limiter_cleanup_task(rate_limiter: RateLimiter, interval_seconds: int = 300):
    """Periodically clean up expired rate limit entries."""
    logger = get_logger(__name__, 'rate_limiter_cleanup')
    while True:
        await asyncio.sleep(interval_seconds)
        try:
            await rate_limiter.cleanup_expired_entries()
        except Exception as e:
            logger.error(f"Error in rate limiter cleanup: {e}", operation="cleanup")


# Global rate limiter instance
_rate_limiter: Optional[RateLimiter] = None


def get_rate_limiter() -> RateLimiter:
    """Get the global rate limiter instance."""
    global _rate_limiter
    if _rate_limiter is None:
        _rate_limiter = RateLimiter()
    return _rate_limiter
