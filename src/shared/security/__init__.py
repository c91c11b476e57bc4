"""
Security module for OSS Hero.

Provides per-tenant rate limiting, bot throttling, IP blocking and the
rate limit middleware.
"""

from .rate_limiter import (
    RateLimiter,
    RateLimitMiddleware,
    RateLimitConfig,
    RateLimitEntry,
    RateLimitResult,
    RateLimitStore,
    InMemoryRateLimitStore,
    RouteClass,
    RiskLevel,
    ROUTE_LIMITS,
    classify_route,
    detect_bot,
    effective_limit,
    get_route_config,
    get_rate_limiter,
    start_rate_limiter_cleanup_task
)

__all__ = [
    'RateLimiter',
    'RateLimitMiddleware',
    'RateLimitConfig',
    'RateLimitEntry',
    'RateLimitResult',
    'RateLimitStore',
    'InMemoryRateLimitStore',
    'RouteClass',
    'RiskLevel',
    'ROUTE_LIMITS',
    'classify_route',
    'detect_bot',
    'effective_limit',
    'get_route_config',
    'get_rate_limiter',
    'start_rate_limiter_cleanup_task'
]
