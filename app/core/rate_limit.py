"""
Simple in-memory rate limiting for public API endpoints
(discount code validation is the obvious brute-force target).
"""
from functools import wraps
from fastapi import HTTPException, status, Request
from typing import Callable, Optional
from datetime import timedelta
from collections import defaultdict
import logging
import threading

from app.utils.clock import utcnow

logger = logging.getLogger(__name__)

# {identifier: [timestamp, ...]}
_rate_limit_store = defaultdict(list)
_rate_limit_lock = threading.Lock()

_last_cleanup = utcnow()
_cleanup_interval = timedelta(minutes=5)


def _cleanup_old_entries():
    """Remove entries older than an hour"""
    global _last_cleanup

    now = utcnow()
    if now - _last_cleanup < _cleanup_interval:
        return

    with _rate_limit_lock:
        _last_cleanup = now
        cutoff_time = now - timedelta(hours=1)
        for key in list(_rate_limit_store.keys()):
            _rate_limit_store[key] = [ts for ts in _rate_limit_store[key] if ts > cutoff_time]
            if not _rate_limit_store[key]:
                del _rate_limit_store[key]


def reset_rate_limits():
    with _rate_limit_lock:
        _rate_limit_store.clear()


def _client_identifier(request: Optional[Request]) -> str:
    if request is None or request.client is None:
        return "unknown"
    return request.client.host


def rate_limit(max_requests: int = 5, window_seconds: int = 300, identifier_func: Callable = None):
    """
    Rate limiting decorator for FastAPI endpoints. The endpoint must take a
    ``request: Request`` argument; callers are identified by client IP
    unless ``identifier_func(request)`` says otherwise.

    Usage:
        @router.post("/endpoint")
        @rate_limit(max_requests=5, window_seconds=300)
        def my_endpoint(request: Request, ...):
            ...
    """
    def decorator(func: Callable):
        @wraps(func)
        def wrapper(*args, **kwargs):
            request = kwargs.get("request")
            if request is None:
                request = next((arg for arg in args if isinstance(arg, Request)), None)

            identifier = f"{func.__name__}:{(identifier_func or _client_identifier)(request)}"

            _cleanup_old_entries()

            now = utcnow()
            window_start = now - timedelta(seconds=window_seconds)
            with _rate_limit_lock:
                recent_requests = [ts for ts in _rate_limit_store[identifier] if ts > window_start]
                if len(recent_requests) >= max_requests:
                    logger.warning("[RATE_LIMIT] %s exceeded %s requests per %ss", identifier, max_requests, window_seconds)
                    raise HTTPException(
                        status_code=status.HTTP_429_TOO_MANY_REQUESTS,
                        detail=f"Rate limit exceeded: {max_requests} requests per {window_seconds} seconds. Please try again later."
                    )
                recent_requests.append(now)
                _rate_limit_store[identifier] = recent_requests

            return func(*args, **kwargs)

        return wrapper
    return decorator
