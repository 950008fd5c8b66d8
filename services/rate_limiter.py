"""
Write throttle for the relay.

Token issuance, agent creation and offer creation each spawn rows (and offers
may trigger an external profile lookup), so one principal is limited to
RATE_LIMIT_PER_MINUTE of those writes per rolling minute. State is per process.
"""
import time
import threading
from collections import defaultdict
from functools import wraps
from flask import request, jsonify, g

from config import Config


class RateLimiter:
    """Rolling-window counter of write attempts per principal key."""

    def __init__(self, max_requests: int = 60, window_seconds: int = 60):
        self.max_requests = max_requests
        self.window = window_seconds
        self._hits = defaultdict(list)  # principal -> accepted write timestamps
        self._lock = threading.Lock()

    def _prune(self, key: str, now: float):
        recent = [t for t in self._hits[key] if t > now - self.window]
        if recent:
            self._hits[key] = recent
        else:
            del self._hits[key]

    def is_allowed(self, key: str) -> tuple:
        """Record a write for key if under the limit. Returns (allowed, remaining, reset_at)."""
        now = time.time()
        with self._lock:
            self._prune(key, now)
            hits = self._hits[key]
            if len(hits) >= self.max_requests:
                return False, 0, hits[0] + self.window
            hits.append(now)
            return True, self.max_requests - len(hits), now + self.window

    def reset(self):
        with self._lock:
            self._hits.clear()


_write_limiter = RateLimiter(max_requests=Config.RATE_LIMIT_PER_MINUTE, window_seconds=60)


def get_write_limiter() -> RateLimiter:
    return _write_limiter


def _principal() -> str:
    # Signed-in user when known, else the client address
    return getattr(g, 'current_user_id', None) or request.remote_addr or 'unknown'


def rate_limit(limiter=None):
    """Decorator for write routes. Stack it below require_user."""
    def decorator(f):
        @wraps(f)
        def decorated(*args, **kwargs):
            active = limiter or _write_limiter
            allowed, remaining, reset_at = active.is_allowed(_principal())

            if not allowed:
                wait = reset_at - time.time()
                resp = jsonify({"error": "Rate limit exceeded", "retry_after": max(0, int(wait))})
                resp.status_code = 429
                resp.headers['Retry-After'] = str(max(1, int(wait)))
                resp.headers['X-RateLimit-Remaining'] = '0'
                return resp

            response = f(*args, **kwargs)
            if hasattr(response, 'headers'):
                response.headers['X-RateLimit-Remaining'] = str(remaining)
            return response
        return decorated
    return decorator
