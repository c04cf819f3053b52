"""
In-memory TTL cache for per-user dashboard reads.

Entries are grouped by user so a mutation can drop everything cached for
that user in one call.  Nothing is ever shared across users: the user id is
always part of the lookup.
"""
import threading
import time


class DashboardCache:
    """Thread-safe TTL cache keyed by (user_id, variant)."""

    def __init__(self, ttl_seconds=300, clock=time.monotonic):
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._entries = {}
        self._lock = threading.Lock()

    def init_app(self, app):
        self.ttl_seconds = app.config.get('DASHBOARD_CACHE_TTL_SECONDS', self.ttl_seconds)
        app.extensions['dashboard_cache'] = self

    def get(self, user_id, variant=''):
        """Return the cached value, or None when missing or expired."""
        with self._lock:
            user_entries = self._entries.get(user_id)
            if not user_entries or variant not in user_entries:
                return None
            expires_at, value = user_entries[variant]
            if expires_at <= self._clock():
                del user_entries[variant]
                return None
            return value

    def set(self, user_id, value, variant=''):
        with self._lock:
            self._entries.setdefault(user_id, {})[variant] = (
                self._clock() + self.ttl_seconds,
                value,
            )

    def invalidate(self, user_id):
        """Drop every cached variant for *user_id*."""
        with self._lock:
            self._entries.pop(user_id, None)

    def clear(self):
        with self._lock:
            self._entries.clear()
