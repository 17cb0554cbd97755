"""Per-key request throttling: Firestore window counters, in-memory fallback."""

import hashlib
import re
import threading

from marketplace.repositories import rate_limit_repo

_KEY_PART_RE = re.compile(r'[^a-z0-9_.:@-]+')
MEMORY_SWEEP_INTERVAL_SECONDS = 60


def normalize_key_part(value, fallback='anon', max_len=120):
    raw = str(value or '').strip().lower()
    if not raw:
        return fallback
    safe = _KEY_PART_RE.sub('_', raw)
    return safe[:max_len] if safe else fallback


def window_counter_id(key, window_seconds, window_start):
    raw = f"{key}|{window_seconds}|{int(window_start)}".encode('utf-8')
    return hashlib.sha256(raw).hexdigest()


class RateLimiter:
    """Fixed-window limiter shared by every request handled by this process.

    Counters live in Firestore so limits hold across instances; when Firestore
    is disabled or unreachable a sliding window kept in memory takes over.
    """

    def __init__(self, *, db, firestore_module, logger, time_module, firestore_enabled=True):
        self.db = db
        self.firestore_module = firestore_module
        self.logger = logger
        self.time_module = time_module
        self.firestore_enabled = firestore_enabled
        self._events = {}
        self._expires_at = {}
        self._next_sweep_at = 0.0
        self._lock = threading.Lock()

    def check(self, key, limit, window_seconds):
        """Return ``(allowed, retry_after_seconds)``."""
        now_ts = self.time_module.time()
        result = self._check_firestore(key, limit, window_seconds, now_ts)
        if result is not None:
            return result
        return self._check_memory(key, limit, window_seconds, now_ts)

    def _check_firestore(self, key, limit, window_seconds, now_ts):
        if not self.firestore_enabled or self.db is None:
            return None
        window_start = int(now_ts // window_seconds) * int(window_seconds)
        retry_after = max(1, int((window_start + window_seconds) - now_ts))
        counter_ref = rate_limit_repo.counter_doc_ref(self.db, window_counter_id(key, window_seconds, window_start))

        @self.firestore_module.transactional
        def _txn(txn):
            snapshot = counter_ref.get(transaction=txn)
            count = 0
            if snapshot.exists:
                count = int((snapshot.to_dict() or {}).get('count', 0) or 0)
            if count >= limit:
                return False, retry_after
            txn.set(counter_ref, {
                'key': key,
                'count': count + 1,
                'window_start': window_start,
                'window_seconds': int(window_seconds),
                'updated_at': now_ts,
                'expires_at': window_start + (window_seconds * 3),
            }, merge=True)
            return True, 0

        try:
            return _txn(self.db.transaction())
        except Exception as exc:
            self.logger.warning(f"Rate limit counter unavailable, using in-memory window: {exc}")
            return None

    def _sweep_expired(self, now_ts):
        stale = [key for key, expires_at in self._expires_at.items() if expires_at <= now_ts]
        for key in stale:
            self._events.pop(key, None)
            self._expires_at.pop(key, None)
        self._next_sweep_at = now_ts + MEMORY_SWEEP_INTERVAL_SECONDS

    def _check_memory(self, key, limit, window_seconds, now_ts):
        with self._lock:
            if now_ts >= self._next_sweep_at:
                self._sweep_expired(now_ts)
            cutoff = now_ts - window_seconds
            kept = [ts for ts in self._events.get(key, []) if ts >= cutoff]
            if len(kept) >= limit:
                self._events[key] = kept
                return False, max(1, int((kept[0] + window_seconds) - now_ts))
            kept.append(now_ts)
            self._events[key] = kept
            self._expires_at[key] = now_ts + window_seconds
        return True, 0


def build_rate_limited_response(jsonify, message, retry_after):
    retry_after = int(max(1, retry_after))
    response = jsonify({'error': message, 'retry_after_seconds': retry_after})
    response.status_code = 429
    response.headers['Retry-After'] = str(retry_after)
    return response
