"""Replay guard: drop a notification already seen inside the replay window.

The in-memory guard only protects a single process. Deployments with more
than one app instance set PAYMENT_WEBHOOK_REPLAY_BACKEND = "database" so
every instance shares the WebhookReplay table and its unique key.
"""

from __future__ import annotations

import logging
import threading
import time
from collections import OrderedDict
from datetime import timedelta

from django.conf import settings
from django.db import IntegrityError, transaction
from django.utils import timezone

from .models import WebhookReplay


logger = logging.getLogger(__name__)


class MemoryReplayGuard:
    def __init__(self, window_seconds: int, max_entries: int = 10000, clock=time.monotonic):
        self.window = window_seconds
        self.max_entries = max(1, int(max_entries))
        self._clock = clock
        self._seen: OrderedDict[str, float] = OrderedDict()
        self._lock = threading.Lock()

    def __len__(self):
        return len(self._seen)

    def _prune_locked(self, now: float) -> int:
        removed = 0
        # Entries are kept in claim order, so the oldest are at the front.
        while self._seen:
            key, seen_at = next(iter(self._seen.items()))
            if now - seen_at < self.window:
                break
            del self._seen[key]
            removed += 1
        return removed

    def prune(self) -> int:
        with self._lock:
            return self._prune_locked(self._clock())

    def claim(self, key: str) -> bool:
        """Return True if the key is new (or its window passed), False for a duplicate."""
        with self._lock:
            now = self._clock()
            self._prune_locked(now)
            if key in self._seen:
                return False
            while len(self._seen) >= self.max_entries:
                self._seen.popitem(last=False)
            self._seen[key] = now
            return True

    def release(self, key: str) -> None:
        with self._lock:
            self._seen.pop(key, None)


class DatabaseReplayGuard:
    # Shared by every instance in the process: prune at most once per window.
    _last_prune = 0.0

    def __init__(self, window_seconds: int):
        self.window = window_seconds

    def _cutoff(self, now):
        return now - timedelta(seconds=self.window)

    def prune(self) -> int:
        deleted, _ = WebhookReplay.objects.filter(seen_at__lt=self._cutoff(timezone.now())).delete()
        return deleted

    def claim(self, key: str) -> bool:
        now = timezone.now()
        if time.monotonic() - DatabaseReplayGuard._last_prune > self.window:
            DatabaseReplayGuard._last_prune = time.monotonic()
            self.prune()

        try:
            with transaction.atomic():
                WebhookReplay.objects.create(key=key, seen_at=now)
            return True
        except IntegrityError:
            pass

        # Row exists: take it over only if its window has passed. The filter on
        # the old timestamp makes the takeover a conditional update.
        row = WebhookReplay.objects.filter(key=key).first()
        if row is None:
            return self.claim(key)
        if row.seen_at >= self._cutoff(now):
            return False
        updated = WebhookReplay.objects.filter(pk=row.pk, seen_at=row.seen_at).update(seen_at=now)
        return updated == 1

    def release(self, key: str) -> None:
        WebhookReplay.objects.filter(key=key).delete()


_memory_guard: MemoryReplayGuard | None = None
_memory_guard_lock = threading.Lock()


def get_replay_guard():
    global _memory_guard

    window = int(getattr(settings, "PAYMENT_WEBHOOK_REPLAY_WINDOW_SECONDS", 300))
    backend = str(getattr(settings, "PAYMENT_WEBHOOK_REPLAY_BACKEND", "memory") or "memory").lower()
    if backend == "database":
        return DatabaseReplayGuard(window)
    if backend != "memory":
        logger.warning("Unknown replay guard backend %r, using memory", backend)

    with _memory_guard_lock:
        if _memory_guard is None or _memory_guard.window != window:
            _memory_guard = MemoryReplayGuard(
                window,
                max_entries=int(getattr(settings, "PAYMENT_WEBHOOK_REPLAY_MAX_ENTRIES", 10000)),
            )
        return _memory_guard


def reset_replay_guard() -> None:
    global _memory_guard
    with _memory_guard_lock:
        _memory_guard = None
