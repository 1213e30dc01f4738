# Copyright (c) 2025 CoReason, Inc.
#
# This software is proprietary and dual-licensed.
# Licensed under the Prosperity Public License 3.0 (the "License").
# A copy of the license is available at https://prosperitylicense.com/versions/3.0.0
# For details, see the LICENSE file.
# Commercial use beyond a 30-day trial requires a separate license.
#
# Source Code: https://github.com/CoReason-AI/coreason_dataguard

"""
Rolling-window rate limiting with escalation to temporary and persistent blocks.

Per-key window state lives behind the `RateLimitStore` interface so that a
process-local store can be swapped for a shared one without touching call
sites. Persistent blocks are read from the audit sink into a cache that is
refreshed at most every few seconds, and are checked before any window logic.
"""

import math
import threading
import time
from dataclasses import replace
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Mapping, NamedTuple, Optional, Protocol, Tuple, Union

from cachetools import TLRUCache

from coreason_dataguard.audit import AuditSink
from coreason_dataguard.exceptions import IdentityBlocked, PersistenceUnavailable, RateLimitExceeded
from coreason_dataguard.models import (
    RATE_LIMIT_PRESETS,
    BlockedIdentity,
    RateLimitDecision,
    RateLimitEvent,
    RateLimitPreset,
    RateLimitState,
    RateLimitStatus,
    utc_now,
)
from coreason_dataguard.utils.logger import logger


class WindowOutcome(NamedTuple):
    """Snapshot returned by an atomic check-and-increment."""

    state: RateLimitState
    allowed: bool
    newly_blocked: bool


class RateLimitStore(Protocol):
    """Storage for per-key window state. `increment_and_check` must be atomic per key."""

    def get(self, key: str) -> Optional[RateLimitState]: ...

    def increment_and_check(self, key: str, preset: RateLimitPreset) -> WindowOutcome: ...

    def block(self, key: str, until: float) -> None: ...

    def reset_prefix(self, prefix: str) -> int: ...

    def stats(self) -> Dict[str, int]: ...


def _entry_expiry(_key: str, value: Tuple[RateLimitState, float], _now: float) -> float:
    state, window_seconds = value
    return max(state.window_start + window_seconds, state.blocked_until or 0.0)


class InMemoryRateLimitStore:
    """
    Process-local store backed by a size-bounded TLRU cache.

    Each entry expires at the later of its window end and its block end, so
    idle keys are garbage-collected lazily on access. A single lock makes
    check-and-increment indivisible; nothing inside it performs I/O.
    """

    def __init__(self, max_keys: int = 100_000, timer: Callable[[], float] = time.time) -> None:
        """
        Args:
            max_keys: Upper bound on tracked keys. The soonest-expiring entry is evicted first.
            timer: Clock returning epoch seconds. Injectable for tests.
        """
        self._timer = timer
        self._cache: TLRUCache = TLRUCache(maxsize=max_keys, ttu=_entry_expiry, timer=timer)
        self._lock = threading.Lock()

    def get(self, key: str) -> Optional[RateLimitState]:
        with self._lock:
            entry = self._cache.get(key)
            return replace(entry[0]) if entry is not None else None

    def increment_and_check(self, key: str, preset: RateLimitPreset) -> WindowOutcome:
        window_seconds = preset.window_ms / 1000
        with self._lock:
            now = self._timer()
            entry = self._cache.get(key)
            state: Optional[RateLimitState] = entry[0] if entry is not None else None

            if state is not None and state.blocked_until is not None:
                if now < state.blocked_until:
                    return WindowOutcome(replace(state), allowed=False, newly_blocked=False)
                state = None

            if state is None or now - state.window_start > window_seconds:
                state = RateLimitState(window_start=now, count=1)
                self._cache[key] = (state, window_seconds)
                return WindowOutcome(replace(state), allowed=True, newly_blocked=False)

            state.count += 1
            if state.count > preset.max_requests:
                state.blocked_until = now + preset.block_duration_ms / 1000
                # Re-insert so the entry outlives the block
                self._cache[key] = (state, window_seconds)
                return WindowOutcome(replace(state), allowed=False, newly_blocked=True)
            return WindowOutcome(replace(state), allowed=True, newly_blocked=False)

    def block(self, key: str, until: float) -> None:
        with self._lock:
            entry = self._cache.get(key)
            if entry is not None:
                state, window_seconds = entry
            else:
                state, window_seconds = RateLimitState(window_start=self._timer()), 0.0
            state.blocked_until = until
            self._cache[key] = (state, window_seconds)

    def reset_prefix(self, prefix: str) -> int:
        with self._lock:
            keys = [key for key in list(self._cache.keys()) if key.startswith(prefix)]
            for key in keys:
                self._cache.pop(key, None)
            return len(keys)

    def stats(self) -> Dict[str, int]:
        with self._lock:
            self._cache.expire()
            now = self._timer()
            blocked = sum(
                1 for state, _ in self._cache.values() if state.blocked_until is not None and now < state.blocked_until
            )
            return {"tracked_keys": len(self._cache), "blocked_keys": blocked}


class RateLimiter:
    """
    Preset-agnostic allow/deny decisions plus administrative blocking.

    Attributes:
        store: Window state storage.
        presets: Named configurations a route may select.
    """

    def __init__(
        self,
        store: Optional[RateLimitStore] = None,
        presets: Optional[Mapping[str, RateLimitPreset]] = None,
        sink: Optional[AuditSink] = None,
        timer: Callable[[], float] = time.time,
        block_cache_refresh_seconds: float = 5.0,
    ) -> None:
        self._timer = timer
        self.store: RateLimitStore = store if store is not None else InMemoryRateLimitStore(timer=timer)
        self.presets: Dict[str, RateLimitPreset] = dict(presets if presets is not None else RATE_LIMIT_PRESETS)
        self.sink = sink
        self.block_cache_refresh_seconds = block_cache_refresh_seconds
        self._blocks: Dict[str, BlockedIdentity] = {}
        self._blocks_loaded_at: Optional[float] = None
        self._blocks_lock = threading.Lock()

    @staticmethod
    def make_key(ip: str, path: str) -> str:
        return f"{ip}:{path}"

    def get_preset(self, preset: Union[str, RateLimitPreset]) -> RateLimitPreset:
        if isinstance(preset, RateLimitPreset):
            return preset
        try:
            return self.presets[preset]
        except KeyError:
            raise ValueError(f"Unknown rate limit preset: {preset}") from None

    def _now_dt(self) -> datetime:
        return datetime.fromtimestamp(self._timer(), tz=timezone.utc)

    # --- persistent blocks ---

    def load_blocks(self) -> int:
        """
        Reloads the persistent block cache from the audit sink.

        If the sink is unavailable the current cache is kept (empty at
        startup) and requests fall back to rolling windows only.

        Returns:
            Number of blocks in the cache after the load.
        """
        if self.sink is None:
            self._blocks_loaded_at = self._timer()
            return len(self._blocks)
        try:
            identities = self.sink.load_active_blocks()
        except PersistenceUnavailable as e:
            logger.warning(f"Could not load persistent blocks, relying on rolling windows only: {e}")
            with self._blocks_lock:
                self._blocks_loaded_at = self._timer()
                return len(self._blocks)

        with self._blocks_lock:
            self._blocks = {identity.ip: identity for identity in identities}
            self._blocks_loaded_at = self._timer()
            return len(self._blocks)

    def _refresh_blocks_if_stale(self) -> None:
        loaded_at = self._blocks_loaded_at
        if loaded_at is None or self._timer() - loaded_at >= self.block_cache_refresh_seconds:
            self.load_blocks()

    def get_block(self, ip: str) -> Optional[BlockedIdentity]:
        """Active persistent block for the ip, if any."""
        self._refresh_blocks_if_stale()
        identity = self._blocks.get(ip)
        if identity is not None and identity.is_active(self._now_dt()):
            return identity
        return None

    def is_blocked(self, ip: str) -> bool:
        return self.get_block(ip) is not None

    def block(
        self,
        ip: str,
        reason: str,
        blocked_by: str = "admin",
        expires_at: Optional[datetime] = None,
    ) -> BlockedIdentity:
        """
        Adds or replaces a persistent block.

        The write goes to the sink first; a sink failure propagates since
        an administrative block that does not survive a restart is not one.
        """
        identity = BlockedIdentity(
            ip=ip, reason=reason, blocked_by=blocked_by, blocked_at=self._now_dt(), expires_at=expires_at
        )
        if self.sink is not None:
            self.sink.upsert_block(identity)
        with self._blocks_lock:
            self._blocks[ip] = identity
        logger.warning(f"Persistently blocked {ip} by {blocked_by}: {reason}")
        return identity

    def unblock(self, ip: str) -> bool:
        """
        Lifts a persistent block and clears every rolling window of the ip.

        Returns:
            True if a persistent block or window state was removed.
        """
        deactivated = self.sink.deactivate_block(ip) if self.sink is not None else False
        with self._blocks_lock:
            cached = self._blocks.pop(ip, None) is not None
        # Paths always start with "/", which keeps ipv6 prefixes from overlapping
        cleared = self.store.reset_prefix(f"{ip}:/")
        logger.info(f"Unblocked {ip} (persistent={deactivated or cached}, windows cleared={cleared})")
        return deactivated or cached or cleared > 0

    def list_blocks(self) -> List[BlockedIdentity]:
        self._refresh_blocks_if_stale()
        now = self._now_dt()
        return [identity for identity in self._blocks.values() if identity.is_active(now)]

    # --- decisions ---

    def check(
        self,
        key: str,
        preset: Union[str, RateLimitPreset] = "standard",
        ip: Optional[str] = None,
        endpoint: Optional[str] = None,
    ) -> RateLimitDecision:
        """
        Counts one request against the key and decides whether it may proceed.

        Args:
            key: Window key, usually `make_key(ip, path)`.
            preset: Preset name or instance.
            ip: Caller ip, checked against persistent blocks first.
            endpoint: Route recorded on block events.

        Returns:
            The decision, including quota metadata for response headers.
        """
        active = self.get_preset(preset)

        if ip is not None:
            identity = self.get_block(ip)
            if identity is not None:
                retry_after = None
                reset_at = 0
                if identity.expires_at is not None:
                    reset_at = int(identity.expires_at.timestamp())
                    retry_after = max(1, math.ceil(identity.expires_at.timestamp() - self._timer()))
                return RateLimitDecision(
                    allowed=False,
                    key=key,
                    status=RateLimitStatus.BLOCKED,
                    limit=active.max_requests,
                    remaining=0,
                    reset_at=reset_at,
                    retry_after_seconds=retry_after,
                )

        outcome = self.store.increment_and_check(key, active)
        state = outcome.state

        if not outcome.allowed:
            blocked_until = state.blocked_until or self._timer()
            if outcome.newly_blocked:
                self._on_window_block(key, ip, endpoint, state)
            return RateLimitDecision(
                allowed=False,
                key=key,
                status=RateLimitStatus.BLOCKED,
                limit=active.max_requests,
                remaining=0,
                reset_at=math.ceil(blocked_until),
                retry_after_seconds=max(1, math.ceil(blocked_until - self._timer())),
            )

        return RateLimitDecision(
            allowed=True,
            key=key,
            status=RateLimitStatus.OPEN if state.count == 1 else RateLimitStatus.THROTTLED,
            limit=active.max_requests,
            remaining=max(0, active.max_requests - state.count),
            reset_at=math.ceil(state.window_start + active.window_ms / 1000),
        )

    def enforce(
        self,
        key: str,
        preset: Union[str, RateLimitPreset] = "standard",
        ip: Optional[str] = None,
        endpoint: Optional[str] = None,
    ) -> RateLimitDecision:
        """
        Like `check`, but raises on denial.

        Raises:
            IdentityBlocked: The ip is on the persistent block list.
            RateLimitExceeded: The window quota is exhausted or the key is in a block period.
        """
        decision = self.check(key, preset, ip=ip, endpoint=endpoint)
        if decision.allowed:
            return decision
        if ip is not None and self.is_blocked(ip):
            raise IdentityBlocked(ip, decision)
        raise RateLimitExceeded(decision)

    def _on_window_block(
        self, key: str, ip: Optional[str], endpoint: Optional[str], state: RateLimitState
    ) -> None:
        blocked_until = datetime.fromtimestamp(state.blocked_until or self._timer(), tz=timezone.utc)
        logger.warning(f"Rate limit exceeded for {key}; blocked until {blocked_until.isoformat()}")
        if self.sink is None:
            return
        event = RateLimitEvent(
            ip=ip or key.split(":/", 1)[0],
            endpoint=endpoint or "",
            request_count=state.count,
            blocked=True,
            blocked_until=blocked_until,
            created_at=utc_now(),
        )
        self.sink.defer(self.sink.record_rate_limit_event, event)

    def stats(self) -> Dict[str, Any]:
        """Window counters from the store merged with 24h aggregates from the sink."""
        result: Dict[str, Any] = dict(self.store.stats())
        persisted: Dict[str, Any] = {"events_24h": 0, "blocked_events_24h": 0, "top_endpoints": []}
        if self.sink is not None:
            try:
                persisted = self.sink.rate_limit_stats()
            except PersistenceUnavailable as e:
                logger.warning(f"Rate limit statistics unavailable: {e}")
        result.update(persisted)
        result["blocked_identities"] = self.list_blocks()
        return result
