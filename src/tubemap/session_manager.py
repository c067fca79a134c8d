"""Registry of live call sessions.

Sessions are spread over independently locked shards so lookups for
unrelated calls never contend on one lock. Each entry can carry
attachments (the realtime handler hangs its streaming components here);
anything with a close() method is closed when the session is disposed,
whether by end() or by the stale-session sweep.
"""

import asyncio
import logging
import threading
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Optional

from tubemap.session import CallSession
from tubemap.state_machine import CallScriptStateMachine

logger = logging.getLogger(__name__)

DEFAULT_SHARDS = 16
DEFAULT_MAX_AGE_S = 30 * 60
DEFAULT_SWEEP_INTERVAL_S = 5 * 60


class SessionNotFound(KeyError):
    def __init__(self, call_id: str):
        super().__init__(call_id)
        self.call_id = call_id

    def __str__(self) -> str:
        return f"No session for call {self.call_id}"


@dataclass
class SessionEntry:
    machine: CallScriptStateMachine
    phone: str
    created_at: float
    last_activity_at: float
    attachments: dict[str, Any] = field(default_factory=dict)

    def summary(self, now: float) -> dict:
        state = self.machine.get_state()
        return {
            "call_id": state.call_id,
            "phone": self.phone,
            "station": state.current_station.value,
            "segment": state.segment.value if state.segment else None,
            "segment_confidence": state.segment_confidence,
            "recommended_destination": (
                state.recommended_destination.value if state.recommended_destination else None
            ),
            "idle_seconds": round(now - self.last_activity_at, 1),
        }


class _Shard:
    __slots__ = ("lock", "entries")

    def __init__(self):
        self.lock = threading.Lock()
        self.entries: dict[str, SessionEntry] = {}


class SessionManager:
    def __init__(
        self,
        shards: int = DEFAULT_SHARDS,
        clock: Callable[[], float] = time.monotonic,
        machine_clock: Callable[[], float] = time.time,
    ):
        if shards < 1:
            raise ValueError("shards must be >= 1")
        self._shards = [_Shard() for _ in range(shards)]
        self._clock = clock
        self._machine_clock = machine_clock
        self._dispose_callbacks: list[Callable[[str, CallSession], Any]] = []
        self._sweeper: Optional[asyncio.Task] = None

    def _shard(self, call_id: str) -> _Shard:
        return self._shards[hash(call_id) % len(self._shards)]

    # --- Lifecycle ---

    def create(self, call_id: str, phone: str = "") -> CallScriptStateMachine:
        """Create the session for call_id, or return the existing one."""
        return self.create_entry(call_id, phone).machine

    def create_entry(self, call_id: str, phone: str = "") -> SessionEntry:
        shard = self._shard(call_id)
        now = self._clock()
        with shard.lock:
            entry = shard.entries.get(call_id)
            if entry is not None:
                entry.last_activity_at = now
                return entry
            entry = SessionEntry(
                machine=CallScriptStateMachine(call_id, phone=phone, clock=self._machine_clock),
                phone=phone,
                created_at=now,
                last_activity_at=now,
            )
            shard.entries[call_id] = entry
        logger.info("[%s] Session created (phone=%s)", call_id, phone or "unknown")
        return entry

    def get_or_create(self, call_id: str, phone: str = "") -> CallScriptStateMachine:
        return self.create(call_id, phone)

    def get(self, call_id: str) -> CallScriptStateMachine:
        return self.get_entry(call_id).machine

    def get_entry(self, call_id: str) -> SessionEntry:
        shard = self._shard(call_id)
        with shard.lock:
            entry = shard.entries.get(call_id)
        if entry is None:
            raise SessionNotFound(call_id)
        return entry

    def find(self, call_id: str) -> Optional[CallScriptStateMachine]:
        shard = self._shard(call_id)
        with shard.lock:
            entry = shard.entries.get(call_id)
        return entry.machine if entry else None

    def has(self, call_id: str) -> bool:
        shard = self._shard(call_id)
        with shard.lock:
            return call_id in shard.entries

    def touch(self, call_id: str) -> None:
        shard = self._shard(call_id)
        with shard.lock:
            entry = shard.entries.get(call_id)
            if entry is None:
                raise SessionNotFound(call_id)
            entry.last_activity_at = self._clock()

    def end(self, call_id: str) -> Optional[CallSession]:
        """Remove and dispose the session. Returns its final snapshot, or None if unknown."""
        shard = self._shard(call_id)
        with shard.lock:
            entry = shard.entries.pop(call_id, None)
        if entry is None:
            return None
        final = entry.machine.get_state()
        self._dispose(call_id, entry, final)
        logger.info(
            "[%s] Session ended at %s (destination=%s)",
            call_id,
            final.current_station.value,
            final.final_destination.value if final.final_destination else None,
        )
        return final

    def clear(self) -> None:
        for call_id in self.active_ids():
            self.end(call_id)

    # --- Queries ---

    def active_ids(self) -> list[str]:
        ids = []
        for shard in self._shards:
            with shard.lock:
                ids.extend(shard.entries.keys())
        return ids

    def count(self) -> int:
        total = 0
        for shard in self._shards:
            with shard.lock:
                total += len(shard.entries)
        return total

    def find_by_phone(self, phone: str) -> Optional[CallScriptStateMachine]:
        for shard in self._shards:
            with shard.lock:
                for entry in shard.entries.values():
                    if entry.phone == phone:
                        return entry.machine
        return None

    def summaries(self) -> list[dict]:
        now = self._clock()
        result = []
        for shard in self._shards:
            with shard.lock:
                entries = list(shard.entries.values())
            result.extend(e.summary(now) for e in entries)
        return result

    # --- Disposal ---

    def on_dispose(self, callback: Callable[[str, CallSession], Any]) -> None:
        self._dispose_callbacks.append(callback)

    def _dispose(self, call_id: str, entry: SessionEntry, final: CallSession) -> None:
        for name, attachment in entry.attachments.items():
            close = getattr(attachment, "close", None)
            if close is None:
                continue
            try:
                close()
            except Exception as e:
                logger.error(f"[{call_id}] Closing attachment {name} failed: {e}")
        entry.attachments.clear()
        for callback in list(self._dispose_callbacks):
            try:
                callback(call_id, final)
            except Exception as e:
                logger.error(f"[{call_id}] Dispose callback failed: {e}")

    def sweep_stale(self, max_age: float = DEFAULT_MAX_AGE_S) -> list[str]:
        """End every session idle for longer than max_age seconds."""
        cutoff = self._clock() - max_age
        stale = []
        for shard in self._shards:
            with shard.lock:
                stale.extend(
                    call_id for call_id, entry in shard.entries.items()
                    if entry.last_activity_at < cutoff
                )
        for call_id in stale:
            self.end(call_id)
        if stale:
            logger.info("Swept %d stale session(s)", len(stale))
        return stale

    def start_sweeper(
        self,
        interval: float = DEFAULT_SWEEP_INTERVAL_S,
        max_age: float = DEFAULT_MAX_AGE_S,
    ) -> asyncio.Task:
        if self._sweeper is not None and not self._sweeper.done():
            return self._sweeper
        self._sweeper = asyncio.create_task(self._sweep_loop(interval, max_age))
        return self._sweeper

    async def _sweep_loop(self, interval: float, max_age: float) -> None:
        while True:
            await asyncio.sleep(interval)
            try:
                self.sweep_stale(max_age)
            except Exception as e:
                logger.error(f"Session sweep failed: {e}")

    async def stop_sweeper(self) -> None:
        if self._sweeper is None:
            return
        self._sweeper.cancel()
        try:
            await self._sweeper
        except asyncio.CancelledError:
            pass
        self._sweeper = None
