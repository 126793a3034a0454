"""
Hybrid Logical Clock (HLC) for ordering changes across device shards.

Wall-clock milliseconds plus a logical counter plus the issuing device id,
so two shards that edit the same row at the same instant still agree on a
single winner. Format: "{wall_ms}:{counter:04d}:{node_id}"
"""

import threading
import time
from dataclasses import dataclass
from typing import Callable, Optional, Union


@dataclass(frozen=True, order=True)
class HLCTimestamp:
    # Field order is the comparison order: wall time, then counter, then node.
    wall_ms: int
    counter: int
    node_id: str

    def __str__(self) -> str:
        return f"{self.wall_ms}:{self.counter:04d}:{self.node_id}"

    @classmethod
    def from_string(cls, s: str) -> "HLCTimestamp":
        parts = s.split(":", 2)
        if len(parts) != 3:
            raise ValueError(f"Invalid HLC timestamp: {s}")
        try:
            return cls(wall_ms=int(parts[0]), counter=int(parts[1]), node_id=parts[2])
        except ValueError:
            raise ValueError(f"Invalid HLC timestamp: {s}") from None


def parse_hlc(value: Union[str, HLCTimestamp, None]) -> Optional[HLCTimestamp]:
    if value is None or isinstance(value, HLCTimestamp):
        return value
    return HLCTimestamp.from_string(value)


def is_newer(candidate: Union[str, HLCTimestamp], current: Union[str, HLCTimestamp, None]) -> bool:
    """Last-writer-wins test: strictly newer than the version already stored."""
    current_ts = parse_hlc(current)
    if current_ts is None:
        return True
    return parse_hlc(candidate) > current_ts


class HybridLogicalClock:
    """Thread-safe HLC. One instance is shared by every shard a process writes."""

    def __init__(self, node_id: str, physical_ms: Optional[Callable[[], int]] = None):
        self.node_id = node_id
        self._physical = physical_ms or (lambda: int(time.time() * 1000))
        self._lock = threading.Lock()
        self._last_wall_ms = 0
        self._counter = 0

    def _stamp(self, node_id: Optional[str]) -> HLCTimestamp:
        return HLCTimestamp(
            wall_ms=self._last_wall_ms,
            counter=self._counter,
            node_id=node_id or self.node_id,
        )

    def now(self, node_id: Optional[str] = None) -> HLCTimestamp:
        """Timestamp for a local event, optionally attributed to a specific device."""
        with self._lock:
            phys = self._physical()
            if phys > self._last_wall_ms:
                self._last_wall_ms = phys
                self._counter = 0
            else:
                self._counter += 1
            return self._stamp(node_id)

    def receive(self, remote: Union[str, HLCTimestamp]) -> HLCTimestamp:
        """Merge a remote timestamp so later local events sort after it."""
        remote = parse_hlc(remote)
        with self._lock:
            phys = self._physical()
            if phys > self._last_wall_ms and phys > remote.wall_ms:
                self._last_wall_ms = phys
                self._counter = 0
            elif remote.wall_ms > self._last_wall_ms:
                self._last_wall_ms = remote.wall_ms
                self._counter = remote.counter + 1
            elif self._last_wall_ms == remote.wall_ms:
                self._counter = max(self._counter, remote.counter) + 1
            else:
                self._counter += 1
            return self._stamp(None)
