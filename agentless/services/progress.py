"""
Per-volume transfer progress for running backups.

Transfer helpers report cumulative processed bytes; VolumeProgress keeps
recent samples to derive a smoothed rate and an ETA for logs.
"""

import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple


@dataclass
class VolumeProgress:
    """Progress tracking for a single volume backup."""
    volume: str
    bytes_total: int = 0
    bytes_processed: int = 0
    bytes_written: int = 0
    bytes_skipped: int = 0
    started_at: float = field(default_factory=time.time)
    _samples: List[Tuple[float, int]] = field(default_factory=list)  # (timestamp, bytes)

    @property
    def percent(self) -> float:
        if self.bytes_total <= 0:
            return 0.0
        return min(100.0, (self.bytes_processed / self.bytes_total) * 100)

    @property
    def elapsed(self) -> int:
        """Whole seconds since the volume transfer started."""
        return int(time.time() - self.started_at)

    @property
    def transfer_rate_bps(self) -> float:
        """Transfer rate in bytes per second over the last 10 seconds of samples."""
        now = time.time()
        recent = [(t, b) for t, b in self._samples if now - t < 10]
        if len(recent) < 2:
            recent = self._samples[-2:]
        if len(recent) < 2:
            return 0.0

        time_delta = recent[-1][0] - recent[0][0]
        bytes_delta = recent[-1][1] - recent[0][1]
        if time_delta <= 0:
            return 0.0
        return bytes_delta / time_delta

    @property
    def eta_seconds(self) -> Optional[int]:
        rate = self.transfer_rate_bps
        if rate <= 0 or self.bytes_total <= 0:
            return None
        return int(max(0, self.bytes_total - self.bytes_processed) / rate)

    def update(self, processed: int, written: int = 0, skipped: int = 0):
        """Record a cumulative progress report from the transfer helper."""
        self.bytes_processed = processed
        self.bytes_written = written
        self.bytes_skipped = skipped

        self._samples.append((time.time(), processed))
        if len(self._samples) > 20:
            self._samples = self._samples[-20:]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "volume": self.volume,
            "bytes_processed": self.bytes_processed,
            "bytes_written": self.bytes_written,
            "bytes_skipped": self.bytes_skipped,
            "bytes_total": self.bytes_total,
            "percent": round(self.percent, 1),
            "transfer_rate_bps": round(self.transfer_rate_bps),
            "eta_seconds": self.eta_seconds,
        }
