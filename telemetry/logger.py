from __future__ import annotations

import json
import threading
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Optional, TYPE_CHECKING

if TYPE_CHECKING:
    from engine.events import EngineEvent, EventBus


def _now_iso() -> str:
    return time.strftime("%Y-%m-%dT%H:%M:%S", time.localtime())


@dataclass
class TelemetryLogger:
    """Appends engine events to a JSON-lines file."""
    path: Optional[Path] = None
    enabled: bool = True
    flush_each_write: bool = False
    rows_written: int = 0
    _started_at: float = field(default_factory=time.time)
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False)

    def init(self, path: Path) -> None:
        self.path = path
        self.path.parent.mkdir(parents=True, exist_ok=True)
        # Touch file (don't overwrite)
        self.path.touch(exist_ok=True)
        self.log("telemetry_init", file=str(self.path))

    def attach(self, bus: "EventBus") -> None:
        """Record every event published on ``bus``."""
        bus.subscribe(self.on_event)

    def on_event(self, event: "EngineEvent") -> None:
        self.log(event.type.value, **{k: v for k, v in event.to_dict().items() if k != "type"})

    def log(self, event: str, **fields: Any) -> None:
        if not self.enabled or self.path is None:
            return

        row: Dict[str, Any] = {
            "t": time.time(),
            "ts": _now_iso(),
            "uptime": round(time.time() - self._started_at, 3),
            "event": event,
            **fields,
        }

        try:
            with self._lock, self.path.open("a", encoding="utf-8") as f:
                f.write(json.dumps(row, ensure_ascii=False, default=str) + "\n")
                if self.flush_each_write:
                    f.flush()
                self.rows_written += 1
        except OSError:
            # Telemetry must never break the engine.
            return
