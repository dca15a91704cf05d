from __future__ import annotations

from dataclasses import dataclass, asdict
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional
import json


@dataclass
class SessionEvent:
    ts: str
    kind: str
    data: Dict[str, Any]


class SessionLogger:
    """In-memory log of a CLI session.

    Records each handled command (device, mode, line, validity, warnings) and
    anything else the caller wants to keep. Optionally saved to a JSON file.
    """

    def __init__(self, max_events: int = 5000):
        self.max_events = max_events
        self.events: List[SessionEvent] = []

    def _now(self) -> str:
        return datetime.now(timezone.utc).isoformat()

    def add(self, kind: str, **data: Any) -> None:
        ev = SessionEvent(ts=self._now(), kind=str(kind), data=dict(data))
        self.events.append(ev)
        if len(self.events) > self.max_events:
            # keep the newest events
            self.events = self.events[-self.max_events :]

    def command(
        self,
        device: Optional[str],
        mode: str,
        line: str,
        valid: bool,
        prompt: str = "",
        warnings: Optional[List[str]] = None,
    ) -> None:
        self.add(
            "command",
            device=device,
            mode=mode,
            line=line,
            valid=bool(valid),
            prompt=prompt,
            warnings=list(warnings or []),
        )

    def commands(self, device: Optional[str] = None) -> List[str]:
        """Command lines in order, optionally for one device only."""
        out: List[str] = []
        for e in self.events:
            if e.kind != "command":
                continue
            if device is not None and e.data.get("device") != device:
                continue
            out.append(str(e.data.get("line", "")))
        return out

    def clear(self) -> None:
        self.events.clear()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "schema": "labsim-session-log/v1",
            "eventCount": len(self.events),
            "events": [asdict(e) for e in self.events],
        }

    def save_json(self, path: str) -> None:
        with open(path, "w", encoding="utf-8") as f:
            json.dump(self.to_dict(), f, indent=2, ensure_ascii=False)
