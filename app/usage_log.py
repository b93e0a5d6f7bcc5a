import json
import logging
import os
import threading
import time
from collections import defaultdict
from datetime import datetime
from typing import Any, Dict, Optional

USAGE_LOG_DIR = os.getenv("REFTRACK_USAGE_LOG_DIR", os.path.join("data", "usage_logs")).strip()

logger = logging.getLogger("referraltracker.usage")


class UsageLogger:
    """Append-only JSONL audit trail, one file per local day."""

    def __init__(self, log_dir: Optional[str] = None) -> None:
        self.lock = threading.Lock()
        self.log_dir = log_dir or USAGE_LOG_DIR

    def _path(self, day: str) -> str:
        return os.path.join(self.log_dir, f"usage_{day}.jsonl")

    def log_event(self, event_type: str, status: int = 200, meta: Optional[Dict[str, Any]] = None) -> None:
        day = datetime.now().strftime("%Y-%m-%d")
        entry = {
            "ts": time.time(),
            "type": event_type,
            "status": status,
            "meta": meta or {},
        }
        with self.lock:
            try:
                os.makedirs(self.log_dir, exist_ok=True)
                with open(self._path(day), "a", encoding="utf-8") as f:
                    f.write(json.dumps(entry, default=str) + "\n")
            except OSError as e:
                logger.warning("usage.write_failed type=%s: %s", event_type, e)

    def summarize_day(self, day: Optional[str] = None) -> Dict[str, int]:
        target = day or datetime.now().strftime("%Y-%m-%d")
        counts: Dict[str, int] = defaultdict(int)
        path = self._path(target)
        if os.path.exists(path):
            with self.lock, open(path, "r", encoding="utf-8") as f:
                for raw in f:
                    raw = raw.strip()
                    if not raw:
                        continue
                    try:
                        entry = json.loads(raw)
                    except ValueError:
                        continue
                    etype = entry.get("type") or "unknown"
                    counts[f"events_{etype}"] += 1
                    if int(entry.get("status", 0) or 0) >= 400:
                        counts[f"errors_{etype}"] += 1
        return dict(counts)


usage_logger = UsageLogger()
