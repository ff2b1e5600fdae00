import json
import os
import sys
from datetime import datetime, timezone

_LEVELS = {"debug": 10, "info": 20, "warning": 30, "error": 40}


def _threshold() -> int:
    raw = (os.getenv("POS_LOG_LEVEL") or "info").strip().lower()
    return _LEVELS.get(raw, 20)


def json_log(level: str, event: str, **fields):
    if _LEVELS.get(level, 20) < _threshold():
        return
    rec = {"ts": datetime.now(timezone.utc).isoformat(), "level": level, "event": event, **fields}
    print(json.dumps(rec, default=str), file=sys.stderr)
