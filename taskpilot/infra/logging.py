import json
import time
from typing import Any, Dict


def log_event(event: str, *, level: str = "info", **fields: Any) -> None:
    """
    Reason:
    - print() becomes chaos at scale; structured logs stay usable.
    Benefit:
    - You can filter by run_id, iteration, action, error_type, etc.
    """
    payload: Dict[str, Any] = {
        "ts": time.time(),
        "level": level,
        "event": event,
        **fields,
    }
    # default=str keeps pydantic enums / exceptions from breaking the log line
    print(json.dumps(payload, ensure_ascii=False, default=str), flush=True)
