from datetime import datetime, timezone
from typing import Any


def utc_timestamp() -> str:
    return datetime.now(timezone.utc).isoformat()


def success_body(data: Any, *, timestamp: str) -> dict[str, Any]:
    return {"timestamp": timestamp, "data": data}


def failure_body(message: str, *, status: str, timestamp: str) -> dict[str, Any]:
    return {"timestamp": timestamp, "status": status, "message": message}
