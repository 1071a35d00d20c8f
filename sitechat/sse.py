import json
from typing import Any, Dict


def format_sse(event: Dict[str, Any], event_type: str = "message") -> str:
    payload = json.dumps(event, ensure_ascii=False)
    return f"event: {event_type}\ndata: {payload}\n\n"
