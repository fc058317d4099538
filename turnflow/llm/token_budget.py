from __future__ import annotations

import json
from typing import Any


def estimate_tokens(text: str) -> int:
    return (len(text) + 3) // 4


def estimate_message_tokens(entry: dict[str, Any]) -> int:
    return estimate_tokens(json.dumps(entry, ensure_ascii=True, default=str))


def history_budget(max_context_tokens: int, response_headroom_tokens: int) -> int:
    return max(max_context_tokens - response_headroom_tokens, 0)
