from __future__ import annotations

import re


# Role-switch markers used by common chat templates; stripped to blunt prompt injection.
_ROLE_MARKERS = re.compile(
    r"\[INST\]|\[/INST\]|<<SYS>>|<</SYS>>|<\|im_start\|>|<\|im_end\|>|system:|assistant:|human:|user:",
    re.IGNORECASE,
)
_JSON_JOIN = re.compile(r"}\s*{")
_EXCESS_NEWLINES = re.compile(r"\n{4,}")
_CONTROL_CHARS = re.compile(r"[\x00-\x08\x0B\x0C\x0E-\x1F\x7F]")


def sanitize_user_input(value: str | None) -> str:
    if not value:
        return ""
    cleaned = _ROLE_MARKERS.sub("", value)
    cleaned = _JSON_JOIN.sub("} {", cleaned)
    cleaned = _EXCESS_NEWLINES.sub("\n\n\n", cleaned)
    cleaned = _CONTROL_CHARS.sub("", cleaned)
    return cleaned.strip()


def session_title(message: str, limit: int = 50) -> str:
    if len(message) <= limit:
        return message
    return message[:limit] + "..."
