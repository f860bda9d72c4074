from __future__ import annotations

import dataclasses
import json
import re
from typing import Any, Optional

from .conversation_store import TokenCounts

_RESULT_LINE_RE = re.compile(r'(\{[^\n]*"type"\s*:\s*"result"[^\n]*\})\s*$')

ERROR_STDOUT_FALLBACK_CHARS = 300

# Matches executor complaints about an unusable resume token.
_STALE_SESSION_RE = re.compile(r"resum|session|no conversation found", re.IGNORECASE)


@dataclasses.dataclass(frozen=True)
class ParsedOutput:
    text: str
    session_token: Optional[str] = None
    usage: Optional[TokenCounts] = None
    structured: bool = False


def _loads_object(raw: str) -> Optional[dict[str, Any]]:
    try:
        value = json.loads(raw)
    except (TypeError, ValueError):
        return None
    return value if isinstance(value, dict) else None


def extract_result_record(stdout: str) -> Optional[dict[str, Any]]:
    """Find the trailing structured result record, tolerating leading noise."""
    if not stdout or not stdout.strip():
        return None
    match = _RESULT_LINE_RE.search(stdout)
    if match:
        record = _loads_object(match.group(1))
        if record is not None:
            return record
    record = _loads_object(stdout)
    if record is not None:
        return record
    last_line = stdout.strip().splitlines()[-1]
    return _loads_object(last_line)


def _usage_from(record: dict[str, Any]) -> Optional[TokenCounts]:
    usage = record.get("usage")
    if not isinstance(usage, dict):
        return None
    try:
        return TokenCounts(
            input=int(usage.get("input_tokens") or 0),
            output=int(usage.get("output_tokens") or 0),
        )
    except (TypeError, ValueError):
        return None


def parse_executor_output(stdout: str) -> ParsedOutput:
    record = extract_result_record(stdout)
    if record is None:
        return ParsedOutput(text=stdout or "")
    result = record.get("result")
    session_id = record.get("session_id")
    return ParsedOutput(
        text=result if isinstance(result, str) and result else (stdout or ""),
        session_token=str(session_id) if session_id else None,
        usage=_usage_from(record),
        structured=True,
    )


def extract_error_detail(stdout: str, stderr: str) -> str:
    detail = (stderr or "").strip()
    if detail:
        return detail
    if not (stdout or "").strip():
        return ""
    record = _loads_object(stdout)
    if record is not None:
        for key in ("error", "message"):
            value = record.get(key)
            if value:
                return value if isinstance(value, str) else json.dumps(value)
    return stdout[:ERROR_STDOUT_FALLBACK_CHARS]


def looks_like_stale_session(detail: str) -> bool:
    return bool(_STALE_SESSION_RE.search(detail or ""))


__all__ = [
    "ParsedOutput",
    "extract_error_detail",
    "extract_result_record",
    "looks_like_stale_session",
    "parse_executor_output",
]
