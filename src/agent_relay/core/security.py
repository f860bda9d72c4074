"""Environment whitelisting and output redaction for executor processes."""

from __future__ import annotations

import fnmatch
import os
import re
from typing import Mapping, Optional, Sequence

SAFE_ENV_KEYS = (
    # shell
    "PATH",
    "HOME",
    "USER",
    "LOGNAME",
    "USERNAME",
    "SHELL",
    # terminal
    "TERM",
    "COLORTERM",
    "COLUMNS",
    "LINES",
    # locale
    "LANG",
    "LANGUAGE",
    "LC_ALL",
    "LC_CTYPE",
    "LC_MESSAGES",
    "LC_COLLATE",
    "LC_NUMERIC",
    "LC_TIME",
    "LC_MONETARY",
    "TZ",
    # node runtime
    "NODE_ENV",
    "NODE_PATH",
    "NODE_VERSION",
    "NVM_DIR",
    "NVM_BIN",
    "NVM_INC",
    # temp dirs
    "TMPDIR",
    "TEMP",
    "TMP",
    # git identity
    "GIT_AUTHOR_NAME",
    "GIT_AUTHOR_EMAIL",
    "GIT_COMMITTER_NAME",
    "GIT_COMMITTER_EMAIL",
    "GIT_EDITOR",
    "PUPPETEER_CACHE_DIR",
    "DISPLAY",
)

# Set by the executor itself; must not leak into nested invocations.
NESTED_SESSION_MARKERS = ("CLAUDECODE",)

SECRET_PATTERNS: tuple[tuple[str, re.Pattern[str]], ...] = (
    ("Anthropic API key", re.compile(r"sk-ant-[A-Za-z0-9_-]{40,}")),
    ("OpenAI API key", re.compile(r"sk-(?:proj-)?[A-Za-z0-9_-]{20,}")),
    ("Stripe secret key", re.compile(r"sk_(?:live|test)_[A-Za-z0-9]{20,}")),
    ("Stripe publishable key", re.compile(r"pk_(?:live|test)_[A-Za-z0-9]{20,}")),
    ("hex API key", re.compile(r"\b[a-f0-9]{32}\b")),
    ("Bearer token", re.compile(r"Bearer\s+[A-Za-z0-9\-._~+/]{20,}", re.IGNORECASE)),
    (
        "JWT token",
        re.compile(
            r"eyJ[A-Za-z0-9+/=]{10,}\.[A-Za-z0-9+/=]{10,}\.[A-Za-z0-9+/=_-]{10,}"
        ),
    ),
    (
        "credential value",
        re.compile(
            r"(?:password|passwd|secret|api[_-]?key|token|credential)\s*[=:]\s*"
            r"['\"]?[A-Za-z0-9+/=_\-!@#$%^&*]{16,}['\"]?",
            re.IGNORECASE,
        ),
    ),
    (
        "app password",
        re.compile(r"\b[a-z]{4}\s[a-z]{4}\s[a-z]{4}\s[a-z]{4}\b", re.IGNORECASE),
    ),
    ("Google OAuth token", re.compile(r"ya29\.[A-Za-z0-9_-]{20,}")),
)


def select_passthrough_env(
    patterns: Sequence[str],
    *,
    source_env: Optional[Mapping[str, str]] = None,
) -> dict[str, str]:
    src: Mapping[str, str] = source_env if source_env is not None else os.environ
    selected: dict[str, str] = {}
    normalized_patterns = [str(p).strip() for p in patterns if str(p).strip()]
    if not normalized_patterns:
        return selected
    for key in sorted(src.keys()):
        if not isinstance(key, str):
            continue
        value = src.get(key)
        if value is None:
            continue
        for pattern in normalized_patterns:
            if fnmatch.fnmatchcase(key, pattern):
                selected[key] = value
                break
    return selected


def build_executor_env(
    *,
    source_env: Optional[Mapping[str, str]] = None,
    extra_patterns: Sequence[str] = (),
) -> dict[str, str]:
    """Return the whitelisted environment handed to executor subprocesses."""
    env = select_passthrough_env(
        [*SAFE_ENV_KEYS, *extra_patterns], source_env=source_env
    )
    env["TERM"] = "dumb"
    for key in NESTED_SESSION_MARKERS:
        env.pop(key, None)
    return env


def redact_sensitive_output(text: str) -> tuple[str, list[str]]:
    """Replace credential-looking substrings with ``[REDACTED: <label>]``.

    Returns the filtered text and the labels of every pattern that matched.
    """
    labels: list[str] = []
    result = text or ""
    for label, pattern in SECRET_PATTERNS:
        result, count = pattern.subn(f"[REDACTED: {label}]", result)
        if count:
            labels.append(label)
    return result, labels


__all__ = [
    "SAFE_ENV_KEYS",
    "build_executor_env",
    "redact_sensitive_output",
    "select_passthrough_env",
]
