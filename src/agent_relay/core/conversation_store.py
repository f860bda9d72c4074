"""Per-conversation state routed to the local or shared backing store.

Conversations whose identifier carries the shared suffix live in the shared
document so that every cooperating instance sees the same session, working
directory, model and counters. All other conversations live in the private
per-instance store.
"""

from __future__ import annotations

import dataclasses
import logging
from collections.abc import Iterable
from pathlib import Path
from typing import Any, Callable, Optional, Union

from .exceptions import ValidationError
from .local_state import LOCAL_SECTIONS, LocalStateStore
from .logging_utils import log_event
from .shared_state import SHARED_SECTIONS, SharedStateStore

TASK_HISTORY_LIMIT = 5
PROMPT_PREVIEW_CHARS = 80
TASK_STATUSES = ("completed", "error", "stopped")

# Older snapshots used camelCase section names.
LEGACY_SECTION_ALIASES = {
    "projectDirs": "working_dirs",
    "chatModels": "models",
    "tokenCounters": "token_usage",
    "taskHistory": "task_history",
}

logger = logging.getLogger(__name__)

StateBackend = Union[LocalStateStore, SharedStateStore]


@dataclasses.dataclass(frozen=True)
class TokenCounts:
    input: int = 0
    output: int = 0


@dataclasses.dataclass
class TokenUsage:
    input: int = 0
    output: int = 0
    tasks: int = 0

    @classmethod
    def from_dict(cls, data: Any) -> "TokenUsage":
        if not isinstance(data, dict):
            return cls()
        return cls(
            input=_as_int(data.get("input")),
            output=_as_int(data.get("output")),
            tasks=_as_int(data.get("tasks")),
        )

    def to_dict(self) -> dict[str, int]:
        return {"input": self.input, "output": self.output, "tasks": self.tasks}


@dataclasses.dataclass(frozen=True)
class TaskRecord:
    prompt_preview: str
    started_at: float
    finished_at: float
    duration_seconds: int
    status: str
    tokens: Optional[TokenCounts] = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "prompt_preview": self.prompt_preview,
            "started_at": self.started_at,
            "finished_at": self.finished_at,
            "duration_seconds": self.duration_seconds,
            "status": self.status,
            "tokens": (
                {"input": self.tokens.input, "output": self.tokens.output}
                if self.tokens is not None
                else None
            ),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "TaskRecord":
        tokens_raw = data.get("tokens")
        tokens = (
            TokenCounts(
                input=_as_int(tokens_raw.get("input")),
                output=_as_int(tokens_raw.get("output")),
            )
            if isinstance(tokens_raw, dict)
            else None
        )
        return cls(
            prompt_preview=str(data.get("prompt_preview") or ""),
            started_at=float(data.get("started_at") or 0.0),
            finished_at=float(data.get("finished_at") or 0.0),
            duration_seconds=_as_int(data.get("duration_seconds")),
            status=str(data.get("status") or "completed"),
            tokens=tokens,
        )


@dataclasses.dataclass
class ConversationState:
    conversation_id: str
    shared: bool
    session_token: Optional[str] = None
    working_directory: Optional[str] = None
    model_override: Optional[str] = None
    token_usage: TokenUsage = dataclasses.field(default_factory=TokenUsage)
    task_history: list[TaskRecord] = dataclasses.field(default_factory=list)


def _as_int(value: Any) -> int:
    try:
        return max(0, int(value or 0))
    except (TypeError, ValueError):
        return 0


def make_prompt_preview(prompt: str) -> str:
    flattened = (prompt or "").replace("\r\n", " ").replace("\n", " ").replace("\r", " ")
    return flattened[:PROMPT_PREVIEW_CHARS]


def build_task_record(
    prompt: str,
    *,
    started_at: float,
    finished_at: float,
    status: str,
    tokens: Optional[TokenCounts] = None,
) -> TaskRecord:
    if status not in TASK_STATUSES:
        raise ValueError(f"Unknown task status: {status}")
    return TaskRecord(
        prompt_preview=make_prompt_preview(prompt),
        started_at=started_at,
        finished_at=finished_at,
        duration_seconds=int(round(max(0.0, finished_at - started_at))),
        status=status,
        tokens=tokens,
    )


def _set_entry(section: str, key: str, value: Any) -> Callable[[dict[str, Any]], None]:
    def mutate(state: dict[str, Any]) -> None:
        state.setdefault(section, {})[key] = value

    return mutate


def _delete_entry(section: str, key: str) -> Callable[[dict[str, Any]], None]:
    def mutate(state: dict[str, Any]) -> None:
        state.setdefault(section, {}).pop(key, None)

    return mutate


class ConversationStore:
    def __init__(
        self,
        local: LocalStateStore,
        shared: SharedStateStore,
        *,
        is_shared: Callable[[str], bool],
        default_enabled_commands: Iterable[str] = (),
    ) -> None:
        self._local = local
        self._shared = shared
        self._is_shared = is_shared
        self._default_enabled = frozenset(default_enabled_commands)

    @property
    def local(self) -> LocalStateStore:
        return self._local

    @property
    def shared(self) -> SharedStateStore:
        return self._shared

    def is_shared(self, conversation_id: str) -> bool:
        return bool(self._is_shared(conversation_id))

    def _backend(self, conversation_id: str) -> StateBackend:
        return self._shared if self.is_shared(conversation_id) else self._local

    # -- startup -----------------------------------------------------------

    def bootstrap(self) -> int:
        """Load the local snapshot and move shared entries into the shared store.

        Returns the number of entries migrated. Entries already present in the
        shared document are left untouched there.
        """
        snapshot = self._local.read_snapshot()
        sections: dict[str, dict[str, Any]] = {name: {} for name in LOCAL_SECTIONS}
        for raw_name, value in snapshot.items():
            name = LEGACY_SECTION_ALIASES.get(raw_name, raw_name)
            if name in sections and isinstance(value, dict):
                sections[name].update(value)

        local_state: dict[str, dict[str, Any]] = {name: {} for name in LOCAL_SECTIONS}
        to_migrate: dict[str, dict[str, Any]] = {}
        for name, entries in sections.items():
            for conversation_id, value in entries.items():
                if name == "working_dirs" and not Path(str(value)).is_dir():
                    log_event(
                        logger,
                        logging.INFO,
                        "state.local.working_dir_missing",
                        conversation_id=conversation_id,
                        working_dir=str(value),
                    )
                    continue
                if self.is_shared(conversation_id):
                    to_migrate.setdefault(name, {})[conversation_id] = value
                else:
                    local_state[name][conversation_id] = value

        migrated = 0
        if to_migrate:

            def merge(state: dict[str, Any]) -> int:
                count = 0
                for name, entries in to_migrate.items():
                    target = state.setdefault(name, {})
                    for conversation_id, value in entries.items():
                        if conversation_id in target:
                            continue
                        target[conversation_id] = value
                        count += 1
                        log_event(
                            logger,
                            logging.INFO,
                            "state.migrated_to_shared",
                            section=name,
                            conversation_id=conversation_id,
                        )
                return count

            migrated = self._shared.update(merge) or 0
        self._local.replace(local_state, persist=bool(to_migrate) or bool(snapshot))
        return migrated

    # -- session tokens ----------------------------------------------------

    def get_session(self, conversation_id: str) -> Optional[str]:
        value = self._backend(conversation_id).read_section("sessions", conversation_id)
        return str(value) if value else None

    def set_session(self, conversation_id: str, token: str) -> None:
        self._backend(conversation_id).update(
            _set_entry("sessions", conversation_id, token)
        )

    def clear_session(self, conversation_id: str) -> None:
        self._backend(conversation_id).update(_delete_entry("sessions", conversation_id))

    # -- working directory -------------------------------------------------

    def get_working_dir(self, conversation_id: str) -> Optional[str]:
        value = self._backend(conversation_id).read_section(
            "working_dirs", conversation_id
        )
        return str(value) if value else None

    def set_working_dir(self, conversation_id: str, directory: Union[str, Path]) -> str:
        path = Path(directory).expanduser()
        if not path.is_dir():
            raise ValidationError(f"Directory does not exist: {directory}")
        resolved = str(path.resolve())
        self._backend(conversation_id).update(
            _set_entry("working_dirs", conversation_id, resolved)
        )
        log_event(
            logger,
            logging.INFO,
            "state.working_dir.set",
            conversation_id=conversation_id,
            working_dir=resolved,
        )
        return resolved

    def clear_working_dir(self, conversation_id: str) -> None:
        self._backend(conversation_id).update(
            _delete_entry("working_dirs", conversation_id)
        )

    # -- model override ----------------------------------------------------

    def get_model(self, conversation_id: str) -> Optional[str]:
        value = self._backend(conversation_id).read_section("models", conversation_id)
        return str(value) if value else None

    def set_model(self, conversation_id: str, model: str) -> None:
        model = (model or "").strip()
        if not model:
            raise ValidationError("Model name must not be empty")
        self._backend(conversation_id).update(
            _set_entry("models", conversation_id, model)
        )
        log_event(
            logger,
            logging.INFO,
            "state.model.set",
            conversation_id=conversation_id,
            model=model,
        )

    def clear_model(self, conversation_id: str) -> None:
        self._backend(conversation_id).update(_delete_entry("models", conversation_id))

    # -- usage and history -------------------------------------------------

    def get_token_usage(self, conversation_id: str) -> TokenUsage:
        return TokenUsage.from_dict(
            self._backend(conversation_id).read_section("token_usage", conversation_id)
        )

    def add_token_usage(self, conversation_id: str, tokens: TokenCounts) -> TokenUsage:
        def mutate(state: dict[str, Any]) -> TokenUsage:
            counters = state.setdefault("token_usage", {})
            usage = TokenUsage.from_dict(counters.get(conversation_id))
            usage.input += max(0, tokens.input)
            usage.output += max(0, tokens.output)
            usage.tasks += 1
            counters[conversation_id] = usage.to_dict()
            return usage

        return self._backend(conversation_id).update(mutate) or TokenUsage()

    def reset_token_usage(self, conversation_id: str) -> None:
        self._backend(conversation_id).update(
            _delete_entry("token_usage", conversation_id)
        )

    def get_task_history(self, conversation_id: str) -> list[TaskRecord]:
        raw = self._backend(conversation_id).read_section(
            "task_history", conversation_id
        )
        if not isinstance(raw, list):
            return []
        return [TaskRecord.from_dict(item) for item in raw if isinstance(item, dict)]

    def append_task(self, conversation_id: str, record: TaskRecord) -> None:
        def mutate(state: dict[str, Any]) -> None:
            history = state.setdefault("task_history", {})
            entries = history.get(conversation_id)
            if not isinstance(entries, list):
                entries = []
            entries.append(record.to_dict())
            history[conversation_id] = entries[-TASK_HISTORY_LIMIT:]
            if record.tokens is not None:
                counters = state.setdefault("token_usage", {})
                usage = TokenUsage.from_dict(counters.get(conversation_id))
                usage.input += record.tokens.input
                usage.output += record.tokens.output
                usage.tasks += 1
                counters[conversation_id] = usage.to_dict()

        self._backend(conversation_id).update(mutate)

    # -- whole conversation ------------------------------------------------

    def get_state(self, conversation_id: str) -> ConversationState:
        snapshot = self._backend(conversation_id).read()

        def entry(section: str) -> Any:
            return snapshot.get(section, {}).get(conversation_id)

        history_raw = entry("task_history")
        return ConversationState(
            conversation_id=conversation_id,
            shared=self.is_shared(conversation_id),
            session_token=entry("sessions") or None,
            working_directory=entry("working_dirs") or None,
            model_override=entry("models") or None,
            token_usage=TokenUsage.from_dict(entry("token_usage")),
            task_history=[
                TaskRecord.from_dict(item)
                for item in (history_raw if isinstance(history_raw, list) else [])
                if isinstance(item, dict)
            ],
        )

    def reset(self, conversation_id: str) -> None:
        def mutate(state: dict[str, Any]) -> None:
            for section in LOCAL_SECTIONS:
                state.setdefault(section, {}).pop(conversation_id, None)

        self._backend(conversation_id).update(mutate)
        log_event(logger, logging.INFO, "state.reset", conversation_id=conversation_id)

    # -- gated command toggles (always shared) -----------------------------

    def enabled_commands(self, conversation_id: str) -> frozenset[str]:
        overrides = self._shared.read_section("command_overrides", conversation_id)
        enabled = set(self._default_enabled)
        if isinstance(overrides, dict):
            enabled.difference_update(overrides.get("disabled") or [])
            enabled.update(overrides.get("enabled") or [])
        return frozenset(enabled)

    def is_command_enabled(self, conversation_id: str, command: str) -> bool:
        return command in self.enabled_commands(conversation_id)

    def enable_command(self, conversation_id: str, command: str) -> None:
        self._toggle_command(conversation_id, command, enable=True)

    def disable_command(self, conversation_id: str, command: str) -> None:
        self._toggle_command(conversation_id, command, enable=False)

    def _toggle_command(self, conversation_id: str, command: str, *, enable: bool) -> None:
        add_to, remove_from = ("enabled", "disabled") if enable else ("disabled", "enabled")

        def mutate(state: dict[str, Any]) -> None:
            overrides = state.setdefault("command_overrides", {})
            entry = overrides.get(conversation_id)
            if not isinstance(entry, dict):
                entry = {"enabled": [], "disabled": []}
            entry[remove_from] = [c for c in entry.get(remove_from) or [] if c != command]
            target = list(entry.get(add_to) or [])
            if command not in target:
                target.append(command)
            entry[add_to] = target
            overrides[conversation_id] = entry

        self._shared.update(mutate)

    # -- free-form shared sections -----------------------------------------

    def get_shared_data(self, conversation_id: str, key: str) -> Any:
        _check_free_section(key)
        return self._shared.read_section(key, conversation_id)

    def set_shared_data(self, conversation_id: str, key: str, value: Any) -> None:
        _check_free_section(key)
        self._shared.update(_set_entry(key, conversation_id, value))

    def delete_shared_data(self, conversation_id: str, key: str) -> None:
        _check_free_section(key)
        self._shared.update(_delete_entry(key, conversation_id))


def _check_free_section(key: str) -> None:
    if not key or key in SHARED_SECTIONS or key == "version":
        raise ValidationError(f"Reserved shared state section: {key!r}")


__all__ = [
    "PROMPT_PREVIEW_CHARS",
    "TASK_HISTORY_LIMIT",
    "ConversationState",
    "ConversationStore",
    "TaskRecord",
    "TokenCounts",
    "TokenUsage",
    "build_task_record",
    "make_prompt_preview",
]
