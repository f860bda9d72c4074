from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any, Awaitable, Callable, Mapping, Optional, Sequence

from ...core.config import RelayConfig
from ...core.conversation_store import (
    ConversationStore,
    TokenCounts,
    build_task_record,
    make_prompt_preview,
)
from ...core.exceptions import (
    ExecutorFailure,
    ExecutorSpawnError,
    ExecutorTimeout,
    SandboxError,
    TransientExecutorError,
    ValidationError,
)
from ...core.logging_utils import log_event
from ...core.output_parsing import (
    extract_error_detail,
    looks_like_stale_session,
    parse_executor_output,
)
from ...core.process_termination import kill_process, terminate_async_process
from ...core.security import build_executor_env, redact_sensitive_output
from ...core.slots import SlotLimiter
from ...core.utils import truncate_text
from ...integrations.docker.sandbox import SandboxManager

ERROR_DETAIL_CHARS = 200

STATUS_COMPLETED = "completed"
STATUS_STOPPED = "stopped"

SpawnFn = Callable[..., Awaitable[asyncio.subprocess.Process]]


@dataclass(frozen=True)
class ExecutionResult:
    status: str
    text: str
    session_token: Optional[str] = None
    usage: Optional[TokenCounts] = None
    duration_seconds: float = 0.0
    attempts: int = 1
    redacted: tuple[str, ...] = ()

    @property
    def stopped(self) -> bool:
        return self.status == STATUS_STOPPED


@dataclass
class RunningInfo:
    conversation_id: str
    prompt_preview: str
    elapsed_seconds: int
    isolated: bool


@dataclass
class _InFlight:
    conversation_id: str
    prompt_preview: str
    started_at: float
    isolated: bool
    process: Optional[asyncio.subprocess.Process] = None
    stopped: bool = False
    slot_released: bool = False
    terminate_task: Optional[asyncio.Task[Any]] = field(default=None, repr=False)


class ExecutorSupervisor:
    """Runs the executor CLI for one conversation at a time per call.

    Each invocation holds one slot from the shared limiter while the child
    process is alive. A resume failure is retried once with a fresh session.
    """

    def __init__(
        self,
        config: RelayConfig,
        store: ConversationStore,
        slots: SlotLimiter,
        *,
        sandbox: Optional[SandboxManager] = None,
        source_env: Optional[Mapping[str, str]] = None,
        spawn_fn: Optional[SpawnFn] = None,
        clock: Callable[[], float] = time.time,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self._config = config
        self._executor = config.executor
        self._store = store
        self._slots = slots
        self._sandbox = sandbox
        self._source_env = source_env
        self._spawn_fn: SpawnFn = spawn_fn or asyncio.create_subprocess_exec
        self._clock = clock
        self._logger = logger or logging.getLogger(__name__)
        self._running: dict[str, _InFlight] = {}
        self._reserved: set[str] = set()
        self._background: set[asyncio.Task[Any]] = set()

    # -- introspection -----------------------------------------------------

    def is_running(self, conversation_id: str) -> bool:
        return conversation_id in self._running

    def running_info(self, conversation_id: str) -> Optional[RunningInfo]:
        entry = self._running.get(conversation_id)
        if entry is None:
            return None
        return RunningInfo(
            conversation_id=conversation_id,
            prompt_preview=entry.prompt_preview,
            elapsed_seconds=int(round(self._clock() - entry.started_at)),
            isolated=entry.isolated,
        )

    @property
    def running_count(self) -> int:
        return len(self._running)

    # -- argument construction ---------------------------------------------

    def build_args(
        self, prompt: str, *, model: str, session_token: Optional[str]
    ) -> list[str]:
        args = ["-p", "--model", model, *self._executor.extra_args]
        args.extend(["--output-format", "json"])
        if session_token:
            args.extend(["--resume", session_token])
            args.append(prompt)
        else:
            args.append(f"{self._executor.session_preamble}{prompt}")
        return args

    def _effective_model(self, conversation_id: str) -> str:
        return self._config.resolve_model(self._store.get_model(conversation_id))

    # -- execution ---------------------------------------------------------

    async def run(
        self,
        conversation_id: str,
        prompt: str,
        *,
        isolated: bool = False,
    ) -> ExecutionResult:
        """Run one prompt to completion.

        Raises ``ExecutorFailure``, ``ExecutorTimeout`` or ``ExecutorSpawnError``
        for unsuccessful outcomes. A user stop yields a ``stopped`` result.
        """
        if not prompt or not prompt.strip():
            raise ValidationError("Prompt must not be empty")
        if conversation_id in self._reserved:
            raise ValidationError(
                f"An executor is already running for {conversation_id}"
            )
        # Reserved before the first await so concurrent callers see it.
        self._reserved.add(conversation_id)
        try:
            return await self._run_reserved(conversation_id, prompt, isolated=isolated)
        finally:
            self._reserved.discard(conversation_id)

    async def _run_reserved(
        self, conversation_id: str, prompt: str, *, isolated: bool
    ) -> ExecutionResult:
        use_sandbox = isolated and self._sandbox is not None and self._sandbox.enabled
        if isolated and not use_sandbox:
            log_event(
                self._logger,
                logging.INFO,
                "executor.sandbox_fallback",
                conversation_id=conversation_id,
            )
        try:
            return await self._attempt(
                conversation_id, prompt, use_sandbox=use_sandbox, is_retry=False
            )
        except TransientExecutorError as exc:
            log_event(
                self._logger,
                logging.WARNING,
                "executor.resume_failed",
                conversation_id=conversation_id,
                exit_code=exc.exit_code,
                detail=truncate_text(str(exc), ERROR_DETAIL_CHARS),
            )
            await asyncio.to_thread(self._store.clear_session, conversation_id)
            await asyncio.sleep(self._executor.retry_delay_seconds)
            result = await self._attempt(
                conversation_id, prompt, use_sandbox=use_sandbox, is_retry=True
            )
            return replace(result, attempts=2)

    async def _attempt(
        self,
        conversation_id: str,
        prompt: str,
        *,
        use_sandbox: bool,
        is_retry: bool,
    ) -> ExecutionResult:
        session_token = (
            await asyncio.to_thread(self._store.get_session, conversation_id)
            if self._executor.enable_sessions
            else None
        )
        model = await asyncio.to_thread(self._effective_model, conversation_id)
        args = self.build_args(prompt, model=model, session_token=session_token)
        env = build_executor_env(
            source_env=self._source_env,
            extra_patterns=self._executor.extra_env_passthrough,
        )

        await self._slots.acquire()
        entry = _InFlight(
            conversation_id=conversation_id,
            prompt_preview=make_prompt_preview(prompt),
            started_at=self._clock(),
            isolated=use_sandbox,
        )
        self._running[conversation_id] = entry
        try:
            log_event(
                self._logger,
                logging.INFO,
                "executor.spawn",
                conversation_id=conversation_id,
                model=model,
                resume=bool(session_token),
                retry=is_retry,
                sandbox=use_sandbox,
                slots_in_use=self._slots.in_use,
                slots_capacity=self._slots.capacity,
            )
            try:
                process = await self._spawn(conversation_id, args, env, use_sandbox)
            except (OSError, SandboxError) as exc:
                await self._record(entry, prompt, "error")
                raise ExecutorSpawnError(
                    f"Failed to start executor: {truncate_text(str(exc), ERROR_DETAIL_CHARS)}"
                ) from exc
            entry.process = process
            if entry.stopped:
                entry.terminate_task = self._spawn_terminate(process)

            timeout = self._executor.timeout_seconds or None
            try:
                stdout_raw, stderr_raw = await asyncio.wait_for(
                    process.communicate(), timeout=timeout
                )
            except asyncio.TimeoutError:
                kill_process(process, logger=self._logger, event_prefix="executor")
                await process.wait()
                log_event(
                    self._logger,
                    logging.WARNING,
                    "executor.timeout",
                    conversation_id=conversation_id,
                    timeout_seconds=self._executor.timeout_seconds,
                )
                await self._record(entry, prompt, "error")
                raise ExecutorTimeout(self._executor.timeout_seconds) from None
            except asyncio.CancelledError:
                kill_process(process, logger=self._logger, event_prefix="executor")
                raise
        finally:
            self._release(entry)

        stdout = stdout_raw.decode("utf-8", errors="replace")
        stderr = stderr_raw.decode("utf-8", errors="replace")
        return await self._finish(
            entry,
            prompt,
            process.returncode,
            stdout,
            stderr,
            had_session=bool(session_token),
            is_retry=is_retry,
        )

    async def _spawn(
        self,
        conversation_id: str,
        args: Sequence[str],
        env: Mapping[str, str],
        use_sandbox: bool,
    ) -> asyncio.subprocess.Process:
        if use_sandbox and self._sandbox is not None:
            return await self._sandbox.spawn_in(conversation_id, args, env)
        working_dir = await asyncio.to_thread(self._store.get_working_dir, conversation_id)
        cwd = working_dir or env.get("HOME") or str(Path.home())
        return await self._spawn_fn(
            self._executor.binary,
            *args,
            cwd=cwd,
            env=dict(env),
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            start_new_session=True,
        )

    async def _finish(
        self,
        entry: _InFlight,
        prompt: str,
        exit_code: Optional[int],
        stdout: str,
        stderr: str,
        *,
        had_session: bool,
        is_retry: bool,
    ) -> ExecutionResult:
        conversation_id = entry.conversation_id
        duration = max(0.0, self._clock() - entry.started_at)
        if entry.stopped:
            await self._record(entry, prompt, STATUS_STOPPED)
            log_event(
                self._logger,
                logging.INFO,
                "executor.stopped",
                conversation_id=conversation_id,
                duration_seconds=round(duration, 1),
            )
            return ExecutionResult(
                status=STATUS_STOPPED, text="", duration_seconds=duration
            )

        if exit_code != 0:
            detail = extract_error_detail(stdout, stderr)
            if had_session and not is_retry and looks_like_stale_session(detail):
                raise TransientExecutorError(detail, exit_code=exit_code)
            log_event(
                self._logger,
                logging.WARNING,
                "executor.failed",
                conversation_id=conversation_id,
                exit_code=exit_code,
                detail=detail,
            )
            await self._record(entry, prompt, "error")
            raise ExecutorFailure(exit_code, truncate_text(detail, ERROR_DETAIL_CHARS))

        parsed = parse_executor_output(stdout)
        if not parsed.structured and stdout.strip():
            log_event(
                self._logger,
                logging.WARNING,
                "executor.output_unstructured",
                conversation_id=conversation_id,
            )
        if parsed.session_token:
            await asyncio.to_thread(
                self._store.set_session, conversation_id, parsed.session_token
            )
            if not had_session:
                log_event(
                    self._logger,
                    logging.INFO,
                    "executor.session_created",
                    conversation_id=conversation_id,
                )
        await self._record(entry, prompt, STATUS_COMPLETED, tokens=parsed.usage)
        text, labels = redact_sensitive_output(parsed.text)
        if labels:
            log_event(
                self._logger,
                logging.WARNING,
                "executor.output_redacted",
                conversation_id=conversation_id,
                labels=labels,
            )
        log_event(
            self._logger,
            logging.INFO,
            "executor.completed",
            conversation_id=conversation_id,
            duration_seconds=round(duration, 1),
            input_tokens=parsed.usage.input if parsed.usage else None,
            output_tokens=parsed.usage.output if parsed.usage else None,
        )
        return ExecutionResult(
            status=STATUS_COMPLETED,
            text=text,
            session_token=parsed.session_token,
            usage=parsed.usage,
            duration_seconds=duration,
            redacted=tuple(labels),
        )

    async def _record(
        self,
        entry: _InFlight,
        prompt: str,
        status: str,
        *,
        tokens: Optional[TokenCounts] = None,
    ) -> None:
        record = build_task_record(
            prompt,
            started_at=entry.started_at,
            finished_at=self._clock(),
            status=status,
            tokens=tokens,
        )
        await asyncio.to_thread(self._store.append_task, entry.conversation_id, record)

    def _release(self, entry: _InFlight) -> None:
        if not entry.slot_released:
            entry.slot_released = True
            self._slots.release()
        if self._running.get(entry.conversation_id) is entry:
            del self._running[entry.conversation_id]

    # -- cancellation ------------------------------------------------------

    def stop(self, conversation_id: str) -> bool:
        """Stop the running invocation; the slot is freed before the process exits."""
        entry = self._running.get(conversation_id)
        if entry is None:
            return False
        entry.stopped = True
        self._release(entry)
        if entry.process is not None:
            entry.terminate_task = self._spawn_terminate(entry.process)
        log_event(
            self._logger,
            logging.INFO,
            "executor.stop_requested",
            conversation_id=conversation_id,
        )
        return True

    def _spawn_terminate(
        self, process: asyncio.subprocess.Process
    ) -> asyncio.Task[Any]:
        task = asyncio.create_task(self._terminate(process))
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        return task

    async def _terminate(self, process: asyncio.subprocess.Process) -> None:
        await terminate_async_process(
            process,
            grace_seconds=self._executor.stop_grace_seconds,
            logger=self._logger,
            event_prefix="executor.terminate",
        )


__all__ = [
    "ExecutionResult",
    "ExecutorSupervisor",
    "RunningInfo",
    "STATUS_COMPLETED",
    "STATUS_STOPPED",
]
