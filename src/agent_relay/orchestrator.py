"""Entry point tying inbound messages to queued, leased executor runs."""

from __future__ import annotations

import asyncio
import contextlib
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Mapping, Optional

from .agents.executor.supervisor import ExecutorSupervisor, RunningInfo, SpawnFn
from .core.config import RelayConfig
from .core.conversation_store import ConversationState, ConversationStore
from .core.coordination import ConversationLeases, MessageClaims
from .core.exceptions import ExecutorError, SandboxError, ValidationError
from .core.local_state import LocalStateStore
from .core.locks import default_lock_factory
from .core.logging_utils import log_event
from .core.shared_state import SharedStateStore
from .core.slots import SlotLimiter
from .core.utils import truncate_text
from .integrations.chat.task_queue import ConversationTaskQueue
from .integrations.docker.runtime import DockerRuntime, RunFn
from .integrations.docker.sandbox import SandboxManager

OutboundCallback = Callable[[str, str], Awaitable[None]]

ERROR_MESSAGE_CHARS = 200
LEASE_BUSY_MESSAGE = "Another instance is already working on this conversation."

OUTCOME_STARTED = "started"
OUTCOME_QUEUED = "queued"
OUTCOME_DUPLICATE = "duplicate"

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class InboundOutcome:
    status: str
    conversation_id: str
    position: int = 0


@dataclass(frozen=True)
class StopOutcome:
    stopped: bool
    dropped: int = 0


@dataclass(frozen=True)
class ConversationSummary:
    state: ConversationState
    effective_model: str
    running: Optional[RunningInfo]
    pending: int


async def _discard(conversation_id: str, text: str) -> None:
    return None


class RelayOrchestrator:
    def __init__(
        self,
        config: RelayConfig,
        *,
        store: ConversationStore,
        supervisor: ExecutorSupervisor,
        queue: ConversationTaskQueue,
        leases: ConversationLeases,
        claims: MessageClaims,
        sandbox: Optional[SandboxManager] = None,
        on_result: Optional[OutboundCallback] = None,
        on_error: Optional[OutboundCallback] = None,
    ) -> None:
        self._config = config
        self._store = store
        self._supervisor = supervisor
        self._queue = queue
        self._leases = leases
        self._claims = claims
        self._sandbox = sandbox
        self._on_result = on_result or _discard
        self._on_error = on_error or _discard

    @property
    def store(self) -> ConversationStore:
        return self._store

    @property
    def supervisor(self) -> ExecutorSupervisor:
        return self._supervisor

    @property
    def queue(self) -> ConversationTaskQueue:
        return self._queue

    @property
    def sandbox(self) -> Optional[SandboxManager]:
        return self._sandbox

    async def start(self) -> None:
        migrated = await asyncio.to_thread(self._store.bootstrap)
        if migrated:
            log_event(logger, logging.INFO, "relay.state_migrated", entries=migrated)
        if self._sandbox is not None:
            if await self._sandbox.initialize():
                self._sandbox.start_monitors()
        log_event(
            logger,
            logging.INFO,
            "relay.started",
            instance_id=self._config.instance_id,
            max_concurrent=self._config.max_concurrent,
            sandbox=bool(self._sandbox and self._sandbox.enabled),
        )

    async def shutdown(self) -> None:
        await self._queue.shutdown()
        if self._sandbox is not None:
            await self._sandbox.shutdown()

    async def handle_inbound_message(
        self,
        conversation_id: str,
        message_id: Optional[str],
        prompt: str,
        is_shared: Optional[bool] = None,
    ) -> InboundOutcome:
        """Accept one inbound prompt.

        Returns whether the prompt started immediately, was queued behind a
        running task, or was skipped as a duplicate delivery.
        """
        if not conversation_id:
            raise ValidationError("conversation_id is required")
        if not prompt or not prompt.strip():
            raise ValidationError("Prompt must not be empty")
        shared = self._config.is_shared(conversation_id) if is_shared is None else is_shared

        if shared and message_id:
            claimed = await asyncio.to_thread(self._claims.claim, message_id)
            if not claimed:
                return InboundOutcome(
                    status=OUTCOME_DUPLICATE, conversation_id=conversation_id
                )

        async def job() -> None:
            await self._execute(conversation_id, prompt, shared=shared)

        submitted = await self._queue.submit(conversation_id, job, label=message_id)
        return InboundOutcome(
            status=OUTCOME_QUEUED if submitted.queued else OUTCOME_STARTED,
            conversation_id=conversation_id,
            position=submitted.position,
        )

    async def _execute(self, conversation_id: str, prompt: str, *, shared: bool) -> None:
        if shared:
            acquired = await asyncio.to_thread(self._leases.acquire, conversation_id)
            if not acquired:
                await self._emit(self._on_error, conversation_id, LEASE_BUSY_MESSAGE)
                return
        renewer = (
            asyncio.create_task(self._renew_lease(conversation_id)) if shared else None
        )
        try:
            result = await self._supervisor.run(
                conversation_id,
                prompt,
                isolated=shared and self._config.isolate_shared_conversations,
            )
        except (ExecutorError, SandboxError, ValidationError) as exc:
            message = exc.user_message() if isinstance(exc, ExecutorError) else str(exc)
            await self._emit(
                self._on_error,
                conversation_id,
                truncate_text(message, ERROR_MESSAGE_CHARS),
            )
            return
        finally:
            if renewer is not None:
                renewer.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await renewer
            if shared:
                await asyncio.to_thread(self._leases.release, conversation_id)
        if result.stopped:
            return
        await self._emit(self._on_result, conversation_id, result.text)

    async def _renew_lease(self, conversation_id: str) -> None:
        interval = max(1.0, self._leases.ttl_seconds / 3.0)
        while True:
            await asyncio.sleep(interval)
            await asyncio.to_thread(self._leases.renew, conversation_id)

    async def _emit(
        self, callback: OutboundCallback, conversation_id: str, text: str
    ) -> None:
        try:
            await callback(conversation_id, text)
        except Exception as exc:
            log_event(
                logger,
                logging.WARNING,
                "relay.callback_failed",
                conversation_id=conversation_id,
                exc=exc,
            )

    async def stop(self, conversation_id: str, *, clear_queue: bool = False) -> StopOutcome:
        dropped = await self._queue.drain_all(conversation_id) if clear_queue else 0
        stopped = self._supervisor.stop(conversation_id)
        return StopOutcome(stopped=stopped, dropped=dropped)

    async def reset(self, conversation_id: str, *, remove_sandbox: bool = False) -> int:
        """Clear stored state and drop queued prompts; returns how many were dropped."""
        dropped = await self._queue.drain_all(conversation_id)
        await asyncio.to_thread(self._store.reset, conversation_id)
        if remove_sandbox and self._sandbox is not None and self._sandbox.enabled:
            await self._sandbox.remove(conversation_id)
        return dropped

    def describe(self, conversation_id: str) -> ConversationSummary:
        state = self._store.get_state(conversation_id)
        return ConversationSummary(
            state=state,
            effective_model=self._config.resolve_model(state.model_override),
            running=self._supervisor.running_info(conversation_id),
            pending=self._queue.pending_count(conversation_id),
        )


def build_conversation_store(config: RelayConfig) -> ConversationStore:
    lock_factory = default_lock_factory(
        stale_seconds=config.lock.stale_seconds,
        max_retries=config.lock.max_retries,
        min_wait_seconds=config.lock.min_wait_seconds,
        max_wait_seconds=config.lock.max_wait_seconds,
    )
    return ConversationStore(
        LocalStateStore(config.local_state_path),
        SharedStateStore(config.shared_state_path, lock_factory=lock_factory),
        is_shared=config.is_shared,
        default_enabled_commands=config.default_enabled_commands,
    )


def build_sandbox_manager(
    config: RelayConfig,
    *,
    docker_run_fn: Optional[RunFn] = None,
    clock: Optional[Callable[[], float]] = None,
) -> SandboxManager:
    runtime_kwargs: dict[str, Any] = {"docker_binary": config.sandbox.docker_binary}
    if docker_run_fn is not None:
        runtime_kwargs["run_fn"] = docker_run_fn
    return SandboxManager(
        config.sandbox,
        executor_binary=config.executor.binary,
        runtime=DockerRuntime(**runtime_kwargs),
        **({"clock": clock} if clock is not None else {}),
    )


def build_orchestrator(
    config: RelayConfig,
    *,
    on_result: Optional[OutboundCallback] = None,
    on_error: Optional[OutboundCallback] = None,
    source_env: Optional[Mapping[str, str]] = None,
    spawn_fn: Optional[SpawnFn] = None,
    docker_run_fn: Optional[RunFn] = None,
    clock: Optional[Callable[[], float]] = None,
) -> RelayOrchestrator:
    """Wire stores, coordination, sandbox and supervisor from configuration."""
    clock_kwargs: dict[str, Any] = {"clock": clock} if clock is not None else {}
    store = build_conversation_store(config)
    sandbox = build_sandbox_manager(config, docker_run_fn=docker_run_fn, clock=clock)
    supervisor = ExecutorSupervisor(
        config,
        store,
        SlotLimiter(config.max_concurrent),
        sandbox=sandbox,
        source_env=source_env,
        spawn_fn=spawn_fn,
        **clock_kwargs,
    )
    return RelayOrchestrator(
        config,
        store=store,
        supervisor=supervisor,
        queue=ConversationTaskQueue(),
        leases=ConversationLeases(
            store.shared,
            owner_id=config.instance_id,
            ttl_seconds=config.lease_ttl_seconds,
            **clock_kwargs,
        ),
        claims=MessageClaims(
            store.shared,
            owner_id=config.instance_id,
            ttl_seconds=config.claim_ttl_seconds,
            **clock_kwargs,
        ),
        sandbox=sandbox,
        on_result=on_result,
        on_error=on_error,
    )


__all__ = [
    "ConversationSummary",
    "InboundOutcome",
    "OutboundCallback",
    "RelayOrchestrator",
    "StopOutcome",
    "build_conversation_store",
    "build_orchestrator",
    "build_sandbox_manager",
]
