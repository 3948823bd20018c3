from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass
from typing import Awaitable, Callable

from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception_type,
    stop_after_attempt,
    stop_never,
    wait_exponential,
)

from ..core.cancellation import CancellationToken
from ..core.config import Settings
from ..core.errors import ProviderError, QuotaExceededError, RunCancelledError
from ..core.logging import get_logger
from ..core.metrics import observe_node_execution, record_quota_backoff, record_validation_rejection
from ..core.rate_limit import RequestRateLimiter
from ..services.knowledge import LAYER_BY_KIND, KnowledgeGraphRecorder
from ..services.llm import GenerationOptions, GenerationResult, TextGenerator, is_quota_error, resolve_model
from ..services.memory import AgentMemoryManager, MemoryRecord
from .enums import PHASE_BY_KIND, NodeKind, NodeStatus
from .gate import ConcurrencyGate
from .handlers import ExecutionContext, HandlerResult, SpawnRequest, get_handler
from .state import Node
from .store import GraphStore
from .validation import OutputValidator

logger = get_logger(name=__name__)

Sleep = Callable[[float], Awaitable[None]]


@dataclass(slots=True)
class ExecutionOutcome:
    node_id: str
    status: NodeStatus
    error: str | None = None
    spawn: SpawnRequest | None = None
    document: str | None = None
    cancelled: bool = False


def quota_wait_strategy(settings: Settings) -> wait_exponential:
    scheduling = settings.scheduling
    return wait_exponential(
        multiplier=scheduling.quota_base_backoff_seconds,
        exp_base=scheduling.quota_backoff_multiplier,
        max=scheduling.quota_max_backoff_seconds,
    )


class NodeExecutor:
    """Runs one node from ``pending`` to ``complete`` or ``error``.

    The gate slot is held only around a single attempt. A quota error
    releases it, puts the node back to ``pending`` and backs off before the
    next attempt, so a throttled node never blocks others.
    """

    def __init__(
        self,
        *,
        store: GraphStore,
        gate: ConcurrencyGate,
        limiter: RequestRateLimiter,
        generator: TextGenerator,
        settings: Settings,
        validator: OutputValidator | None = None,
        memory: AgentMemoryManager | None = None,
        knowledge: KnowledgeGraphRecorder | None = None,
        sleep: Sleep | None = None,
    ) -> None:
        self._store = store
        self._gate = gate
        self._limiter = limiter
        self._generator = generator
        self._settings = settings
        self._validator = validator or OutputValidator(settings.validation)
        self._memory = memory
        self._knowledge = knowledge
        self._sleep = sleep

    async def execute(
        self,
        node_id: str,
        *,
        cancel: CancellationToken,
        goal: str = "",
        document: str = "",
    ) -> ExecutionOutcome:
        started = time.perf_counter()
        node = await self._store.get(node_id)
        kind = NodeKind(node.kind).value if node is not None else "unknown"
        max_retries = self._settings.scheduling.quota_max_retries
        retrying = AsyncRetrying(
            retry=retry_if_exception_type(QuotaExceededError),
            wait=quota_wait_strategy(self._settings),
            stop=stop_never if max_retries is None else stop_after_attempt(max_retries + 1),
            sleep=self._backoff_sleep(cancel),
            before_sleep=self._log_backoff(node_id, kind),
            reraise=True,
        )
        try:
            async for attempt in retrying:
                with attempt:
                    outcome = await self._attempt(node_id, cancel=cancel, goal=goal, document=document)
        except RunCancelledError:
            await self._rollback(node_id)
            logger.info("node_execution_cancelled", node_id=node_id, kind=kind)
            return ExecutionOutcome(node_id=node_id, status=NodeStatus.PENDING, cancelled=True)
        except asyncio.CancelledError:
            await self._rollback(node_id)
            raise
        except QuotaExceededError as exc:
            logger.error("node_quota_retries_exhausted", node_id=node_id, kind=kind, error=str(exc))
            outcome = await self._fail(node_id, exc)
        observe_node_execution(kind, outcome.status.value, time.perf_counter() - started)
        return outcome

    async def _attempt(
        self,
        node_id: str,
        *,
        cancel: CancellationToken,
        goal: str,
        document: str,
    ) -> ExecutionOutcome:
        cancel.raise_if_cancelled()
        await self._gate.acquire(cancel)
        try:
            node = await self._store.get(node_id)
            if node is None or node.status != NodeStatus.PENDING:
                # reset or re-dispatched elsewhere while queued on the gate
                return ExecutionOutcome(node_id=node_id, status=NodeStatus.PENDING, cancelled=True)
            node = await self._store.update_node(
                node_id,
                status=NodeStatus.ACTIVE,
                phase=PHASE_BY_KIND[NodeKind(node.kind)],
                error=None,
            )
            logger.info("node_started", node_id=node_id, kind=NodeKind(node.kind).value, attempt=node.retry_count + 1)
            context = await self._build_context(node, goal=goal, document=document)
            result = await self._run_handler(context, cancel)
            await self._store.update_node(
                node_id,
                status=NodeStatus.COMPLETE,
                phase=None,
                output=result.output,
                score=result.score,
                artifacts=result.artifacts,
                data=result.data,
                error=None,
                failure_count=0,
            )
            await self._observe(context, result)
            logger.info("node_completed", node_id=node_id, kind=NodeKind(node.kind).value, score=result.score)
            return ExecutionOutcome(
                node_id=node_id,
                status=NodeStatus.COMPLETE,
                spawn=result.spawn,
                document=result.document,
            )
        except QuotaExceededError:
            current = await self._store.get(node_id)
            if current is not None:
                await self._store.update_node(
                    node_id,
                    status=NodeStatus.PENDING,
                    phase=None,
                    retry_count=current.retry_count + 1,
                )
            raise
        except (RunCancelledError, asyncio.CancelledError):
            raise
        except Exception as exc:
            logger.exception("node_execution_failed", node_id=node_id, error=str(exc))
            return await self._fail(node_id, exc)
        finally:
            self._gate.release()

    async def _build_context(self, node: Node, *, goal: str, document: str) -> ExecutionContext:
        dependencies: list[Node] = []
        for dep_id in node.dependencies:
            dep = await self._store.get(dep_id)
            if dep is not None:
                dependencies.append(dep)
        instruction = node.instruction
        if node.kind == NodeKind.ANALYST and self._memory is not None and self._memory.enabled:
            instruction = await self._memory.inject_context(node.persona, instruction)
        return ExecutionContext(
            node=node,
            dependencies=dependencies,
            instruction=instruction,
            goal=goal,
            document=document,
        )

    async def _run_handler(self, context: ExecutionContext, cancel: CancellationToken) -> HandlerResult:
        node = context.node
        kind = NodeKind(node.kind).value
        handler = get_handler(node.kind)
        prompt = handler.build_prompt(context)
        model = resolve_model(kind, self._settings.models)
        temperature = node.temperature if node.temperature is not None else self._settings.scheduling.default_temperature
        gated = self._validator.gates(kind)
        attempts = self._validator.max_attempts if gated else 1

        result: HandlerResult | None = None
        for attempt in range(1, attempts + 1):
            response = await self._generate(
                model,
                prompt,
                GenerationOptions(temperature=temperature, json_mode=handler.json_mode),
                cancel,
            )
            result = handler.parse(response.text, context)
            if not gated:
                break
            verdict = self._validator.validate(result.output, result.score)
            result.data["validation_attempts"] = attempt
            if verdict.passed:
                break
            record_validation_rejection(kind, verdict.flag_names)
            logger.warning(
                "output_red_flagged",
                node_id=node.id,
                attempt=attempt,
                flags=verdict.flag_names,
                next_temperature=verdict.suggested_temperature,
            )
            result.data["red_flags"] = verdict.flag_names
            if verdict.suggested_temperature is not None:
                temperature = verdict.suggested_temperature
        if result is None:
            raise ProviderError(f"no output produced for {node.id}")
        return result

    async def _generate(
        self,
        model: str,
        prompt: str,
        options: GenerationOptions,
        cancel: CancellationToken,
    ) -> GenerationResult:
        await self._limiter.acquire(cancel)
        cancel.raise_if_cancelled()
        try:
            return await self._generator.generate(model, prompt, options)
        except (QuotaExceededError, RunCancelledError):
            raise
        except Exception as exc:
            if is_quota_error(exc):
                raise QuotaExceededError(str(exc)) from exc
            raise

    async def _observe(self, context: ExecutionContext, result: HandlerResult) -> None:
        node = context.node
        kind = NodeKind(node.kind).value
        try:
            if self._knowledge is not None and self._knowledge.enabled:
                await self._knowledge.add_node(
                    node.id,
                    node.label,
                    LAYER_BY_KIND.get(kind, "lexical"),
                    result.output,
                    {"kind": kind, "score": result.score},
                )
                for dep in context.dependencies:
                    await self._knowledge.add_edge(dep.id, node.id, "influences", weight=max(dep.score, 1.0) / 100)
            if self._memory is not None and self._memory.enabled and node.kind in {NodeKind.ANALYST, NodeKind.LEAD}:
                await self._memory.store(
                    node.persona,
                    MemoryRecord(
                        node_id=node.id,
                        cycle=node.round_id.cycle if node.round_id else 0,
                        score=result.score,
                        feedback=result.output[:500],
                    ),
                )
        except Exception as exc:
            logger.warning("node_observer_failed", node_id=node.id, error=str(exc))

    async def _fail(self, node_id: str, exc: BaseException) -> ExecutionOutcome:
        message = str(exc) or type(exc).__name__
        if await self._store.get(node_id) is not None:
            await self._store.update_node(node_id, status=NodeStatus.ERROR, phase=None, output=message, error=message)
        return ExecutionOutcome(node_id=node_id, status=NodeStatus.ERROR, error=message)

    async def _rollback(self, node_id: str) -> None:
        current = await self._store.get(node_id)
        if current is not None and current.status == NodeStatus.ACTIVE:
            await self._store.update_node(node_id, status=NodeStatus.PENDING, phase=None)

    def _backoff_sleep(self, cancel: CancellationToken) -> Sleep:
        async def _sleep(delay: float) -> None:
            if self._sleep is not None:
                await self._sleep(delay)
                cancel.raise_if_cancelled()
            else:
                await cancel.sleep(delay)

        return _sleep

    @staticmethod
    def _log_backoff(node_id: str, kind: str) -> Callable[[RetryCallState], None]:
        def _before_sleep(state: RetryCallState) -> None:
            delay = state.next_action.sleep if state.next_action is not None else 0.0
            record_quota_backoff(kind, delay)
            logger.warning(
                "node_quota_backoff",
                node_id=node_id,
                kind=kind,
                attempt=state.attempt_number,
                wait_seconds=delay,
            )

        return _before_sleep


__all__ = ["ExecutionOutcome", "NodeExecutor", "quota_wait_strategy"]
