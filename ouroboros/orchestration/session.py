from __future__ import annotations

import asyncio
from typing import Awaitable, Callable, Sequence

from ..core.cancellation import CancellationToken
from ..core.config import Settings
from ..core.errors import SessionStateError
from ..core.logging import bind_session, get_logger
from ..core.rate_limit import RateLimitStatus, RequestRateLimiter
from ..db.document_store import DocumentStore, build_document_store
from ..services.knowledge import KnowledgeGraphRecorder
from ..services.llm import LLMService, TextGenerator
from ..services.memory import AgentMemoryManager
from .consensus import ConsensusVotingSystem
from .decomposition import DecompositionController
from .enums import LogLevel, RunOutcome, SessionMode, SessionStatus
from .executor import NodeExecutor
from .gate import ConcurrencyGate
from .scheduler import GraphScheduler, QueueMetrics, RunContext, RunReport, compute_queue_metrics
from .state import GraphSnapshot, LogEntry, SessionState, new_round, utcnow
from .store import GraphStore
from .topology import EXPERT_PERSONAS, build_planning_root, build_refinement_round
from .validation import OutputValidator

logger = get_logger(name=__name__)

SESSIONS = "sessions"
LOGS = "logs"
CURRENT_SESSION = "current"

STATUS_BY_OUTCOME: dict[RunOutcome, SessionStatus] = {
    RunOutcome.COMPLETE: SessionStatus.COMPLETE,
    RunOutcome.FAILED: SessionStatus.FAILED,
    RunOutcome.DEADLOCK: SessionStatus.DEADLOCKED,
    RunOutcome.HUMAN_REVIEW: SessionStatus.HUMAN_REVIEW,
    RunOutcome.CANCELLED: SessionStatus.CANCELLED,
}


class OrchestrationSession:
    """Everything one run needs, wired together and owned by a single object.

    Several sessions can live in one process; nothing here is global.
    """

    def __init__(
        self,
        *,
        settings: Settings,
        generator: TextGenerator,
        documents: DocumentStore | None = None,
        sleep: Callable[[float], Awaitable[None]] | None = None,
    ) -> None:
        self.settings = settings
        self.documents = documents or build_document_store(settings.persistence)
        self.store = GraphStore(self.documents)
        self.gate = ConcurrencyGate(settings.scheduling.max_concurrency)
        self.limiter = RequestRateLimiter.from_settings(settings.rate_limit)
        self.memory = AgentMemoryManager(self.documents, settings.memory)
        self.knowledge = KnowledgeGraphRecorder(self.documents, settings.knowledge)
        self.consensus = ConsensusVotingSystem(settings.consensus)
        self.executor = NodeExecutor(
            store=self.store,
            gate=self.gate,
            limiter=self.limiter,
            generator=generator,
            settings=settings,
            validator=OutputValidator(settings.validation),
            memory=self.memory,
            knowledge=self.knowledge,
            sleep=sleep,
        )
        self.controller = DecompositionController(
            store=self.store,
            gate=self.gate,
            limiter=self.limiter,
            generator=generator,
            settings=settings,
            sleep=sleep,
        )
        self.scheduler = GraphScheduler(
            store=self.store,
            executor=self.executor,
            controller=self.controller,
            consensus=self.consensus,
            on_event=self.add_log,
        )
        self.state = SessionState()
        self.last_report: RunReport | None = None
        self._cancel: CancellationToken | None = None
        self._task: asyncio.Task[RunReport] | None = None

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        *,
        generator: TextGenerator | None = None,
        documents: DocumentStore | None = None,
    ) -> "OrchestrationSession":
        return cls(
            settings=settings,
            generator=generator or LLMService.from_settings(settings),
            documents=documents,
        )

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def start(
        self,
        goal: str,
        mode: SessionMode = SessionMode.REFINEMENT,
        departments: Sequence[str] | None = None,
    ) -> SessionState:
        if not goal or not goal.strip():
            raise SessionStateError("goal must not be empty")
        if self.is_running:
            raise SessionStateError("a run is already in progress; abort it first")
        mode = SessionMode(mode)
        selected = list(departments or self.settings.refinement.departments)
        unknown = [department for department in selected if department not in EXPERT_PERSONAS]
        if mode == SessionMode.REFINEMENT and (unknown or not selected):
            raise SessionStateError(f"unknown departments: {unknown}" if unknown else "no departments selected")

        await self._clear_graph()
        self.state = SessionState(goal=goal, mode=mode, status=SessionStatus.RUNNING, document=goal, cycle_count=1)
        bind_session(self.state.session_id)
        if mode == SessionMode.REFINEMENT:
            mutation = build_refinement_round(
                goal,
                new_round(1),
                departments=selected,
                judge_count=self.settings.refinement.initial_judge_count,
            )
        else:
            mutation = build_planning_root(goal)
        await self.store.commit(mutation)
        await self._save_state()
        await self.add_log(LogLevel.SYSTEM, f"Session started in {mode.value} mode with {len(mutation.nodes)} nodes")
        logger.info("session_started", mode=mode.value, nodes=len(mutation.nodes))
        self._launch(RunContext(goal=goal, mode=mode, document=goal, cycle=1))
        return self.state.model_copy()

    async def resume(self) -> SessionState:
        """Reload the persisted graph and keep scheduling it."""
        if self.is_running:
            raise SessionStateError("a run is already in progress")
        rows = await self.documents.query(SESSIONS, id=CURRENT_SESSION)
        if rows:
            self.state = SessionState.model_validate(rows[0])
        rolled_back = await self.store.load()
        snapshot = await self.store.get_all()
        if not snapshot.nodes:
            raise SessionStateError("no persisted graph to resume")
        bind_session(self.state.session_id)
        cycles = [record.round_id.cycle for record in snapshot.rounds.values()]
        cycle = max(cycles or [self.state.cycle_count or 1])
        self.state = self.state.model_copy(
            update={"status": SessionStatus.RUNNING, "message": None, "cycle_count": cycle, "updated_at": utcnow()}
        )
        await self._save_state()
        await self.add_log(LogLevel.SYSTEM, f"Session resumed ({rolled_back} interrupted node(s) reset)")
        self._launch(
            RunContext(
                goal=self.state.goal,
                mode=self.state.mode,
                document=self.state.document or self.state.goal,
                cycle=cycle,
            )
        )
        return self.state.model_copy()

    async def wait(self) -> RunReport | None:
        if self._task is None:
            return self.last_report
        return await self._task

    async def abort(self) -> SessionState:
        if not self.is_running or self._cancel is None:
            return self.state.model_copy()
        await self.add_log(LogLevel.WARN, "Abort requested")
        self._cancel.cancel()
        await self.wait()
        return self.state.model_copy()

    async def reset(self) -> SessionState:
        await self.abort()
        await self._clear_graph()
        await self.documents.delete([SESSIONS, LOGS])
        self.limiter.reset()
        self.state = SessionState()
        self.last_report = None
        self._task = None
        logger.info("session_reset")
        return self.state.model_copy()

    def update_concurrency(self, max_concurrency: int) -> int:
        self.gate.max = max_concurrency
        return self.gate.max

    def update_rate_limits(
        self,
        *,
        requests_per_minute: int | None = None,
        requests_per_day: int | None = None,
        enabled: bool | None = None,
    ) -> RateLimitStatus:
        self.limiter.update_limits(
            max_per_minute=requests_per_minute,
            max_per_day=requests_per_day,
            enabled=enabled,
        )
        return self.limiter.status()

    async def snapshot(self) -> GraphSnapshot:
        return await self.store.get_all()

    async def queue_metrics(self) -> QueueMetrics:
        return compute_queue_metrics(await self.store.get_all())

    async def logs(self, *, limit: int | None = None) -> list[LogEntry]:
        entries = [LogEntry.model_validate(row) for row in await self.documents.query(LOGS)]
        entries.sort(key=lambda entry: entry.timestamp)
        return entries[-limit:] if limit else entries

    async def add_log(self, level: LogLevel, message: str, node_id: str | None = None) -> None:
        entry = LogEntry(level=level, message=message, node_id=node_id)
        await self.documents.write({LOGS: [entry.model_dump(mode="json")]})

    async def close(self) -> None:
        await self.abort()
        await self.documents.close()

    def _launch(self, context: RunContext) -> None:
        self._cancel = CancellationToken()
        self._task = asyncio.create_task(self._drive(context, self._cancel), name="ouroboros-scheduler")

    async def _drive(self, context: RunContext, cancel: CancellationToken) -> RunReport:
        try:
            report = await self.scheduler.run(context, cancel)
        except Exception as exc:
            logger.exception("scheduler_crashed", error=str(exc))
            report = RunReport(outcome=RunOutcome.FAILED, message=f"Scheduler crashed: {exc}")
            await self.add_log(LogLevel.ERROR, report.message)
        self.last_report = report
        self.state = self.state.model_copy(
            update={
                "status": STATUS_BY_OUTCOME[report.outcome],
                "message": report.message,
                "document": context.document,
                "cycle_count": context.cycle,
                "updated_at": utcnow(),
            }
        )
        await self._save_state()
        logger.info("session_finished", outcome=report.outcome.value, message=report.message)
        return report

    async def _clear_graph(self) -> None:
        await self.store.clear()
        await self.knowledge.clear()

    async def _save_state(self) -> None:
        payload = self.state.model_dump(mode="json")
        payload["id"] = CURRENT_SESSION
        await self.documents.write({SESSIONS: [payload]})


__all__ = ["OrchestrationSession", "STATUS_BY_OUTCOME"]
