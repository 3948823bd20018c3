from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Query, status

from ..core.errors import SessionStateError
from ..core.logging import get_logger
from ..dependencies import get_session
from ..orchestration.session import OrchestrationSession
from ..schemas.session import (
    ConcurrencyUpdateRequest,
    GraphResponse,
    LogsResponse,
    QueueMetricsModel,
    RateLimitStatusModel,
    RateLimitUpdateRequest,
    SessionResponse,
    SessionStartRequest,
)

logger = get_logger(name=__name__)

router = APIRouter()


async def _describe(session: OrchestrationSession) -> SessionResponse:
    state = session.state
    metrics = await session.queue_metrics()
    return SessionResponse(
        session_id=state.session_id,
        goal=state.goal,
        mode=state.mode,
        status=state.status,
        is_processing=state.is_processing,
        document=state.document,
        cycle_count=state.cycle_count,
        message=state.message,
        max_concurrency=session.gate.max,
        gate_in_use=session.gate.in_use,
        gate_waiting=session.gate.waiting,
        queue=QueueMetricsModel(**metrics.as_dict()),
        rate_limit=RateLimitStatusModel(**session.limiter.status().as_dict()),
        last_report=session.last_report.as_dict() if session.last_report is not None else None,
        updated_at=state.updated_at,
    )


def _conflict(exc: SessionStateError) -> HTTPException:
    return HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc))


@router.get("/health", tags=["health"])
async def health() -> dict[str, str]:
    return {"status": "ok"}


@router.get("/session", response_model=SessionResponse, tags=["session"])
async def get_session_state(session: OrchestrationSession = Depends(get_session)) -> SessionResponse:
    return await _describe(session)


@router.post("/session/start", response_model=SessionResponse, status_code=status.HTTP_202_ACCEPTED, tags=["session"])
async def start_session(
    payload: SessionStartRequest,
    session: OrchestrationSession = Depends(get_session),
) -> SessionResponse:
    try:
        await session.start(payload.goal, payload.mode, payload.departments)
    except SessionStateError as exc:
        raise _conflict(exc) from exc
    logger.info("session_start_requested", mode=payload.mode.value)
    return await _describe(session)


@router.post("/session/abort", response_model=SessionResponse, tags=["session"])
async def abort_session(session: OrchestrationSession = Depends(get_session)) -> SessionResponse:
    await session.abort()
    return await _describe(session)


@router.post("/session/reset", response_model=SessionResponse, tags=["session"])
async def reset_session(session: OrchestrationSession = Depends(get_session)) -> SessionResponse:
    await session.reset()
    return await _describe(session)


@router.post("/session/resume", response_model=SessionResponse, status_code=status.HTTP_202_ACCEPTED, tags=["session"])
async def resume_session(session: OrchestrationSession = Depends(get_session)) -> SessionResponse:
    try:
        await session.resume()
    except SessionStateError as exc:
        raise _conflict(exc) from exc
    return await _describe(session)


@router.put("/session/concurrency", response_model=SessionResponse, tags=["session"])
async def update_concurrency(
    payload: ConcurrencyUpdateRequest,
    session: OrchestrationSession = Depends(get_session),
) -> SessionResponse:
    session.update_concurrency(payload.max_concurrency)
    return await _describe(session)


@router.put("/session/rate-limits", response_model=RateLimitStatusModel, tags=["session"])
async def update_rate_limits(
    payload: RateLimitUpdateRequest,
    session: OrchestrationSession = Depends(get_session),
) -> RateLimitStatusModel:
    current = session.update_rate_limits(
        requests_per_minute=payload.requests_per_minute,
        requests_per_day=payload.requests_per_day,
        enabled=payload.enabled,
    )
    return RateLimitStatusModel(**current.as_dict())


@router.get("/graph", response_model=GraphResponse, tags=["graph"])
async def get_graph(session: OrchestrationSession = Depends(get_session)) -> GraphResponse:
    snapshot = await session.snapshot()
    return GraphResponse(
        nodes=list(snapshot.nodes.values()),
        edges=snapshot.edges,
        rounds=list(snapshot.rounds.values()),
    )


@router.get("/logs", response_model=LogsResponse, tags=["logs"])
async def get_logs(
    limit: int | None = Query(default=None, ge=1, le=1000),
    session: OrchestrationSession = Depends(get_session),
) -> LogsResponse:
    return LogsResponse(entries=await session.logs(limit=limit))
