from __future__ import annotations

from collections.abc import AsyncIterator

from fastapi import Depends

from .core.config import Settings, get_settings
from .orchestration.session import OrchestrationSession


_session_singleton: OrchestrationSession | None = None


def get_session_singleton(settings: Settings) -> OrchestrationSession:
    global _session_singleton
    if _session_singleton is None:
        _session_singleton = OrchestrationSession.from_settings(settings)
    return _session_singleton


async def close_session_singleton() -> None:
    global _session_singleton
    if _session_singleton is not None:
        await _session_singleton.close()
        _session_singleton = None


async def get_app_settings() -> AsyncIterator[Settings]:
    yield get_settings()


async def get_session(
    settings: Settings = Depends(get_app_settings),
) -> AsyncIterator[OrchestrationSession]:
    yield get_session_singleton(settings)
