from __future__ import annotations


class OuroborosError(Exception):
    """Base class for orchestration errors."""


class ProviderError(OuroborosError):
    """The text-generation provider failed for a reason other than quota."""


class QuotaExceededError(ProviderError):
    """The provider rejected a call because a quota or rate limit was hit."""


class RunCancelledError(OuroborosError):
    """Raised at a suspension point once the run has been aborted."""


class GraphIntegrityError(OuroborosError):
    """A graph mutation would break id uniqueness, dependency existence or acyclicity."""


class SessionStateError(OuroborosError):
    """A session control operation is not valid in the current state."""


__all__ = [
    "GraphIntegrityError",
    "OuroborosError",
    "ProviderError",
    "QuotaExceededError",
    "RunCancelledError",
    "SessionStateError",
]
