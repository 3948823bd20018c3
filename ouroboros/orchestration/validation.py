from __future__ import annotations

import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Iterable

from ..core.config import ValidationSettings


class RedFlagType(str, Enum):
    TOO_SHORT = "too_short"
    TOO_GENERIC = "too_generic"
    CONTRADICTORY = "contradictory"
    LOW_CONFIDENCE = "low_confidence"
    EXCESSIVE_HEDGING = "excessive_hedging"


class RedFlagSeverity(str, Enum):
    MEDIUM = "medium"
    HIGH = "high"


GENERIC_PATTERNS: tuple[re.Pattern[str], ...] = (
    re.compile(r"\bTODO\b", re.IGNORECASE),
    re.compile(r"placeholder", re.IGNORECASE),
    re.compile(r"lorem ipsum", re.IGNORECASE),
    re.compile(r"\[insert .+?\]", re.IGNORECASE),
    re.compile(r"xxx+", re.IGNORECASE),
    re.compile(r"\btbd\b", re.IGNORECASE),
    re.compile(r"to be determined", re.IGNORECASE),
    re.compile(r"coming soon", re.IGNORECASE),
)

DISCOURSE_MARKERS = re.compile(
    r"\b(but|however|on the other hand|conversely|although|though|yet|nevertheless|nonetheless)\b",
    re.IGNORECASE,
)

HEDGING_PATTERNS: tuple[re.Pattern[str], ...] = (
    re.compile(r"\b(I think|I believe|maybe|perhaps|possibly|it seems|it appears|might|could be)\b", re.IGNORECASE),
    re.compile(r"\b(not sure|uncertain|unclear|guess)\b", re.IGNORECASE),
)


@dataclass(slots=True)
class RedFlag:
    type: RedFlagType
    severity: RedFlagSeverity
    message: str


@dataclass(slots=True)
class ValidationResult:
    passed: bool
    flags: list[RedFlag] = field(default_factory=list)
    suggested_temperature: float | None = None

    @property
    def flag_names(self) -> list[str]:
        return [flag.type.value for flag in self.flags]


def count_hedges(text: str) -> int:
    return sum(len(pattern.findall(text)) for pattern in HEDGING_PATTERNS)


class OutputValidator:
    """Red-flag checks applied to generated text before it is accepted."""

    def __init__(self, settings: ValidationSettings) -> None:
        self._settings = settings
        known = {flag.value for flag in RedFlagType}
        self._disabled = {RedFlagType(flag) for flag in settings.disabled_flags if flag in known}

    @property
    def max_attempts(self) -> int:
        return self._settings.max_attempts if self._settings.enabled else 1

    def gates(self, kind: str) -> bool:
        return self._settings.enabled and kind in set(self._settings.gated_kinds)

    def validate(
        self,
        output: str,
        confidence: float,
        *,
        disabled: Iterable[RedFlagType] = (),
    ) -> ValidationResult:
        skip = self._disabled | set(disabled)
        text = output.strip()
        flags: list[RedFlag] = []

        if RedFlagType.TOO_SHORT not in skip and len(text) < self._settings.min_output_chars:
            flags.append(
                RedFlag(
                    RedFlagType.TOO_SHORT,
                    RedFlagSeverity.HIGH,
                    f"Output is too short ({len(text)} characters, minimum {self._settings.min_output_chars}).",
                )
            )
        if RedFlagType.TOO_GENERIC not in skip and any(pattern.search(text) for pattern in GENERIC_PATTERNS):
            flags.append(
                RedFlag(
                    RedFlagType.TOO_GENERIC,
                    RedFlagSeverity.HIGH,
                    "Output contains placeholder text.",
                )
            )
        markers = len(DISCOURSE_MARKERS.findall(text))
        if RedFlagType.CONTRADICTORY not in skip and markers > self._settings.contradiction_threshold:
            flags.append(
                RedFlag(
                    RedFlagType.CONTRADICTORY,
                    RedFlagSeverity.MEDIUM,
                    f"Output contains {markers} contradictory discourse markers.",
                )
            )
        if RedFlagType.LOW_CONFIDENCE not in skip and confidence < self._settings.low_confidence_threshold:
            flags.append(
                RedFlag(
                    RedFlagType.LOW_CONFIDENCE,
                    RedFlagSeverity.MEDIUM,
                    f"Confidence {confidence:.0f}% is below {self._settings.low_confidence_threshold:.0f}%.",
                )
            )
        hedges = count_hedges(text)
        if RedFlagType.EXCESSIVE_HEDGING not in skip and hedges > self._settings.hedging_threshold:
            flags.append(
                RedFlag(
                    RedFlagType.EXCESSIVE_HEDGING,
                    RedFlagSeverity.MEDIUM,
                    f"Output hedges {hedges} times; commit to a position.",
                )
            )

        if not flags:
            return ValidationResult(passed=True)
        types = {flag.type for flag in flags}
        if types & {RedFlagType.TOO_SHORT, RedFlagType.TOO_GENERIC}:
            temperature = 0.9
        elif RedFlagType.CONTRADICTORY in types:
            temperature = 0.3
        else:
            temperature = 0.7
        return ValidationResult(passed=False, flags=flags, suggested_temperature=temperature)


__all__ = [
    "OutputValidator",
    "RedFlag",
    "RedFlagSeverity",
    "RedFlagType",
    "ValidationResult",
    "count_hedges",
]
