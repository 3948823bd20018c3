from __future__ import annotations

from ouroboros.core.config import ValidationSettings
from ouroboros.orchestration.validation import OutputValidator, RedFlagType, count_hedges

SOLID = "Adopt event sourcing for the ledger so every balance can be rebuilt from an immutable history."


def test_solid_output_passes() -> None:
    result = OutputValidator(ValidationSettings()).validate(SOLID, 85)
    assert result.passed is True
    assert result.flags == []
    assert result.suggested_temperature is None


def test_short_output_raises_temperature() -> None:
    result = OutputValidator(ValidationSettings()).validate("Use a queue.", 90)
    assert result.passed is False
    assert RedFlagType.TOO_SHORT.value in result.flag_names
    assert result.suggested_temperature == 0.9


def test_placeholder_text_is_generic() -> None:
    text = "The onboarding flow is TBD and the pricing page shows placeholder copy for every plan tier."
    result = OutputValidator(ValidationSettings()).validate(text, 90)
    assert result.flag_names == [RedFlagType.TOO_GENERIC.value]
    assert result.suggested_temperature == 0.9


def test_contradictions_lower_temperature() -> None:
    text = (
        "Use SQL, but NoSQL scales. However SQL has joins, yet documents are flexible, "
        "although migrations hurt, nevertheless pick SQL."
    )
    result = OutputValidator(ValidationSettings()).validate(text, 90)
    assert RedFlagType.CONTRADICTORY.value in result.flag_names
    assert result.suggested_temperature == 0.3


def test_hedging_and_low_confidence() -> None:
    text = "I think maybe we could be fine, perhaps it seems possibly okay to launch the beta in the spring."
    assert count_hedges(text) >= 4
    result = OutputValidator(ValidationSettings()).validate(text, 10)
    assert set(result.flag_names) == {RedFlagType.EXCESSIVE_HEDGING.value, RedFlagType.LOW_CONFIDENCE.value}
    assert result.suggested_temperature == 0.7


def test_flags_can_be_disabled() -> None:
    validator = OutputValidator(ValidationSettings(disabled_flags=["too_short", "unknown_flag"]))
    assert validator.validate("Use a queue.", 90).passed is True
    assert validator.validate("Use a queue.", 10, disabled=[RedFlagType.LOW_CONFIDENCE]).passed is True


def test_gating_follows_settings() -> None:
    validator = OutputValidator(ValidationSettings(gated_kinds=["analyst"]))
    assert validator.gates("analyst") is True
    assert validator.gates("lead") is False
    off = OutputValidator(ValidationSettings(enabled=False))
    assert off.gates("analyst") is False
    assert off.max_attempts == 1
