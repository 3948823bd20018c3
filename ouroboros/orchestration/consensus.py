from __future__ import annotations

from dataclasses import dataclass, field
from statistics import StatisticsError, mean, pvariance
from typing import Sequence

from ..core.config import ConsensusSettings
from ..core.logging import get_logger
from ..core.metrics import record_consensus_decision
from .enums import ConsensusDecision, NodeKind, NodeStatus
from .state import GraphMutation, GraphSnapshot, Node, RoundRecord
from .topology import build_judges

logger = get_logger(name=__name__)


@dataclass(slots=True)
class JudgeVerdict:
    judge_id: str
    score: float
    reasoning: str = ""
    focus: str | None = None

    @property
    def veto(self) -> bool:
        return self.score == 0.0


@dataclass(slots=True)
class ConsensusStats:
    count: int
    average: float
    variance: float

    def as_dict(self) -> dict[str, float]:
        return {"count": self.count, "average": round(self.average, 2), "variance": round(self.variance, 2)}


@dataclass(slots=True)
class ConsensusOutcome:
    decision: ConsensusDecision
    stats: ConsensusStats
    verdicts: list[JudgeVerdict] = field(default_factory=list)
    next_judge_count: int | None = None
    veto_reason: str | None = None

    def as_dict(self) -> dict[str, object]:
        return {
            "decision": self.decision.value,
            "stats": self.stats.as_dict(),
            "next_judge_count": self.next_judge_count,
            "veto_reason": self.veto_reason,
            "verdicts": [
                {"judge_id": verdict.judge_id, "score": verdict.score, "focus": verdict.focus}
                for verdict in self.verdicts
            ],
        }


class ConsensusVotingSystem:
    """Tribunal of evaluator nodes with variance-driven escalation.

    Decision order: any veto rejects, high disagreement escalates to the
    next panel size (or asks for human review at the largest size), then
    the average decides between accept and soft failure.
    """

    def __init__(self, settings: ConsensusSettings) -> None:
        self._settings = settings

    @property
    def initial_judge_count(self) -> int:
        return self._settings.escalation_tiers[0]

    @staticmethod
    def compute_stats(scores: Sequence[float]) -> ConsensusStats:
        if not scores:
            return ConsensusStats(count=0, average=0.0, variance=0.0)
        try:
            variance = pvariance(scores)
        except StatisticsError:  # pragma: no cover - guarded above
            variance = 0.0
        return ConsensusStats(count=len(scores), average=mean(scores), variance=variance)

    def next_tier(self, judge_count: int) -> int | None:
        for tier in self._settings.escalation_tiers:
            if tier > judge_count:
                return tier
        return None

    def decide(self, verdicts: Sequence[JudgeVerdict], *, panel_size: int | None = None) -> ConsensusOutcome:
        """Decide a round. ``panel_size`` counts every seated judge, voting or not, and picks the next tier."""
        stats = self.compute_stats([verdict.score for verdict in verdicts])
        vetoes = [verdict for verdict in verdicts if verdict.veto]
        if vetoes:
            reason = "; ".join(filter(None, (verdict.reasoning for verdict in vetoes))) or "veto without reasoning"
            return ConsensusOutcome(ConsensusDecision.REJECT_VETO, stats, list(verdicts), veto_reason=reason)

        if stats.count and stats.variance > self._settings.variance_threshold:
            panel = max(panel_size or 0, stats.count)
            tier = self.next_tier(panel) if self._settings.escalation_enabled else None
            if tier is not None:
                return ConsensusOutcome(ConsensusDecision.ESCALATE, stats, list(verdicts), next_judge_count=tier)
            return ConsensusOutcome(ConsensusDecision.HUMAN_REVIEW, stats, list(verdicts))

        if stats.count and stats.average >= self._settings.acceptance_threshold:
            return ConsensusOutcome(ConsensusDecision.ACCEPT, stats, list(verdicts))
        return ConsensusOutcome(ConsensusDecision.SOFT_FAIL, stats, list(verdicts))

    @staticmethod
    def collect_verdicts(snapshot: GraphSnapshot, record: RoundRecord) -> list[JudgeVerdict] | None:
        """Verdicts of a round's judges, or ``None`` while any judge is still pending or running.

        Judges that ended in error cast no vote.
        """
        judges = snapshot.round_nodes(record.round_id, NodeKind.EVALUATOR)
        if any(not judge.is_terminal for judge in judges):
            return None
        return [
            JudgeVerdict(
                judge_id=judge.id,
                score=judge.score,
                reasoning=judge.output or "",
                focus=judge.data.get("focus"),
            )
            for judge in judges
            if judge.status == NodeStatus.COMPLETE
        ]

    def evaluate_round(self, snapshot: GraphSnapshot, record: RoundRecord) -> ConsensusOutcome | None:
        verdicts = self.collect_verdicts(snapshot, record)
        if verdicts is None:
            return None
        panel = len(snapshot.round_nodes(record.round_id, NodeKind.EVALUATOR))
        outcome = self.decide(verdicts, panel_size=panel)
        record_consensus_decision(outcome.decision.value, outcome.stats.count)
        logger.info(
            "consensus_evaluated",
            round=str(record.round_id),
            decision=outcome.decision.value,
            **outcome.stats.as_dict(),
        )
        return outcome

    @staticmethod
    def settle(record: RoundRecord, outcome: ConsensusOutcome) -> RoundRecord:
        return record.model_copy(
            update={
                "decision": outcome.decision,
                "average_score": outcome.stats.average,
                "variance": outcome.stats.variance,
                "veto_reason": outcome.veto_reason,
                "judge_target": outcome.next_judge_count or record.judge_target,
            }
        )

    @staticmethod
    def escalation(snapshot: GraphSnapshot, record: RoundRecord, outcome: ConsensusOutcome) -> GraphMutation:
        """Additional judges on the same anchor, bringing the panel up to the next tier."""
        anchor: Node = snapshot.nodes[record.anchor_id]
        existing = len(snapshot.round_nodes(record.round_id, NodeKind.EVALUATOR))
        target = outcome.next_judge_count or existing
        judges = build_judges(
            anchor,
            record.round_id,
            start=existing,
            stop=target,
            taken=snapshot.nodes.keys(),
        )
        return GraphMutation(nodes=judges, rounds=[ConsensusVotingSystem.settle(record, outcome)])

    @staticmethod
    def format_report(outcome: ConsensusOutcome) -> str:
        lines = [
            f"TRIBUNAL: {outcome.decision.value.upper()} "
            f"(avg {outcome.stats.average:.1f}, variance {outcome.stats.variance:.1f}, judges {outcome.stats.count})"
        ]
        for verdict in outcome.verdicts:
            lines.append(f"  {verdict.judge_id} [{verdict.focus or 'general'}]: {verdict.score:.0f}")
        if outcome.veto_reason:
            lines.append(f"  VETO: {outcome.veto_reason}")
        return "\n".join(lines)


__all__ = ["ConsensusOutcome", "ConsensusStats", "ConsensusVotingSystem", "JudgeVerdict"]
