from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, ClassVar, Sequence

from ..utils.json_extraction import extract_list, extract_object
from .enums import NodeKind
from .state import ArtifactSet, Node
from .topology import TaskSpec, parse_task_specs

MAX_SPAWNED_CHILDREN = 6
NEUTRAL_SCORE = 50.0


@dataclass(slots=True)
class ExecutionContext:
    node: Node
    dependencies: list[Node]
    instruction: str
    goal: str
    document: str


@dataclass(slots=True)
class SpawnRequest:
    kind: NodeKind
    items: list[TaskSpec]
    prefix: str
    persona: str


@dataclass(slots=True)
class HandlerResult:
    output: str
    score: float = 0.0
    artifacts: ArtifactSet | None = None
    data: dict[str, Any] = field(default_factory=dict)
    spawn: SpawnRequest | None = None
    document: str | None = None


def clamp_score(value: Any, default: float) -> float:
    try:
        score = float(value)
    except (TypeError, ValueError):
        return default
    if score != score:  # NaN
        return default
    return max(0.0, min(100.0, score))


def format_dependency_outputs(dependencies: Sequence[Node]) -> str:
    blocks: list[str] = []
    for dep in dependencies:
        block = f"FROM [{dep.label or dep.id}] [Confidence: {dep.score:.0f}%]:\n{dep.output or ''}"
        artifacts = dep.artifacts
        if artifacts is not None and not artifacts.is_empty():
            if artifacts.specification:
                block += f"\n  SPECIFICATION: {artifacts.specification}"
            if artifacts.implementation_plan:
                block += f"\n  IMPLEMENTATION PLAN: {artifacts.implementation_plan}"
            if artifacts.justification:
                block += f"\n  JUSTIFICATION: {artifacts.justification}"
        blocks.append(block)
    return "\n\n".join(blocks)


class NodeHandler:
    """Prompt construction and result parsing for one node kind."""

    kind: ClassVar[NodeKind]
    json_mode: ClassVar[bool] = True

    def build_prompt(self, context: ExecutionContext) -> str:
        raise NotImplementedError

    def parse(self, text: str, context: ExecutionContext) -> HandlerResult:
        raise NotImplementedError

    def _preamble(self, context: ExecutionContext) -> str:
        node = context.node
        parts = [f"ROLE: {node.persona or node.label}", f"TASK: {context.instruction}"]
        upstream = format_dependency_outputs(context.dependencies)
        if upstream:
            parts.append(f"UPSTREAM CONTEXT:\n{upstream}")
        return "\n\n".join(parts)


class AnalystHandler(NodeHandler):
    kind = NodeKind.ANALYST

    def build_prompt(self, context: ExecutionContext) -> str:
        return (
            f"{self._preamble(context)}\n\nGOAL: {context.goal}\n\n"
            "Give one decisive, concrete insight. No hedging.\n"
            'Return JSON: {"insight": string, "confidence": number 0-100}'
        )

    def parse(self, text: str, context: ExecutionContext) -> HandlerResult:
        payload = extract_object(text)
        insight = str(payload.get("insight") or payload.get("output") or text).strip()
        confidence = clamp_score(payload.get("confidence"), NEUTRAL_SCORE)
        return HandlerResult(output=insight, score=confidence, data=payload)


class LeadHandler(NodeHandler):
    kind = NodeKind.LEAD

    def build_prompt(self, context: ExecutionContext) -> str:
        return (
            f"{self._preamble(context)}\n\nGOAL: {context.goal}\n\n"
            "Merge your team's insights into a section of the specification.\n"
            'Return JSON: {"specification": string, "implementation_plan": string, '
            '"justification": string, "summary": string, "confidence": number 0-100}'
        )

    def parse(self, text: str, context: ExecutionContext) -> HandlerResult:
        payload = extract_object(text)
        artifacts = ArtifactSet(
            specification=_text_or_none(payload.get("specification")),
            implementation_plan=_text_or_none(payload.get("implementation_plan")),
            justification=_text_or_none(payload.get("justification")),
        )
        summary = _text_or_none(payload.get("summary")) or artifacts.specification or text.strip()
        return HandlerResult(
            output=summary,
            score=clamp_score(payload.get("confidence"), NEUTRAL_SCORE),
            artifacts=None if artifacts.is_empty() else artifacts,
            data=payload,
        )


class SynthesizerHandler(NodeHandler):
    kind = NodeKind.SYNTHESIZER
    json_mode = False

    def build_prompt(self, context: ExecutionContext) -> str:
        return (
            f"{self._preamble(context)}\n\nCURRENT DOCUMENT:\n{context.document or context.goal}\n\n"
            "Rewrite the complete document, integrating every upstream section. "
            "Return only the document text."
        )

    def parse(self, text: str, context: ExecutionContext) -> HandlerResult:
        document = _strip_fences(text)
        plans = [dep.artifacts.implementation_plan for dep in context.dependencies if dep.artifacts and dep.artifacts.implementation_plan]
        reasons = [dep.artifacts.justification for dep in context.dependencies if dep.artifacts and dep.artifacts.justification]
        scored = [dep.score for dep in context.dependencies if dep.kind != NodeKind.SYNTHESIZER]
        return HandlerResult(
            output=document,
            score=sum(scored) / len(scored) if scored else 0.0,
            artifacts=ArtifactSet(
                specification=document,
                implementation_plan="\n\n".join(plans) or None,
                justification="\n\n".join(reasons) or None,
            ),
            document=document,
        )


class EvaluatorHandler(NodeHandler):
    kind = NodeKind.EVALUATOR

    def build_prompt(self, context: ExecutionContext) -> str:
        focus = context.node.data.get("focus", "overall quality")
        return (
            f"{self._preamble(context)}\n\nJUDGE FOCUS: {focus}\n\n"
            "Score the specification from 0 to 100. Set veto to true only for a fatal flaw.\n"
            'Return JSON: {"score": number 0-100, "reasoning": string, "veto": boolean}'
        )

    def parse(self, text: str, context: ExecutionContext) -> HandlerResult:
        payload = extract_object(text)
        score = clamp_score(payload.get("score"), NEUTRAL_SCORE)
        veto = payload.get("veto") is True or score == 0.0
        if veto:
            score = 0.0
        reasoning = str(payload.get("reasoning") or text).strip()
        data = {**payload, "focus": context.node.data.get("focus"), "veto": veto}
        return HandlerResult(output=reasoning, score=score, data=data)


class ArchitectHandler(NodeHandler):
    kind = NodeKind.ARCHITECT

    def build_prompt(self, context: ExecutionContext) -> str:
        return (
            f"{self._preamble(context)}\n\nDOCUMENT:\n{context.document or context.goal}\n\n"
            'Return JSON: {"modules": [{"id": string, "title": string, "description": string}]}'
        )

    def parse(self, text: str, context: ExecutionContext) -> HandlerResult:
        modules = extract_list(text, key="modules")
        specs = parse_task_specs(modules, limit=MAX_SPAWNED_CHILDREN, fallback_prefix="module")
        summary = "\n".join(f"- {spec.title}" for spec in specs) or text.strip()
        spawn = SpawnRequest(NodeKind.PLANNER, specs, prefix="module", persona="Tech Lead") if specs else None
        return HandlerResult(output=summary, score=100.0 if specs else 0.0, data={"modules": modules}, spawn=spawn)


class PlannerHandler(NodeHandler):
    kind = NodeKind.PLANNER

    def build_prompt(self, context: ExecutionContext) -> str:
        return (
            f"{self._preamble(context)}\n\n"
            "Break this module into concrete, individually executable tasks.\n"
            'Return JSON: {"tasks": [{"id": string, "title": string, "description": string}]}'
        )

    def parse(self, text: str, context: ExecutionContext) -> HandlerResult:
        tasks = extract_list(text, key="tasks")
        specs = parse_task_specs(tasks, limit=MAX_SPAWNED_CHILDREN)
        summary = "\n".join(f"- {spec.title}" for spec in specs) or text.strip()
        spawn = (
            SpawnRequest(NodeKind.ANALYST, specs, prefix=f"{context.node.id}_task", persona="Engineer")
            if specs
            else None
        )
        return HandlerResult(output=summary, score=100.0 if specs else 0.0, data={"tasks": tasks}, spawn=spawn)


def _text_or_none(value: Any) -> str | None:
    if value is None:
        return None
    if not isinstance(value, str):
        value = str(value)
    value = value.strip()
    return value or None


def _strip_fences(text: str) -> str:
    stripped = text.strip()
    if stripped.startswith("```") and stripped.endswith("```"):
        lines = stripped.splitlines()
        return "\n".join(lines[1:-1]).strip()
    return stripped


HANDLERS: dict[NodeKind, NodeHandler] = {
    handler.kind: handler
    for handler in (
        AnalystHandler(),
        LeadHandler(),
        SynthesizerHandler(),
        EvaluatorHandler(),
        ArchitectHandler(),
        PlannerHandler(),
    )
}


def get_handler(kind: NodeKind) -> NodeHandler:
    return HANDLERS[NodeKind(kind)]


__all__ = [
    "ExecutionContext",
    "HANDLERS",
    "HandlerResult",
    "NodeHandler",
    "SpawnRequest",
    "clamp_score",
    "format_dependency_outputs",
    "get_handler",
]
