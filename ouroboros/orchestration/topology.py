"""Builders for the node batches the scheduler and controllers splice into the graph.

Every builder returns a ``GraphMutation``; nothing here touches the store.
Node ids are derived from slugs plus the round token and are de-duplicated
against the ids already taken.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Any, Collection, Iterable, Mapping, Sequence

from .enums import NodeKind
from .state import GraphMutation, Node, RoundId, RoundRecord


@dataclass(frozen=True, slots=True)
class Persona:
    slug: str
    label: str
    instruction: str


@dataclass(frozen=True, slots=True)
class JudgeSeat:
    slug: str
    label: str
    persona: str
    focus: str


@dataclass(frozen=True, slots=True)
class TaskSpec:
    slug: str
    title: str
    instruction: str


EXPERT_PERSONAS: dict[str, tuple[Persona, ...]] = {
    "strategy": (
        Persona("visionary", "The Visionary", "Focus on maximum ambition, market dominance and soul. Ignore constraints."),
        Persona("pragmatist", "The Pragmatist", "Focus on the MVP, feasibility, costs and immediate value."),
    ),
    "marketing": (
        Persona("hypeman", "The Hype Man", "Focus on virality, hooks and emotional resonance."),
        Persona("growth", "The Growth Analyst", "Focus on retention, funnels and user acquisition logic."),
    ),
    "ux": (
        Persona("empath", "The Empath", "Focus purely on user feeling, accessibility and delight."),
        Persona("mechanic", "The Mechanic", "Focus on friction, click-flow and interaction logic."),
    ),
    "engineering": (
        Persona("builder", "The Architect", "Focus on system stability, data schema and scalability."),
        Persona("optimizer", "The Optimizer", "Focus on speed, latency and efficient code paths."),
    ),
    "security": (
        Persona("paranoid", "The Paranoid", "Assume everything will fail. Find the leaks."),
        Persona("compliance", "The Officer", "Focus on data governance, RBAC and standards."),
    ),
}

JUDGE_PANEL: tuple[JudgeSeat, ...] = (
    JudgeSeat("tech", "Tech Judge", "Chief Engineer", "Technical Feasibility"),
    JudgeSeat("product", "Value Judge", "Chief Product Officer", "User Value"),
    JudgeSeat("risk", "Risk Judge", "Chief Risk Officer", "Security & Stability"),
    JudgeSeat("ux", "UX Judge", "Chief Design Officer", "User Experience & Delight"),
    JudgeSeat("market", "Market Judge", "Chief Marketing Officer", "Market Fit & Virality"),
)

_SLUG = re.compile(r"[^a-z0-9]+")


def slugify(value: Any, fallback: str = "item") -> str:
    slug = _SLUG.sub("_", str(value or "").lower()).strip("_")
    return slug[:40] or fallback


def unique_id(base: str, taken: Collection[str]) -> str:
    if base not in taken:
        return base
    suffix = 2
    while f"{base}_{suffix}" in taken:
        suffix += 1
    return f"{base}_{suffix}"


def depth_after(dependencies: Iterable[Node]) -> int:
    depths = [node.depth for node in dependencies]
    return max(depths) + 1 if depths else 0


def judge_seat(index: int) -> JudgeSeat:
    if index < len(JUDGE_PANEL):
        return JUDGE_PANEL[index]
    return JudgeSeat(f"generic_{index}", f"Judge #{index + 1}", "General Evaluator", "Overall Quality and Consistency")


def parse_task_specs(items: Any, *, limit: int, fallback_prefix: str = "task") -> list[TaskSpec]:
    """Normalise a model-proposed task list; entries without any text are dropped."""
    if not isinstance(items, Sequence) or isinstance(items, (str, bytes)):
        return []
    specs: list[TaskSpec] = []
    seen: set[str] = set()
    for index, item in enumerate(items):
        if isinstance(item, str):
            item = {"title": item, "description": item}
        if not isinstance(item, Mapping):
            continue
        title = str(item.get("title") or item.get("name") or "").strip()
        instruction = str(
            item.get("instruction") or item.get("description") or item.get("details") or title
        ).strip()
        if not title and not instruction:
            continue
        slug = unique_id(slugify(item.get("id") or title, f"{fallback_prefix}_{index + 1}"), seen)
        seen.add(slug)
        specs.append(TaskSpec(slug=slug, title=title or instruction[:60], instruction=instruction))
        if len(specs) >= limit:
            break
    return specs


def build_judges(
    anchor: Node,
    round_id: RoundId,
    *,
    start: int,
    stop: int,
    taken: Collection[str],
) -> list[Node]:
    judges: list[Node] = []
    used = set(taken)
    for index in range(start, stop):
        seat = judge_seat(index)
        node_id = unique_id(f"judge_{seat.slug}_{round_id}", used)
        used.add(node_id)
        judges.append(
            Node(
                id=node_id,
                kind=NodeKind.EVALUATOR,
                label=seat.label,
                persona=seat.persona,
                instruction=f"Evaluate the synthesized specification for {seat.focus}. Vote 0-100.",
                dependencies=[anchor.id],
                round_id=round_id,
                depth=anchor.depth + 1,
                data={"focus": seat.focus, "seat": index},
            )
        )
    return judges


def build_refinement_round(
    goal: str,
    round_id: RoundId,
    *,
    departments: Sequence[str],
    judge_count: int,
) -> GraphMutation:
    """First refinement round: persona analysts, department leads, one synthesizer, the judge panel."""
    nodes: list[Node] = []
    lead_nodes: list[Node] = []
    for department in departments:
        personas = EXPERT_PERSONAS.get(department)
        if not personas:
            raise ValueError(f"unknown department '{department}'")
        analysts = [
            Node(
                id=f"analyst_{department}_{persona.slug}_{round_id}",
                kind=NodeKind.ANALYST,
                label=persona.label,
                persona=persona.label,
                instruction=f"{persona.instruction}\nGoal: {goal}",
                round_id=round_id,
                data={"department": department},
            )
            for persona in personas
        ]
        lead = Node(
            id=f"lead_{department}_{round_id}",
            kind=NodeKind.LEAD,
            label=f"{department.title()} Lead",
            persona=f"Head of {department.title()}",
            instruction=f"Merge your team's insights into the {department} section of the specification.",
            dependencies=[analyst.id for analyst in analysts],
            round_id=round_id,
            depth=depth_after(analysts),
            data={"department": department},
        )
        nodes.extend(analysts)
        lead_nodes.append(lead)
    nodes.extend(lead_nodes)
    synthesizer = Node(
        id=f"synthesizer_{round_id}",
        kind=NodeKind.SYNTHESIZER,
        label=f"Synthesizer v{round_id.cycle}",
        persona="Grand Architect",
        instruction="Transmute the department specifications into one coherent master specification.",
        dependencies=[lead.id for lead in lead_nodes],
        round_id=round_id,
        depth=depth_after(lead_nodes),
    )
    nodes.append(synthesizer)
    judges = build_judges(synthesizer, round_id, start=0, stop=judge_count, taken={node.id for node in nodes})
    nodes.extend(judges)
    record = RoundRecord(round_id=round_id, anchor_id=synthesizer.id, judge_target=judge_count)
    return GraphMutation(nodes=nodes, rounds=[record])


def build_remediation_round(
    anchor: Node,
    round_id: RoundId,
    tasks: Sequence[TaskSpec],
    *,
    judge_count: int,
    directive: str,
    taken: Collection[str],
) -> GraphMutation:
    """Follow-up round anchored on a rejected synthesizer: task analysts, a new synthesizer, new judges."""
    used = set(taken)
    analysts: list[Node] = []
    for task in tasks:
        node_id = unique_id(f"fix_{task.slug}_{round_id}", used)
        used.add(node_id)
        analysts.append(
            Node(
                id=node_id,
                kind=NodeKind.ANALYST,
                label=task.title,
                persona="Remediation Specialist",
                instruction=f"{task.instruction}\n\nContext: {directive}",
                dependencies=[anchor.id],
                round_id=round_id,
                depth=anchor.depth + 1,
                data={"task": task.slug},
            )
        )
    synthesizer_id = unique_id(f"synthesizer_{round_id}", used)
    used.add(synthesizer_id)
    synthesizer = Node(
        id=synthesizer_id,
        kind=NodeKind.SYNTHESIZER,
        label=f"Synthesizer v{round_id.cycle}",
        persona="Grand Architect",
        instruction=f"Refine the specification again and address the tribunal's concerns. {directive}",
        dependencies=[anchor.id, *(analyst.id for analyst in analysts)],
        round_id=round_id,
        depth=depth_after([anchor, *analysts]),
    )
    judges = build_judges(synthesizer, round_id, start=0, stop=judge_count, taken=used)
    record = RoundRecord(round_id=round_id, anchor_id=synthesizer.id, judge_target=judge_count)
    return GraphMutation(nodes=[*analysts, synthesizer, *judges], rounds=[record])


def build_planning_root(goal: str) -> GraphMutation:
    architect = Node(
        id="architect",
        kind=NodeKind.ARCHITECT,
        label="Head Architect",
        persona="Grand Architect",
        instruction=f"Break the specification into 3-5 distinct structural modules.\nSpecification: {goal}",
    )
    return GraphMutation(nodes=[architect])


def build_children(
    parent: Node,
    kind: NodeKind,
    items: Sequence[TaskSpec],
    *,
    prefix: str,
    persona: str,
    taken: Collection[str],
) -> list[Node]:
    used = set(taken)
    children: list[Node] = []
    for item in items:
        node_id = unique_id(f"{prefix}_{item.slug}", used)
        used.add(node_id)
        children.append(
            Node(
                id=node_id,
                kind=kind,
                label=item.title,
                persona=persona,
                instruction=item.instruction,
                dependencies=[parent.id],
                round_id=parent.round_id,
                depth=parent.depth + 1,
                data={"parent": parent.id},
            )
        )
    return children


def build_subtasks(failed: Node, anchors: Sequence[Node], tasks: Sequence[TaskSpec], *, taken: Collection[str]) -> GraphMutation:
    """Split a repeatedly failing node: sub-tasks hang off its own dependencies and it aggregates them."""
    used = set(taken)
    subtasks: list[Node] = []
    for task in tasks:
        node_id = unique_id(f"{failed.id}_task_{task.slug}", used)
        used.add(node_id)
        subtasks.append(
            Node(
                id=node_id,
                kind=NodeKind.ANALYST,
                label=task.title,
                persona="Micro Specialist",
                instruction=task.instruction,
                dependencies=list(failed.dependencies),
                round_id=failed.round_id,
                depth=depth_after(anchors),
                data={"parent": failed.id},
            )
        )
    rewired = failed.model_copy(
        update={
            "dependencies": [*failed.dependencies, *(task.id for task in subtasks)],
            "depth": depth_after(subtasks),
        },
        deep=True,
    )
    return GraphMutation(nodes=subtasks, updates=[rewired])


__all__ = [
    "EXPERT_PERSONAS",
    "JUDGE_PANEL",
    "JudgeSeat",
    "Persona",
    "TaskSpec",
    "build_children",
    "build_judges",
    "build_planning_root",
    "build_refinement_round",
    "build_remediation_round",
    "build_subtasks",
    "depth_after",
    "judge_seat",
    "parse_task_specs",
    "slugify",
    "unique_id",
]
