"""Plan: the static, validated DAG of stages across hosts."""

from __future__ import annotations

import heapq
import logging
from dataclasses import dataclass, field, replace
from typing import Dict, Iterable, List, Mapping, Optional, Sequence, Set, Tuple

from ..dispatch import CollaboratorRegistry, HostSpec
from ..dispatch.registry import template_parameters
from .errors import PlanValidationError
from .models import Stage

logger = logging.getLogger(__name__)


@dataclass
class Plan:
    """
    Ordered stages grouped into per-host lanes.

    Within a lane, declaration order is execution order. Cross-host ordering
    comes only from explicit `depends_on` edges.
    """

    plan_id: str
    stages: List[Stage]
    hosts: Dict[str, HostSpec] = field(default_factory=dict)
    description: str = ""

    def __post_init__(self) -> None:
        self._index: Dict[str, Stage] = {}
        for stage in self.stages:
            self._index.setdefault(stage.id, stage)

    @property
    def host_ids(self) -> List[str]:
        seen: List[str] = []
        for stage in self.stages:
            if stage.host not in seen:
                seen.append(stage.host)
        return seen

    @property
    def lanes(self) -> Dict[str, List[Stage]]:
        lanes: Dict[str, List[Stage]] = {}
        for stage in self.stages:
            lanes.setdefault(stage.host, []).append(stage)
        return lanes

    def stage(self, stage_id: str) -> Stage:
        return self._index[stage_id]

    def __contains__(self, stage_id: str) -> bool:
        return stage_id in self._index

    def __len__(self) -> int:
        return len(self.stages)

    # ------------------------------------------------------------------
    # validation
    # ------------------------------------------------------------------

    def validate(self, registry: Optional[CollaboratorRegistry] = None) -> None:
        """Raise PlanValidationError listing every structural problem found."""
        problems: List[str] = []

        seen: Set[str] = set()
        for stage in self.stages:
            if stage.id in seen:
                problems.append(f"duplicate stage id '{stage.id}'")
            seen.add(stage.id)

        if not self.stages:
            problems.append(f"plan '{self.plan_id}' has no stages")

        for stage in self.stages:
            if self.hosts and stage.host not in self.hosts:
                problems.append(f"stage '{stage.id}' targets unknown host '{stage.host}'")
            for dep in sorted(stage.depends_on):
                if dep not in self._index:
                    problems.append(f"stage '{stage.id}' depends on unknown stage '{dep}'")
                elif dep == stage.id:
                    problems.append(f"stage '{stage.id}' depends on itself")
            if registry is not None:
                problems.extend(self._check_refs(stage, registry))

        # 重复 id 会让依赖图失真，先报告重复
        cycle = None if len(seen) != len(self.stages) else self._find_cycle()
        if cycle:
            problems.append("dependency cycle: " + " -> ".join(cycle))

        if problems:
            raise PlanValidationError(problems)

    @staticmethod
    def _check_refs(stage: Stage, registry: CollaboratorRegistry) -> List[str]:
        problems: List[str] = []
        if not registry.has_action(stage.action.ref):
            problems.append(f"stage '{stage.id}' uses unknown action '{stage.action.ref}'")
        else:
            needed = template_parameters(registry.action(stage.action.ref).command)
            missing = sorted(needed - set(stage.action.params))
            if missing:
                problems.append(
                    f"stage '{stage.id}' is missing action parameter(s): {', '.join(missing)}"
                )
        for probe_ref in (stage.precondition, stage.postcondition):
            if probe_ref is not None and not registry.has_probe(probe_ref):
                problems.append(f"stage '{stage.id}' uses unknown probe '{probe_ref}'")
        return problems

    def edges(self) -> Dict[str, Set[str]]:
        """Predecessors of each stage: explicit deps plus the previous stage in its lane."""
        preds: Dict[str, Set[str]] = {stage.id: set() for stage in self.stages}
        for lane in self.lanes.values():
            for previous, current in zip(lane, lane[1:]):
                preds[current.id].add(previous.id)
        for stage in self.stages:
            preds[stage.id].update(d for d in stage.depends_on if d in self._index and d != stage.id)
        return preds

    def _find_cycle(self) -> Optional[List[str]]:
        preds = self.edges()
        white, grey, black = 0, 1, 2
        color = {sid: white for sid in preds}
        stack: List[str] = []

        def visit(node: str) -> Optional[List[str]]:
            color[node] = grey
            stack.append(node)
            for pred in sorted(preds[node]):
                if color[pred] == grey:
                    start = stack.index(pred)
                    return list(reversed(stack[start:] + [pred]))
                if color[pred] == white:
                    found = visit(pred)
                    if found:
                        return found
            stack.pop()
            color[node] = black
            return None

        for stage in self.stages:
            if color.get(stage.id) == white:
                found = visit(stage.id)
                if found:
                    return found
        return None

    # ------------------------------------------------------------------
    # ordering / filtering
    # ------------------------------------------------------------------

    def execution_order(self) -> List[Stage]:
        """One valid serial order (Kahn), ties broken by declaration order."""
        preds = self.edges()
        position = {stage.id: i for i, stage in enumerate(self.stages)}
        remaining = {sid: len(p) for sid, p in preds.items()}
        successors: Dict[str, List[str]] = {sid: [] for sid in preds}
        for sid, ps in preds.items():
            for p in ps:
                successors[p].append(sid)

        heap: List[Tuple[int, str]] = [(position[sid], sid) for sid, n in remaining.items() if n == 0]
        heapq.heapify(heap)
        order: List[Stage] = []
        while heap:
            _, sid = heapq.heappop(heap)
            order.append(self._index[sid])
            for succ in successors[sid]:
                remaining[succ] -= 1
                if remaining[succ] == 0:
                    heapq.heappush(heap, (position[succ], succ))

        if len(order) != len(self.stages):
            raise PlanValidationError([f"plan '{self.plan_id}' contains a dependency cycle"])
        return order

    def restrict_to_hosts(self, host_ids: Iterable[str]) -> "Plan":
        """Only the lanes of the selected hosts.

        Edges to stages on other hosts are dropped: those stages are treated
        as satisfied externally.
        """
        selected = set(host_ids)
        unknown = sorted(selected - set(self.host_ids) - set(self.hosts))
        if unknown:
            raise PlanValidationError([f"unknown host '{h}'" for h in unknown])

        kept_ids = {s.id for s in self.stages if s.host in selected}
        stages: List[Stage] = []
        for stage in self.stages:
            if stage.id not in kept_ids:
                continue
            external = sorted(d for d in stage.depends_on if d not in kept_ids)
            if external:
                logger.warning(
                    "⚠️  [%s] %s: treating %s as satisfied externally (host not selected)",
                    stage.host, stage.id, ", ".join(external),
                )
                stage = replace(stage, depends_on=frozenset(stage.depends_on) - set(external))
            stages.append(stage)

        hosts = {h: spec for h, spec in self.hosts.items() if h in selected}
        return Plan(plan_id=self.plan_id, stages=stages, hosts=hosts, description=self.description)

    def describe(self) -> List[Mapping[str, object]]:
        return [
            {"order": i + 1, **stage.to_dict()}
            for i, stage in enumerate(self.execution_order())
        ]


def merge_stages(included: Sequence[Sequence[Stage]], own: Sequence[Stage] = ()) -> List[Stage]:
    """Compose a plan from included plans followed by its own stages.

    A stage reached through more than one include (e.g. `full` including both
    `dc` and `sccm`, which itself includes `dc`) appears once. Anything else
    sharing an id, including duplicates among a plan's own stages, is kept so
    that validation reports it.
    """
    merged: List[Stage] = []
    for group in included:
        earlier = {stage.id: stage for stage in merged}
        for stage in group:
            if _same_stage(earlier.get(stage.id), stage):
                continue
            merged.append(stage)
    merged.extend(own)
    return merged


def _same_stage(first: Optional[Stage], second: Stage) -> bool:
    # ActionCall.params is excluded from dataclass equality
    return first == second and first is not None and first.action.params == second.action.params
