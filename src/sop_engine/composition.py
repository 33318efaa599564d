"""Composition resolution: flatten a procedure and its embedded procedures.

Features:
 - Depth-first expansion of embedded procedures with use-site overrides
   (assignee, skipped steps, total duration)
 - Per-level topological ordering of steps (ties broken by step number)
 - Embedding cycle and dependency cycle detection
 - Works over a loaded snapshot of records; nothing is written while resolving

The result is a flat list of ``EffectiveStep`` records. Steps expanded from an
embedding step ``E`` get the path-qualified id ``"E/<inner id>"`` and keep a
back-reference to ``E`` through ``parent_step_id``.
"""

from __future__ import annotations

import heapq
import logging
from dataclasses import dataclass, field
from typing import Callable, Dict, Iterable, List, Mapping, Optional, Union

from .errors import (
    CompositionCycle,
    DependencyCycle,
    EmbeddingNotAllowed,
    ProcedureNotFound,
)
from .models import ExecutionOrder, Procedure, Step

logger = logging.getLogger(__name__)

PATH_SEP = "/"

Loader = Callable[[str], Procedure]


@dataclass
class EffectiveStep:
    id: str
    step: Step
    procedure_id: str
    title: str
    duration: float
    assignee: Optional[str] = None
    depth: int = 0
    parent_step_id: Optional[str] = None
    # Effective ids (same level, plus those inherited from the embedding step)
    dependencies: List[str] = field(default_factory=list)

    @property
    def is_embedded(self) -> bool:
        return self.depth > 0

    @property
    def origin_id(self) -> str:
        return self.step.id

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "origin_step_id": self.step.id,
            "procedure_id": self.procedure_id,
            "title": self.title,
            "type": self.step.type.value,
            "duration": self.duration,
            "assignee": self.assignee,
            "depth": self.depth,
            "parent_step_id": self.parent_step_id,
            "is_embedded": self.is_embedded,
            "is_optional": self.step.is_optional,
            "dependencies": list(self.dependencies),
            "list_items": [
                {"id": i.id, "text": i.text, "is_optional": i.is_optional}
                for i in self.step.list_items
            ],
        }


@dataclass
class ResolvedProcedure:
    procedure: Procedure
    steps: List[EffectiveStep]

    @property
    def step_ids(self) -> List[str]:
        return [s.id for s in self.steps]

    @property
    def total_duration(self) -> float:
        return sum(s.duration for s in self.steps)

    def get(self, step_id: str) -> Optional[EffectiveStep]:
        for s in self.steps:
            if s.id == step_id:
                return s
        return None

    def available_steps(self, done: Iterable[str] = ()) -> List[EffectiveStep]:
        """Steps that may be worked on next given the finished (done or skipped) ids.

        sequential: only the first pending step in validated order.
        parallel / flexible: every pending step whose dependencies are met; the
        order of the returned list is advisory.
        """
        done_set = set(done)
        pending = [s for s in self.steps if s.id not in done_set]
        if not pending:
            return []
        if self.procedure.execution_order == ExecutionOrder.SEQUENTIAL:
            return pending[:1]
        return [s for s in pending if self._dependencies_met(s, done_set)]

    def _dependencies_met(self, step: EffectiveStep, done: set) -> bool:
        for dep in step.dependencies:
            prefix = dep + PATH_SEP
            for other in self.steps:
                if (other.id == dep or other.id.startswith(prefix)) and other.id not in done:
                    return False
        return True


def order_steps(procedure: Procedure) -> List[Step]:
    """Topologically sort one procedure level; ties go to the lower step number."""
    by_id: Dict[str, Step] = {s.id: s for s in procedure.steps}
    indegree: Dict[str, int] = {sid: 0 for sid in by_id}
    dependents: Dict[str, List[str]] = {sid: [] for sid in by_id}
    for s in procedure.steps:
        for dep in set(s.dependencies):
            if dep not in by_id:
                logger.warning(
                    "Procedure %s step %s depends on unknown step %s; ignoring",
                    procedure.id,
                    s.id,
                    dep,
                )
                continue
            indegree[s.id] += 1
            dependents[dep].append(s.id)
    heap = [(s.step_number, s.id) for s in procedure.steps if indegree[s.id] == 0]
    heapq.heapify(heap)
    ordered: List[Step] = []
    while heap:
        _, sid = heapq.heappop(heap)
        ordered.append(by_id[sid])
        for nxt in dependents[sid]:
            indegree[nxt] -= 1
            if indegree[nxt] == 0:
                heapq.heappush(heap, (by_id[nxt].step_number, nxt))
    if len(ordered) < len(by_id):
        stuck = [sid for sid, deg in indegree.items() if deg > 0]
        raise DependencyCycle(procedure.id, stuck)
    return ordered


def top_level_duration(procedure: Procedure, load: Loader) -> float:
    """Sum of top-level step durations; an embedded step counts its override or the
    embedded procedure's own total."""
    total = 0.0
    for step in procedure.steps:
        if step.is_embedded_procedure:
            if step.overrides.estimated_duration is not None:
                total += step.overrides.estimated_duration
                continue
            try:
                total += load(step.embedded_procedure_id).estimated_duration
            except ProcedureNotFound:
                total += step.estimated_duration
        else:
            total += step.estimated_duration
    return total


class CompositionResolver:
    """Expands procedures over a loader returning ``Procedure`` records by id."""

    def __init__(self, load: Union[Loader, Mapping[str, Procedure]]):
        if isinstance(load, Mapping):
            snapshot = load

            def load(procedure_id: str) -> Procedure:
                try:
                    return snapshot[procedure_id]
                except KeyError:
                    raise ProcedureNotFound(procedure_id) from None

        self._load = load

    def resolve(self, procedure: Union[str, Procedure]) -> ResolvedProcedure:
        if isinstance(procedure, str):
            procedure = self._load(procedure)
        steps = self._expand(
            procedure,
            path=[],
            depth=0,
            prefix="",
            parent_step_id=None,
            title_prefix="",
            assignee_override=None,
            fallback_assignee=None,
            inherited_deps=[],
        )
        logger.debug(
            "Resolved procedure %s v%s into %d effective steps",
            procedure.id,
            procedure.version,
            len(steps),
        )
        return ResolvedProcedure(procedure=procedure, steps=steps)

    def _expand(
        self,
        procedure: Procedure,
        path: List[str],
        depth: int,
        prefix: str,
        parent_step_id: Optional[str],
        title_prefix: str,
        assignee_override: Optional[str],
        fallback_assignee: Optional[str],
        inherited_deps: List[str],
    ) -> List[EffectiveStep]:
        if procedure.id in path:
            raise CompositionCycle(path[path.index(procedure.id) :] + [procedure.id])
        path = path + [procedure.id]
        known = {s.id for s in procedure.steps}
        assignee = assignee_override or procedure.default_assignee or fallback_assignee
        out: List[EffectiveStep] = []
        for step in order_steps(procedure):
            eid = prefix + step.id
            deps = inherited_deps + [
                prefix + d for d in dict.fromkeys(step.dependencies) if d in known
            ]
            title = f"{title_prefix}{step.title}"
            if not step.is_embedded_procedure:
                out.append(
                    EffectiveStep(
                        id=eid,
                        step=step,
                        procedure_id=procedure.id,
                        title=title,
                        duration=step.estimated_duration,
                        assignee=assignee,
                        depth=depth,
                        parent_step_id=parent_step_id,
                        dependencies=deps,
                    )
                )
                continue
            child = self._load(step.embedded_procedure_id)
            inner = self._expand(
                child,
                path=path,
                depth=depth + 1,
                prefix=eid + PATH_SEP,
                parent_step_id=eid,
                title_prefix=f"{title}: ",
                assignee_override=step.overrides.assigned_to or assignee_override,
                fallback_assignee=procedure.default_assignee or fallback_assignee,
                inherited_deps=deps,
            )
            out.extend(self._apply_overrides(step, eid, inner))
        return out

    @staticmethod
    def _apply_overrides(
        step: Step, eid: str, inner: List[EffectiveStep]
    ) -> List[EffectiveStep]:
        original_total = sum(s.duration for s in inner)
        skip = set(step.overrides.skip_steps)
        if skip:
            cut = len(eid) + len(PATH_SEP)
            remaining = [s for s in inner if s.id[cut:].split(PATH_SEP)[0] not in skip]
            logger.debug(
                "Embedding step %s skipped %d of %d steps",
                eid,
                len(inner) - len(remaining),
                len(inner),
            )
        else:
            remaining = inner
        override = step.overrides.estimated_duration
        if override is not None and remaining:
            if original_total > 0:
                factor = override / original_total
                for s in remaining:
                    s.duration = s.duration * factor
            else:
                share = override / len(remaining)
                for s in remaining:
                    s.duration = share
        return remaining


def resolve(
    procedure_id: str, procedures: Mapping[str, Procedure]
) -> ResolvedProcedure:
    return CompositionResolver(procedures).resolve(procedure_id)


def validate_procedure(candidate: Procedure, load: Loader) -> ResolvedProcedure:
    """Check a procedure about to be saved: embeddable targets, acyclic embedding
    and acyclic dependencies. Raises before anything is persisted."""

    def overlay(procedure_id: str) -> Procedure:
        if procedure_id == candidate.id:
            return candidate
        return load(procedure_id)

    for step in candidate.steps:
        if not step.is_embedded_procedure:
            continue
        if step.embedded_procedure_id == candidate.id:
            raise CompositionCycle([candidate.id, candidate.id])
        target = load(step.embedded_procedure_id)
        if not target.can_be_embedded:
            raise EmbeddingNotAllowed(candidate.id, target.id)
    return CompositionResolver(overlay).resolve(candidate)
