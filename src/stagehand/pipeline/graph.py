"""Typed stage DAG, validated before any stage runs.

Usage::

    graph = StageGraph.from_config(config)   # raises GraphValidationError
    for layer in graph.layers():
        ...
"""

from __future__ import annotations

import heapq
from collections import defaultdict
from typing import TYPE_CHECKING

from stagehand.errors import GraphValidationError

if TYPE_CHECKING:
    from collections.abc import Iterable, Iterator

    from stagehand.pipeline.config import PipelineConfig, StageSpec


def validate_stages(
    stages: Iterable[StageSpec],
    targets: Iterable[str] | None = None,
) -> list[str]:
    """Validate a stage list.

    Checks duplicate names, dependencies that are unknown or not defined
    before the dependent stage, dependency cycles, unknown targets, and
    stages without targets or commands.

    Returns:
        List of error strings. Empty means valid.
    """
    stages = list(stages)
    known_targets = set(targets) if targets is not None else None
    errors: list[str] = []

    all_names = {stage.name for stage in stages}
    defined: dict[str, int] = {}
    for index, stage in enumerate(stages):
        if stage.name in defined:
            errors.append(f"Duplicate stage name {stage.name!r}")
            continue
        if not stage.targets:
            errors.append(f"Stage {stage.name!r} declares no targets")
        if not stage.commands:
            errors.append(f"Stage {stage.name!r} declares no commands")
        if known_targets is not None:
            for target in stage.targets:
                if target not in known_targets:
                    errors.append(f"Stage {stage.name!r} runs on unknown target {target!r}")
        if len(set(stage.targets)) != len(stage.targets):
            errors.append(f"Stage {stage.name!r} lists a target more than once")
        for dep in stage.needs:
            if dep == stage.name:
                errors.append(f"Stage {stage.name!r} depends on itself")
            elif dep not in all_names:
                errors.append(f"Stage {stage.name!r} depends on {dep!r}, which is not defined")
            elif dep not in defined:
                errors.append(
                    f"Stage {stage.name!r} depends on {dep!r}, which is defined after it"
                )
        defined[stage.name] = index

    # Cycle check using Kahn's algorithm, only meaningful once references resolve
    if not errors:
        in_degree: dict[str, int] = {stage.name: len(set(stage.needs)) for stage in stages}
        adj: dict[str, list[str]] = defaultdict(list)
        for stage in stages:
            for dep in set(stage.needs):
                adj[dep].append(stage.name)

        queue = [name for name, deg in in_degree.items() if deg == 0]
        visited = 0
        while queue:
            node = queue.pop()
            visited += 1
            for neighbor in adj[node]:
                in_degree[neighbor] -= 1
                if in_degree[neighbor] == 0:
                    queue.append(neighbor)

        if visited != len(stages):
            cycle_members = [name for name, deg in in_degree.items() if deg > 0]
            errors.append(f"Dependency cycle detected among: {', '.join(sorted(cycle_members))}")

    return errors


class StageGraph:
    """Immutable, validated DAG of stages.

    Stages keep their definition order, which is also the tiebreak for
    ``execution_order()``.
    """

    def __init__(self, stages: Iterable[StageSpec], targets: Iterable[str] | None = None) -> None:
        """Build and validate the graph.

        Raises:
            GraphValidationError: With every problem found.
        """
        stages = list(stages)
        errors = validate_stages(stages, targets)
        if errors:
            raise GraphValidationError(errors)

        self._stages: dict[str, StageSpec] = {stage.name: stage for stage in stages}
        self._priority: dict[str, int] = {stage.name: i for i, stage in enumerate(stages)}
        self._dependents: dict[str, list[str]] = defaultdict(list)
        for stage in stages:
            for dep in dict.fromkeys(stage.needs):
                self._dependents[dep].append(stage.name)

    @classmethod
    def from_config(cls, config: PipelineConfig) -> StageGraph:
        """Build the graph of a pipeline config, also checking the resolver and publisher."""
        problems: list[str] = []
        for special in (config.resolver, config.publish):
            if len(special.targets) != 1:
                problems.append(f"Stage {special.name!r} must run on exactly one target")
            elif special.targets[0] not in config.targets:
                problems.append(
                    f"Stage {special.name!r} runs on unknown target {special.targets[0]!r}"
                )
            if not special.commands:
                problems.append(f"Stage {special.name!r} declares no commands")
            if special.name in config.stage_names:
                problems.append(f"Stage name {special.name!r} is reserved")
        if config.resolver.name == config.publish.name:
            problems.append(f"Resolver and publisher share the name {config.publish.name!r}")

        problems.extend(validate_stages(config.stages, config.targets))
        if problems:
            raise GraphValidationError(problems)
        return cls(config.stages, config.targets)

    # -- Lookup ----------------------------------------------------------------

    def __len__(self) -> int:
        return len(self._stages)

    def __contains__(self, name: object) -> bool:
        return name in self._stages

    def __iter__(self) -> Iterator[StageSpec]:
        return iter(self._stages.values())

    def __getitem__(self, name: str) -> StageSpec:
        return self._stages[name]

    @property
    def names(self) -> list[str]:
        """All stage names (definition order)."""
        return list(self._stages)

    def dependencies(self, name: str) -> tuple[str, ...]:
        return self._stages[name].needs

    def dependents(self, name: str) -> list[str]:
        """Stages that list ``name`` in their ``needs``."""
        return list(self._dependents.get(name, []))

    def descendants(self, name: str) -> set[str]:
        """Every stage transitively depending on ``name``."""
        seen: set[str] = set()
        queue = self.dependents(name)
        while queue:
            current = queue.pop()
            if current in seen:
                continue
            seen.add(current)
            queue.extend(self._dependents.get(current, []))
        return seen

    def instance_count(self) -> int:
        return sum(len(stage.targets) for stage in self._stages.values())

    # -- Ordering --------------------------------------------------------------

    def execution_order(self) -> list[str]:
        """Stage names in stable topological order.

        Kahn's algorithm with a min-heap on definition order for stable
        tiebreaking.
        """
        in_degree = {name: len(set(stage.needs)) for name, stage in self._stages.items()}
        heap: list[tuple[int, str]] = [
            (self._priority[name], name) for name, deg in in_degree.items() if deg == 0
        ]
        heapq.heapify(heap)

        result: list[str] = []
        while heap:
            _priority, name = heapq.heappop(heap)
            result.append(name)
            for dependent in self._dependents.get(name, []):
                in_degree[dependent] -= 1
                if in_degree[dependent] == 0:
                    heapq.heappush(heap, (self._priority[dependent], dependent))
        return result

    def layers(self) -> list[list[str]]:
        """Group stages into layers; stages within a layer may run concurrently."""
        depth: dict[str, int] = {}
        for name in self.execution_order():
            needs = self._stages[name].needs
            depth[name] = 1 + max((depth[dep] for dep in needs), default=-1)
        layers: list[list[str]] = [[] for _ in range(max(depth.values(), default=-1) + 1)]
        for name in self.names:
            layers[depth[name]].append(name)
        return layers

    def plan_table(self) -> str:
        """Human-readable table of the stages.

        Returns a markdown-formatted table with columns:
        Layer | Stage | Targets | Needs
        """
        lines = ["| Layer | Stage | Targets | Needs |"]
        lines.append("|-------|-------|---------|-------|")
        for index, layer in enumerate(self.layers()):
            for name in layer:
                stage = self._stages[name]
                needs = ", ".join(stage.needs) if stage.needs else "-"
                lines.append(f"| {index} | {name} | {', '.join(stage.targets)} | {needs} |")
        return "\n".join(lines)
