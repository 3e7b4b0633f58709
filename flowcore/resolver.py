from __future__ import annotations

import heapq
import logging
from collections import Counter, deque
from dataclasses import dataclass, field

from .errors import UnknownNodeTypeError, ValidationError
from .models import ConnectionSpec, ExecutionMode, ValidationResult, Workflow
from .nodes.base import NodeCategory
from .nodes.registry import NodeRegistry

logger = logging.getLogger(__name__)

_UNVISITED, _IN_PROGRESS, _DONE = 0, 1, 2


@dataclass(slots=True)
class ExecutionPlan:
    order: list[str]
    seed_node_id: str
    skipped_triggers: list[str] = field(default_factory=list)
    incoming: dict[str, list[ConnectionSpec]] = field(default_factory=dict)
    outgoing: dict[str, list[ConnectionSpec]] = field(default_factory=dict)
    terminal_node_ids: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)


class GraphResolver:
    """Validates a workflow graph and turns it into an execution plan."""

    def __init__(self, registry: NodeRegistry, reject_ambiguous_inputs: bool = False) -> None:
        self.registry = registry
        self.reject_ambiguous_inputs = reject_ambiguous_inputs

    def validate(self, workflow: Workflow) -> ValidationResult:
        errors: list[str] = []
        warnings: list[str] = []

        if not workflow.nodes:
            return ValidationResult(valid=False, errors=["Workflow has no nodes"])

        counts = Counter(node.id for node in workflow.nodes)
        for node_id, count in counts.items():
            if count > 1:
                errors.append(f"Duplicate node id '{node_id}'")

        specs = {node.id: node for node in workflow.nodes}
        for spec in workflow.nodes:
            try:
                node = self.registry.get(spec.type)
            except UnknownNodeTypeError:
                errors.append(f"Node '{spec.id}' has unknown type '{spec.type}'")
                continue
            if not node.validate(spec.properties):
                errors.append(f"Node '{spec.id}' ({spec.type}) has invalid properties")

        valid_connections: list[ConnectionSpec] = []
        for connection in workflow.connections:
            missing = [
                node_id
                for node_id in (connection.source_node_id, connection.target_node_id)
                if node_id not in specs
            ]
            if missing:
                for node_id in dict.fromkeys(missing):
                    errors.append(f"Connection references unknown node '{node_id}'")
                continue
            valid_connections.append(connection)
            errors.extend(self._port_errors(connection, workflow))

        inputs_per_port = Counter((c.target_node_id, c.target_input) for c in valid_connections)
        for (node_id, port), count in inputs_per_port.items():
            if count > 1:
                message = (
                    f"Node '{node_id}' input '{port}' receives {count} connections; "
                    "payloads are merged in connection order"
                )
                (errors if self.reject_ambiguous_inputs else warnings).append(message)

        adjacency = self._adjacency(workflow, valid_connections)
        cycle = self._find_cycle(workflow, adjacency)
        if cycle:
            errors.append("Cycle detected: " + " -> ".join(cycle))

        roots = self._trigger_roots(workflow, valid_connections)
        if not roots:
            errors.append("Workflow has no trigger node without incoming connections")
        else:
            reachable = self._reachable(roots, adjacency)
            for spec in workflow.nodes:
                if spec.id not in reachable:
                    warnings.append(f"Node '{spec.id}' is not reachable from any trigger")

        return ValidationResult(valid=not errors, errors=errors, warnings=warnings)

    def resolve(self, workflow: Workflow, mode: ExecutionMode = ExecutionMode.MANUAL) -> ExecutionPlan:
        result = self.validate(workflow)
        if not result.valid:
            raise ValidationError(result.errors)

        incoming: dict[str, list[ConnectionSpec]] = {node.id: [] for node in workflow.nodes}
        outgoing: dict[str, list[ConnectionSpec]] = {node.id: [] for node in workflow.nodes}
        for connection in workflow.connections:
            outgoing[connection.source_node_id].append(connection)
            incoming[connection.target_node_id].append(connection)

        order = self._topological_order(workflow, outgoing)
        roots = self._trigger_roots(workflow, workflow.connections)
        matching = [
            node_id
            for node_id in roots
            if mode in self.registry.get(workflow.node(node_id).type).trigger_modes
        ]
        seed = matching[0] if matching else roots[0]
        skipped = [node_id for node_id in roots if node_id != seed]
        if skipped:
            logger.debug("Workflow %s: seeding %s, skipping triggers %s", workflow.id, seed, skipped)

        return ExecutionPlan(
            order=order,
            seed_node_id=seed,
            skipped_triggers=skipped,
            incoming=incoming,
            outgoing=outgoing,
            terminal_node_ids=[node_id for node_id in order if not outgoing[node_id]],
            warnings=result.warnings,
        )

    def _port_errors(self, connection: ConnectionSpec, workflow: Workflow) -> list[str]:
        errors = []
        source = workflow.node(connection.source_node_id)
        target = workflow.node(connection.target_node_id)
        if source.type in self.registry:
            ports = self.registry.get(source.type).output_ports(source.properties)
            if connection.source_output not in ports:
                errors.append(f"Node '{source.id}' has no output port '{connection.source_output}'")
        if target.type in self.registry:
            if connection.target_input not in self.registry.get(target.type).inputs:
                errors.append(f"Node '{target.id}' has no input port '{connection.target_input}'")
        return errors

    @staticmethod
    def _adjacency(workflow: Workflow, connections: list[ConnectionSpec]) -> dict[str, list[str]]:
        adjacency: dict[str, list[str]] = {node.id: [] for node in workflow.nodes}
        for connection in connections:
            targets = adjacency[connection.source_node_id]
            if connection.target_node_id not in targets:
                targets.append(connection.target_node_id)
        return adjacency

    @staticmethod
    def _find_cycle(workflow: Workflow, adjacency: dict[str, list[str]]) -> list[str] | None:
        state = {node_id: _UNVISITED for node_id in adjacency}
        for start in (node.id for node in workflow.nodes):
            if state[start] != _UNVISITED:
                continue
            path = [start]
            stack = [iter(adjacency[start])]
            state[start] = _IN_PROGRESS
            while stack:
                child = next(stack[-1], None)
                if child is None:
                    state[path.pop()] = _DONE
                    stack.pop()
                elif state[child] == _IN_PROGRESS:
                    return path[path.index(child):] + [child]
                elif state[child] == _UNVISITED:
                    state[child] = _IN_PROGRESS
                    path.append(child)
                    stack.append(iter(adjacency[child]))
        return None

    def _trigger_roots(self, workflow: Workflow, connections: list[ConnectionSpec]) -> list[str]:
        has_incoming = {connection.target_node_id for connection in connections}
        return [
            spec.id
            for spec in workflow.nodes
            if spec.id not in has_incoming
            and spec.type in self.registry
            and self.registry.get(spec.type).category is NodeCategory.TRIGGER
        ]

    @staticmethod
    def _reachable(roots: list[str], adjacency: dict[str, list[str]]) -> set[str]:
        seen = set(roots)
        queue = deque(roots)
        while queue:
            for target in adjacency[queue.popleft()]:
                if target not in seen:
                    seen.add(target)
                    queue.append(target)
        return seen

    @staticmethod
    def _topological_order(workflow: Workflow, outgoing: dict[str, list[ConnectionSpec]]) -> list[str]:
        position = {node.id: index for index, node in enumerate(workflow.nodes)}
        indegree = {node.id: 0 for node in workflow.nodes}
        for connections in outgoing.values():
            for connection in connections:
                indegree[connection.target_node_id] += 1

        ready = [(position[node_id], node_id) for node_id, degree in indegree.items() if degree == 0]
        heapq.heapify(ready)
        order: list[str] = []
        while ready:
            _, node_id = heapq.heappop(ready)
            order.append(node_id)
            for connection in outgoing[node_id]:
                indegree[connection.target_node_id] -= 1
                if indegree[connection.target_node_id] == 0:
                    heapq.heappush(ready, (position[connection.target_node_id], connection.target_node_id))

        if len(order) != len(workflow.nodes):
            raise ValidationError(["Workflow graph has a cycle"])
        return order
