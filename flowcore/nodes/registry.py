from __future__ import annotations

import logging
import threading
from typing import Any, Iterable

from ..errors import UnknownNodeTypeError
from .base import Node, NodeCategory

logger = logging.getLogger(__name__)


class NodeRegistry:
    """Explicit ``id -> Node`` map with category/tag indexes and a manifest cache.

    Registration happens at start-up; afterwards the registry is read by many
    workers at once. Mutations take a lock and drop the cached manifest.
    """

    def __init__(self) -> None:
        self._nodes: dict[str, Node] = {}
        self._categories: dict[NodeCategory, list[str]] = {}
        self._manifest: list[dict[str, Any]] | None = None
        self._lock = threading.RLock()

    def register(self, node: Node) -> bool:
        node_id = node.id
        with self._lock:
            if node_id in self._nodes:
                logger.warning("Node %s is already registered, skipping registration", node_id)
                return False
            self._nodes[node_id] = node
            self._categories.setdefault(node.category, []).append(node_id)
            self._manifest = None
        logger.debug("Node %s registered", node_id)
        return True

    def register_all(self, nodes: Iterable[Node]) -> None:
        for node in nodes:
            self.register(node)

    def unregister(self, node_id: str) -> bool:
        with self._lock:
            node = self._nodes.pop(node_id, None)
            if node is None:
                return False
            ids = self._categories.get(node.category, [])
            self._categories[node.category] = [existing for existing in ids if existing != node_id]
            if not self._categories[node.category]:
                del self._categories[node.category]
            self._manifest = None
        logger.info("Node %s unregistered", node_id)
        return True

    def get(self, node_id: str) -> Node:
        node = self._nodes.get(node_id)
        if node is None:
            raise UnknownNodeTypeError(node_id)
        return node

    def has(self, node_id: str) -> bool:
        return node_id in self._nodes

    def __contains__(self, node_id: object) -> bool:
        return node_id in self._nodes

    def __len__(self) -> int:
        return len(self._nodes)

    def all(self) -> list[Node]:
        return list(self._nodes.values())

    def list_types(self) -> list[str]:
        return sorted(self._nodes)

    def by_category(self, category: NodeCategory | str) -> list[Node]:
        ids = self._categories.get(NodeCategory(category), [])
        return [self._nodes[node_id] for node_id in ids if node_id in self._nodes]

    def categories(self) -> list[str]:
        return [category.value for category in self._categories]

    def by_tags(self, tags: Iterable[str]) -> list[Node]:
        wanted = set(tags)
        return [node for node in self._nodes.values() if wanted.intersection(node.tags)]

    def search(self, query: str) -> list[Node]:
        needle = query.strip().lower()
        if not needle:
            return self.all()
        return [
            node
            for node in self._nodes.values()
            if needle in node.name.lower() or needle in node.description.lower()
        ]

    def manifest(self) -> list[dict[str, Any]]:
        manifest = self._manifest
        if manifest is None:
            with self._lock:
                manifest = [node.descriptor().to_dict() for node in self._nodes.values()]
                self._manifest = manifest
        return list(manifest)

    def invalidate_manifest(self) -> None:
        with self._lock:
            self._manifest = None

    def is_compatible(self, source_id: str, target_id: str) -> bool:
        """Structural check only: both sides must declare at least one port."""
        source = self._nodes.get(source_id)
        target = self._nodes.get(target_id)
        if source is None or target is None:
            return False
        return bool(source.outputs) and bool(target.inputs)

    def recommend(self, node_id: str, limit: int = 5) -> list[str]:
        node = self._nodes.get(node_id)
        if node is None:
            return []
        tags = set(node.tags)
        recommended = [
            other.id
            for other in self._nodes.values()
            if other.id != node_id and (other.category == node.category or tags.intersection(other.tags))
        ]
        return recommended[:limit]

    def statistics(self) -> dict[str, Any]:
        return {
            "total_nodes": len(self._nodes),
            "categories": {category.value: len(ids) for category, ids in self._categories.items()},
            "categories_count": len(self._categories),
        }
