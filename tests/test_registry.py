from __future__ import annotations

import logging

import pytest

from flowcore.errors import UnknownNodeTypeError
from flowcore.nodes import NodeCategory, NodeRegistry, builtin_nodes, register_builtin_nodes
from flowcore.nodes.actions import HttpRequestNode
from flowcore.nodes.triggers import ManualTriggerNode

from conftest import RecorderNode


@pytest.fixture
def builtin_registry() -> NodeRegistry:
    return register_builtin_nodes(NodeRegistry())


class TestRegistration:
    def test_builtin_set_is_registered(self, builtin_registry):
        assert len(builtin_registry) == len(builtin_nodes()) == 13
        assert builtin_registry.list_types() == sorted(node.id for node in builtin_nodes())

    def test_duplicate_registration_is_a_warning_not_an_error(self, builtin_registry, caplog):
        original = builtin_registry.get("httpRequest")
        with caplog.at_level(logging.WARNING, logger="flowcore.nodes.registry"):
            assert builtin_registry.register(HttpRequestNode()) is False
        assert builtin_registry.get("httpRequest") is original
        assert "already registered" in caplog.text
        assert len(builtin_registry) == 13

    def test_unknown_type_raises(self, builtin_registry):
        with pytest.raises(UnknownNodeTypeError, match="nope"):
            builtin_registry.get("nope")
        with pytest.raises(KeyError):
            builtin_registry.get("nope")

    def test_unregister(self, builtin_registry):
        assert builtin_registry.unregister("slack") is True
        assert "slack" not in builtin_registry
        assert builtin_registry.unregister("slack") is False


class TestQueries:
    def test_by_category(self, builtin_registry):
        logic = {node.id for node in builtin_registry.by_category(NodeCategory.LOGIC)}
        assert logic == {"switch", "loop", "wait"}
        triggers = {node.id for node in builtin_registry.by_category("trigger")}
        assert triggers == {"manualTrigger", "webhookTrigger", "scheduleTrigger", "emailTrigger"}

    def test_by_tags(self, builtin_registry):
        ids = {node.id for node in builtin_registry.by_tags(["notification"])}
        assert ids == {"email", "emailTrigger", "slack"}

    def test_search_is_case_insensitive_over_name_and_description(self, builtin_registry):
        assert {node.id for node in builtin_registry.search("HTTP")} == {"httpRequest", "webhookTrigger"}
        assert "email" in {node.id for node in builtin_registry.search("smtp")}
        assert len(builtin_registry.search("  ")) == 13

    def test_recommend_excludes_self_and_respects_limit(self, builtin_registry):
        recommended = builtin_registry.recommend("switch")
        assert "switch" not in recommended
        assert {"loop", "wait"} <= set(recommended)
        assert len(builtin_registry.recommend("switch", limit=1)) == 1
        assert builtin_registry.recommend("missing") == []

    def test_statistics(self, builtin_registry):
        stats = builtin_registry.statistics()
        assert stats["total_nodes"] == 13
        assert stats["categories"]["trigger"] == 4


class TestManifest:
    def test_manifest_lists_descriptors(self, builtin_registry):
        manifest = builtin_registry.manifest()
        http = next(entry for entry in manifest if entry["id"] == "httpRequest")
        assert http["category"] == "action"
        assert set(http["outputs"]) == {"main", "error"}
        assert http["max_execution_time"] == 300

    def test_manifest_is_invalidated_on_register(self, builtin_registry):
        first = builtin_registry.manifest()
        builtin_registry.register(RecorderNode())
        second = builtin_registry.manifest()
        assert len(second) == len(first) + 1

    def test_explicit_invalidation(self, builtin_registry):
        builtin_registry.manifest()
        builtin_registry.invalidate_manifest()
        assert len(builtin_registry.manifest()) == 13


class TestCompatibility:
    def test_trigger_to_action_is_compatible(self, builtin_registry):
        assert builtin_registry.is_compatible("manualTrigger", "httpRequest") is True

    def test_target_without_inputs_is_incompatible(self, builtin_registry):
        assert ManualTriggerNode.inputs == {}
        assert builtin_registry.is_compatible("httpRequest", "manualTrigger") is False

    def test_unknown_nodes_are_incompatible(self, builtin_registry):
        assert builtin_registry.is_compatible("httpRequest", "missing") is False
