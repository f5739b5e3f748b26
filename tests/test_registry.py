"""Tests for node selection and execution planning."""

import pytest

from medical_docflow.nodes import FEATURE_FLAGS, NODE_CONFIGURATIONS, build_default_registry
from medical_docflow.workflow import NodeRegistry

from tests.conftest import make_node


class TestNodeSelection:

    def test_selects_only_exact_true_triggers(self):
        registry = NodeRegistry([
            make_node("signals", ["hasSignals"]),
            make_node("ecg", ["hasECG"]),
        ])

        selected = registry.select_nodes({"hasSignals": True, "hasECG": "true"})
        assert [node.name for node in selected] == ["signals"]

    def test_any_trigger_selects(self):
        registry = NodeRegistry([make_node("medications", ["hasPrescriptions", "hasMedications"])])
        assert registry.select_nodes({"hasMedications": True})
        assert not registry.select_nodes({"hasPrescriptions": False, "hasMedications": False})

    def test_empty_flags_select_nothing(self):
        registry = NodeRegistry([make_node("signals")])
        assert registry.select_nodes({}) == []
        assert registry.select_nodes(None) == []

    def test_duplicate_names_rejected(self):
        with pytest.raises(ValueError, match="Duplicate"):
            NodeRegistry([make_node("signals"), make_node("signals")])


class TestExecutionPlan:

    def test_groups_by_ascending_priority(self):
        registry = NodeRegistry([
            make_node("late", priority=3),
            make_node("early-a", priority=1),
            make_node("early-b", priority=1),
            make_node("middle", priority=2),
        ])
        plan = registry.create_execution_plan(registry.get_all_nodes())

        assert [[node.name for node in group] for group in plan.groups] == [
            ["early-a", "early-b"], ["middle"], ["late"]
        ]
        stats = plan.stats()
        assert stats["total_nodes"] == 4
        assert stats["parallel_groups"] == 3
        assert stats["max_parallel_nodes"] == 2
        assert stats["nodes_by_priority"] == {1: 2, 2: 1, 3: 1}

    def test_empty_plan(self):
        plan = NodeRegistry([]).create_execution_plan([])
        assert plan.is_empty
        assert plan.stats()["average_parallel_nodes"] == 0.0

    def test_unknown_trigger_is_excluded(self):
        registry = NodeRegistry([make_node("mystery", ["hasMystery"])], flag_vocabulary=["hasSignals"])
        plan = registry.create_execution_plan(registry.get_all_nodes())

        assert plan.is_empty
        assert plan.excluded[0].node_name == "mystery"
        assert "unknown trigger" in plan.excluded[0].reason

    def test_dependency_in_earlier_group_is_satisfied(self):
        registry = NodeRegistry([
            make_node("base", priority=1),
            make_node("derived", priority=2, dependencies=["base"]),
        ])
        plan = registry.create_execution_plan(registry.get_all_nodes())
        assert plan.execution_order == ["base", "derived"]
        assert not plan.excluded

    def test_dependency_in_same_group_is_excluded(self):
        registry = NodeRegistry([
            make_node("base", priority=1),
            make_node("derived", priority=1, dependencies=["base"]),
        ])
        plan = registry.create_execution_plan(registry.get_all_nodes())

        assert plan.execution_order == ["base"]
        assert plan.excluded[0].node_name == "derived"
        assert "unmet dependencies: base" in plan.excluded[0].reason


class TestDefaultCatalogue:

    def test_every_catalogue_node_registered(self):
        registry = build_default_registry()
        assert len(registry) == len(NODE_CONFIGURATIONS)
        assert registry.flag_vocabulary == frozenset(FEATURE_FLAGS)

    def test_catalogue_triggers_are_known_flags(self):
        registry = build_default_registry()
        plan = registry.create_execution_plan(registry.get_all_nodes())
        assert not plan.excluded

    def test_signals_flag_selects_signal_processing_only(self):
        registry = build_default_registry()
        flags = {flag: False for flag in FEATURE_FLAGS}
        flags.update({"isMedical": True, "hasSignals": True})

        assert [node.name for node in registry.select_nodes(flags)] == ["signal-processing"]
