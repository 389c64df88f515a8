"""Task dependency graph tests."""

from types import SimpleNamespace

import pytest

from partner_portal.onboarding.graph import (
    TaskDefinition,
    TaskDependencyGraph,
    completion_map,
    default_graph,
)


def _row(key: str, done: bool):
    return SimpleNamespace(task_key=key, is_completed=done)


@pytest.mark.unit
class TestTaskDependencyGraph:

    def test_default_order_ends_with_legal(self):
        assert default_graph.keys == ("brand", "venue", "pos", "devices", "legal")
        assert default_graph.name("legal") == "Legal & Agreements"

    def test_neighbours(self):
        assert default_graph.previous_key("brand") is None
        assert default_graph.previous_key("venue") == "brand"
        assert default_graph.next_key("devices") == "legal"
        assert default_graph.next_key("legal") is None

    def test_unknown_key_raises(self):
        with pytest.raises(KeyError):
            default_graph.index("billing")
        assert "billing" not in default_graph

    def test_first_task_never_locked(self):
        assert default_graph.is_locked("brand", {}) is False

    def test_locked_until_predecessor_complete(self):
        tasks = [_row("brand", False), _row("venue", False)]
        assert default_graph.is_locked("venue", tasks) is True

        tasks = [_row("brand", True), _row("venue", False)]
        assert default_graph.is_locked("venue", tasks) is False
        assert default_graph.is_locked("pos", tasks) is True

    def test_only_immediate_predecessor_matters(self):
        # devices depends on pos alone, even if earlier tasks are incomplete
        assert default_graph.is_locked("devices", {"brand": False, "pos": True}) is False

    def test_missing_predecessor_row_counts_as_incomplete(self):
        assert default_graph.is_locked("venue", [_row("pos", True)]) is True

    def test_lock_info_explains_the_lock(self):
        info = default_graph.lock_info("pos", {"venue": False})
        assert info.blocked_by == "venue"
        assert info.reason == "POS Integration unlocks after Venue Manager is complete"
        assert info.unlock_hint == "Complete Venue Manager first."

        assert default_graph.lock_info("pos", {"venue": True}) is None

    def test_completion_map(self):
        assert completion_map([_row("brand", True), _row("venue", False)]) == {
            "brand": True,
            "venue": False,
        }

    def test_rejects_empty_and_duplicate_definitions(self):
        with pytest.raises(ValueError):
            TaskDependencyGraph([])
        with pytest.raises(ValueError):
            TaskDependencyGraph([TaskDefinition("a", "A"), TaskDefinition("a", "Again")])

    def test_custom_graph(self):
        graph = TaskDependencyGraph([TaskDefinition("one", "One"), TaskDefinition("two", "Two")])
        assert len(graph) == 2
        assert graph.is_locked("two", {"one": False}) is True
