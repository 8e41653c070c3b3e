import pytest

from hexsweep.cells import Cell, ChildOf
from hexsweep.errors import SplitConfigurationError
from hexsweep.grid import H3Grid
from hexsweep.search_api import ExternalItem
from hexsweep.search_client import CellResult
from hexsweep.subdivision import (
    COMPLETE,
    PARTIAL_DENSE,
    PARTIAL_EMPTY,
    ParentChildIndex,
    SubdivisionManager,
    improvement_label,
)


def items(prefix, count):
    return [ExternalItem(key=f"{prefix}-{i}", lat=0.0, lng=0.0) for i in range(count)]


def result(cell_id, found):
    return CellResult(cell_id=cell_id, total_count=len(found), unique_items=found, probe_results=[], status="success")


def test_dense_threshold_is_exclusive():
    manager = SubdivisionManager(H3Grid())

    assert manager.is_dense(241)
    assert not manager.is_dense(240)
    assert not manager.is_dense(0)


def test_split_configuration_bounds():
    manager = SubdivisionManager(H3Grid())

    manager.validate_split_configuration(7, 8)
    manager.validate_split_configuration(7, 9)
    with pytest.raises(SplitConfigurationError):
        manager.validate_split_configuration(7, 7)
    with pytest.raises(SplitConfigurationError):
        manager.validate_split_configuration(7, 10)
    with pytest.raises(SplitConfigurationError):
        manager.validate_split_configuration(12, 13)


def test_split_dense_cell_into_next_resolution_children():
    grid = H3Grid()
    parent = Cell.from_grid(grid.point_to_cell(52.2297, 21.0122, 7), grid)
    manager = SubdivisionManager(grid)

    children = manager.split(parent)

    assert len(children) == 7
    assert all(c.resolution == 8 for c in children)
    assert all(c.parent_id == parent.cell_id for c in children)
    assert all(isinstance(c.lineage, ChildOf) for c in children)
    assert all(c.status == "queued" for c in children)
    assert manager.index.children_of(parent.cell_id) == [c.cell_id for c in children]
    assert manager.index.parent_of(children[0].cell_id) == parent.cell_id
    stats = manager.split_stats(parent)
    assert stats["child_count"] == 7
    assert stats["resolution_increase"] == 1


def test_split_at_max_resolution_is_rejected():
    grid = H3Grid()
    cell = Cell.from_grid(grid.point_to_cell(52.2297, 21.0122, 12), grid)

    with pytest.raises(SplitConfigurationError):
        SubdivisionManager(grid).split(cell)


def test_merge_dense_takes_precedence_over_empty():
    manager = SubdivisionManager(H3Grid())
    manager.index.register("p", ["a", "b", "c"])
    results = {
        "a": result("a", items("a", 50)),
        "b": result("b", []),
        "c": result("c", items("c", 300)),
    }

    merged = manager.merge_children("p", results)

    assert merged.coverage_status == PARTIAL_DENSE
    assert merged.total_count == 350
    assert len(merged.child_statuses) == 3


def test_merge_dedupes_across_children():
    manager = SubdivisionManager(H3Grid())
    manager.index.register("p", ["a", "b"])
    shared = items("shared", 5)
    results = {
        "a": result("a", items("a", 10) + shared),
        "b": result("b", items("b", 10) + shared),
    }

    merged = manager.merge_children("p", results)

    assert merged.coverage_status == COMPLETE
    assert merged.total_count == 25


def test_merge_missing_child_counts_as_empty():
    manager = SubdivisionManager(H3Grid())
    manager.index.register("p", ["a", "b"])

    merged = manager.merge_children("p", {"a": result("a", items("a", 3))})

    assert merged.coverage_status == PARTIAL_EMPTY
    assert merged.total_count == 3


def test_merge_recurses_into_split_children():
    manager = SubdivisionManager(H3Grid())
    manager.index.register("p", ["a", "b"])
    manager.index.register("a", ["a1", "a2"])
    results = {
        "a": result("a", items("a", 300)),
        "a1": result("a1", items("a1", 100)),
        "a2": result("a2", items("a2", 120)),
        "b": result("b", items("b", 40)),
    }

    merged = manager.merge_children("p", results)

    assert merged.coverage_status == COMPLETE
    assert merged.total_count == 260


def test_index_rejects_second_parent():
    index = ParentChildIndex()
    index.register("p1", ["c"])

    with pytest.raises(ValueError):
        index.register("p2", ["c"])

    index.register("p1", ["c"])
    assert index.children_of("p1") == ["c"]
    assert len(index) == 1

    index.clear()
    assert not index.has_children("p1")


def test_improvement_label():
    assert improvement_label(7, 8) == "good (7x more cells)"
    assert improvement_label(7, 9) == "excellent (49x more cells)"
