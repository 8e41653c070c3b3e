import pytest

from hexsweep import config
from hexsweep.cells import Cell
from hexsweep.coverage import CORNER, EDGE, PRIMARY, CoveragePlanner, SearchProbe, coverage_stats, validate_plan
from hexsweep.errors import CoverageGenerationError
from hexsweep.geo import max_distance_m, midpoint
from hexsweep.grid import H3Grid

CENTER = (0.0, 0.0)
BOUNDARY = (
    (0.01, 0.0),
    (0.005, 0.00866),
    (-0.005, 0.00866),
    (-0.01, 0.0),
    (-0.005, -0.00866),
    (0.005, -0.00866),
)


class FakeGrid:
    def __init__(self, area_km2=2.0, inradius_m=2000.0, fail_inradius=False):
        self.area_km2 = area_km2
        self.inradius_m = inradius_m
        self.fail_inradius = fail_inradius

    def cell_area_km2(self, cell_id):
        return self.area_km2

    def expected_inradius_m(self, resolution):
        if self.fail_inradius:
            raise ValueError("no geometry")
        return self.inradius_m


def make_cell(boundary=BOUNDARY):
    return Cell(cell_id="c1", resolution=7, center=CENTER, boundary=boundary)


def expected_primary(inradius_m):
    return round(min(max_distance_m(CENTER, BOUNDARY) * 0.9, inradius_m * 1.1))


def test_small_cell_gets_single_primary_probe():
    probes = CoveragePlanner(FakeGrid(area_km2=2.0)).plan(make_cell())

    assert len(probes) == 1
    assert probes[0].role == PRIMARY
    assert (probes[0].lat, probes[0].lng) == CENTER
    assert probes[0].radius_m == expected_primary(2000.0)


def test_primary_radius_capped_by_inradius():
    probes = CoveragePlanner(FakeGrid(area_km2=2.0, inradius_m=500.0)).plan(make_cell())

    assert probes[0].radius_m == 550


def test_medium_cell_adds_two_corner_probes_in_vertex_order():
    probes = CoveragePlanner(FakeGrid(area_km2=5.0)).plan(make_cell())

    assert [p.role for p in probes] == [PRIMARY, CORNER, CORNER]
    assert [(p.lat, p.lng) for p in probes[1:]] == [BOUNDARY[0], BOUNDARY[1]]
    primary = probes[0].radius_m
    assert probes[1].radius_m == round(min(primary * 0.6, 2000.0 * 0.9))


def test_large_cell_adds_three_corners_and_two_edges():
    probes = CoveragePlanner(FakeGrid(area_km2=9.0)).plan(make_cell())

    assert [p.role for p in probes] == [PRIMARY, CORNER, CORNER, CORNER, EDGE, EDGE]
    edges = [(p.lat, p.lng) for p in probes if p.role == EDGE]
    assert edges == [midpoint(BOUNDARY[0], BOUNDARY[1]), midpoint(BOUNDARY[1], BOUNDARY[2])]
    primary = probes[0].radius_m
    assert probes[-1].radius_m == round(min(primary * 0.8, 2000.0 * 0.9))


def test_area_thresholds_are_exclusive():
    assert len(CoveragePlanner(FakeGrid(area_km2=3.0)).plan(make_cell())) == 1
    assert len(CoveragePlanner(FakeGrid(area_km2=8.0)).plan(make_cell())) == 3


def test_missing_geometry_falls_back_to_single_probe():
    fallback = config.FALLBACK_PRIMARY_RADIUS_M

    probes = CoveragePlanner(FakeGrid(fail_inradius=True)).plan(make_cell())
    assert len(probes) == 1
    assert probes[0].radius_m == fallback

    probes = CoveragePlanner(FakeGrid(area_km2=9.0)).plan(make_cell(boundary=()))
    assert len(probes) == 1
    assert probes[0].radius_m == fallback


def test_radius_clamped_to_api_maximum():
    probes = CoveragePlanner(FakeGrid(area_km2=2.0), max_radius_m=300).plan(make_cell())

    assert probes[0].radius_m == 300


def test_validate_plan_rules():
    primary = SearchProbe(0.0, 0.0, 100, PRIMARY, "p")
    corner = SearchProbe(0.0, 0.0, 50, CORNER, "c")

    with pytest.raises(CoverageGenerationError):
        validate_plan([], 1.0)
    with pytest.raises(CoverageGenerationError):
        validate_plan([primary, primary], 1.0)
    with pytest.raises(CoverageGenerationError):
        validate_plan([primary, corner], 12.0)

    validate_plan([primary], 1.0)
    validate_plan([primary, corner, corner], 12.0)


def test_large_plan_passes_validation():
    grid = FakeGrid(area_km2=12.0)
    planner = CoveragePlanner(grid)
    cell = make_cell()

    planner.validate(cell, planner.plan(cell))


def test_coverage_stats_labels():
    grid = FakeGrid(area_km2=9.0)
    stats = coverage_stats(CoveragePlanner(grid).plan(make_cell()))

    assert stats["total_points"] == 6
    assert stats["corner_points"] == 3
    assert stats["edge_points"] == 2
    assert stats["estimated_coverage"] == "excellent"
    assert coverage_stats([SearchProbe(0.0, 0.0, 1, PRIMARY, "p")])["estimated_coverage"] == "poor"


def test_real_h3_resolution6_cell_gets_full_plan():
    grid = H3Grid()
    cell_id = grid.point_to_cell(37.7749, -122.4194, 6)
    cell = Cell.from_grid(cell_id, grid)

    probes = CoveragePlanner(grid).plan(cell)

    assert len(probes) == 6
    inradius = grid.expected_inradius_m(6)
    assert probes[0].radius_m <= round(inradius * 1.1)
    assert all(p.radius_m < probes[0].radius_m for p in probes[1:])
