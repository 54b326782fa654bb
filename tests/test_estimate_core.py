from __future__ import annotations

import numpy as np
import pytest

from estimate_core import (
    EstimationConstants,
    classify_support,
    color_breakdown,
    estimate,
    filament_length_mm,
    layer_count,
    purge_weight,
    shell_volume_cm3,
)
from geometry_core import GeometrySummary, compute_geometry
from mesh_io import ColorMetadata, Mesh
from process_config import ProcessTables
from quote_errors import ConfigError
from tests.helpers_mesh import cube_triangles

TABLES = ProcessTables.default()
PLA = TABLES.material("PLA")
STANDARD = TABLES.profile("standard")
X1C = TABLES.printer("bambu_x1c")


def _cube_geometry(size: float) -> GeometrySummary:
    return compute_geometry(Mesh.from_triangles(np.asarray(cube_triangles(size))))


def _geometry(dims, com_offset=(0.0, 0.0, 0.0)) -> GeometrySummary:
    x, y, z = dims
    center = (x / 2, y / 2, z / 2)
    return GeometrySummary(
        volume=x * y * z,
        surface_area=2 * (x * y + y * z + x * z),
        bbox_min=(0.0, 0.0, 0.0),
        bbox_max=(x, y, z),
        center_of_mass=tuple(c + o for c, o in zip(center, com_offset)),
        complexity_score=1.0,
        triangle_count=12,
        vertex_count=8,
    )


def test_twenty_mm_cube_closed_form_weight():
    g = _cube_geometry(20.0)
    assert shell_volume_cm3(g, STANDARD) == pytest.approx(1.92)

    est = estimate(g, PLA, STANDARD, X1C)
    # shell 1.92 + (8.0 - 1.92) * 15% = 2.832 cm³ * 1.24 g/cm³
    assert est.part_weight == pytest.approx(3.51168)
    assert est.support_type == "none"
    assert est.support_weight == 0.0
    assert est.purge_weight == 0.0
    assert est.total_weight == pytest.approx(3.51168)
    assert est.color_count == 1
    assert not est.is_multi_color
    assert est.layer_count == 100
    assert est.print_time_hours > 0


def test_shell_is_clamped_to_solid_volume():
    g = _cube_geometry(1.0)
    assert shell_volume_cm3(g, STANDARD) == pytest.approx(g.volume_cm3)
    est = estimate(g, PLA, STANDARD, X1C, infill_percent=0)
    assert est.part_weight == pytest.approx(0.001 * 1.24)


def test_weight_and_time_grow_with_infill():
    g = _cube_geometry(40.0)
    results = [estimate(g, PLA, STANDARD, X1C, infill_percent=p) for p in (0, 15, 50, 100)]
    weights = [r.total_weight for r in results]
    times = [r.print_time_hours for r in results]
    assert weights == sorted(weights)
    assert len(set(weights)) == 4
    assert times == sorted(times)
    assert results[-1].part_weight == pytest.approx(g.volume_cm3 * PLA.density)


def test_finer_profile_takes_longer():
    g = _cube_geometry(30.0)
    draft = estimate(g, PLA, TABLES.profile("draft"), X1C)
    fine = estimate(g, PLA, TABLES.profile("high_quality"), X1C)
    assert fine.print_time_hours > draft.print_time_hours
    assert fine.layer_count > draft.layer_count


@pytest.mark.parametrize(
    "offset, kind, fraction",
    [(0.0, "none", 0.0), (7.0, "light", 0.10), (12.0, "normal", 0.18), (20.0, "tree", 0.25)],
)
def test_support_bands(offset, kind, fraction):
    support = classify_support(_geometry((100.0, 100.0, 100.0), (offset, 0.0, 0.0)))
    assert support.support_type == kind
    assert support.fraction == pytest.approx(fraction)


def test_flat_wide_part_gets_bridging_support():
    flat = classify_support(_geometry((100.0, 100.0, 10.0)))
    assert flat.support_type == "light"
    assert flat.fraction == pytest.approx(0.08)

    tree_and_flat = classify_support(_geometry((100.0, 100.0, 10.0), (20.0, 0.0, 0.0)))
    assert tree_and_flat.support_type == "tree"
    assert tree_and_flat.fraction == pytest.approx(0.30)


def test_support_weight_uses_lattice_density():
    g = _geometry((100.0, 100.0, 100.0), (20.0, 0.0, 0.0))
    est = estimate(g, PLA, STANDARD, X1C)
    assert est.support_weight == pytest.approx(1000.0 * 0.25 * 0.15 * 1.24)


def test_even_color_split_sums_to_total():
    meta = ColorMetadata(colors=("#FF0000", "#00FF00", "#0000FF"))
    shares = color_breakdown(10.0, meta, "PLA")
    assert [s.label for s in shares] == ["#FF0000", "#00FF00", "#0000FF"]
    assert [s.weight for s in shares] == pytest.approx([3.33, 3.33, 3.34])
    assert sum(s.weight for s in shares) == pytest.approx(10.0)
    assert sum(s.percentage for s in shares) == pytest.approx(100.0)


def test_weighted_color_split_follows_slicer_grams():
    meta = ColorMetadata(colors=("#FF0000", "#00FF00"), color_weights=(10.0, 30.0))
    shares = color_breakdown(20.0, meta, "PLA")
    assert [s.weight for s in shares] == pytest.approx([5.0, 15.0])
    assert [s.percentage for s in shares] == pytest.approx([25.0, 75.0])


def test_single_color_label():
    assert color_breakdown(4.0, ColorMetadata(), "PETG")[0].label == "PETG"
    only = color_breakdown(4.0, ColorMetadata(colors=("#123456",)), "PETG")
    assert only[0].label == "#123456"
    assert only[0].percentage == 100.0


def test_purge_weight_for_multi_color():
    assert purge_weight(1) == 0.0
    assert purge_weight(2) == pytest.approx(7.0)
    assert purge_weight(4) == pytest.approx(11.0)

    meta = ColorMetadata(colors=("#FF0000", "#00FF00"))
    est = estimate(_cube_geometry(20.0), PLA, STANDARD, X1C, meta)
    assert est.is_multi_color
    assert est.purge_weight == pytest.approx(7.0)
    assert est.total_weight == pytest.approx(3.51168 + 7.0)
    assert sum(s.weight for s in est.per_color) == pytest.approx(round(est.total_weight, 2))


def test_layer_count_rounds_up():
    assert layer_count(10.0, 0.2) == 50
    assert layer_count(10.05, 0.2) == 51
    assert layer_count(0.0, 0.2) == 1


def test_filament_length():
    # 1 cm³ PLA при Ø1.75 мм ≈ 415.7 мм
    assert filament_length_mm(1.24, 1.24) == pytest.approx(1000.0 / (np.pi * 0.875 ** 2))
    assert filament_length_mm(1.0, 0.0) == 0.0


def test_constants_from_mapping():
    consts = EstimationConstants.from_mapping({"purge_base_g": 8, "utilization": "0.9"})
    assert consts.purge_base_g == 8.0
    assert consts.utilization == 0.9
    assert EstimationConstants.from_mapping(None) == EstimationConstants()


@pytest.mark.parametrize(
    "data, match",
    [({"nope": 1}, "unknown estimation constant"),
     ({"purge_base_g": "lots"}, "must be a number"),
     ({"travel_factor": -1}, "out of range"),
     ({"utilization": 0}, "must be > 0")],
)
def test_constants_validation(data, match):
    with pytest.raises(ConfigError, match=match):
        EstimationConstants.from_mapping(data)


def test_to_dict_shape():
    d = estimate(_cube_geometry(20.0), PLA, STANDARD, X1C).to_dict()
    assert d["total_weight_g"] == pytest.approx(3.51)
    assert d["per_color"] == [{"label": "PLA", "weight_g": 3.51, "percentage": 100.0}]
    assert set(d["time_breakdown"]) >= {"extrusion_s", "travel_s", "layer_change_s", "complexity_multiplier"}
