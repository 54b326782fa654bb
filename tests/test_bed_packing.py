import pytest

from bed_packing import BedPlan, check_fits, pack_beds
from process_config import ProcessTables
from quote_errors import PartExceedsBedEnvelope

X1C = ProcessTables.default().printer("bambu_x1c")
MINI = ProcessTables.default().printer("bambu_a1_mini")


def test_part_taller_than_bed_does_not_fit():
    with pytest.raises(PartExceedsBedEnvelope, match=r"Part Z 257\.00 mm exceeds bambu_x1c"):
        pack_beds((10.0, 10.0, 257.0), X1C)


def test_part_exactly_bed_size_fits_one_per_bed():
    plan = pack_beds((256.0, 256.0, 256.0), X1C, quantity=3)
    assert plan.fits
    assert plan.parts_per_bed == 1
    assert plan.beds_required == 3
    assert plan.utilization_percent == pytest.approx(100.0)


def test_grid_layout_for_small_cube():
    plan = pack_beds((20.0, 20.0, 20.0), X1C, quantity=1)
    assert (plan.columns, plan.rows) == (10, 10)
    assert plan.layout == "10x10"
    assert plan.parts_per_bed == 100
    assert plan.beds_required == 1
    assert 0 < plan.utilization_percent <= 100.0


def test_quantity_spills_to_more_beds():
    plan = pack_beds((50.0, 50.0, 10.0), MINI, quantity=10)
    # 180 / 55 -> 3 колонки, 3 ряда
    assert plan.parts_per_bed == 9
    assert plan.beds_required == 2


def test_spacing_changes_grid():
    tight = pack_beds((20.0, 20.0, 5.0), X1C, spacing=0.0)
    assert tight.parts_per_bed == 12 * 12


def test_check_fits_reports_axis():
    with pytest.raises(PartExceedsBedEnvelope) as exc:
        check_fits((10.0, 300.0, 10.0), X1C)
    assert "Part Y 300.00" in str(exc.value)
    assert exc.value.stage == "packing"
    assert exc.value.identifier == "bambu_x1c"


def test_does_not_fit_plan():
    plan = BedPlan.does_not_fit()
    assert not plan.fits
    assert plan.to_dict() == {
        "fits": False,
        "beds_required": None,
        "parts_per_bed": 0,
        "utilization_percent": 0.0,
        "layout": None,
    }
