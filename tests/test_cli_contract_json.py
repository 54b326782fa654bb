from __future__ import annotations

import math
from pathlib import Path
from typing import Any

from tests.helpers_cli import repo_root, run_cli, run_cli_json
from tests.helpers_mesh import binary_stl_bytes, cube_3mf_bytes, cube_triangles


def _write_cube(tmp_path: Path, name: str = "cube.stl", size: float = 20.0) -> Path:
    path = tmp_path / name
    if name.endswith(".3mf"):
        path.write_bytes(cube_3mf_bytes(size))
    else:
        path.write_bytes(binary_stl_bytes(cube_triangles(size)))
    return path


def _assert_finite_non_negative(value: Any, label: str) -> None:
    assert isinstance(value, (int, float)) and not isinstance(
        value, bool
    ), f"{label} should be numeric, got {type(value).__name__}"
    assert math.isfinite(value), f"{label} should be finite, got {value}"
    assert value >= 0, f"{label} should be >= 0, got {value}"


def test_cli_json_single_file_contract(tmp_path: Path) -> None:
    model = _write_cube(tmp_path)
    args = [str(model), "--json", "--material", "PETG", "--infill", "10", "--qty", "1"]

    returncode, payload, stderr = run_cli_json(args, cwd=repo_root())

    assert returncode == 0, f"CLI failed with return code {returncode}. stderr:\n{stderr}"
    assert payload["success"] is True
    assert payload["count"] == 1
    assert payload["count_ok"] == 1
    assert payload["count_failed"] == 0
    assert payload["errors"] == []
    assert isinstance(payload["config_dir"], str) and payload["config_dir"]

    summary = payload["summary"]
    for key in ("total_weight_g", "print_time_hours", "total_price"):
        _assert_finite_non_negative(summary[key], f"summary.{key}")
    assert summary["currency"] == "USD"

    first = payload["results"][0]
    assert first["file"] == "cube.stl"
    assert first["format"] == "stl"
    assert first["resolved"]["material"]["id"] == "PETG"
    assert first["resolved"]["profile"]["infill_percent"] == 10.0
    assert first["geometry"]["volume_mm3"] == 8000.0
    for key, value in first["quote"]["breakdown"].items():
        _assert_finite_non_negative(value, f"breakdown.{key}")
    assert first["totals"]["total_price"] == summary["total_price"]


def test_cli_json_multiple_files_sorted(tmp_path: Path) -> None:
    b = _write_cube(tmp_path, "b_part.3mf", 10.0)
    a = _write_cube(tmp_path, "a_part.stl", 15.0)

    returncode, payload, stderr = run_cli_json([str(b), str(a), "--json", "--workers", "2"], cwd=repo_root())

    assert returncode == 0, stderr
    assert [r["file"] for r in payload["results"]] == ["a_part.stl", "b_part.3mf"]
    total = sum(r["totals"]["total_price"] for r in payload["results"])
    assert payload["summary"]["total_price"] == round(total, 2)


def test_cli_json_batch_partial_failure_emits_json(tmp_path: Path) -> None:
    model = _write_cube(tmp_path)
    missing = tmp_path / "missing_input.stl"

    returncode, payload, _ = run_cli_json([str(model), str(missing), "--json"], cwd=repo_root())

    assert returncode == 1, "Expected exit code 1 for partial failure"
    assert payload["success"] is False
    assert payload["count_ok"] == 1
    assert payload["count_failed"] == 1
    assert len(payload["results"]) == 1

    err = payload["errors"][0]
    assert err["file"] == "missing_input.stl"
    assert err["stage"] == "io"
    joined = str(err).lower()
    assert any(token in joined for token in ["not found", "no such file"]), (
        "Expected missing-file hint in errors"
    )


def test_cli_unsupported_file_reports_decode_error(tmp_path: Path) -> None:
    bad = tmp_path / "drawing.step"
    bad.write_text("ISO-10303-21;", encoding="utf-8")

    returncode, payload, _ = run_cli_json([str(bad), "--json"], cwd=repo_root())

    assert returncode == 1
    assert payload["results"] == []
    assert payload["summary"] is None
    assert payload["errors"][0]["error"] == "UnsupportedFormat"
    assert payload["errors"][0]["stage"] == "decode"


def test_cli_unknown_material_exits_with_usage_code(tmp_path: Path) -> None:
    model = _write_cube(tmp_path)
    completed = run_cli([str(model), "--json", "--material", "unobtainium"], cwd=repo_root())
    assert completed.returncode == 2
    assert completed.stdout == ""
    assert "unobtainium" in completed.stderr


def test_cli_zero_quantity_exits_with_usage_code(tmp_path: Path) -> None:
    model = _write_cube(tmp_path)
    completed = run_cli([str(model), "--qty", "0"], cwd=repo_root())
    assert completed.returncode == 2
    assert "qty must be int >= 1" in completed.stderr


def test_cli_text_report(tmp_path: Path) -> None:
    model = _write_cube(tmp_path)
    completed = run_cli([str(model), "--full", "--rush"], cwd=repo_root())
    assert completed.returncode == 0, completed.stderr
    assert "Деталь: cube.stl (STL)" in completed.stdout
    assert "Срочность" in completed.stdout
    assert "ИТОГО:" in completed.stdout
    assert "Время расчёта" in completed.stdout
