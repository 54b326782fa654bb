from __future__ import annotations

import json

import pytest

from mesh_io import ColorMetadata, decode
from tests.helpers_mesh import cube_indexed, mesh_object_xml, model_xml, threemf_bytes, cube_3mf_bytes


SLICE_INFO = """<?xml version="1.0" encoding="UTF-8"?>
<config>
  <plate>
    <metadata key="index" value="1"/>
    <metadata key="prediction" value="3600"/>
    <metadata key="weight" value="30.5"/>
    <filament id="1" type="PLA" color="#FF0000" used_m="3.1" used_g="10.0"/>
    <filament id="2" type="PLA" color="#00ff00" used_m="6.2" used_g="20.5"/>
  </plate>
</config>
"""

MODEL_SETTINGS = """<?xml version="1.0" encoding="UTF-8"?>
<config>
  <object id="1">
    <metadata key="name" value="cube"/>
    <metadata key="extruder" value="2"/>
  </object>
</config>
"""


def test_plain_cube_has_no_color_metadata():
    meta = decode(cube_3mf_bytes(10.0), "plain.3mf").color_metadata
    assert meta == ColorMetadata()
    assert meta.color_count == 1
    assert not meta.has_color_weights


def test_project_settings_json_colors():
    settings = {"filament_colour": ["#FF0000", "#00FF00", "#ff0000"], "filament_type": ["PLA", "PETG", "PLA"]}
    data = cube_3mf_bytes(10.0, metadata={"Metadata/project_settings.config": json.dumps(settings)})
    meta = decode(data, "multi.3mf").color_metadata

    assert meta.colors == ("#FF0000", "#00FF00")
    assert meta.color_count == 2
    assert meta.filament_types == ("PLA", "PETG")
    assert "Metadata/project_settings.config" in meta.sources


def test_slice_info_weights_take_priority():
    settings = {"filament_colour": ["#0000FF", "#FFFFFF", "#000000"]}
    data = cube_3mf_bytes(10.0, metadata={
        "Metadata/project_settings.config": json.dumps(settings),
        "Metadata/slice_info.config": SLICE_INFO,
    })
    meta = decode(data, "sliced.3mf").color_metadata

    assert meta.colors == ("#FF0000", "#00FF00")
    assert meta.color_weights == pytest.approx((10.0, 20.5))
    assert meta.has_color_weights
    assert meta.reported_weight_g == pytest.approx(30.5)
    assert meta.reported_print_time_s == pytest.approx(3600.0)
    assert meta.plate_count == 1


def test_model_settings_extruders_filter_project_colors():
    settings = {"filament_colour": ["#FF0000", "#00FF00", "#0000FF"]}
    data = cube_3mf_bytes(10.0, metadata={
        "Metadata/project_settings.config": json.dumps(settings),
        "Metadata/model_settings.config": MODEL_SETTINGS,
    })
    meta = decode(data, "one_extruder.3mf").color_metadata
    assert meta.colors == ("#00FF00",)


def test_slic3r_key_value_config():
    text = "; generated by PrusaSlicer\n; filament_colour = #FF8000;#0080FF\n; filament_type = PETG;PETG\n"
    data = cube_3mf_bytes(10.0, metadata={"Metadata/Slic3r_PE.config": text})
    meta = decode(data, "prusa.3mf").color_metadata

    assert meta.colors == ("#FF8000", "#0080FF")
    assert meta.filament_types == ("PETG",)


def test_basematerials_display_colors_are_fallback():
    verts, faces = cube_indexed(10.0)
    resources = (
        '<basematerials id="5">'
        '<base name="Red" displaycolor="#FF0000FF"/>'
        '<base name="Blue" displaycolor="#0000FFFF"/>'
        "</basematerials>"
        + mesh_object_xml("1", verts, faces)
    )
    data = threemf_bytes({"3D/3dmodel.model": model_xml(resources, items=[("1", None)])})
    meta = decode(data, "materials.3mf").color_metadata

    assert meta.colors == ("#FF0000", "#0000FF")
    assert meta.color_weights == ()


def test_invalid_color_strings_are_ignored():
    settings = {"filament_colour": ["red", "#12345", "#ABCDEF"]}
    data = cube_3mf_bytes(10.0, metadata={"Metadata/project_settings.config": json.dumps(settings)})
    meta = decode(data, "bad_colors.3mf").color_metadata
    assert meta.colors == ("#ABCDEF",)


def test_to_dict_is_json_serializable():
    data = cube_3mf_bytes(10.0, metadata={"Metadata/slice_info.config": SLICE_INFO})
    meta = decode(data, "sliced.3mf").color_metadata
    payload = json.loads(json.dumps(meta.to_dict()))
    assert payload["color_weights_g"] == [10.0, 20.5]


PLATE_JSON = {
    "plate_data": {"print_info": {"total_weight": 12.5, "print_time": 90, "total_filament": 4100.0}},
    "filament_usage": {"1": {"weight": 8.0, "length": 2600.0}, "3": {"weight": 4.5, "length": 1500.0}},
}


def test_plate_json_print_info_and_filament_usage():
    settings = {"filament_colour": ["#FF0000", "#00FF00", "#0000FF"]}
    data = cube_3mf_bytes(10.0, metadata={
        "Metadata/project_settings.config": json.dumps(settings),
        "Metadata/plate_1.json": json.dumps(PLATE_JSON),
    })
    meta = decode(data, "plate_json.3mf").color_metadata

    assert meta.reported_weight_g == pytest.approx(12.5)
    assert meta.reported_print_time_s == pytest.approx(90 * 60.0)
    assert meta.colors == ("#FF0000", "#0000FF")
    assert meta.color_weights == pytest.approx((8.0, 4.5))
    assert meta.has_color_weights
    assert meta.plate_count == 1
    assert "Metadata/plate_1.json" in meta.sources


def test_plate_json_stats_are_summed_across_plates():
    data = cube_3mf_bytes(10.0, metadata={
        "Metadata/plate_1.json": json.dumps(PLATE_JSON),
        "Metadata/plate_2.json": json.dumps({"plate_data": {"print_info": {"total_weight": 7.5, "print_time": 30}}}),
    })
    meta = decode(data, "two_plates.3mf").color_metadata

    assert meta.reported_weight_g == pytest.approx(20.0)
    assert meta.reported_print_time_s == pytest.approx(120 * 60.0)
    assert meta.plate_count == 2
    assert meta.color_weights == ()


def test_slice_info_stats_win_over_plate_json():
    data = cube_3mf_bytes(10.0, metadata={
        "Metadata/slice_info.config": SLICE_INFO,
        "Metadata/plate_1.json": json.dumps(PLATE_JSON),
    })
    meta = decode(data, "both.3mf").color_metadata

    assert meta.reported_weight_g == pytest.approx(30.5)
    assert meta.reported_print_time_s == pytest.approx(3600.0)
    assert meta.color_weights == pytest.approx((10.0, 20.5))


def test_auxiliary_print_statistics():
    aux = (
        '<?xml version="1.0" encoding="UTF-8"?>\n'
        "<print_statistics><weight>42.5</weight><time>1.5</time><filament_count>3</filament_count></print_statistics>"
    )
    data = cube_3mf_bytes(10.0, metadata={"Auxiliaries/print_statistics.xml": aux})
    meta = decode(data, "aux.3mf").color_metadata

    assert meta.reported_weight_g == pytest.approx(42.5)
    assert meta.reported_print_time_s == pytest.approx(1.5 * 3600.0)
    assert meta.reported_filament_count == 3
    assert meta.sources == ("Auxiliaries/print_statistics.xml",)


def test_auxiliary_xml_without_statistics_is_ignored():
    data = cube_3mf_bytes(10.0, metadata={
        "Auxiliaries/.thumbnails/info.xml": "<thumbnails><item/></thumbnails>",
        "Auxiliaries/broken.xml": "<print_statistics><weight>",
    })
    meta = decode(data, "aux_noise.3mf").color_metadata
    assert meta == ColorMetadata()


def test_embedded_gcode_header():
    gcode = (
        "; HEADER_BLOCK_START\n"
        "; BambuStudio 01.08.04.51\n"
        "; model printing time: 1h 2m 3s; total estimated time: 1h 10m 0s\n"
        "; total layers count = 50\n"
        "; total filament weight [g] : 6.25,3.75\n"
        "; HEADER_BLOCK_END\n"
        "; filament_colour = #FFFFFF;#000000\n"
        "; filament_type = PLA;PETG\n"
        "G28\n"
    )
    data = cube_3mf_bytes(10.0, metadata={"Metadata/plate_1.gcode": gcode})
    meta = decode(data, "sliced.gcode.3mf").color_metadata

    assert meta.reported_weight_g == pytest.approx(10.0)
    assert meta.reported_print_time_s == pytest.approx(4200.0)
    assert meta.colors == ("#FFFFFF", "#000000")
    assert meta.filament_types == ("PLA", "PETG")
    assert meta.plate_count == 1


def test_prusaslicer_gcode_comments():
    gcode = (
        "G1 X0 Y0\n"
        "; filament used [mm] = 1234.5\n"
        "; filament used [g] = 3.7\n"
        "; estimated printing time (normal mode) = 25m 30s\n"
    )
    data = cube_3mf_bytes(10.0, metadata={"Metadata/plate_1.gcode": gcode})
    meta = decode(data, "prusa.gcode.3mf").color_metadata

    assert meta.reported_weight_g == pytest.approx(3.7)
    assert meta.reported_print_time_s == pytest.approx(1530.0)
