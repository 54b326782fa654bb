from __future__ import annotations

import numpy as np
import pytest

from mesh_io import decode
from quote_errors import CorruptArchiveOrMissingModel, EmptyGeometry
from tests.helpers_mesh import CORE_NS, cube_indexed, mesh_object_xml, model_xml, threemf_bytes


def _one_object(obj_xml: str) -> bytes:
    xml = (
        f"<model unit=\"millimeter\" xmlns=\"{CORE_NS}\">"
        f"<resources>{obj_xml}</resources>"
        "<build/>"
        "</model>"
    )
    return threemf_bytes({"3D/3dmodel.model": xml})


def test_3mf_drops_non_finite_vertex_and_its_triangles() -> None:
    verts, faces = cube_indexed(10.0)
    verts = list(verts) + [(float("nan"), 1.0, 0.0)]
    faces = list(faces) + [(0, 1, len(verts) - 1)]
    model = decode(threemf_bytes({"3D/3dmodel.model": model_xml(mesh_object_xml("1", verts, faces),
                                                                 items=[("1", None)])}), "nan.3mf")

    assert model.mesh.triangle_count == 12
    assert model.mesh.vertex_count == 8
    assert model.mesh.dropped_vertices == 1
    assert np.isfinite(model.mesh.triangles).all()
    assert any("non-finite" in w for w in model.warnings)


def test_3mf_only_non_finite_vertices_is_empty() -> None:
    obj = (
        "<object id=\"1\"><mesh>"
        "<vertices>"
        "<vertex x=\"nan\" y=\"0\" z=\"0\"/>"
        "<vertex x=\"inf\" y=\"1\" z=\"0\"/>"
        "<vertex x=\"0\" y=\"-inf\" z=\"0\"/>"
        "</vertices>"
        "<triangles><triangle v1=\"0\" v2=\"1\" v3=\"2\"/></triangles>"
        "</mesh></object>"
    )
    with pytest.raises(EmptyGeometry):
        decode(_one_object(obj), "all_nan.3mf")


def test_3mf_rejects_out_of_range_triangle_index() -> None:
    obj = (
        "<object id=\"7\"><mesh>"
        "<vertices>"
        "<vertex x=\"0\" y=\"0\" z=\"0\"/>"
        "<vertex x=\"1\" y=\"0\" z=\"0\"/>"
        "<vertex x=\"0\" y=\"1\" z=\"0\"/>"
        "</vertices>"
        "<triangles><triangle v1=\"0\" v2=\"1\" v3=\"5\"/></triangles>"
        "</mesh></object>"
    )
    with pytest.raises(CorruptArchiveOrMissingModel, match=r"Invalid triangle in object 7 at index 0"):
        decode(_one_object(obj), "invalid_triangle.3mf")


def test_3mf_rejects_unparseable_vertex() -> None:
    obj = (
        "<object id=\"3\"><mesh>"
        "<vertices><vertex x=\"0\" y=\"zero\" z=\"0\"/></vertices>"
        "<triangles/>"
        "</mesh></object>"
    )
    with pytest.raises(CorruptArchiveOrMissingModel, match=r"invalid vertex in object 3 at index 0"):
        decode(_one_object(obj), "bad_vertex.3mf")
