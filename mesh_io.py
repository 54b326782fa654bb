# -*- coding: utf-8 -*-
"""
mesh_io.py — декодеры моделей: STL (binary/ASCII), OBJ, 3MF.

Контракт:
    decode(data: bytes, filename) -> DecodedModel
    DecodedModel.mesh            — единый Mesh (вершины + треугольники координатами, мм)
    DecodedModel.color_metadata  — побочные данные 3MF (цвета филаментов, статистика плит)

Принципы:
- Расширение проверяется ДО чтения байтов (UnsupportedFormat).
- Никакого глобального состояния парсера: всё, что раньше жило в модульных
  переменных (namespace, статус, счётчики лимитов), теперь живёт в объекте на один вызов.
- NaN/inf вершины не фатальны: вершина выкидывается, треугольники с ней тоже,
  предупреждение уходит в лог и в warnings. Ошибка — только если меш опустел.
- 3MF: компоненты разрешаются лениво по пути в архиве, документы кэшируются по
  пути, стек разрешения защищает от циклов.
"""
from __future__ import annotations

import io
import json
import logging
import os
import posixpath
import re
import struct
import xml.etree.ElementTree as ET
import zipfile
import zlib
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple

import numpy as np

from cancel_token import CancelToken, check_cancel
from quote_errors import (
    CorruptArchiveOrMissingModel,
    EmptyGeometry,
    InputTooLarge,
    MalformedMesh,
    UnsupportedFormat,
)

logger = logging.getLogger(__name__)

SUPPORTED_EXTS = (".stl", ".obj", ".3mf")

# ---------- Лимиты (анти-DoS) ----------
MAX_STL_TRIANGLES = 20_000_000
MAX_OBJ_VERTICES = 20_000_000
MAX_3MF_ENTRY_BYTES = 25 * 1024 * 1024
MAX_3MF_TOTAL_XML_BYTES = 50 * 1024 * 1024
MAX_3MF_METADATA_BYTES = 4 * 1024 * 1024
MAX_3MF_OBJECTS = 20000
MAX_3MF_COMPONENTS = 200000
MAX_3MF_VERTICES = 20_000_000
MAX_3MF_TRIANGLES = 40_000_000

NS_CORE = 'http://schemas.microsoft.com/3dmanufacturing/core/2015/02'
NS_PROD = 'http://schemas.microsoft.com/3dmanufacturing/production/2015/06'
NS_RELS = 'http://schemas.openxmlformats.org/package/2006/relationships'
REL_3DMODEL_SUFFIX = '/3dmodel'
DEFAULT_MODEL_PATH = '3D/3dmodel.model'

UNIT_TO_MM = {
    'micron': 0.001,
    'millimeter': 1.0,
    'centimeter': 10.0,
    'meter': 1000.0,
    'inch': 25.4,
    'foot': 304.8,
}

_STL_RECORD = np.dtype([
    ("normal", "<f4", (3,)),
    ("v", "<f4", (3, 3)),
    ("attr", "<u2"),
])


# ---------- Типы ----------
def _freeze(arr: np.ndarray) -> np.ndarray:
    arr.setflags(write=False)
    return arr


@dataclass(frozen=True)
class Mesh:
    """
    vertices  — (N, 3) float64, мм
    triangles — (M, 3, 3) float64: три разрешённые тройки координат на треугольник
    """
    vertices: np.ndarray
    triangles: np.ndarray
    source_format: str = ""
    dropped_vertices: int = 0
    object_count: int = 1

    def __post_init__(self):
        _freeze(self.vertices)
        _freeze(self.triangles)

    @property
    def vertex_count(self) -> int:
        return int(self.vertices.shape[0])

    @property
    def triangle_count(self) -> int:
        return int(self.triangles.shape[0])

    @property
    def is_empty(self) -> bool:
        return self.vertex_count == 0 or self.triangle_count == 0

    @classmethod
    def from_triangles(cls, triangles, *, source_format: str = "") -> "Mesh":
        """Меш из «супа» треугольников (K, 3, 3); вершины — уникальные в порядке появления."""
        T = np.asarray(triangles, dtype=np.float64).reshape(-1, 3, 3)
        return cls(_unique_in_order(T.reshape(-1, 3)), T.copy(), source_format=source_format)

    def translated(self, offset) -> "Mesh":
        d = np.asarray(offset, dtype=np.float64).reshape(3)
        return Mesh(
            self.vertices + d,
            self.triangles + d,
            source_format=self.source_format,
            dropped_vertices=self.dropped_vertices,
            object_count=self.object_count,
        )


@dataclass(frozen=True)
class ColorMetadata:
    colors: Tuple[str, ...] = ()
    color_weights: Tuple[float, ...] = ()
    filament_types: Tuple[str, ...] = ()
    reported_weight_g: Optional[float] = None
    reported_print_time_s: Optional[float] = None
    reported_filament_count: Optional[int] = None
    plate_count: int = 0
    sources: Tuple[str, ...] = ()

    @property
    def color_count(self) -> int:
        return max(1, len(self.colors))

    @property
    def has_color_weights(self) -> bool:
        return len(self.color_weights) == len(self.colors) and sum(self.color_weights) > 0

    def to_dict(self) -> dict:
        return {
            "colors": list(self.colors),
            "color_weights_g": list(self.color_weights),
            "filament_types": list(self.filament_types),
            "reported_weight_g": self.reported_weight_g,
            "reported_print_time_s": self.reported_print_time_s,
            "reported_filament_count": self.reported_filament_count,
            "plate_count": self.plate_count,
            "sources": list(self.sources),
        }


@dataclass(frozen=True)
class DecodedModel:
    mesh: Mesh
    color_metadata: ColorMetadata = ColorMetadata()
    file_format: str = ""
    warnings: Tuple[str, ...] = ()


# ---------- Утилиты ----------
def detect_format(filename: str) -> str:
    """'part.STL' / '.stl' / 'stl' -> 'stl'. Неизвестное расширение -> UnsupportedFormat."""
    name = (filename or "").strip().lower()
    ext = os.path.splitext(name)[1]
    if not ext and name:
        ext = "." + name.lstrip(".")
    if ext not in SUPPORTED_EXTS:
        raise UnsupportedFormat(
            f"Unsupported file type: {ext or '(none)'}. Supported types: STL, OBJ, 3MF",
            identifier=ext or None,
        )
    return ext[1:]


def is_supported(filename: str) -> bool:
    try:
        detect_format(filename)
    except UnsupportedFormat:
        return False
    return True


def _limit_err(kind: str, current: int, limit: int, context: str = "") -> InputTooLarge:
    msg = f"{kind} limit exceeded: {current} > {limit}"
    if context:
        msg += f" ({context})"
    return InputTooLarge(msg, identifier=context or kind)


def _unique_in_order(points: np.ndarray) -> np.ndarray:
    if points.shape[0] == 0:
        return np.zeros((0, 3), dtype=np.float64)
    _, first = np.unique(points, axis=0, return_index=True)
    return points[np.sort(first)]


def _soup_to_mesh(tris: np.ndarray, fmt: str, warnings: List[str], *, object_count: int = 1) -> Mesh:
    """(K,3,3) с возможными NaN/inf -> Mesh без них. Общая часть для STL."""
    tris = np.asarray(tris, dtype=np.float64).reshape(-1, 3, 3)
    finite_v = np.isfinite(tris).all(axis=2)              # (K, 3)
    dropped = int((~finite_v).sum())
    keep = finite_v.all(axis=1)
    points = tris[finite_v]                                # только конечные вершины
    if dropped:
        _warn_dropped(warnings, fmt, dropped, int((~keep).sum()))
    mesh = Mesh(
        _unique_in_order(points),
        tris[keep],
        source_format=fmt,
        dropped_vertices=dropped,
        object_count=object_count,
    )
    return _require_geometry(mesh)


def _warn_dropped(warnings: List[str], fmt: str, vertices: int, triangles: int) -> None:
    msg = f"{fmt.upper()}: dropped {vertices} non-finite vertex coordinate(s), {triangles} triangle(s) skipped"
    logger.warning(msg)
    warnings.append(msg)


def _require_geometry(mesh: Mesh) -> Mesh:
    if mesh.vertex_count == 0 or mesh.triangle_count == 0:
        detail = f" after dropping {mesh.dropped_vertices} non-finite vertices" if mesh.dropped_vertices else ""
        raise EmptyGeometry(
            f"Empty geometry: {mesh.vertex_count} vertices, {mesh.triangle_count} triangles{detail}",
            identifier=mesh.source_format or None,
        )
    return mesh


# ---------- STL ----------
def _looks_like_ascii_stl(prefix: bytes) -> bool:
    stripped = prefix.lstrip()
    if not stripped.lower().startswith(b"solid"):
        return False
    text = prefix.decode("utf-8", errors="ignore").lower()
    return ("facet" in text) and ("vertex" in text)


def stl_binary_triangle_count(data: bytes) -> Optional[int]:
    """
    Возвращает число треугольников для бинарного STL, None — если это ASCII STL.
    Бинарный файл определяется по точному размеру 84 + 50*N (даже если заголовок начинается с 'solid').
    """
    size = len(data)
    ascii_like = _looks_like_ascii_stl(data[:8192])
    if size < 84:
        if ascii_like:
            return None
        raise MalformedMesh("Malformed binary STL: file too small")

    count = struct.unpack_from("<I", data, 80)[0]
    expected = 84 + 50 * count
    if expected == size:
        if count > MAX_STL_TRIANGLES:
            raise _limit_err("STL triangles", count, MAX_STL_TRIANGLES, "MAX_STL_TRIANGLES")
        return count
    if ascii_like:
        return None
    if count > MAX_STL_TRIANGLES:
        raise _limit_err("STL triangles", count, MAX_STL_TRIANGLES, "MAX_STL_TRIANGLES")
    raise MalformedMesh(f"Malformed binary STL: expected {expected} bytes, got {size}")


def decode_stl(data: bytes, warnings: Optional[List[str]] = None) -> Mesh:
    warnings = warnings if warnings is not None else []
    count = stl_binary_triangle_count(data)
    if count is None:
        return _decode_ascii_stl(data, warnings)
    if count == 0:
        raise EmptyGeometry("Empty geometry: binary STL declares 0 triangles", identifier="stl")
    records = np.frombuffer(data, dtype=_STL_RECORD, count=count, offset=84)
    return _soup_to_mesh(records["v"], "stl", warnings)


def _decode_ascii_stl(data: bytes, warnings: List[str]) -> Mesh:
    text = data.decode("utf-8", errors="replace")
    tris: List[Tuple[Tuple[float, float, float], ...]] = []
    current: Optional[list] = None
    incomplete = 0

    def _close_facet():
        nonlocal current, incomplete
        if current is None:
            return
        if len(current) == 3:
            tris.append(tuple(current))
        else:
            incomplete += 1
        current = None

    for lineno, raw in enumerate(text.splitlines(), 1):
        line = raw.strip()
        if not line:
            continue
        low = line.lower()
        if low.startswith("facet"):
            _close_facet()
            current = []
        elif low.startswith("vertex"):
            parts = line.split()
            if len(parts) < 4:
                raise MalformedMesh(f"Malformed ASCII STL: incomplete vertex at line {lineno}")
            try:
                xyz = (float(parts[1]), float(parts[2]), float(parts[3]))
            except ValueError:
                raise MalformedMesh(f"Malformed ASCII STL: invalid vertex at line {lineno}") from None
            if current is None:
                current = []
            current.append(xyz)
        elif low.startswith("endfacet"):
            _close_facet()
    _close_facet()

    if incomplete:
        msg = f"ASCII STL: skipped {incomplete} facet(s) without exactly 3 vertices"
        logger.warning(msg)
        warnings.append(msg)
    if not tris:
        raise EmptyGeometry("Empty geometry: ASCII STL contains no complete facets", identifier="stl")
    return _soup_to_mesh(np.array(tris, dtype=np.float64), "stl", warnings)


# ---------- OBJ ----------
def _obj_index(token: str, vertex_count: int, lineno: int) -> int:
    head = token.split("/", 1)[0]
    try:
        i = int(head)
    except ValueError:
        raise MalformedMesh(f"Malformed OBJ: invalid face index '{token}' at line {lineno}") from None
    if i > 0:
        return i - 1
    if i < 0:
        return vertex_count + i
    raise MalformedMesh(f"Malformed OBJ: face index 0 at line {lineno}")


def decode_obj(data: bytes, warnings: Optional[List[str]] = None) -> Mesh:
    warnings = warnings if warnings is not None else []
    verts: List[Tuple[float, float, float]] = []
    faces: List[Tuple[int, int, int]] = []
    short_faces = 0

    for lineno, raw in enumerate(data.decode("utf-8", errors="replace").splitlines(), 1):
        line = raw.split("#", 1)[0].strip()
        if not line:
            continue
        parts = line.split()
        tag = parts[0]
        if tag == "v":
            if len(parts) < 4:
                raise MalformedMesh(f"Malformed OBJ: incomplete vertex at line {lineno}")
            try:
                verts.append((float(parts[1]), float(parts[2]), float(parts[3])))
            except ValueError:
                raise MalformedMesh(f"Malformed OBJ: invalid vertex at line {lineno}") from None
            if len(verts) > MAX_OBJ_VERTICES:
                raise _limit_err("OBJ vertices", len(verts), MAX_OBJ_VERTICES, "MAX_OBJ_VERTICES")
        elif tag == "f":
            idx = [_obj_index(tok, len(verts), lineno) for tok in parts[1:]]
            if len(idx) < 3:
                short_faces += 1
                continue
            # треугольник как есть, quad -> (0,1,2)+(0,2,3), n-угольник -> веер от первой вершины
            for i in range(1, len(idx) - 1):
                faces.append((idx[0], idx[i], idx[i + 1]))

    if short_faces:
        msg = f"OBJ: skipped {short_faces} face(s) with fewer than 3 vertices"
        logger.warning(msg)
        warnings.append(msg)

    V = np.array(verts, dtype=np.float64).reshape(-1, 3)
    T = np.array(faces, dtype=np.int64).reshape(-1, 3)
    if T.size and (T.min() < 0 or T.max() >= V.shape[0]):
        raise MalformedMesh(f"Malformed OBJ: face references vertex outside 1..{V.shape[0]}")
    return _indexed_to_mesh(V, T, "obj", warnings)


def _drop_nonfinite(V: np.ndarray, T: np.ndarray) -> Tuple[np.ndarray, np.ndarray, int, int]:
    """Выкидывает NaN/inf вершины и треугольники с ними; индексы перенумеровываются."""
    finite = np.isfinite(V).all(axis=1) if V.size else np.ones(V.shape[0], dtype=bool)
    dropped = int((~finite).sum())
    if not dropped:
        return V, T, 0, 0
    keep = finite[T].all(axis=1) if T.size else np.zeros(0, dtype=bool)
    remap = np.cumsum(finite) - 1
    return V[finite], remap[T[keep]], dropped, int((~keep).sum())


def _indexed_to_mesh(V: np.ndarray, T: np.ndarray, fmt: str, warnings: List[str], *, object_count: int = 1) -> Mesh:
    V, T, dropped, dropped_tris = _drop_nonfinite(V, T)
    if dropped:
        _warn_dropped(warnings, fmt, dropped, dropped_tris)
    tris = V[T] if T.size else np.zeros((0, 3, 3), dtype=np.float64)
    mesh = Mesh(V.copy(), tris, source_format=fmt, dropped_vertices=dropped, object_count=object_count)
    return _require_geometry(mesh)


# ---------- 3MF ----------
def _q(ns: str, tag: str) -> str:
    return f"{{{ns}}}{tag}" if ns else tag


def _root_namespace(root: ET.Element) -> str:
    if root.tag.startswith("{"):
        return root.tag[1:].split("}", 1)[0]
    return ""


def unit_to_mm(unit_str: Optional[str]) -> float:
    unit = (unit_str or 'millimeter').strip().lower()
    return UNIT_TO_MM.get(unit, 1.0)


def _norm_model_path(path: str) -> str:
    if not path:
        return ""
    path = path.replace("\\", "/").lstrip("/")
    path = posixpath.normpath(path)
    if path.startswith(".."):
        raise CorruptArchiveOrMissingModel("3MF contains invalid model path outside archive", identifier=path)
    return path


def parse_transform(s: Optional[str], unit_scale: float = 1.0) -> np.ndarray:
    """
    3MF transform: 12 чисел "m00 m01 m02 m10 m11 m12 m20 m21 m22 m30 m31 m32".
    Вершины — row-vectors: [x y z 1] @ M, перенос — в последней строке.
    Перенос задан в единицах документа и переводится в мм через unit_scale.
    Композиция вложенных: M_world = M_local @ M_parent.
    """
    if not s:
        return np.eye(4, dtype=np.float64)
    try:
        vals = [float(x) for x in s.replace(",", " ").split()]
    except ValueError:
        vals = []
    if len(vals) != 12 or not all(np.isfinite(vals)):
        logger.warning("3MF: ignoring invalid transform %r", s)
        return np.eye(4, dtype=np.float64)
    M = np.eye(4, dtype=np.float64)
    M[:4, :3] = np.array(vals, dtype=np.float64).reshape(4, 3)
    M[3, :3] *= unit_scale
    return M


def apply_transform(V_mm: np.ndarray, M: np.ndarray) -> np.ndarray:
    if V_mm.size == 0:
        return V_mm
    return V_mm @ M[:3, :3] + M[3, :3]


@dataclass
class _ModelDocument:
    path: str
    unit_scale_mm: float
    meshes: Dict[str, Tuple[np.ndarray, np.ndarray]] = field(default_factory=dict)
    components: Dict[str, List[Tuple[str, str, np.ndarray]]] = field(default_factory=dict)
    build_items: List[Tuple[str, str, np.ndarray]] = field(default_factory=list)
    material_colors: List[str] = field(default_factory=list)
    object_order: List[str] = field(default_factory=list)


class ThreeMFReader:
    """
    Состояние чтения ОДНОГО архива: кэш документов по пути (arena), счётчики лимитов,
    предупреждения. Создаётся на каждый вызов decode_3mf и выбрасывается.
    """

    def __init__(self, zf: zipfile.ZipFile, *, cancel: Optional[CancelToken] = None,
                 warnings: Optional[List[str]] = None):
        self._zf = zf
        self._cancel = cancel
        self.warnings = warnings if warnings is not None else []
        self._names = {_norm_model_path(n).lower(): n for n in zf.namelist() if not n.endswith("/")}
        self._docs: Dict[str, _ModelDocument] = {}
        self._counts = {"objects": 0, "components": 0, "vertices": 0, "triangles": 0}
        self._total_xml_bytes = 0
        self.dropped_vertices = 0
        self.skipped_cycles = 0
        self.units: set = set()

    # --- archive access ---
    def entry_name(self, path: str) -> Optional[str]:
        return self._names.get(_norm_model_path(path).lower())

    def read_entry(self, name: str, *, max_bytes: int) -> bytes:
        info = self._zf.getinfo(name)
        if info.file_size > max_bytes:
            raise _limit_err("3MF entry bytes", info.file_size, max_bytes, name)
        try:
            return self._zf.read(name)
        except (zipfile.BadZipFile, zlib.error, EOFError) as e:
            raise CorruptArchiveOrMissingModel(f"Corrupt 3MF archive entry {name}: {e}", identifier=name) from None

    def root_model_path(self) -> str:
        rels = self.entry_name("_rels/.rels")
        if rels:
            try:
                root = ET.fromstring(self.read_entry(rels, max_bytes=MAX_3MF_METADATA_BYTES))
                for rel in root.iter(_q(NS_RELS, "Relationship")):
                    if (rel.get("Type") or "").endswith(REL_3DMODEL_SUFFIX) and rel.get("Target"):
                        target = _norm_model_path(rel.get("Target"))
                        if self.entry_name(target):
                            return target
            except ET.ParseError as e:
                logger.warning("3MF: unreadable _rels/.rels (%s), falling back to %s", e, DEFAULT_MODEL_PATH)
        if self.entry_name(DEFAULT_MODEL_PATH):
            return DEFAULT_MODEL_PATH
        for norm in sorted(self._names):
            if norm.startswith("3d/") and norm.endswith(".model"):
                return _norm_model_path(self._names[norm])
        raise CorruptArchiveOrMissingModel("3MF archive does not contain a 3D model part", identifier=DEFAULT_MODEL_PATH)

    # --- documents ---
    def document(self, path: str) -> _ModelDocument:
        key = _norm_model_path(path).lower()
        doc = self._docs.get(key)
        if doc is not None:
            return doc
        name = self.entry_name(path)
        if name is None:
            raise CorruptArchiveOrMissingModel(
                f"3MF references missing model file: {path}. All referenced .model parts must be inside the 3MF.",
                identifier=path,
            )
        raw = self.read_entry(name, max_bytes=MAX_3MF_ENTRY_BYTES)
        self._total_xml_bytes += len(raw)
        if self._total_xml_bytes > MAX_3MF_TOTAL_XML_BYTES:
            raise _limit_err("3MF total XML bytes", self._total_xml_bytes, MAX_3MF_TOTAL_XML_BYTES, "MAX_3MF_TOTAL_XML_BYTES")
        try:
            root = ET.fromstring(raw)
        except ET.ParseError as e:
            raise CorruptArchiveOrMissingModel(f"Malformed 3MF model XML in {name}: {e}", identifier=name) from None
        doc = self._parse_document(root, _norm_model_path(name))
        self._docs[key] = doc
        return doc

    def _bump(self, kind: str, limit: int, label: str) -> None:
        self._counts[kind] += 1
        if self._counts[kind] > limit:
            raise _limit_err(f"3MF {kind}", self._counts[kind], limit, label)

    def _parse_document(self, root: ET.Element, path: str) -> _ModelDocument:
        ns = _root_namespace(root) or NS_CORE
        unit = root.get('unit') or 'millimeter'
        self.units.add(unit)
        scale = unit_to_mm(unit)
        doc = _ModelDocument(path=path, unit_scale_mm=scale)

        for base in root.iter(_q(ns, "base")):
            color = base.get("displaycolor")
            if color:
                doc.material_colors.append(color)

        for obj in root.iter(_q(ns, "object")):
            self._bump("objects", MAX_3MF_OBJECTS, "MAX_3MF_OBJECTS")
            oid = obj.get('id')
            if oid is None or oid == "":
                raise CorruptArchiveOrMissingModel(
                    f"Malformed 3MF: <object> missing required id attribute in {path}", identifier=path
                )
            doc.object_order.append(oid)
            mesh = obj.find(_q(ns, "mesh"))
            if mesh is not None:
                doc.meshes[oid] = self._read_mesh(mesh, ns, oid, scale, path)
                continue
            comps: List[Tuple[str, str, np.ndarray]] = []
            comps_node = obj.find(_q(ns, "components"))
            if comps_node is not None:
                for c in comps_node.findall(_q(ns, "component")):
                    self._bump("components", MAX_3MF_COMPONENTS, "MAX_3MF_COMPONENTS")
                    p_path = c.get(f'{{{NS_PROD}}}path') or c.get('path')
                    child = _norm_model_path(p_path) if p_path else path
                    comps.append((child, c.get('objectid') or "", parse_transform(c.get('transform'), scale)))
            doc.components[oid] = comps

        build = root.find(_q(ns, "build"))
        if build is not None:
            for item in build.findall(_q(ns, "item")):
                p_path = item.get(f'{{{NS_PROD}}}path') or item.get('path')
                child = _norm_model_path(p_path) if p_path else path
                doc.build_items.append((child, item.get('objectid') or "", parse_transform(item.get('transform'), scale)))
        return doc

    def _read_mesh(self, mesh: ET.Element, ns: str, oid: str, scale: float, path: str):
        verts = []
        vs = mesh.find(_q(ns, "vertices"))
        if vs is not None:
            for i, v in enumerate(vs.findall(_q(ns, "vertex"))):
                self._bump("vertices", MAX_3MF_VERTICES, "MAX_3MF_VERTICES")
                try:
                    verts.append((float(v.get('x', '0')) * scale,
                                  float(v.get('y', '0')) * scale,
                                  float(v.get('z', '0')) * scale))
                except ValueError:
                    raise CorruptArchiveOrMissingModel(
                        f"Malformed 3MF: invalid vertex in object {oid} at index {i}", identifier=path
                    ) from None
        tris = []
        ts = mesh.find(_q(ns, "triangles"))
        if ts is not None:
            for t in ts.findall(_q(ns, "triangle")):
                self._bump("triangles", MAX_3MF_TRIANGLES, "MAX_3MF_TRIANGLES")
                try:
                    tris.append((int(t.get('v1', '')), int(t.get('v2', '')), int(t.get('v3', ''))))
                except ValueError:
                    raise CorruptArchiveOrMissingModel(
                        f"Invalid triangle in object {oid} at index {len(tris)}", identifier=path
                    ) from None

        V = np.array(verts, dtype=np.float64).reshape(-1, 3)
        T = np.array(tris, dtype=np.int64).reshape(-1, 3)
        if T.size:
            bad = np.flatnonzero((T < 0).any(axis=1) | (T >= V.shape[0]).any(axis=1))
            if bad.size:
                raise CorruptArchiveOrMissingModel(
                    f"Invalid triangle in object {oid} at index {int(bad[0])}", identifier=path
                )
        V, T, dropped, dropped_tris = _drop_nonfinite(V, T)
        if dropped:
            self.dropped_vertices += dropped
            msg = f"3MF: dropped {dropped} non-finite vertex(es) in object {oid}, {dropped_tris} triangle(s) skipped"
            logger.warning(msg)
            self.warnings.append(msg)
        return _freeze(V), _freeze(T)

    # --- component graph ---
    def resolve(self, path: str, oid: str, M: np.ndarray, stack: List[Tuple[str, str]],
                out_v: list, out_t: list) -> None:
        doc = self.document(path)
        key = (doc.path.lower(), oid)
        if key in stack:
            self._skip_cycle(f"object {oid} in {doc.path}")
            return
        if oid in doc.meshes:
            V, T = doc.meshes[oid]
            if V.size and T.size:
                Vw = apply_transform(V, M)
                out_v.append(Vw)
                out_t.append(Vw[T])
            return
        if oid not in doc.components:
            raise CorruptArchiveOrMissingModel(
                f"3MF references missing object {oid} in {doc.path}", identifier=f"{doc.path}#{oid}"
            )
        stack.append(key)
        try:
            on_stack = {p for p, _ in stack}
            for child_path, child_oid, Mc in doc.components[oid]:
                check_cancel(self._cancel, "3mf components")
                child_key = _norm_model_path(child_path).lower()
                if child_key != doc.path.lower() and child_key in on_stack:
                    self._skip_cycle(f"model file {child_path}")
                    continue
                self.resolve(child_path, child_oid, Mc @ M, stack, out_v, out_t)
        finally:
            stack.pop()

    def _skip_cycle(self, what: str) -> None:
        self.skipped_cycles += 1
        msg = f"3MF: cyclic component reference to {what} skipped"
        logger.warning(msg)
        self.warnings.append(msg)

    def build_targets(self, root_path: str) -> List[Tuple[str, str, np.ndarray]]:
        doc = self.document(root_path)
        if doc.build_items:
            return list(doc.build_items)
        referenced = {c_oid for comps in doc.components.values()
                      for c_path, c_oid, _ in comps if c_path.lower() == doc.path.lower()}
        return [(doc.path, oid, np.eye(4)) for oid in doc.object_order if oid not in referenced]


def decode_3mf(data: bytes, *, cancel: Optional[CancelToken] = None,
               warnings: Optional[List[str]] = None) -> Tuple[Mesh, ColorMetadata]:
    warnings = warnings if warnings is not None else []
    try:
        zf = zipfile.ZipFile(io.BytesIO(data))
    except (zipfile.BadZipFile, zipfile.LargeZipFile) as e:
        raise CorruptArchiveOrMissingModel(f"Corrupt 3MF archive: {e}") from None

    with zf:
        reader = ThreeMFReader(zf, cancel=cancel, warnings=warnings)
        root_path = reader.root_model_path()
        out_v: list = []
        out_t: list = []
        targets = reader.build_targets(root_path)
        for path, oid, M in targets:
            check_cancel(cancel, "3mf objects")
            if reader.entry_name(path) is not None and oid not in reader.document(path).meshes \
                    and oid not in reader.document(path).components:
                raise CorruptArchiveOrMissingModel(
                    f"3MF build item references missing object {oid}", identifier=f"{path}#{oid}"
                )
            reader.resolve(path, oid, M, [], out_v, out_t)

        material_colors = reader.document(root_path).material_colors
        meta = extract_color_metadata(zf, material_colors, warnings)

    logger.debug("3MF %s: units=%s items=%d cycles_skipped=%d",
                 root_path, sorted(reader.units), len(targets), reader.skipped_cycles)
    V = np.vstack(out_v) if out_v else np.zeros((0, 3), dtype=np.float64)
    T = np.concatenate(out_t, axis=0) if out_t else np.zeros((0, 3, 3), dtype=np.float64)
    mesh = Mesh(V, T, source_format="3mf", dropped_vertices=reader.dropped_vertices,
                object_count=len(out_t))
    return _require_geometry(mesh), meta


# ---------- 3MF: побочные метаданные (цвета/статистика) ----------
_PLATE_JSON = re.compile(r"^metadata/plate_\d+\.json$")
_HEX_COLOR = re.compile(r"^#?[0-9a-fA-F]{6}([0-9a-fA-F]{2})?$")


def _parse_settings_blob(text: str) -> dict:
    """
    Толерантный разбор конфигов слайсеров: JSON -> XML (<metadata key= value=>, <filament/>, <plate>)
    -> строки 'key = value' (в т.ч. '; key = value' из PrusaSlicer).
    """
    stripped = text.strip()
    if stripped.startswith("{"):
        try:
            data = json.loads(stripped)
            if isinstance(data, dict):
                return data
        except json.JSONDecodeError:
            pass
    if stripped.startswith("<"):
        try:
            root = ET.fromstring(stripped)
        except ET.ParseError:
            root = None
        if root is not None:
            out: dict = {"__filaments__": [], "__plates__": [], "__extruders__": set()}
            for plate in root.iter("plate"):
                stats = {m.get("key"): m.get("value") for m in plate.findall("metadata")}
                out["__plates__"].append(stats)
            for fil in root.iter("filament"):
                out["__filaments__"].append(dict(fil.attrib))
            for m in root.iter("metadata"):
                key, value = m.get("key"), m.get("value")
                if not key:
                    continue
                if key == "extruder" and value:
                    out["__extruders__"].add(value)
                out.setdefault(key, value)
            return out
    out = {}
    for line in text.splitlines():
        line = line.strip().lstrip(";#").strip()
        if "=" not in line:
            continue
        key, value = line.split("=", 1)
        out[key.strip()] = value.strip()
    return out


def _as_list(value) -> List[str]:
    if value is None:
        return []
    if isinstance(value, (list, tuple)):
        items = [str(v) for v in value]
    else:
        items = re.split(r"[;,]", str(value))
    return [s.strip().strip('"').strip() for s in items if s and s.strip().strip('"').strip()]


def _to_float(value) -> Optional[float]:
    try:
        f = float(value)
    except (TypeError, ValueError):
        return None
    return f if np.isfinite(f) else None


def _merge_colors(colors: List[str], weights: List[Optional[float]]) -> Tuple[Tuple[str, ...], Tuple[float, ...]]:
    """Уникальные цвета в порядке появления; веса одинаковых цветов суммируются."""
    order: List[str] = []
    acc: Dict[str, float] = {}
    have_weights = bool(weights) and len(weights) == len(colors) and all(w is not None for w in weights)
    for i, raw in enumerate(colors):
        if not _HEX_COLOR.match(raw):
            continue
        c = ("#" + raw.lstrip("#")).upper()[:7]
        if c not in acc:
            order.append(c)
            acc[c] = 0.0
        if have_weights:
            acc[c] += float(weights[i])
    return tuple(order), (tuple(acc[c] for c in order) if have_weights else ())


_GCODE_HEADER_BYTES = 64 * 1024
_GCODE_WEIGHT = re.compile(r"^(?:total filament weight|filament used) \[g\]\s*[:=]\s*(.+)$", re.IGNORECASE)
_GCODE_TIME = re.compile(
    r"(total estimated time|estimated printing time(?: \(normal mode\))?|print_time)\s*[:=]\s*([0-9dhms .]+)",
    re.IGNORECASE,
)
_GCODE_LIST_KEYS = ("filament_colour", "extruder_colour", "filament_type")
_DURATION_PART = re.compile(r"(\d+(?:\.\d+)?)\s*([dhms])")
_DURATION_UNITS = {"d": 86400.0, "h": 3600.0, "m": 60.0, "s": 1.0}


def _parse_duration_s(text: str) -> Optional[float]:
    """'3600' -> 3600.0, '1h 2m 3s' / '1d 2h' -> секунды."""
    text = text.strip().lower()
    plain = _to_float(text)
    if plain is not None:
        return plain
    parts = _DURATION_PART.findall(text)
    if not parts:
        return None
    return float(sum(float(n) * _DURATION_UNITS[u] for n, u in parts))


def _plate_json_stats(blob: dict) -> Tuple[Optional[dict], Dict[str, float]]:
    """
    plate_N.json (Bambu): plate_data.print_info {total_weight г, print_time мин}
    и filament_usage {id: {weight, length}}. Вынимает эти ключи из blob.
    """
    plate_data = blob.pop("plate_data", None)
    usage = blob.pop("filament_usage", None)
    stats = None
    if isinstance(plate_data, dict) and isinstance(plate_data.get("print_info"), dict):
        info = plate_data["print_info"]
        minutes = _to_float(info.get("print_time"))
        stats = {
            "weight": _to_float(info.get("total_weight")),
            "time_s": minutes * 60.0 if minutes is not None else None,
        }
    weights: Dict[str, float] = {}
    if isinstance(usage, dict):
        for fid, entry in usage.items():
            w = _to_float(entry.get("weight")) if isinstance(entry, dict) else _to_float(entry)
            if w is not None:
                weights[str(fid)] = w
    return stats, weights


def _local(tag: str) -> str:
    return tag.rsplit("}", 1)[-1]


def _parse_print_statistics(text: str, name: str) -> Optional[dict]:
    """Auxiliary*.xml: <print_statistics><weight/> <time/> (часы) <filament_count/></print_statistics>."""
    try:
        root = ET.fromstring(text.strip())
    except ET.ParseError as e:
        logger.warning("3MF: cannot parse auxiliary entry %s: %s", name, e)
        return None
    stats = next((el for el in root.iter() if _local(el.tag) == "print_statistics"), None)
    if stats is None:
        return None
    fields = {_local(child.tag): (child.text or "").strip() for child in stats}
    hours = _to_float(fields.get("time"))
    count = _to_float(fields.get("filament_count"))
    return {
        "weight": _to_float(fields.get("weight")),
        "time_s": hours * 3600.0 if hours is not None else None,
        "filament_count": int(count) if count is not None and count > 0 else None,
    }


def _parse_gcode_header(text: str) -> Tuple[dict, dict]:
    """
    Комментарии в начале встроенного .gcode: вес (г), время печати и списки
    filament_colour / filament_type. Возвращает (статистика, настройки).
    """
    weight = None
    times: Dict[str, float] = {}
    settings: dict = {}
    for line in text.splitlines():
        line = line.strip()
        if not line.startswith(";"):
            continue
        body = line.lstrip(";").strip()
        m = _GCODE_WEIGHT.match(body)
        if m:
            grams = [_to_float(v) for v in re.split(r"[,;]", m.group(1))]
            grams = [g for g in grams if g is not None]
            if grams and weight is None:
                weight = float(sum(grams))
            continue
        for label, value in _GCODE_TIME.findall(body):
            seconds = _parse_duration_s(value)
            if seconds is not None:
                times.setdefault(label.lower(), seconds)
        if "=" in body:
            key, value = body.split("=", 1)
            key = key.strip()
            if key in _GCODE_LIST_KEYS:
                settings.setdefault(key, value.strip())
    time_s = times.get("total estimated time")
    if time_s is None and times:
        time_s = next(iter(times.values()))
    return {"weight": weight, "time_s": time_s}, settings


def _sum_reported(entries: List[dict], key: str) -> Optional[float]:
    values = [e[key] for e in entries if e.get(key) is not None]
    return float(sum(values)) if values else None


def extract_color_metadata(zf: zipfile.ZipFile, material_colors: Optional[List[str]] = None,
                           warnings: Optional[List[str]] = None) -> ColorMetadata:
    """
    Побочные метаданные 3MF. Цвета: slice_info -> filament_usage из plate_N.json
    -> filament_colour/extruder_colour -> basematerials. Вес и время:
    slice_info -> plate_N.json -> Auxiliary*.xml -> заголовок .gcode -> настройки.
    """
    warnings = warnings if warnings is not None else []
    sources: List[str] = []
    filaments: List[dict] = []
    slice_plates: List[dict] = []
    json_plates: List[dict] = []
    aux_stats: List[dict] = []
    gcode_stats: List[dict] = []
    usage: Dict[str, float] = {}
    settings: dict = {}
    gcode_settings: dict = {}
    extruders: set = set()
    plate_files = 0

    for name in zf.namelist():
        low = name.lower()
        is_gcode = low.endswith(".gcode")
        is_aux = "auxiliar" in low and low.endswith(".xml")
        is_plate_json = bool(_PLATE_JSON.match(low))
        is_config = low.startswith("metadata/") and (low.endswith(".config") or is_plate_json)
        if not (is_gcode or is_aux or is_config):
            continue
        info = zf.getinfo(name)
        if not is_gcode and info.file_size > MAX_3MF_METADATA_BYTES:
            logger.warning("3MF: metadata entry %s too large (%d bytes), skipped", name, info.file_size)
            continue
        try:
            if is_gcode:
                with zf.open(name) as fh:
                    raw = fh.read(_GCODE_HEADER_BYTES)
            else:
                raw = zf.read(name)
        except (zipfile.BadZipFile, zlib.error, EOFError) as e:
            logger.warning("3MF: cannot read metadata entry %s: %s", name, e)
            continue
        text = raw.decode("utf-8", errors="replace")

        if is_gcode:
            stats, found = _parse_gcode_header(text)
            if stats["weight"] is None and stats["time_s"] is None and not found:
                continue
            sources.append(name)
            gcode_stats.append(stats)
            for key, value in found.items():
                gcode_settings.setdefault(key, value)
            continue
        if is_aux:
            stats = _parse_print_statistics(text, name)
            if stats:
                sources.append(name)
                aux_stats.append(stats)
            continue

        if is_plate_json:
            plate_files += 1
        blob = _parse_settings_blob(text)
        if not blob:
            continue
        sources.append(name)
        if is_plate_json:
            stats, weights = _plate_json_stats(blob)
            if stats:
                json_plates.append(stats)
            for fid, w in weights.items():
                usage[fid] = usage.get(fid, 0.0) + w
        filaments.extend(blob.pop("__filaments__", []) or [])
        for p in blob.pop("__plates__", []) or []:
            slice_plates.append({"weight": _to_float(p.get("weight")), "time_s": _to_float(p.get("prediction"))})
        extruders |= blob.pop("__extruders__", set()) or set()
        for key, value in blob.items():
            settings.setdefault(key, value)
    for key, value in gcode_settings.items():
        settings.setdefault(key, value)

    # 1) slice_info: реально использованные филаменты (+ граммы)
    colors: List[str] = []
    weights: List[Optional[float]] = []
    types: List[str] = []
    if filaments:
        for fil in filaments:
            if fil.get("color"):
                colors.append(fil["color"])
                weights.append(_to_float(fil.get("used_g")))
            if fil.get("type"):
                types.append(fil["type"])

    # 2) filament_colour / extruder_colour из настроек проекта
    if not colors:
        palette = _as_list(settings.get("filament_colour")) or _as_list(settings.get("extruder_colour"))
        colors = palette
        weights = []
        used_ids = sorted(int(f) for f in usage if f.isdigit() and 0 < int(f) <= len(palette))
        if used_ids:
            # filament_usage: граммы по номеру филамента (1-based)
            colors = [palette[i - 1] for i in used_ids]
            weights = [usage[str(i)] for i in used_ids]
        elif colors and extruders:
            used = sorted({int(e) for e in extruders if str(e).isdigit() and 0 < int(e) <= len(colors)})
            if used:
                colors = [colors[i - 1] for i in used]
    if not types:
        types = _as_list(settings.get("filament_type")) or _as_list(settings.get("filament_settings_id"))

    # 3) basematerials из самой модели
    if not colors and material_colors:
        colors = list(material_colors)

    uniq, uniq_weights = _merge_colors(colors, weights)

    reported_w = None
    reported_t = None
    for group in (slice_plates, json_plates, aux_stats, gcode_stats):
        if reported_w is None:
            reported_w = _sum_reported(group, "weight")
        if reported_t is None:
            reported_t = _sum_reported(group, "time_s")
    if reported_w is None:
        reported_w = _to_float(settings.get("filament_used_g"))
    if reported_t is None:
        reported_t = _to_float(settings.get("print_time"))

    counts = [s["filament_count"] for s in aux_stats if s.get("filament_count")]

    meta = ColorMetadata(
        colors=uniq,
        color_weights=uniq_weights,
        filament_types=tuple(dict.fromkeys(types)),
        reported_weight_g=reported_w,
        reported_print_time_s=reported_t,
        reported_filament_count=max(counts) if counts else None,
        plate_count=max(len(slice_plates), len(json_plates), plate_files, len(gcode_stats)),
        sources=tuple(sources),
    )
    if sources:
        logger.debug("3MF metadata from %s: %d colour(s)", ", ".join(sources), len(uniq))
    return meta


# ---------- Точка входа ----------
def decode(data: bytes, filename: str, *, cancel: Optional[CancelToken] = None) -> DecodedModel:
    fmt = detect_format(filename)
    check_cancel(cancel, "decode")
    if not data:
        raise EmptyGeometry("Empty input file", identifier=filename)

    warnings: List[str] = []
    meta = ColorMetadata()
    if fmt == "stl":
        mesh = decode_stl(data, warnings)
    elif fmt == "obj":
        mesh = decode_obj(data, warnings)
    else:
        mesh, meta = decode_3mf(data, cancel=cancel, warnings=warnings)
    check_cancel(cancel, "decode")
    logger.debug("decoded %s: %d vertices, %d triangles", filename, mesh.vertex_count, mesh.triangle_count)
    return DecodedModel(mesh=mesh, color_metadata=meta, file_format=fmt, warnings=tuple(warnings))


def decode_file(path: str, *, cancel: Optional[CancelToken] = None) -> DecodedModel:
    detect_format(path)
    with open(path, "rb") as f:
        data = f.read()
    return decode(data, os.path.basename(path), cancel=cancel)
