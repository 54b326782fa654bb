# -*- coding: utf-8 -*-
"""
geometry_core.py — геометрия меша: объём, площадь, габариты, «центр масс», сложность.

Все функции чистые, работают над Mesh (треугольники уже разрешены в координаты, мм).
Большие меши считаются кусками по CHUNK_TRIANGLES — между кусками проверяется отмена.
"""
from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from typing import Optional, Tuple

import numpy as np

from cancel_token import CancelToken, check_cancel
from mesh_io import Mesh
from quote_errors import DegenerateGeometry, EmptyGeometry

logger = logging.getLogger(__name__)

CHUNK_TRIANGLES = 1_000_000

# Пороги уровней сложности: < 2 Simple, < 4 Moderate, < 6 Complex, иначе Very Complex
COMPLEXITY_LEVELS = ((2.0, "Simple"), (4.0, "Moderate"), (6.0, "Complex"))
COMPLEXITY_MAX_LEVEL = "Very Complex"

Vec3 = Tuple[float, float, float]


@dataclass(frozen=True)
class GeometrySummary:
    volume: float                 # мм³
    surface_area: float           # мм²
    bbox_min: Vec3
    bbox_max: Vec3
    center_of_mass: Vec3          # среднее вершин — приближение, не объёмный центроид
    complexity_score: float
    triangle_count: int
    vertex_count: int

    @property
    def dimensions(self) -> Vec3:
        return tuple(float(b - a) for a, b in zip(self.bbox_min, self.bbox_max))

    @property
    def bounding_box(self) -> dict:
        return {"min": list(self.bbox_min), "max": list(self.bbox_max)}

    @property
    def bbox_center(self) -> Vec3:
        return tuple(float((a + b) / 2.0) for a, b in zip(self.bbox_min, self.bbox_max))

    @property
    def volume_cm3(self) -> float:
        return self.volume / 1000.0

    @property
    def complexity_level(self) -> str:
        return complexity_level(self.complexity_score)

    def to_dict(self) -> dict:
        return {
            "volume_mm3": round(self.volume, 3),
            "volume_cm3": round(self.volume_cm3, 4),
            "surface_area_mm2": round(self.surface_area, 3),
            "bounding_box": self.bounding_box,
            "dimensions_mm": [round(d, 3) for d in self.dimensions],
            "center_of_mass": [round(c, 3) for c in self.center_of_mass],
            "complexity_score": round(self.complexity_score, 3),
            "complexity_level": self.complexity_level,
            "triangle_count": self.triangle_count,
            "vertex_count": self.vertex_count,
        }


def complexity_level(score: float) -> str:
    for limit, name in COMPLEXITY_LEVELS:
        if score < limit:
            return name
    return COMPLEXITY_MAX_LEVEL


def complexity_score(triangle_count: int, surface_area_mm2: float, volume_mm3: float) -> float:
    """log10(T+1) * (1 + (A / V^(2/3)) / 10); A/V^(2/3) безразмерно (мм² / мм²)."""
    if volume_mm3 <= 0:
        return 0.0
    compactness = surface_area_mm2 / (volume_mm3 ** (2.0 / 3.0))
    return math.log10(triangle_count + 1) * (1.0 + compactness / 10.0)


def signed_volume6(tris: np.ndarray) -> float:
    """Σ v1·(v2×v3) по треугольникам (K,3,3); ещё не делено на 6."""
    if tris.size == 0:
        return 0.0
    cross = np.cross(tris[:, 1], tris[:, 2])
    return float(np.einsum('ij,ij->i', tris[:, 0], cross).sum())


def triangle_area_sum(tris: np.ndarray) -> float:
    if tris.size == 0:
        return 0.0
    return float(0.5 * np.linalg.norm(np.cross(tris[:, 1] - tris[:, 0], tris[:, 2] - tris[:, 0]), axis=1).sum())


def mesh_volume_area(mesh: Mesh, *, cancel: Optional[CancelToken] = None) -> Tuple[float, float]:
    """(объём мм³, площадь мм²). Знак суммы объёма берётся по модулю в самом конце."""
    T = mesh.triangles
    vol6 = 0.0
    area = 0.0
    for start in range(0, T.shape[0], CHUNK_TRIANGLES):
        check_cancel(cancel, "geometry")
        chunk = T[start:start + CHUNK_TRIANGLES]
        vol6 += signed_volume6(chunk)
        area += triangle_area_sum(chunk)
    return abs(vol6) / 6.0, area


def compute_geometry(mesh: Mesh, *, cancel: Optional[CancelToken] = None) -> GeometrySummary:
    if mesh.is_empty:
        raise EmptyGeometry(
            f"Empty geometry: {mesh.vertex_count} vertices, {mesh.triangle_count} triangles",
            stage="geometry",
        )

    volume, area = mesh_volume_area(mesh, cancel=cancel)
    if not (np.isfinite(volume) and np.isfinite(area)):
        raise DegenerateGeometry("Degenerate geometry: non-finite volume or surface area")
    if volume <= 0.0:
        raise DegenerateGeometry(f"Degenerate geometry: zero volume ({mesh.triangle_count} triangles)")
    if area <= 0.0:
        raise DegenerateGeometry(f"Degenerate geometry: zero surface area ({mesh.triangle_count} triangles)")

    V = mesh.vertices
    mins = V.min(axis=0)
    maxs = V.max(axis=0)
    com = V.mean(axis=0)
    score = complexity_score(mesh.triangle_count, area, volume)

    summary = GeometrySummary(
        volume=float(volume),
        surface_area=float(area),
        bbox_min=tuple(float(x) for x in mins),
        bbox_max=tuple(float(x) for x in maxs),
        center_of_mass=tuple(float(x) for x in com),
        complexity_score=float(score),
        triangle_count=mesh.triangle_count,
        vertex_count=mesh.vertex_count,
    )
    logger.debug("geometry: V=%.3f mm3 A=%.3f mm2 score=%.3f (%s)",
                 summary.volume, summary.surface_area, score, summary.complexity_level)
    return summary
