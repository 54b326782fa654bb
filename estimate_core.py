# -*- coding: utf-8 -*-
"""
estimate_core.py — оценка печати: вес детали/поддержек/продувки, время, разбивка по цветам.

Одна модель вместо нескольких дублирующих эвристик: геометрия + профиль + принтер
+ метаданные цвета -> EstimationResult. Функции чистые и детерминированные.

Время печати — объёмный расход (скорость × ширина линии × высота слоя × утилизация),
плюс перемещения и смена слоёв, всё умножается на множитель сложности.
Все эмпирические константы — в EstimationConstants (переопределяются из pricing.json → "estimation").
"""
from __future__ import annotations

import logging
import math
from dataclasses import asdict, dataclass, fields
from typing import List, Mapping, Optional, Tuple

from geometry_core import GeometrySummary
from mesh_io import ColorMetadata
from process_config import MaterialSpec, PrinterSpec, ProcessProfile
from quote_errors import ConfigError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class EstimationConstants:
    # поддержки: (порог overhang ratio, доля объёма)
    support_tree_threshold: float = 0.15
    support_tree_fraction: float = 0.25
    support_normal_threshold: float = 0.10
    support_normal_fraction: float = 0.18
    support_light_threshold: float = 0.05
    support_light_fraction: float = 0.10
    bridging_aspect_threshold: float = 3.0
    bridging_extra_fraction: float = 0.05
    bridging_only_fraction: float = 0.08
    support_max_fraction: float = 0.30
    support_lattice_density: float = 0.15
    # время
    line_width_mm: float = 0.45
    utilization: float = 0.85
    travel_factor: float = 0.06
    layer_change_s: float = 2.0
    complexity_reference: float = 2.0
    complexity_step: float = 0.1
    complexity_min_multiplier: float = 0.5
    # многоцвет
    purge_base_g: float = 5.0
    purge_per_color_g: float = 2.0
    # филамент
    filament_diameter_mm: float = 1.75

    @classmethod
    def from_mapping(cls, data: Optional[Mapping]) -> "EstimationConstants":
        """pricing.json → "estimation": только известные ключи, значения — конечные числа >= 0."""
        if not data:
            return cls()
        known = {f.name for f in fields(cls)}
        unknown = sorted(set(data) - known)
        if unknown:
            raise ConfigError(f"pricing.json: unknown estimation constant(s): {', '.join(unknown)}",
                              identifier=unknown[0])
        values = {}
        for key, raw in data.items():
            try:
                val = float(raw)
            except (TypeError, ValueError):
                raise ConfigError(f"pricing.json: estimation.{key} must be a number, got {raw!r}", identifier=key) from None
            if not math.isfinite(val) or val < 0:
                raise ConfigError(f"pricing.json: estimation.{key} out of range: {val}", identifier=key)
            values[key] = val
        consts = cls(**values)
        if consts.utilization <= 0 or consts.line_width_mm <= 0 or consts.filament_diameter_mm <= 0:
            raise ConfigError("pricing.json: estimation line_width_mm, utilization and filament_diameter_mm must be > 0")
        return consts

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass(frozen=True)
class ColorShare:
    label: str
    weight: float
    percentage: float

    def to_dict(self) -> dict:
        return {"label": self.label, "weight_g": self.weight, "percentage": self.percentage}


@dataclass(frozen=True)
class SupportEstimate:
    support_type: str
    fraction: float
    overhang_ratio: float
    aspect_ratio: float


@dataclass(frozen=True)
class EstimationResult:
    part_weight: float
    support_weight: float
    purge_weight: float
    total_weight: float
    print_time_hours: float
    color_count: int
    per_color: Tuple[ColorShare, ...]
    support_type: str
    support_fraction: float
    layer_count: int
    filament_length_mm: float
    time_breakdown: Mapping

    @property
    def is_multi_color(self) -> bool:
        return self.color_count > 1

    def to_dict(self) -> dict:
        return {
            "part_weight_g": round(self.part_weight, 2),
            "support_weight_g": round(self.support_weight, 2),
            "purge_weight_g": round(self.purge_weight, 2),
            "total_weight_g": round(self.total_weight, 2),
            "print_time_hours": round(self.print_time_hours, 3),
            "color_count": self.color_count,
            "is_multi_color": self.is_multi_color,
            "per_color": [c.to_dict() for c in self.per_color],
            "support_type": self.support_type,
            "support_fraction": round(self.support_fraction, 4),
            "layer_count": self.layer_count,
            "filament_length_mm": round(self.filament_length_mm, 1),
            "time_breakdown": dict(self.time_breakdown),
        }


# ---------- Поддержки ----------
def classify_support(geometry: GeometrySummary, constants: EstimationConstants = EstimationConstants()) -> SupportEstimate:
    """
    overhang ratio = |центр масс - центр габаритов| / макс. габарит.
    Центр масс тут — среднее вершин, поэтому и оценка поддержек грубая.
    """
    c = constants
    dims = geometry.dimensions
    max_dim = max(dims)
    if max_dim > 0:
        offset = math.dist(geometry.center_of_mass, geometry.bbox_center)
        ratio = offset / max_dim
    else:
        ratio = 0.0

    if ratio > c.support_tree_threshold:
        kind, fraction = "tree", c.support_tree_fraction
    elif ratio > c.support_normal_threshold:
        kind, fraction = "normal", c.support_normal_fraction
    elif ratio > c.support_light_threshold:
        kind, fraction = "light", c.support_light_fraction
    else:
        kind, fraction = "none", 0.0

    x, y, z = dims
    aspect = (max(x, y) / z) if z > 0 else math.inf
    if aspect > c.bridging_aspect_threshold:
        if kind == "none":
            kind, fraction = "light", c.bridging_only_fraction
        else:
            fraction += c.bridging_extra_fraction

    fraction = min(fraction, c.support_max_fraction)
    return SupportEstimate(kind, fraction, ratio, aspect)


# ---------- Цвета ----------
def _distribute(total: float, shares: List[float], labels: List[str]) -> Tuple[ColorShare, ...]:
    """Веса до 0.01 г, проценты до 0.1 %; последний элемент забирает остаток округления."""
    norm = sum(shares)
    shares = [s / norm for s in shares]
    total_r = round(total, 2)
    out: List[ColorShare] = []
    acc_w = 0.0
    acc_p = 0.0
    for i, (label, share) in enumerate(zip(labels, shares)):
        if i < len(shares) - 1:
            w = round(total_r * share, 2)
            p = round(share * 100.0, 1)
        else:
            w = round(total_r - acc_w, 2)
            p = round(100.0 - acc_p, 1)
        acc_w += w
        acc_p += p
        out.append(ColorShare(label=label, weight=w, percentage=p))
    return tuple(out)


def color_breakdown(total_weight: float, meta: ColorMetadata, fallback_label: str) -> Tuple[ColorShare, ...]:
    if meta.color_count <= 1:
        label = meta.colors[0] if meta.colors else fallback_label
        return (ColorShare(label=label, weight=round(total_weight, 2), percentage=100.0),)
    labels = list(meta.colors)
    if meta.has_color_weights:
        shares = list(meta.color_weights)
    else:
        shares = [1.0] * len(labels)
    return _distribute(total_weight, shares, labels)


def purge_weight(color_count: int, constants: EstimationConstants = EstimationConstants()) -> float:
    if color_count <= 1:
        return 0.0
    return constants.purge_base_g + constants.purge_per_color_g * (color_count - 1)


# ---------- Время ----------
def layer_count(height_mm: float, layer_height_mm: float) -> int:
    if layer_height_mm <= 0:
        return 1
    return max(1, math.ceil(height_mm / layer_height_mm - 1e-9))


def complexity_multiplier(score: float, constants: EstimationConstants = EstimationConstants()) -> float:
    c = constants
    return max(c.complexity_min_multiplier, 1.0 + (score - c.complexity_reference) * c.complexity_step)


def estimate_time_hours(
    extruded_mm3: float,
    geometry: GeometrySummary,
    profile: ProcessProfile,
    printer: PrinterSpec,
    constants: EstimationConstants = EstimationConstants(),
) -> Tuple[float, dict]:
    c = constants
    layers = layer_count(geometry.dimensions[2], profile.layer_height)
    flow_mm3_s = profile.nominal_speed * c.line_width_mm * profile.layer_height * min(1.0, c.utilization)
    extrusion_s = extruded_mm3 / flow_mm3_s if flow_mm3_s > 0 else 0.0
    travel_s = (geometry.surface_area * layers * c.travel_factor / printer.max_travel_speed
                if printer.max_travel_speed > 0 else 0.0)
    layer_change_s = layers * c.layer_change_s
    mult = complexity_multiplier(geometry.complexity_score, c)
    hours = (extrusion_s + travel_s + layer_change_s) * mult / 3600.0
    breakdown = {
        "extrusion_s": round(extrusion_s, 1),
        "travel_s": round(travel_s, 1),
        "layer_change_s": round(layer_change_s, 1),
        "complexity_multiplier": round(mult, 4),
        "volumetric_flow_mm3_s": round(flow_mm3_s, 4),
    }
    return hours, breakdown


def filament_length_mm(weight_g: float, density_g_cm3: float, diameter_mm: float = 1.75) -> float:
    """Длина прутка: вес / (π r² · плотность); r в мм, плотность переводится в г/мм³."""
    if density_g_cm3 <= 0 or diameter_mm <= 0:
        return 0.0
    r = diameter_mm / 2.0
    return weight_g / (math.pi * r * r * density_g_cm3 / 1000.0)


# ---------- Оценка ----------
def shell_volume_cm3(geometry: GeometrySummary, profile: ProcessProfile) -> float:
    """
    Площадь (мм²) × толщина стенки (мм) → см³.

    Оболочка ограничена сплошным объёмом детали: у тонких деталей площадь ×
    толщина больше самого тела, и без ограничения вес (shell + infill) × density
    превысил бы вес сплошной модели. Для деталей, где оболочка меньше объёма,
    результат совпадает с формулой без ограничения.
    """
    wall_thickness = profile.wall_loops * profile.layer_height * 2.0
    return min(geometry.surface_area * wall_thickness / 1000.0, geometry.volume_cm3)


def estimate(
    geometry: GeometrySummary,
    material: MaterialSpec,
    profile: ProcessProfile,
    printer: PrinterSpec,
    color_metadata: Optional[ColorMetadata] = None,
    *,
    infill_percent: Optional[float] = None,
    constants: EstimationConstants = EstimationConstants(),
) -> EstimationResult:
    meta = color_metadata or ColorMetadata()
    c = constants
    infill = profile.infill_percent if infill_percent is None else float(infill_percent)
    infill = max(0.0, min(100.0, infill))

    volume_cm3 = geometry.volume_cm3
    shell = shell_volume_cm3(geometry, profile)
    internal = max(0.0, volume_cm3 - shell)
    infill_cm3 = internal * infill / 100.0
    part_w = (shell + infill_cm3) * material.density

    support = classify_support(geometry, c)
    support_cm3 = volume_cm3 * support.fraction * c.support_lattice_density
    support_w = support_cm3 * material.density

    colors = meta.color_count
    purge_w = purge_weight(colors, c)
    total_w = part_w + support_w + purge_w

    extruded_mm3 = total_w / material.density * 1000.0
    hours, breakdown = estimate_time_hours(extruded_mm3, geometry, profile, printer, c)

    result = EstimationResult(
        part_weight=part_w,
        support_weight=support_w,
        purge_weight=purge_w,
        total_weight=total_w,
        print_time_hours=hours,
        color_count=colors,
        per_color=color_breakdown(total_w, meta, material.id),
        support_type=support.support_type,
        support_fraction=support.fraction,
        layer_count=layer_count(geometry.dimensions[2], profile.layer_height),
        filament_length_mm=filament_length_mm(total_w, material.density, c.filament_diameter_mm),
        time_breakdown=breakdown,
    )
    logger.debug("estimate: part=%.2fg support=%.2fg (%s) purge=%.2fg time=%.3fh",
                 part_w, support_w, support.support_type, purge_w, hours)
    return result
