# -*- coding: utf-8 -*-
"""
core_calc.py — чистое ядро расчёта печати (FDM): байты модели -> AnalysisResult.

Конвейер (данные идут только вперёд):
    mesh_io.decode -> geometry_core.compute_geometry -> estimate_core.estimate
    -> bed_packing.pack_beds / quote_core.assemble_quote

Цели:
- Никакого UI и никакого глобального состояния: каждый вызов независим.
- Один источник правды для CLI и любого внешнего слоя (HTTP и т.п.).
- Ошибки типизированы (quote_errors), нулевых «заглушечных» результатов нет.
"""
from __future__ import annotations

import logging
import os
import time
from dataclasses import dataclass, replace
from typing import Mapping, Optional, Tuple

import mesh_io
from bed_packing import DEFAULT_SPACING_MM, BedPlan, pack_beds
from cancel_token import CancelToken, check_cancel
from estimate_core import EstimationConstants, EstimationResult, estimate
from geometry_core import GeometrySummary, compute_geometry
from mesh_io import ColorMetadata
from process_config import (
    DEFAULT_PRICING,
    MaterialSpec,
    PrinterSpec,
    ProcessProfile,
    ProcessTables,
    nz,
)
from quote_core import Quote, QuoteRates, assemble_quote
from quote_errors import PartExceedsBedEnvelope

logger = logging.getLogger(__name__)

DEFAULT_MATERIAL = "PLA"
DEFAULT_PROFILE = "standard"
DEFAULT_PRINTER = "bambu_x1c"
DEFAULT_MARKUP = 2.5


# ---------- Тираж (кол-во штук) ----------
def coerce_qty(qty) -> int:
    """
    Приводит qty к int и валидирует (>=1).
    Единая правда для CLI/внешних слоёв: исключает отрицательные/нулевые значения и дробные.
    """
    if isinstance(qty, bool):
        raise ValueError(f"qty must be int >= 1, got: {qty!r}")
    try:
        q = int(qty)
    except (TypeError, ValueError) as e:
        raise ValueError(f"qty must be int >= 1, got: {qty!r}") from e
    if q < 1 or (isinstance(qty, float) and q != qty):
        raise ValueError(f"qty must be int >= 1, got: {qty!r}")
    return q


def _as_bool(v) -> bool:
    if isinstance(v, str):
        return v.strip().lower() in ("1", "true", "yes", "on")
    return bool(v)


def _first(mapping: Mapping, *keys):
    for k in keys:
        if mapping.get(k) is not None and mapping.get(k) != "":
            return mapping[k]
    return None


@dataclass(frozen=True)
class QuoteOptions:
    material: str = DEFAULT_MATERIAL
    profile: str = DEFAULT_PROFILE
    printer: str = DEFAULT_PRINTER
    quantity: int = 1
    infill_percent: Optional[float] = None    # None — из профиля
    rush: bool = False
    markup: float = DEFAULT_MARKUP
    shipping: float = 0.0

    def __post_init__(self):
        object.__setattr__(self, "quantity", coerce_qty(self.quantity))
        if self.infill_percent is not None:
            object.__setattr__(self, "infill_percent", float(max(0.0, min(100.0, nz(self.infill_percent)))))
        markup = nz(self.markup, -1.0)
        if markup <= 0:
            raise ValueError(f"markup must be a positive multiplier, got: {self.markup!r}")
        object.__setattr__(self, "markup", markup)
        object.__setattr__(self, "shipping", max(0.0, nz(self.shipping)))
        object.__setattr__(self, "rush", _as_bool(self.rush))

    @classmethod
    def from_mapping(cls, data: Optional[Mapping]) -> "QuoteOptions":
        """Поля запроса: material, profile|quality, printer, quantity|qty, infill_percent|infillPercent|infill, rush, markup, shipping."""
        d = data or {}
        infill = _first(d, "infill_percent", "infillPercent", "infill")
        markup = _first(d, "markup")
        qty = _first(d, "quantity", "qty")
        return cls(
            material=str(_first(d, "material") or DEFAULT_MATERIAL),
            profile=str(_first(d, "profile", "quality") or DEFAULT_PROFILE),
            printer=str(_first(d, "printer") or DEFAULT_PRINTER),
            quantity=1 if qty is None else qty,
            infill_percent=None if infill is None else nz(infill),
            rush=_as_bool(d.get("rush", False)),
            markup=DEFAULT_MARKUP if markup is None else markup,
            shipping=nz(_first(d, "shipping"), 0.0),
        )

    @classmethod
    def coerce(cls, options) -> "QuoteOptions":
        if options is None:
            return cls()
        if isinstance(options, cls):
            return options
        return cls.from_mapping(options)

    def to_dict(self) -> dict:
        return {
            "material": self.material,
            "profile": self.profile,
            "printer": self.printer,
            "quantity": self.quantity,
            "infill_percent": self.infill_percent,
            "rush": self.rush,
            "markup": self.markup,
            "shipping": self.shipping,
        }


@dataclass(frozen=True)
class AnalysisResult:
    file_name: str
    file_size: int
    file_format: str
    options: QuoteOptions
    material: MaterialSpec
    profile: ProcessProfile
    printer: PrinterSpec
    geometry: GeometrySummary
    estimation: EstimationResult
    bed_plan: BedPlan
    quote: Quote
    color_metadata: ColorMetadata
    infill_percent: float
    warnings: Tuple[str, ...] = ()
    dropped_vertices: int = 0
    calc_seconds: float = 0.0

    @property
    def total_weight_g(self) -> float:
        return self.estimation.total_weight * self.options.quantity

    @property
    def total_print_time_hours(self) -> float:
        return self.estimation.print_time_hours * self.options.quantity

    def to_dict(self) -> dict:
        """Стабильный JSON-контракт: мм, мм², мм³, граммы, часы, деньги — float с 2 знаками."""
        return {
            "file": self.file_name,
            "size_bytes": self.file_size,
            "format": self.file_format,
            "options": self.options.to_dict(),
            "resolved": {
                "material": {"id": self.material.id, "density_g_cm3": self.material.density,
                             "cost_per_kg": self.material.cost_per_kg},
                "profile": {"id": self.profile.id, "layer_height_mm": self.profile.layer_height,
                            "infill_percent": self.infill_percent, "wall_loops": self.profile.wall_loops,
                            "speed_mm_s": self.profile.nominal_speed},
                "printer": {"id": self.printer.id, "bed_mm": list(self.printer.bed),
                            "travel_speed_mm_s": self.printer.max_travel_speed},
            },
            "geometry": self.geometry.to_dict(),
            "estimation": self.estimation.to_dict(),
            "bed_plan": self.bed_plan.to_dict(),
            "quote": self.quote.to_dict(),
            "color_metadata": self.color_metadata.to_dict(),
            "totals": {
                "quantity": self.options.quantity,
                "total_weight_g": round(self.total_weight_g, 2),
                "print_time_hours": round(self.total_print_time_hours, 3),
                "total_price": float(self.quote.total),
            },
            "warnings": list(self.warnings),
            "dropped_vertices": self.dropped_vertices,
            "calc_seconds": round(self.calc_seconds, 4),
        }


# ---------- Конвейер ----------
def analyze_bytes(
    data: bytes,
    filename: str,
    options=None,
    *,
    tables: Optional[ProcessTables] = None,
    pricing: Optional[Mapping] = None,
    cancel: Optional[CancelToken] = None,
) -> AnalysisResult:
    """
    data + filename (только для выбора декодера) + options (mapping или QuoteOptions) -> AnalysisResult.
    Неизвестный материал/профиль/принтер -> UnknownConfigurationIdentifier (до декодирования).
    """
    t0 = time.perf_counter()
    opts = QuoteOptions.coerce(options)
    tables = tables or ProcessTables.default()
    pricing = DEFAULT_PRICING if pricing is None else pricing

    fmt = mesh_io.detect_format(filename)
    material = tables.material(opts.material)
    profile = tables.profile(opts.profile)
    printer = tables.printer(opts.printer)
    constants = EstimationConstants.from_mapping(pricing.get("estimation"))
    rates = QuoteRates.from_pricing(pricing)

    decoded = mesh_io.decode(data, filename, cancel=cancel)
    warnings = list(decoded.warnings)
    geometry = compute_geometry(decoded.mesh, cancel=cancel)

    check_cancel(cancel, "estimate")
    infill = profile.infill_percent if opts.infill_percent is None else opts.infill_percent
    est = estimate(geometry, material, profile, printer, decoded.color_metadata,
                   infill_percent=infill, constants=constants)

    spacing = nz((pricing.get("packing") or {}).get("spacing_mm"), DEFAULT_SPACING_MM)
    try:
        plan = pack_beds(geometry.dimensions, printer, opts.quantity, spacing=spacing)
    except PartExceedsBedEnvelope as e:
        logger.warning("%s: %s", filename, e)
        warnings.append(str(e))
        plan = BedPlan.does_not_fit()

    quote = assemble_quote(
        est.total_weight * opts.quantity,
        est.print_time_hours * opts.quantity,
        material,
        opts,
        rates,
        beds=plan.beds_required or 1,
    )

    result = AnalysisResult(
        file_name=os.path.basename(filename),
        file_size=len(data),
        file_format=fmt,
        options=opts,
        material=material,
        profile=profile,
        printer=printer,
        geometry=geometry,
        estimation=est,
        bed_plan=plan,
        quote=quote,
        color_metadata=decoded.color_metadata,
        infill_percent=float(infill),
        warnings=tuple(warnings),
        dropped_vertices=decoded.mesh.dropped_vertices,
    )
    elapsed = time.perf_counter() - t0
    logger.debug("%s analysed in %.4f s", filename, elapsed)
    return replace(result, calc_seconds=elapsed)


def analyze_file(path: str, options=None, **kwargs) -> AnalysisResult:
    """Как analyze_bytes, но читает файл с диска. Расширение проверяется до чтения."""
    mesh_io.detect_format(path)
    with open(path, "rb") as f:
        data = f.read()
    return analyze_bytes(data, os.path.basename(path), options, **kwargs)
