# -*- coding: utf-8 -*-
"""
bed_packing.py — сколько столов (печатей) нужно на тираж.

Сетка по габаритам: колонки по X, ряды по Y, между деталями зазор spacing.
Деталь, которая помещается на стол, всегда получает хотя бы одно место.
"""
from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from typing import Optional, Sequence, Tuple

from process_config import PrinterSpec
from quote_errors import PartExceedsBedEnvelope

logger = logging.getLogger(__name__)

DEFAULT_SPACING_MM = 5.0


@dataclass(frozen=True)
class BedPlan:
    beds_required: Optional[int]      # None — деталь не помещается
    parts_per_bed: int
    utilization_percent: float
    columns: int = 0
    rows: int = 0

    @property
    def fits(self) -> bool:
        return self.beds_required is not None

    @property
    def layout(self) -> str:
        return f"{self.columns}x{self.rows}"

    @classmethod
    def does_not_fit(cls) -> "BedPlan":
        return cls(beds_required=None, parts_per_bed=0, utilization_percent=0.0)

    def to_dict(self) -> dict:
        return {
            "fits": self.fits,
            "beds_required": self.beds_required,
            "parts_per_bed": self.parts_per_bed,
            "utilization_percent": round(self.utilization_percent, 2),
            "layout": self.layout if self.fits else None,
        }


def check_fits(part_dims: Sequence[float], printer: PrinterSpec) -> None:
    for axis, part, bed in zip("xyz", part_dims, printer.bed):
        if part > bed:
            raise PartExceedsBedEnvelope(
                f"Part {axis.upper()} {part:.2f} mm exceeds {printer.id} bed {bed:.0f} mm",
                identifier=printer.id,
            )


def pack_beds(part_dims: Sequence[float], printer: PrinterSpec, quantity: int = 1, *,
              spacing: float = DEFAULT_SPACING_MM) -> BedPlan:
    dims: Tuple[float, float, float] = tuple(float(d) for d in part_dims)
    check_fits(dims, printer)
    qty = max(1, int(quantity))
    bx, by, bz = printer.bed

    cols = max(1, int(math.floor(bx / (dims[0] + spacing))))
    rows = max(1, int(math.floor(by / (dims[1] + spacing))))
    per_bed = cols * rows
    beds = math.ceil(qty / max(1, per_bed))

    part_volume = dims[0] * dims[1] * dims[2]
    bed_volume = bx * by * bz
    utilization = min(100.0, part_volume * qty / (bed_volume * beds) * 100.0) if bed_volume > 0 else 0.0

    plan = BedPlan(beds_required=beds, parts_per_bed=per_bed, utilization_percent=utilization,
                   columns=cols, rows=rows)
    logger.debug("packing: %s on %s, qty=%d -> %d bed(s), %d per bed", plan.layout, printer.id, qty, beds, per_bed)
    return plan
