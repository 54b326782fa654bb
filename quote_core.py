# -*- coding: utf-8 -*-
"""
quote_core.py — смета: материал, машинное время, труд, электричество, надбавки, наценка, срочность, доставка.

Суммы — Decimal, округление half-up до центов; каждая строка округляется отдельно,
итоги складываются из уже округлённых строк (сумма строк == итог).
Здесь же — текстовый отчёт для CLI (render_report).
"""
from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal
from typing import List, Mapping, Optional

from process_config import MaterialSpec, nz

logger = logging.getLogger(__name__)

CENT = Decimal("0.01")


def money(value) -> Decimal:
    if isinstance(value, Decimal):
        d = value
    else:
        d = Decimal(repr(float(nz(value))))
    return d.quantize(CENT, rounding=ROUND_HALF_UP)


@dataclass(frozen=True)
class QuoteRates:
    currency: str = "USD"
    machine_rate_per_h: float = 2.50
    labor_rate_per_h: float = 25.0
    labor_min_hours: float = 0.5
    labor_fraction: float = 0.1
    electricity_enabled: bool = True
    power_kw: float = 0.15
    price_per_kwh: float = 0.12
    rush_multiplier: float = 1.5
    multi_day_per_24h: float = 5.0
    extra_bed: float = 3.0
    standard_days: int = 5
    rush_days: int = 2
    valid_days: int = 7

    @classmethod
    def from_pricing(cls, pricing: Optional[Mapping]) -> "QuoteRates":
        p = pricing or {}
        d = cls()
        labor = p.get("labor") or {}
        elec = p.get("electricity") or {}
        sur = p.get("surcharges") or {}
        dlv = p.get("delivery") or {}
        return cls(
            currency=str(p.get("currency") or d.currency),
            machine_rate_per_h=max(0.0, nz(p.get("machine_rate_per_h"), d.machine_rate_per_h)),
            labor_rate_per_h=max(0.0, nz(labor.get("rate_per_h"), d.labor_rate_per_h)),
            labor_min_hours=max(0.0, nz(labor.get("min_hours"), d.labor_min_hours)),
            labor_fraction=max(0.0, nz(labor.get("fraction_of_print"), d.labor_fraction)),
            electricity_enabled=bool(elec.get("enabled", d.electricity_enabled)),
            power_kw=max(0.0, nz(elec.get("power_kw"), d.power_kw)),
            price_per_kwh=max(0.0, nz(elec.get("price_per_kwh"), d.price_per_kwh)),
            rush_multiplier=max(1.0, nz(p.get("rush_multiplier"), d.rush_multiplier)),
            multi_day_per_24h=max(0.0, nz(sur.get("multi_day_per_24h"), d.multi_day_per_24h)),
            extra_bed=max(0.0, nz(sur.get("extra_bed"), d.extra_bed)),
            standard_days=int(nz(dlv.get("standard_days"), d.standard_days)),
            rush_days=int(nz(dlv.get("rush_days"), d.rush_days)),
            valid_days=int(nz(dlv.get("valid_days"), d.valid_days)),
        )


@dataclass(frozen=True)
class Quote:
    material: Decimal
    machine: Decimal
    labor: Decimal
    electricity: Decimal
    multi_day: Decimal
    extra_beds: Decimal
    base_cost: Decimal
    markup: Decimal
    rush: Decimal
    subtotal: Decimal
    shipping: Decimal
    total: Decimal
    markup_multiplier: float = 2.5
    rush_applied: bool = False
    currency: str = "USD"
    delivery_days: int = 5
    valid_days: int = 7

    def breakdown(self) -> dict:
        return {
            "material": self.material,
            "machine": self.machine,
            "labor": self.labor,
            "electricity": self.electricity,
            "multi_day_surcharge": self.multi_day,
            "extra_bed_surcharge": self.extra_beds,
            "markup": self.markup,
            "rush": self.rush,
            "shipping": self.shipping,
        }

    def to_dict(self) -> dict:
        return {
            "currency": self.currency,
            "breakdown": {k: float(v) for k, v in self.breakdown().items()},
            "base_cost": float(self.base_cost),
            "markup_multiplier": self.markup_multiplier,
            "rush": self.rush_applied,
            "subtotal": float(self.subtotal),
            "total": float(self.total),
            "delivery_days": self.delivery_days,
            "valid_days": self.valid_days,
        }


def assemble_quote(total_weight_g: float, print_time_hours: float, material: MaterialSpec, options,
                   rates: QuoteRates = QuoteRates(), *, beds: int = 1) -> Quote:
    """
    options — любой объект с полями rush / markup / shipping (QuoteOptions из core_calc).
    beds — число столов из раскладки (None/0 трактуется как 1).
    """
    hours = max(0.0, nz(print_time_hours))
    weight = max(0.0, nz(total_weight_g))
    markup_mult = nz(getattr(options, "markup", 2.5), 2.5)
    rush = bool(getattr(options, "rush", False))
    shipping = money(max(0.0, nz(getattr(options, "shipping", 0.0))))
    beds = max(1, int(beds or 1))

    material_cost = money(weight / 1000.0 * material.cost_per_kg)
    machine = money(hours * rates.machine_rate_per_h)
    labor = money(max(rates.labor_min_hours, hours * rates.labor_fraction) * rates.labor_rate_per_h)
    electricity = money(hours * rates.power_kw * rates.price_per_kwh) if rates.electricity_enabled else money(0)
    multi_day = money(math.floor(hours / 24.0) * rates.multi_day_per_24h) if hours > 24.0 else money(0)
    extra_beds = money((beds - 1) * rates.extra_bed)

    base = material_cost + machine + labor + electricity + multi_day + extra_beds
    marked = money(base * Decimal(repr(markup_mult)))
    markup_delta = marked - base
    rushed = money(marked * Decimal(repr(rates.rush_multiplier))) if rush else marked
    rush_delta = rushed - marked
    subtotal = base + markup_delta + rush_delta
    total = subtotal + shipping

    quote = Quote(
        material=material_cost,
        machine=machine,
        labor=labor,
        electricity=electricity,
        multi_day=multi_day,
        extra_beds=extra_beds,
        base_cost=base,
        markup=markup_delta,
        rush=rush_delta,
        subtotal=subtotal,
        shipping=shipping,
        total=total,
        markup_multiplier=markup_mult,
        rush_applied=rush,
        currency=rates.currency,
        delivery_days=(rates.rush_days if rush else rates.standard_days) + int(hours // 24),
        valid_days=rates.valid_days,
    )
    logger.debug("quote: base=%s subtotal=%s total=%s %s", base, subtotal, total, rates.currency)
    return quote


# ---------- Текстовый отчёт ----------
def _hm(hours: float) -> str:
    hours = max(0.0, nz(hours))
    h = int(hours)
    m = int(round((hours - h) * 60))
    if m == 60:
        h, m = h + 1, 0
    return f"{h}ч {m:02d}м"


def _money_str(v, currency: str) -> str:
    return f"{float(v):,.2f}".replace(",", " ") + f" {currency}"


def _line(label: str, value, currency: str, width: int = 14) -> str:
    return f"  {label:<30}{_money_str(value, currency):>{width}}\n"


def render_report(result, brief: bool = True) -> str:
    """
    result — AnalysisResult из core_calc (нужны file_name, geometry, estimation, bed_plan, quote,
    options, material, warnings). brief=False добавляет разбивку по цветам, поддержки и время по фазам.
    """
    g = result.geometry
    e = result.estimation
    q = result.quote
    cur = q.currency
    qty = result.options.quantity
    dims = " × ".join(f"{d:.1f}" for d in g.dimensions)

    head: List[str] = []
    head.append(f"Деталь: {result.file_name} ({result.file_format.upper()})\n")
    head.append(f"• Габариты: {dims} мм | Объём: {g.volume_cm3:.2f} см³ | Сложность: {g.complexity_level}\n")
    head.append(f"• Материал: {result.material.display_name} | Профиль: {result.options.profile} | Принтер: {result.options.printer}\n")
    head.append(f"• Вес: {e.total_weight:.2f} г × {qty} | Время печати: {_hm(e.print_time_hours * qty)}\n")
    plan = result.bed_plan
    if plan.fits:
        head.append(f"• Столов: {plan.beds_required} ({plan.parts_per_bed} шт/стол, заполнение {plan.utilization_percent:.1f}%)\n")
    else:
        head.append("• Столов: деталь не помещается на стол принтера\n")
    head.append("-" * 46 + "\n")

    body: List[str] = []
    if brief:
        body.append(_line("Материал", q.material, cur))
        other = q.machine + q.labor + q.electricity + q.multi_day + q.extra_beds
        body.append(_line("Прочие (машина, труд, энергия)", other, cur))
    else:
        body.append(_line("Материал", q.material, cur))
        body.append(_line("Машинное время", q.machine, cur))
        body.append(_line("Труд", q.labor, cur))
        body.append(_line("Электроэнергия", q.electricity, cur))
        if q.multi_day:
            body.append(_line("Многодневная печать", q.multi_day, cur))
        if q.extra_beds:
            body.append(_line("Доп. столы", q.extra_beds, cur))
    body.append(_line("База", q.base_cost, cur))
    body.append(_line(f"Наценка ×{q.markup_multiplier:g}", q.markup, cur))
    if q.rush_applied:
        body.append(_line("Срочность", q.rush, cur))
    if q.shipping:
        body.append(_line("Доставка", q.shipping, cur))
    body.append("-" * 46 + "\n")
    body.append(f"ИТОГО: {_money_str(q.total, cur)} | срок: {q.delivery_days} дн.\n")

    if not brief:
        body.append("\n")
        body.append(f"  Деталь {e.part_weight:.2f} г, поддержки {e.support_weight:.2f} г ({e.support_type}), "
                    f"продувка {e.purge_weight:.2f} г\n")
        body.append(f"  Слоёв: {e.layer_count}, филамент: {e.filament_length_mm / 1000.0:.2f} м\n")
        tb = e.time_breakdown
        body.append(f"  Время: экструзия {tb.get('extrusion_s', 0):.0f} с, перемещения {tb.get('travel_s', 0):.0f} с, "
                    f"смена слоёв {tb.get('layer_change_s', 0):.0f} с, ×{tb.get('complexity_multiplier', 1):.2f}\n")
        if e.is_multi_color:
            for share in e.per_color:
                body.append(f"  Цвет {share.label}: {share.weight:.2f} г ({share.percentage:.1f}%)\n")
    for w in result.warnings:
        body.append(f"! {w}\n")
    return "".join(head + body)
