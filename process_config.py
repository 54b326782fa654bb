# -*- coding: utf-8 -*-
"""
process_config.py — справочники процесса печати и загрузка конфигов.

Справочники (материалы, профили качества, принтеры) неизменяемы: frozen dataclass'ы
за MappingProxyType. Поиск по id: сначала точное совпадение, затем без учёта регистра
и разделителей ('Bambu X1C' == 'bambu_x1c' == 'bambu-x1c').

Конфиги (все опциональны, мерджатся поверх встроенных значений):
  materials.json — { "PLA": {"density_g_cm3": 1.24, "cost_per_kg": 20.0}, ... }
  process.json   — { "profiles": {...}, "printers": {...} }
  pricing.json   — ставки для сметы + секция "estimation" (эмпирические константы)
Поиск папки: --config-dir, иначе cwd (если там лежит хотя бы один из файлов), иначе рядом с модулем.
"""
from __future__ import annotations

import copy
import json
import logging
import os
import re
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Mapping, Optional, Tuple

import numpy as np

from quote_errors import ConfigError, UnknownConfigurationIdentifier

logger = logging.getLogger(__name__)

TABLES_VERSION = "2024.1"
CONFIG_FILES = ("materials.json", "process.json", "pricing.json")


# ---------- Утилиты ----------
def nz(v, d=0.0) -> float:
    try:
        f = float(v)
    except (TypeError, ValueError):
        return d
    return f if np.isfinite(f) else d


def deep_merge(dst: dict, src: dict) -> dict:
    """Глубокое слияние словарей src в dst (in-place). Возвращает dst."""
    for k, v in (src or {}).items():
        if isinstance(v, dict) and isinstance(dst.get(k), dict):
            deep_merge(dst[k], v)
        else:
            dst[k] = v
    return dst


def set_by_dotted_path(d: dict, path: str, value):
    """Устанавливает значение по точечному пути (например, 'estimation.purge_base_g'). Создаёт вложенные словари."""
    keys = path.split('.')
    cur = d
    for k in keys[:-1]:
        if k not in cur or not isinstance(cur[k], dict):
            cur[k] = {}
        cur = cur[k]
    cur[keys[-1]] = value


def _coerce_scalar(v: str):
    low = v.lower()
    if low in ('true', 'false'):
        return low == 'true'
    try:
        return float(v) if ('.' in v or 'e' in low) else int(v)
    except ValueError:
        return v


def parse_kv_override(pairs) -> dict:
    """Список key=val из CLI (--set) -> вложенный dict. Значения приводятся к bool/int/float, иначе строка."""
    out: dict = {}
    for kv in pairs or []:
        if '=' not in kv:
            raise ConfigError(f"Invalid override '{kv}', expected key=val")
        k, v = kv.split('=', 1)
        k = k.strip()
        if not k or any(not part for part in k.split('.')):
            raise ConfigError(f"Invalid override key in '{kv}'")
        set_by_dotted_path(out, k, _coerce_scalar(v.strip()))
    return out


def normalize_id(identifier: str) -> str:
    return re.sub(r"[\s_\-]+", "", str(identifier or "")).lower()


# ---------- Справочники ----------
@dataclass(frozen=True)
class MaterialSpec:
    id: str
    density: float          # г/см³
    cost_per_kg: float
    name: str = ""

    @property
    def display_name(self) -> str:
        return self.name or self.id


@dataclass(frozen=True)
class ProcessProfile:
    id: str
    layer_height: float     # мм
    infill_percent: float
    wall_loops: int
    nominal_speed: float    # мм/с
    name: str = ""


@dataclass(frozen=True)
class PrinterSpec:
    id: str
    bed: Tuple[float, float, float]   # мм (x, y, z)
    max_travel_speed: float           # мм/с
    name: str = ""

    @property
    def bed_volume(self) -> float:
        x, y, z = self.bed
        return x * y * z


DEFAULT_MATERIALS = {
    "PLA":   {"density_g_cm3": 1.24, "cost_per_kg": 20.0},
    "ABS":   {"density_g_cm3": 1.04, "cost_per_kg": 22.0},
    "PETG":  {"density_g_cm3": 1.27, "cost_per_kg": 25.0},
    "TPU":   {"density_g_cm3": 1.21, "cost_per_kg": 35.0},
    "Nylon": {"density_g_cm3": 1.14, "cost_per_kg": 40.0},
    "ASA":   {"density_g_cm3": 1.07, "cost_per_kg": 28.0},
    "PC":    {"density_g_cm3": 1.20, "cost_per_kg": 45.0},
    "PVA":   {"density_g_cm3": 1.23, "cost_per_kg": 60.0},
    "HIPS":  {"density_g_cm3": 1.04, "cost_per_kg": 20.0},
    "PP":    {"density_g_cm3": 0.90, "cost_per_kg": 25.0},
}

DEFAULT_PROCESS = {
    "profiles": {
        "draft":        {"layer_height_mm": 0.30, "infill_pct": 10, "wall_loops": 2, "speed_mm_s": 150},
        "standard":     {"layer_height_mm": 0.20, "infill_pct": 15, "wall_loops": 2, "speed_mm_s": 100},
        "quality":      {"layer_height_mm": 0.15, "infill_pct": 20, "wall_loops": 3, "speed_mm_s": 60},
        "high_quality": {"layer_height_mm": 0.10, "infill_pct": 25, "wall_loops": 4, "speed_mm_s": 40},
        "strength":     {"layer_height_mm": 0.20, "infill_pct": 50, "wall_loops": 5, "speed_mm_s": 80},
    },
    "printers": {
        "bambu_x1c":     {"name": "Bambu Lab X1 Carbon", "bed_mm": [256, 256, 256], "travel_speed_mm_s": 500},
        "bambu_p1s":     {"name": "Bambu Lab P1S", "bed_mm": [256, 256, 256], "travel_speed_mm_s": 500},
        "bambu_a1":      {"name": "Bambu Lab A1", "bed_mm": [256, 256, 256], "travel_speed_mm_s": 500},
        "bambu_a1_mini": {"name": "Bambu Lab A1 mini", "bed_mm": [180, 180, 180], "travel_speed_mm_s": 500},
        "prusa_mk4":     {"name": "Prusa MK4", "bed_mm": [250, 210, 220], "travel_speed_mm_s": 200},
        "ender3":        {"name": "Creality Ender 3", "bed_mm": [220, 220, 250], "travel_speed_mm_s": 150},
    },
}

# Ставки сметы + калибровочные константы оценки. Значения эмпирические — калибровать по слайсеру.
DEFAULT_PRICING = {
    "currency": "USD",
    "machine_rate_per_h": 2.50,
    "labor": {"rate_per_h": 25.0, "min_hours": 0.5, "fraction_of_print": 0.1},
    "electricity": {"enabled": True, "power_kw": 0.15, "price_per_kwh": 0.12},
    "markup": 2.5,
    "rush_multiplier": 1.5,
    "surcharges": {"multi_day_per_24h": 5.0, "extra_bed": 3.0},
    "delivery": {"standard_days": 5, "rush_days": 2, "valid_days": 7},
    "packing": {"spacing_mm": 5.0},
    "estimation": {},
}


def _row_float(fname: str, rid: str, row: dict, key: str, *, minimum: float = 0.0, strict_min: bool = True) -> float:
    if key not in row:
        raise ConfigError(f"{fname}: '{rid}' missing {key}", identifier=rid)
    try:
        val = float(row[key])
    except (TypeError, ValueError):
        raise ConfigError(f"{fname}: '{rid}'.{key} must be a number, got {row[key]!r}", identifier=rid) from None
    if not np.isfinite(val) or val < minimum or (strict_min and val == minimum):
        raise ConfigError(f"{fname}: '{rid}'.{key} out of range: {val}", identifier=rid)
    return val


def material_from_row(rid: str, row: dict) -> MaterialSpec:
    if not isinstance(row, dict):
        raise ConfigError(f"materials.json: invalid row for '{rid}'", identifier=rid)
    return MaterialSpec(
        id=rid,
        density=_row_float("materials.json", rid, row, "density_g_cm3"),
        cost_per_kg=_row_float("materials.json", rid, row, "cost_per_kg", strict_min=False),
        name=str(row.get("name", "")),
    )


def profile_from_row(rid: str, row: dict) -> ProcessProfile:
    if not isinstance(row, dict):
        raise ConfigError(f"process.json: invalid profile row for '{rid}'", identifier=rid)
    infill = _row_float("process.json", rid, row, "infill_pct", strict_min=False)
    if infill > 100:
        raise ConfigError(f"process.json: '{rid}'.infill_pct out of range: {infill}", identifier=rid)
    return ProcessProfile(
        id=rid,
        layer_height=_row_float("process.json", rid, row, "layer_height_mm"),
        infill_percent=infill,
        wall_loops=int(_row_float("process.json", rid, row, "wall_loops")),
        nominal_speed=_row_float("process.json", rid, row, "speed_mm_s"),
        name=str(row.get("name", "")),
    )


def printer_from_row(rid: str, row: dict) -> PrinterSpec:
    if not isinstance(row, dict):
        raise ConfigError(f"process.json: invalid printer row for '{rid}'", identifier=rid)
    bed = row.get("bed_mm")
    if not isinstance(bed, (list, tuple)) or len(bed) != 3:
        raise ConfigError(f"process.json: '{rid}'.bed_mm must be [x, y, z]", identifier=rid)
    bed_xyz = tuple(_row_float("process.json", rid, {"bed_mm": v}, "bed_mm") for v in bed)
    return PrinterSpec(
        id=rid,
        bed=bed_xyz,
        max_travel_speed=_row_float("process.json", rid, row, "travel_speed_mm_s"),
        name=str(row.get("name", "")),
    )


@dataclass(frozen=True)
class ProcessTables:
    materials: Mapping[str, MaterialSpec]
    profiles: Mapping[str, ProcessProfile]
    printers: Mapping[str, PrinterSpec]
    version: str = TABLES_VERSION

    @classmethod
    def from_config(cls, materials: dict, process: dict, *, version: str = TABLES_VERSION) -> "ProcessTables":
        process = process or {}
        return cls(
            materials=MappingProxyType({k: material_from_row(k, v) for k, v in (materials or {}).items()}),
            profiles=MappingProxyType({k: profile_from_row(k, v) for k, v in (process.get("profiles") or {}).items()}),
            printers=MappingProxyType({k: printer_from_row(k, v) for k, v in (process.get("printers") or {}).items()}),
            version=version,
        )

    @classmethod
    def default(cls) -> "ProcessTables":
        return _DEFAULT_TABLES

    def _table(self, kind: str) -> Mapping:
        if kind == "material":
            return self.materials
        if kind in ("profile", "quality"):
            return self.profiles
        if kind == "printer":
            return self.printers
        raise ValueError(f"Unknown table kind: {kind!r}")

    def lookup(self, kind: str, identifier: str):
        table = self._table(kind)
        key = str(identifier or "")
        if key in table:
            return table[key]
        wanted = normalize_id(key)
        for rid, spec in table.items():
            if normalize_id(rid) == wanted or (getattr(spec, "name", "") and normalize_id(spec.name) == wanted):
                return spec
        raise UnknownConfigurationIdentifier(kind, key, known=table.keys())

    def material(self, identifier: str) -> MaterialSpec:
        return self.lookup("material", identifier)

    def profile(self, identifier: str) -> ProcessProfile:
        return self.lookup("profile", identifier)

    def printer(self, identifier: str) -> PrinterSpec:
        return self.lookup("printer", identifier)


_DEFAULT_TABLES = ProcessTables.from_config(DEFAULT_MATERIALS, DEFAULT_PROCESS)


# ---------- Загрузка файлов ----------
def get_default_config_dir() -> str:
    """Папка рядом с process_config.py."""
    return os.path.dirname(os.path.abspath(__file__))


def resolve_config_dir(config_dir: Optional[str] = None) -> str:
    if config_dir:
        base = os.path.abspath(os.path.expanduser(config_dir))
        if not os.path.isdir(base):
            raise ConfigError(f"Config directory not found: {base}", identifier=base)
        return base
    cwd = os.getcwd()
    if any(os.path.exists(os.path.join(cwd, name)) for name in CONFIG_FILES):
        return cwd
    return get_default_config_dir()


def load_json_config(path: str) -> dict:
    """JSON-объект из файла. Ошибка JSON -> ConfigError с именем файла, строкой и колонкой."""
    fname = os.path.basename(path)
    try:
        with open(path, "r", encoding="utf-8") as f:
            data = json.load(f)
    except FileNotFoundError:
        raise ConfigError(f"Config file not found: {path}", identifier=fname) from None
    except json.JSONDecodeError as e:
        raise ConfigError(f"{fname}: JSON error ({e.msg}, line {e.lineno}, column {e.colno})", identifier=fname) from None
    if not isinstance(data, dict):
        raise ConfigError(f"{fname}: expected JSON object", identifier=fname)
    return data


@dataclass(frozen=True)
class LoadedConfig:
    tables: ProcessTables
    pricing: Mapping
    config_dir: str = ""
    sources: Tuple[str, ...] = field(default_factory=tuple)


def load_config(config_dir: Optional[str] = None, overrides: Optional[dict] = None) -> LoadedConfig:
    """
    Встроенные значения <- файлы из config_dir (если есть) <- overrides (--set, только pricing).
    Отсутствующие файлы не ошибка; битые — ConfigError.
    """
    base = resolve_config_dir(config_dir)
    materials = copy.deepcopy(DEFAULT_MATERIALS)
    process = copy.deepcopy(DEFAULT_PROCESS)
    pricing = copy.deepcopy(DEFAULT_PRICING)
    sources = []

    for name, target in (("materials.json", materials), ("process.json", process), ("pricing.json", pricing)):
        path = os.path.join(base, name)
        if not os.path.exists(path):
            continue
        deep_merge(target, load_json_config(path))
        sources.append(path)
        logger.debug("config: loaded %s", path)

    if overrides:
        deep_merge(pricing, overrides)

    tables = ProcessTables.from_config(materials, process)
    return LoadedConfig(tables=tables, pricing=pricing, config_dir=base, sources=tuple(sources))
