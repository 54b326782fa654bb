
# -*- coding: utf-8 -*-
"""
CLI калькулятора стоимости FDM-печати — STL (binary/ASCII), OBJ, 3MF.

Примеры:
  python cli_calculator.py model.3mf --material PETG --profile quality --json
  python cli_calculator.py a.stl b.obj --qty 10 --printer prusa_mk4 --text --full
  python cli_calculator.py part.stl --set markup=3 --set estimation.purge_base_g=8 --json

Ключевые гарантии:
• Каждый файл считается независимо (в ядре нет глобального состояния).
• materials.json / process.json / pricing.json опциональны и мерджатся поверх встроенных значений
  (+ точечные override'ы флагом --set, только для pricing).
• Параллель по файлам (--workers N) с детерминированной сортировкой результатов по имени файла.
• Диагностика — в stderr через logging (-v / -vv).


Стабильный JSON-контракт (--json):
  {
    "success": <bool>,             # нет ни одной ошибки
    "count": <int>,                # число успешно посчитанных файлов
    "results": [ <AnalysisResult.to_dict()>, ... ],   # отсортировано по "file"
    "summary": {
      "quantity": <int>,
      "total_weight_g": <float>,
      "print_time_hours": <float>,
      "total_price": <float>,
      "currency": "<строка>"
    } | null,
    "config_dir": "<папка конфигов>",
    "time_s": <float>,
    "errors": [ {"file", "error", "stage", "identifier", "message"}, ... ],
    "count_ok": <int>,
    "count_failed": <int>
  }

Коды возврата: 0 — всё посчитано; 1 — хотя бы один файл с ошибкой; 2 — ошибка аргументов/конфигурации.
"""
from __future__ import annotations

import argparse
import json
import logging
import os
import sys
import time
from concurrent.futures import ProcessPoolExecutor, as_completed
from typing import List, Optional

import core_calc as core
from cancel_token import CancelToken
from estimate_core import EstimationConstants
from process_config import load_config, parse_kv_override
from quote_core import render_report
from quote_errors import ConfigError, QuoteError

logger = logging.getLogger("cli")


# ---------- Утилиты ----------
def error_entry(path: str, exc: BaseException) -> dict:
    """Ошибка файла -> запись для JSON ("errors")."""
    if isinstance(exc, QuoteError):
        entry = exc.to_dict()
    else:
        entry = {"error": type(exc).__name__, "stage": "io", "identifier": None, "message": str(exc)}
    return {"file": os.path.basename(path), **entry}


def finalize_json_payload(payload: dict, errors: List[dict], count_ok: int) -> dict:
    """Добавляет поля ошибок и итоговые счетчики для JSON-вывода."""
    payload["errors"] = list(errors)
    payload["count_failed"] = len(errors)
    payload["count_ok"] = int(count_ok)
    payload["success"] = len(errors) == 0
    return payload


# ---------- Один файл ----------
def _compute_one_file(
    path: str,
    *,
    options: dict,
    config_dir: Optional[str],
    overrides: Optional[dict],
    timeout: Optional[float],
    brief: bool,
    as_text: bool,
) -> dict:
    """
    Процесс-воркер: считает один файл.
    Конфиги перечитываются в воркере (таблицы — MappingProxyType, не пиклятся).
    """
    cfg = load_config(config_dir, overrides)
    cancel = CancelToken.with_timeout(timeout)
    result = core.analyze_file(path, options, tables=cfg.tables, pricing=cfg.pricing, cancel=cancel)
    return {
        "file": result.file_name,
        "result": result.to_dict(),
        "text": render_report(result, brief=brief) if as_text else "",
    }


# ---------- Набор файлов ----------
def compute_for_files(
    files: List[str],
    *,
    options: dict,
    config_dir: Optional[str] = None,
    overrides: Optional[dict] = None,
    timeout: Optional[float] = None,
    brief: bool = True,
    as_json: bool = False,
    workers: int = 1,
    errors: Optional[List[dict]] = None,
) -> dict:
    """
    Считает набор файлов с опциональной параллелью.
    Возвращает JSON payload (as_json=True) либо {"text": "..."}. Ошибки файлов копятся в errors.
    """
    t0 = time.time()
    errors = errors if errors is not None else []
    outputs: List[dict] = []
    kwargs = dict(options=options, config_dir=config_dir, overrides=overrides,
                  timeout=timeout, brief=brief, as_text=not as_json)

    file_list = list(files)
    if workers and workers > 1 and len(file_list) > 1:
        with ProcessPoolExecutor(max_workers=int(workers)) as ex:
            futs = {ex.submit(_compute_one_file, p, **kwargs): p for p in file_list}
            for fut in as_completed(futs):
                path = futs[fut]
                try:
                    outputs.append(fut.result())
                except (ValueError, OSError) as exc:
                    logger.warning("%s: %s", os.path.basename(path), exc)
                    errors.append(error_entry(path, exc))
    else:
        for p in file_list:
            try:
                outputs.append(_compute_one_file(p, **kwargs))
            except (ValueError, OSError) as exc:
                logger.warning("%s: %s", os.path.basename(p), exc)
                errors.append(error_entry(p, exc))

    # стабильный порядок для вывода/тестов
    outputs.sort(key=lambda o: o["file"])
    errors.sort(key=lambda e: e["file"])
    calc_time_s = time.time() - t0

    if as_json:
        results = [o["result"] for o in outputs]
        summary = None
        if results:
            summary = {
                "quantity": results[0]["totals"]["quantity"],
                "total_weight_g": round(sum(r["totals"]["total_weight_g"] for r in results), 2),
                "print_time_hours": round(sum(r["totals"]["print_time_hours"] for r in results), 3),
                "total_price": round(sum(r["totals"]["total_price"] for r in results), 2),
                "currency": results[0]["quote"]["currency"],
            }
        payload = {
            "success": True,
            "count": len(results),
            "results": results,
            "summary": summary,
            "config_dir": None,
            "time_s": calc_time_s,
        }
        return finalize_json_payload(payload, errors, len(results))

    text = "\n".join(o["text"].rstrip() for o in outputs)
    if outputs:
        text += f"\n\nВремя расчёта: {calc_time_s:.4f} с"
    return {"text": text.strip()}


# ---------- CLI ----------
def build_parser() -> argparse.ArgumentParser:
    ap = argparse.ArgumentParser(
        prog="printquote",
        description="Калькулятор FDM-печати: .stl / .obj / .3mf -> геометрия, вес, время, столы, смета",
    )
    ap.add_argument('files', nargs='+', help='Пути к моделям .stl / .obj / .3mf')
    ap.add_argument('--material', default=core.DEFAULT_MATERIAL, help='Материал (id из materials.json), по умолчанию PLA')
    ap.add_argument('--profile', '--quality', dest='profile', default=core.DEFAULT_PROFILE,
                    help='Профиль качества: draft / standard / quality / high_quality / strength')
    ap.add_argument('--printer', default=core.DEFAULT_PRINTER, help='Принтер (id из process.json)')
    ap.add_argument('--qty', type=int, default=1, help='Количество одинаковых деталей (тираж)')
    ap.add_argument('--infill', type=float, default=None, help='%% заполнения (0-100), по умолчанию из профиля')
    ap.add_argument('--rush', action='store_true', help='Срочный заказ (×1.5 к сумме после наценки)')
    ap.add_argument('--markup', type=float, default=core.DEFAULT_MARKUP, help='Множитель наценки (по умолчанию 2.5)')
    ap.add_argument('--shipping', type=float, default=0.0, help='Доставка (фиксированная сумма)')

    ap.add_argument('--config-dir', default=None,
                    help='Папка с materials.json / process.json / pricing.json (по умолчанию: cwd или рядом со скриптом)')
    ap.add_argument('--set', dest='overrides', action='append',
                    help='Переопределить параметры pricing (key=val, напр. estimation.purge_base_g=8). Можно несколько раз.')

    fmt = ap.add_mutually_exclusive_group()
    fmt.add_argument('--json', action='store_true', help='Вывод в JSON')
    fmt.add_argument('--text', action='store_true', help='Текстовый отчёт (по умолчанию)')
    ap.add_argument('--full', dest='brief', action='store_false', help='Полный отчёт (иначе краткий)')

    ap.add_argument('--workers', type=int, default=1, help='Процессы для параллельной обработки файлов (>1 — включить)')
    ap.add_argument('--timeout', type=float, default=None, help='Лимит времени на один файл, секунды')
    ap.add_argument('-v', '--verbose', action='count', default=0, help='-v — INFO, -vv — DEBUG в stderr')
    return ap


def main(argv: Optional[List[str]] = None):
    """Точка входа CLI: аргументы -> конфиги -> валидация опций -> compute_for_files -> вывод."""
    # Windows/CP1251 safe output: не падаем на спецсимволах
    if hasattr(sys.stdout, "reconfigure"):
        sys.stdout.reconfigure(encoding="utf-8", errors="replace")
    if hasattr(sys.stderr, "reconfigure"):
        sys.stderr.reconfigure(encoding="utf-8", errors="replace")

    args = build_parser().parse_args(argv)

    level = logging.WARNING if args.verbose <= 0 else (logging.INFO if args.verbose == 1 else logging.DEBUG)
    logging.basicConfig(level=level, stream=sys.stderr, format="[%(name)s] %(levelname)s: %(message)s")

    options = {
        "material": args.material,
        "profile": args.profile,
        "printer": args.printer,
        "quantity": args.qty,
        "infill_percent": args.infill,
        "rush": args.rush,
        "markup": args.markup,
        "shipping": args.shipping,
    }

    # конфиги + опции валидируются до расчёта: ошибка здесь — код 2
    try:
        overrides = parse_kv_override(args.overrides)
        cfg = load_config(args.config_dir, overrides)
        opts = core.QuoteOptions.from_mapping(options)
        cfg.tables.material(opts.material)
        cfg.tables.profile(opts.profile)
        cfg.tables.printer(opts.printer)
        EstimationConstants.from_mapping(cfg.pricing.get("estimation"))
    except ConfigError as e:
        logger.error("config error: %s", e)
        sys.exit(2)
    except ValueError as e:
        logger.error("invalid option: %s", e)
        sys.exit(2)

    logger.info("using config dir: %s", cfg.config_dir)
    for src in cfg.sources:
        logger.info("loaded config: %s", src)

    errors: List[dict] = []
    try:
        payload = compute_for_files(
            args.files,
            options=opts.to_dict(),
            config_dir=cfg.config_dir,
            overrides=overrides,
            timeout=args.timeout,
            brief=bool(args.brief),
            as_json=bool(args.json),
            workers=int(max(1, args.workers)),
            errors=errors,
        )
    except Exception:
        logger.exception("calculation failed")
        sys.exit(1)

    if args.json:
        payload["config_dir"] = cfg.config_dir
        print(json.dumps(payload, ensure_ascii=False, indent=2))
    else:
        for err in errors:
            logger.error("file %s: %s", err.get("file"), err.get("message"))
        if payload["text"]:
            print(payload["text"])

    if errors:
        sys.exit(1)


if __name__ == '__main__':
    main()
