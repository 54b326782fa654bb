# -*- coding: utf-8 -*-
"""
quote_errors.py — типизированные ошибки ядра расчёта.

Все ошибки наследуются от ValueError (как и раньше в ядре калькулятора),
поэтому старый код с `except ValueError` продолжает работать, а новый может
ловить конкретный класс и читать контекст: stage (decode / geometry / config /
packing / cancel) и identifier (путь в архиве, id материала и т.п.).
"""
from __future__ import annotations


class QuoteError(ValueError):
    stage = "analysis"

    def __init__(self, message: str, *, stage: str | None = None, identifier: str | None = None):
        super().__init__(message)
        if stage is not None:
            self.stage = stage
        self.identifier = identifier

    def __reduce__(self):
        # pickle (ProcessPoolExecutor): сообщение + stage/identifier из __dict__
        return type(self), (self.args[0] if self.args else "",), self.__dict__.copy()

    def to_dict(self) -> dict:
        return {
            "error": type(self).__name__,
            "stage": self.stage,
            "identifier": self.identifier,
            "message": str(self),
        }


# ---------- Декодирование ----------
class DecodeError(QuoteError):
    stage = "decode"


class UnsupportedFormat(DecodeError):
    pass


class CorruptArchiveOrMissingModel(DecodeError):
    pass


class MalformedMesh(DecodeError):
    pass


class InputTooLarge(DecodeError):
    pass


# ---------- Геометрия ----------
class DegenerateGeometry(QuoteError):
    stage = "geometry"


class EmptyGeometry(DecodeError, DegenerateGeometry):
    """Пустой меш после декодирования (в т.ч. после отбрасывания NaN/inf вершин)."""
    stage = "decode"


# ---------- Конфигурация ----------
class UnknownConfigurationIdentifier(QuoteError):
    stage = "config"

    def __init__(self, kind: str, identifier: str, known=()):
        known_list = ", ".join(sorted(known)[:12])
        msg = f"Unknown {kind} '{identifier}'"
        if known_list:
            msg += f" (known: {known_list})"
        super().__init__(msg, identifier=identifier)
        self.kind = kind
        self.known = tuple(known)

    def __reduce__(self):
        return type(self), (self.kind, self.identifier, self.known), self.__dict__.copy()


class ConfigError(QuoteError):
    """Ошибка файлов конфигурации (нет файла, неверный JSON, валидация и т.д.)."""
    stage = "config"


# ---------- Раскладка / отмена ----------
class PartExceedsBedEnvelope(QuoteError):
    stage = "packing"


class AnalysisCancelled(QuoteError):
    stage = "cancel"
