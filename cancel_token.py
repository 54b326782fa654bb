# -*- coding: utf-8 -*-
"""
cancel_token.py — сигнал отмены/дедлайна для долгих расчётов.

Ядро само политику таймаутов не выбирает: вызывающая сторона (HTTP-слой, CLI)
создаёт токен, ядро лишь проверяет его между фазами (декодирование, объекты 3MF,
чанки геометрии, оценка).
"""
from __future__ import annotations

import threading
import time

from quote_errors import AnalysisCancelled


class CancelToken:
    def __init__(self, deadline_s: float | None = None, *, event: threading.Event | None = None):
        # deadline_s — секунды от момента создания; None = без дедлайна
        self._deadline = (time.monotonic() + float(deadline_s)) if deadline_s is not None else None
        self._event = event or threading.Event()

    @classmethod
    def with_timeout(cls, seconds: float | None) -> "CancelToken | None":
        if seconds is None or seconds <= 0:
            return None
        return cls(seconds)

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        if self._event.is_set():
            return True
        return self._deadline is not None and time.monotonic() >= self._deadline

    def check(self, stage: str) -> None:
        if self._event.is_set():
            raise AnalysisCancelled(f"Analysis cancelled during {stage}", identifier=stage)
        if self._deadline is not None and time.monotonic() >= self._deadline:
            raise AnalysisCancelled(f"Analysis deadline exceeded during {stage}", identifier=stage)


def check_cancel(cancel: CancelToken | None, stage: str) -> None:
    if cancel is not None:
        cancel.check(stage)
