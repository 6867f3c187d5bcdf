"""Logging setup and secret masking for step output."""

from __future__ import annotations

import logging
import threading
from typing import Iterable, List

MASK = "***"
LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


class SecretMasker:
    """Replace registered secret values with ``***``."""

    def __init__(self, values: Iterable[str] = ()) -> None:
        self._lock = threading.Lock()
        self._values: List[str] = []
        for value in values:
            self.add(value)

    def add(self, value: str) -> None:
        if not value or len(value) < 3:
            return
        with self._lock:
            if value not in self._values:
                self._values.append(value)
                self._values.sort(key=len, reverse=True)

    def mask(self, text: str) -> str:
        with self._lock:
            values = list(self._values)
        for value in values:
            text = text.replace(value, MASK)
        return text


class MaskingFilter(logging.Filter):
    def __init__(self, masker: SecretMasker) -> None:
        super().__init__()
        self.masker = masker

    def filter(self, record: logging.LogRecord) -> bool:
        message = record.getMessage()
        masked = self.masker.mask(message)
        if masked != message:
            record.msg = masked
            record.args = None
        return True


default_masker = SecretMasker()


def configure_logging(level: str = "WARNING", masker: SecretMasker | None = None) -> None:
    logging.basicConfig(level=getattr(logging, level.upper(), logging.WARNING), format=LOG_FORMAT)
    log_filter = MaskingFilter(masker or default_masker)
    for handler in logging.getLogger().handlers:
        if not any(isinstance(existing, MaskingFilter) for existing in handler.filters):
            handler.addFilter(log_filter)
