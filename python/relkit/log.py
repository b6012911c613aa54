"""Statement logging."""

from __future__ import annotations

import logging
import time
from collections.abc import Iterator
from contextlib import contextmanager
from typing import Any

logger = logging.getLogger("relkit.query")


class QueryLogger:
    """Logs statements with their duration on the ``relkit.query`` logger.

    Successful statements are logged at DEBUG, failures at ERROR.
    """

    def __init__(self, log: logging.Logger | None = None) -> None:
        self.log = log or logger

    @contextmanager
    def statement(self, sql: str, params: list[Any]) -> Iterator[None]:
        start = time.perf_counter()
        try:
            yield
        except Exception as exc:
            elapsed = (time.perf_counter() - start) * 1000
            self.log.error(
                "query failed after %.1fms: %s params=%r error=%s", elapsed, sql, params, exc
            )
            raise
        elapsed = (time.perf_counter() - start) * 1000
        self.log.debug("(%.1fms) %s params=%r", elapsed, sql, params)
