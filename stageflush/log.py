from __future__ import annotations

import logging
import time
from contextlib import contextmanager
from typing import Iterator, Optional


class StepLogger:
    """Frames a block of work with indented start/finish log lines."""

    indent_width = 2

    def __init__(self, logger: Optional[logging.Logger] = None) -> None:
        self.logger = logger or logging.getLogger("stageflush")
        self.depth = 0

    @property
    def prefix(self) -> str:
        return " " * (self.depth * self.indent_width)

    def info(self, message: str, *args: object) -> None:
        self.logger.info(self.prefix + message, *args)

    @contextmanager
    def step(self, label: str) -> Iterator["StepLogger"]:
        self.info("%s", label)
        started = time.perf_counter()
        self.depth += 1
        try:
            yield self
        except BaseException:
            self.depth -= 1
            self.logger.error("%s%s [FAILED]", self.prefix, label)
            raise
        self.depth -= 1
        self.info("%s [OK] (%.2fs)", label, time.perf_counter() - started)
