"""
Run-scoped loss log: one line per iteration,

    iteration, width, height, learning_rate, loss, avg_loss

appended to ``<log_dir>/loss_<YYYYmmdd_HHMMSS>.log``.
"""

from __future__ import annotations

import logging
import time
from pathlib import Path
from typing import Optional, TextIO

logger = logging.getLogger(__name__)


class TrainingLog:
    def __init__(self, log_dir: str | Path):
        self.log_dir = Path(log_dir)
        self.path = self.log_dir / f"loss_{time.strftime('%Y%m%d_%H%M%S')}.log"
        self._file: Optional[TextIO] = None

    def open(self) -> TrainingLog:
        self.log_dir.mkdir(parents=True, exist_ok=True)
        # line-buffered so a crashed run keeps every completed iteration
        self._file = open(self.path, "a", encoding="utf-8", buffering=1)
        logger.info(f"Loss log: {self.path}")
        return self

    def write(
        self,
        iteration: int,
        width: int,
        height: int,
        learning_rate: float,
        loss: float,
        avg_loss: float,
    ) -> None:
        if self._file is None:
            raise RuntimeError("TrainingLog is not open")
        self._file.write(
            f"{iteration}, {width}, {height}, {learning_rate:.8g}, "
            f"{loss:.6f}, {avg_loss:.6f}\n"
        )

    def close(self) -> None:
        if self._file is not None:
            self._file.close()
            self._file = None

    def __enter__(self) -> TrainingLog:
        return self.open()

    def __exit__(self, *exc) -> None:
        self.close()


def read_log(path: str | Path) -> list[tuple[int, int, int, float, float, float]]:
    """Parse a loss log back into ``(iteration, w, h, lr, loss, avg_loss)`` rows."""
    rows = []
    with open(path, "r", encoding="utf-8") as f:
        for line in f:
            if not line.strip():
                continue
            it, w, h, lr, loss, avg = (part.strip() for part in line.split(","))
            rows.append((int(it), int(w), int(h), float(lr), float(loss), float(avg)))
    return rows
