"""
Adaptive input resizing: every ``interval`` iterations pick a new square
input resolution in ``[min_size, max_size]``, a multiple of ``step``.
"""

from __future__ import annotations

import logging
from typing import Optional

import numpy as np

from layerforge.config import ResizeConfig

logger = logging.getLogger(__name__)


class RandomResizePolicy:
    """
    Parameters
    ----------
    config : ResizeConfig
        Interval and size range. A disabled config never proposes.
    seed : int
        Seed of the size generator, so runs are reproducible.
    """

    def __init__(self, config: ResizeConfig, seed: int = 0):
        config.validate()
        self.config = config
        self.rng = np.random.default_rng(seed)

    def propose(
        self, iteration: int, width: int, height: int
    ) -> Optional[tuple[int, int]]:
        """
        The new ``(width, height)`` for ``iteration``, or None if the input
        should keep its current size.
        """
        cfg = self.config
        if not cfg.enabled or iteration <= 0 or iteration % cfg.interval != 0:
            return None
        size = int(self.rng.integers(cfg.min_size // cfg.step, cfg.max_size // cfg.step + 1)) * cfg.step
        if (size, size) == (width, height):
            return None
        logger.debug(f"Resize proposed at iteration {iteration}: {width}x{height} -> {size}x{size}")
        return size, size
