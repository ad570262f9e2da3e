"""
LayerForge Learning-Rate Schedule
==================================
Maps an iteration index to a learning rate. The training loop calls the
schedule once per iteration and divides the result by the batch size
before handing it to the layers.

Policies (after burn-in):
    constant  lr
    steps     lr * prod(scales[k] for every steps[k] <= iteration)
    poly      lr * (1 - iteration / max_iterations) ** power
    cosine    lr * 0.5 * (1 + cos(pi * iteration / max_iterations))

Burn-in (all policies):
    iteration < burn_in  →  lr * (iteration / burn_in) ** burn_in_power

Analogy:
    A long drive: ease out of the parking lot (burn-in), cruise on the
    highway, then slow down as you approach the destination.
"""

from __future__ import annotations

import math

from layerforge.config import ScheduleConfig


class LearningRateSchedule:
    """
    Parameters
    ----------
    config : ScheduleConfig
        Policy and its parameters.
    max_iterations : int
        Length of the run, used by the "poly" and "cosine" policies.
    """

    def __init__(self, config: ScheduleConfig, max_iterations: int):
        config.validate()
        self.config = config
        self.max_iterations = max(max_iterations, 1)

    def __call__(self, iteration: int) -> float:
        if iteration < 0:
            raise ValueError(f"iteration must be >= 0, got {iteration}")
        cfg = self.config
        base = cfg.learning_rate

        if iteration < cfg.burn_in:
            return base * (iteration / cfg.burn_in) ** cfg.burn_in_power

        if cfg.policy == "constant":
            return base
        if cfg.policy == "steps":
            rate = base
            for step, scale in zip(cfg.steps, cfg.scales):
                if step > iteration:
                    break
                rate *= scale
            return rate

        progress = min(iteration / self.max_iterations, 1.0)
        if cfg.policy == "poly":
            return base * (1.0 - progress) ** cfg.power
        # cosine
        return base * 0.5 * (1.0 + math.cos(math.pi * progress))

    def __repr__(self) -> str:
        return (
            f"LearningRateSchedule(policy={self.config.policy}, "
            f"lr={self.config.learning_rate}, burn_in={self.config.burn_in})"
        )
