"""
layerforge.training — Training Loop and Per-Iteration Policies
===============================================================
    - schedule.py — LearningRateSchedule (burn-in + constant/steps/poly/cosine)
    - resize.py   — RandomResizePolicy (multi-scale input sizes)
    - log.py      — TrainingLog (loss_<timestamp>.log)
    - loop.py     — TrainingLoop state machine, TrainingResult
"""

from layerforge.training.log import TrainingLog, read_log
from layerforge.training.loop import (
    LoopState,
    TrainingLoop,
    TrainingResult,
    update_average,
)
from layerforge.training.resize import RandomResizePolicy
from layerforge.training.schedule import LearningRateSchedule
