"""
LayerForge Configuration System
================================
Centralized configuration for a LayerForge training run using Python
dataclasses. Every run-level setting lives here; the network's own
architecture lives in the network definition (see
:mod:`layerforge.network.definition`).

Usage:
    # Load from YAML file:
    >>> config = LayerForgeConfig.from_yaml("configs/default.yaml")

    # Create programmatically:
    >>> config = LayerForgeConfig(
    ...     training=TrainingConfig(batch=64, subdivisions=16),
    ...     schedule=ScheduleConfig(policy="steps", steps=[400000, 450000]),
    ... )

    # Save to YAML:
    >>> config.to_yaml("configs/my_run.yaml")

    # Access nested values:
    >>> config.training.mini_batch   # 4
    >>> config.schedule.learning_rate
"""

from __future__ import annotations

import logging
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Literal, Optional

import torch
import yaml

logger = logging.getLogger(__name__)


# =============================================================================
# Training Configuration
# =============================================================================

@dataclass
class TrainingConfig:
    """
    Batch geometry, termination and freeze settings of a training run.

    Parameters
    ----------
    batch : int
        Samples per parameter update. Split into ``subdivisions``
        mini-batches that are pushed through forward/backward one after
        the other, with gradients accumulating in between.

    subdivisions : int
        Number of mini-batches per batch. Raise it to cut peak device
        memory without changing the effective batch.
        Analogy: Carrying a heavy load up the stairs in several trips:
        the same amount arrives at the top, just never all at once.

    max_truths : int
        Maximum annotated objects per sample in the ground-truth buffer.

    max_iterations : int
        The run stops once the iteration counter reaches this value.

    restart : bool
        Start from iteration 0 even when resuming from a checkpoint
        (parameters are still loaded).

    freeze_conv, freeze_bn, freeze_activation : bool
        Disable updates of convolution, batch-norm and activation
        parameters respectively. Forward/backward still run.

    device : str
        "auto", "cpu", "mps" or "cuda".

    seed : int
        Seed for parameter initialization and synthetic data.

    show_progress : bool
        Show a tqdm progress bar over iterations.
    """
    batch: int = 64
    subdivisions: int = 16
    max_truths: int = 90
    max_iterations: int = 50200
    restart: bool = False
    freeze_conv: bool = False
    freeze_bn: bool = False
    freeze_activation: bool = False
    device: str = "auto"
    seed: int = 42
    show_progress: bool = False

    def validate(self) -> None:
        """Validate training parameters."""
        if self.batch < 1:
            raise ValueError(f"batch must be >= 1, got {self.batch}")
        if self.subdivisions < 1:
            raise ValueError(f"subdivisions must be >= 1, got {self.subdivisions}")
        if self.batch % self.subdivisions != 0:
            raise ValueError(
                f"batch ({self.batch}) must be divisible by subdivisions "
                f"({self.subdivisions}) so every mini-batch has the same size"
            )
        if self.max_truths < 1:
            raise ValueError(f"max_truths must be >= 1, got {self.max_truths}")
        if self.max_iterations < 0:
            raise ValueError(
                f"max_iterations must be >= 0, got {self.max_iterations}"
            )

    @property
    def mini_batch(self) -> int:
        """Samples per forward/backward pass (batch / subdivisions)."""
        return self.batch // self.subdivisions

    def is_last_iteration(self, iteration: int) -> bool:
        return iteration >= self.max_iterations

    def resolve_device(self) -> torch.device:
        """
        Auto-detect the best available device.

        Priority: CUDA > MPS (Apple Silicon) > CPU
        """
        if self.device != "auto":
            return torch.device(self.device)

        if torch.cuda.is_available():
            logger.info("Using CUDA device (GPU detected)")
            return torch.device("cuda")
        elif hasattr(torch.backends, "mps") and torch.backends.mps.is_available():
            logger.info("Using MPS device (Apple Silicon detected)")
            return torch.device("mps")
        else:
            logger.info("Using CPU device")
            return torch.device("cpu")


# =============================================================================
# Learning Rate Schedule
# =============================================================================

@dataclass
class ScheduleConfig:
    """
    Learning-rate policy, evaluated once per iteration.

    Parameters
    ----------
    policy : str
        - "constant": ``learning_rate`` throughout
        - "steps": multiply by ``scales[k]`` once iteration passes ``steps[k]``
        - "poly": ``learning_rate * (1 - it / max_iterations) ** power``
        - "cosine": cosine decay from ``learning_rate`` to 0
    learning_rate : float
        Base rate.
    burn_in : int
        Iterations of warmup, ``learning_rate * (it / burn_in) ** burn_in_power``.
        Analogy: Easing a cold engine up to speed instead of flooring it.
    burn_in_power : float
        Shape of the warmup curve.
    power : float
        Exponent of the "poly" policy.
    steps, scales : list
        Iteration boundaries and multipliers of the "steps" policy.
    """
    policy: Literal["constant", "steps", "poly", "cosine"] = "steps"
    learning_rate: float = 1e-3
    burn_in: int = 1000
    burn_in_power: float = 4.0
    power: float = 4.0
    steps: list[int] = field(default_factory=lambda: [40000, 45000])
    scales: list[float] = field(default_factory=lambda: [0.1, 0.1])

    def validate(self) -> None:
        if self.policy not in ("constant", "steps", "poly", "cosine"):
            raise ValueError(
                f"Unknown schedule policy: '{self.policy}'. "
                f"Choose from: constant, steps, poly, cosine"
            )
        if self.learning_rate <= 0:
            raise ValueError(
                f"learning_rate must be positive, got {self.learning_rate}"
            )
        if self.burn_in < 0:
            raise ValueError(f"burn_in must be >= 0, got {self.burn_in}")
        if len(self.steps) != len(self.scales):
            raise ValueError(
                f"steps ({len(self.steps)}) and scales ({len(self.scales)}) "
                f"must have the same length"
            )
        if list(self.steps) != sorted(self.steps):
            raise ValueError(f"steps must be increasing, got {self.steps}")


# =============================================================================
# Adaptive Input Resizing
# =============================================================================

@dataclass
class ResizeConfig:
    """
    Multi-scale training: every ``interval`` iterations pick a new square
    input size between ``min_size`` and ``max_size`` in multiples of
    ``step``.
    """
    enabled: bool = False
    interval: int = 10
    min_size: int = 320
    max_size: int = 608
    step: int = 32

    def validate(self) -> None:
        if self.interval < 1:
            raise ValueError(f"interval must be >= 1, got {self.interval}")
        if self.step < 1:
            raise ValueError(f"step must be >= 1, got {self.step}")
        if self.min_size < self.step or self.max_size < self.min_size:
            raise ValueError(
                f"need step <= min_size <= max_size, got step={self.step}, "
                f"min_size={self.min_size}, max_size={self.max_size}"
            )
        if self.min_size % self.step or self.max_size % self.step:
            raise ValueError(
                f"min_size and max_size must be multiples of step ({self.step})"
            )


# =============================================================================
# Checkpoint Configuration
# =============================================================================

@dataclass
class CheckpointConfig:
    """
    Where and when parameter checkpoints are written.

    Parameters
    ----------
    output_dir : str
        Directory for checkpoint files.
    name : str
        File prefix: ``{name}_{iteration}.safetensors``.
    checkpoint_every : int
        Save every N iterations (iteration 0 excluded). 0 disables
        periodic saves.
    keep_checkpoints : int
        Keep only the newest N periodic checkpoints. 0 keeps all.
    save_final : bool
        Write ``{name}_final.safetensors`` when the run completes.
    """
    output_dir: str = "backup"
    name: str = "weights"
    checkpoint_every: int = 1000
    keep_checkpoints: int = 0
    save_final: bool = True

    def validate(self) -> None:
        if self.checkpoint_every < 0:
            raise ValueError(
                f"checkpoint_every must be >= 0, got {self.checkpoint_every}"
            )
        if self.keep_checkpoints < 0:
            raise ValueError(
                f"keep_checkpoints must be >= 0, got {self.keep_checkpoints}"
            )
        if not self.name:
            raise ValueError("checkpoint name must not be empty")

    def checkpoint_path(self, iteration: int) -> Optional[Path]:
        """The file to save at ``iteration``, or None if no save is due."""
        if self.checkpoint_every <= 0 or iteration <= 0:
            return None
        if iteration % self.checkpoint_every != 0:
            return None
        return Path(self.output_dir) / f"{self.name}_{iteration}.safetensors"

    def final_path(self) -> Path:
        return Path(self.output_dir) / f"{self.name}_final.safetensors"


# =============================================================================
# Logging Configuration
# =============================================================================

@dataclass
class LoggingConfig:
    """
    Parameters
    ----------
    log_dir : str
        Directory of the per-run loss log (``loss_<timestamp>.log``).
    log_every : int
        Emit the per-iteration summary through ``logging`` every N
        iterations. The loss log file always gets every iteration.
    """
    log_dir: str = "logs"
    log_every: int = 1

    def validate(self) -> None:
        if self.log_every < 1:
            raise ValueError(f"log_every must be >= 1, got {self.log_every}")


# =============================================================================
# Master Configuration
# =============================================================================

@dataclass
class LayerForgeConfig:
    """
    Master configuration combining all sub-configurations.

    Usage:
        >>> config = LayerForgeConfig.from_yaml("configs/default.yaml")
        >>> config = LayerForgeConfig()
        >>> config.validate()
        >>> config.to_yaml("configs/my_run.yaml")
    """
    training: TrainingConfig = field(default_factory=TrainingConfig)
    schedule: ScheduleConfig = field(default_factory=ScheduleConfig)
    resize: ResizeConfig = field(default_factory=ResizeConfig)
    checkpoint: CheckpointConfig = field(default_factory=CheckpointConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)

    def validate(self) -> None:
        """
        Validate all sub-configurations and cross-config consistency.

        Raises
        ------
        ValueError
            If any parameter is invalid or configs are inconsistent.
        """
        self.training.validate()
        self.schedule.validate()
        self.resize.validate()
        self.checkpoint.validate()
        self.logging.validate()

        if (
            self.schedule.policy == "steps"
            and self.schedule.steps
            and self.schedule.steps[0] < self.schedule.burn_in
        ):
            raise ValueError(
                f"First schedule step ({self.schedule.steps[0]}) falls inside "
                f"burn_in ({self.schedule.burn_in})"
            )

        logger.info(
            f"Config validated: batch={self.training.batch} "
            f"({self.training.subdivisions} x {self.training.mini_batch}), "
            f"max_iterations={self.training.max_iterations}, "
            f"policy={self.schedule.policy}, device={self.training.device}"
        )

    @classmethod
    def from_yaml(cls, path: str | Path) -> LayerForgeConfig:
        """
        Load configuration from a YAML file.

        Raises
        ------
        FileNotFoundError
            If the YAML file does not exist.
        ValueError
            If the file is empty or a value is invalid.
        """
        path = Path(path)
        if not path.exists():
            raise FileNotFoundError(
                f"Config file not found: {path}. "
                f"Create one from configs/default.yaml as a template."
            )

        with open(path, "r", encoding="utf-8") as f:
            raw = yaml.safe_load(f)

        if raw is None:
            raise ValueError(f"Config file is empty: {path}")

        config = cls.from_dict(raw)
        config.validate()
        return config

    @classmethod
    def from_dict(cls, raw: dict) -> LayerForgeConfig:
        return cls(
            training=TrainingConfig(**raw.get("training", {})),
            schedule=ScheduleConfig(**raw.get("schedule", {})),
            resize=ResizeConfig(**raw.get("resize", {})),
            checkpoint=CheckpointConfig(**raw.get("checkpoint", {})),
            logging=LoggingConfig(**raw.get("logging", {})),
        )

    def to_yaml(self, path: str | Path) -> None:
        """Save configuration to a YAML file, creating parent directories."""
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)

        with open(path, "w", encoding="utf-8") as f:
            yaml.dump(
                self.to_dict(),
                f,
                default_flow_style=False,
                sort_keys=False,
                allow_unicode=True,
            )

        logger.info(f"Config saved to {path}")

    def to_dict(self) -> dict:
        """Convert to nested dictionary."""
        return asdict(self)

    @classmethod
    def for_smoke_test(cls, output_dir: str = "outputs_smoke") -> LayerForgeConfig:
        """
        A minimal configuration that trains a few iterations on the CPU
        in seconds.
        """
        return cls(
            training=TrainingConfig(
                batch=4,
                subdivisions=2,
                max_truths=4,
                max_iterations=4,
                device="cpu",
                seed=42,
            ),
            schedule=ScheduleConfig(
                policy="steps",
                learning_rate=1e-3,
                burn_in=2,
                steps=[3],
                scales=[0.1],
            ),
            resize=ResizeConfig(
                enabled=True, interval=2, min_size=32, max_size=64, step=32
            ),
            checkpoint=CheckpointConfig(
                output_dir=f"{output_dir}/backup",
                name="smoke",
                checkpoint_every=2,
            ),
            logging=LoggingConfig(log_dir=f"{output_dir}/logs"),
        )

    def __repr__(self) -> str:
        lines = [
            "LayerForgeConfig(",
            f"  Batch:      {self.training.batch} = {self.training.subdivisions} "
            f"subdivisions x {self.training.mini_batch}",
            f"  Iterations: {self.training.max_iterations} "
            f"(restart={self.training.restart})",
            f"  Schedule:   {self.schedule.policy}, "
            f"lr={self.schedule.learning_rate}, burn_in={self.schedule.burn_in}",
            f"  Resize:     {'on' if self.resize.enabled else 'off'} "
            f"[{self.resize.min_size}..{self.resize.max_size}]",
            f"  Checkpoint: every {self.checkpoint.checkpoint_every} -> "
            f"{self.checkpoint.output_dir}",
            f"  Device:     {self.training.device}",
            ")",
        ]
        return "\n".join(lines)
