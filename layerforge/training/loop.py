"""
LayerForge Training Loop
=========================
The top-level state machine of a training run.

States:
    INITIALIZING → ITERATING → TERMINAL

    INITIALIZING  load the resume checkpoint (if any) and fix the starting
                  iteration: 0 on a fresh run or with ``restart``, else the
                  iteration stored in the checkpoint
    ITERATING     one iteration per loop turn, until
                  ``iteration >= max_iterations``
    TERMINAL      after the final checkpoint, or on the first failure

One Iteration:
    1. for each subdivision:
           data_source.load_minibatch(input, truths)
           graph.forward(training=True); graph.backward()
           loss += graph.loss
    2. loss /= batch;  avg_loss = loss (first iteration) or 0.9*avg + 0.1*loss
    3. lr = schedule(iteration), logged as is
    4. graph.update(lr / batch)
    5. checkpoint if one is due at this iteration
    6. resize the input if the resize policy proposes a new size
    7. iteration += 1

Any failure ends the run with TrainingAbortedError, chained from the
cause. There is no in-run retry; resume from the last checkpoint.

Usage:
    >>> loop = TrainingLoop(config, graph, SyntheticDataSource(classes=2))
    >>> result = loop.run()
    >>> result.avg_loss
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Optional

from tqdm import tqdm

from layerforge.config import LayerForgeConfig
from layerforge.data.source import DataSource
from layerforge.errors import TrainingAbortedError
from layerforge.network.graph import NetworkGraph
from layerforge.params.store import ParameterStore
from layerforge.training.log import TrainingLog
from layerforge.training.resize import RandomResizePolicy
from layerforge.training.schedule import LearningRateSchedule

logger = logging.getLogger(__name__)

EMA_DECAY = 0.9


class LoopState(Enum):
    INITIALIZING = "initializing"
    ITERATING = "iterating"
    TERMINAL = "terminal"


@dataclass
class TrainingResult:
    """Summary of a completed run."""
    start_iteration: int
    final_iteration: int
    final_loss: float
    avg_loss: float
    checkpoints: list[Path] = field(default_factory=list)
    log_path: Optional[Path] = None
    elapsed_seconds: float = 0.0

    @property
    def iterations_run(self) -> int:
        return self.final_iteration - self.start_iteration


def update_average(avg_loss: Optional[float], loss: float) -> float:
    """Exponential moving average of the loss; None means no history."""
    if avg_loss is None:
        return loss
    return avg_loss * EMA_DECAY + loss * (1.0 - EMA_DECAY)


class TrainingLoop:
    """
    Drives a loaded NetworkGraph through a training run.

    Parameters
    ----------
    config : LayerForgeConfig
        Run configuration. ``config.training`` should be the same object
        the graph was built with.
    graph : NetworkGraph
        A graph after :meth:`NetworkGraph.load`.
    data_source : DataSource
        Fills the graph's input and truth buffer once per subdivision.
    store : ParameterStore or None
        Checkpoint writer/reader. Defaults to one honoring
        ``config.checkpoint.keep_checkpoints``.
    checkpoint : path or None
        Checkpoint to resume from.
    """

    def __init__(
        self,
        config: LayerForgeConfig,
        graph: NetworkGraph,
        data_source: DataSource,
        store: Optional[ParameterStore] = None,
        checkpoint: Optional[str | Path] = None,
    ):
        config.validate()
        if not graph.layers:
            raise ValueError("Cannot train a graph without layers; call graph.load() first")

        self.config = config
        self.graph = graph
        self.data_source = data_source
        self.store = store or ParameterStore(config.checkpoint.keep_checkpoints)
        self.checkpoint = Path(checkpoint) if checkpoint is not None else None

        self.schedule = LearningRateSchedule(config.schedule, config.training.max_iterations)
        self.resize = RandomResizePolicy(config.resize, seed=config.training.seed)

        self.state = LoopState.INITIALIZING
        self.iteration = 0
        self.start_iteration = 0
        self.loss = 0.0
        self.avg_loss: Optional[float] = None
        self.checkpoints: list[Path] = []

    # ------------------------------------------------------------------

    def _initialize(self) -> None:
        self.iteration = 0
        if self.checkpoint is not None:
            stored = self.store.load(self.checkpoint, self.graph)
            if self.config.training.restart:
                logger.info(f"Restart requested; ignoring stored iteration {stored}")
            else:
                self.iteration = stored
        self.start_iteration = self.iteration
        logger.info(
            f"Training from iteration {self.iteration} to "
            f"{self.config.training.max_iterations}"
        )

    def run(self) -> TrainingResult:
        """
        Run until the last iteration.

        Raises
        ------
        CheckpointError
            If the resume checkpoint cannot be loaded.
        TrainingAbortedError
            If any step of an iteration failed.
        """
        if self.state is not LoopState.INITIALIZING:
            raise RuntimeError(f"TrainingLoop already ran (state={self.state.value})")

        start_time = time.time()
        try:
            self._initialize()
        except Exception:
            self.state = LoopState.TERMINAL
            raise

        self.state = LoopState.ITERATING
        training = self.config.training
        log = TrainingLog(self.config.logging.log_dir).open()
        progress = tqdm(
            total=training.max_iterations,
            initial=min(self.iteration, training.max_iterations),
            desc="train",
            disable=not training.show_progress,
        )
        try:
            while not training.is_last_iteration(self.iteration):
                self._step(log)
                progress.update(1)
                progress.set_postfix(loss=f"{self.loss:.4f}", avg=f"{self.avg_loss:.4f}")
            if self.config.checkpoint.save_final:
                path = self.store.save(
                    self.config.checkpoint.final_path(), self.graph, self.iteration
                )
                self.checkpoints.append(path)
        except Exception as e:
            self.state = LoopState.TERMINAL
            logger.error(f"Training aborted at iteration {self.iteration}: {e}")
            raise TrainingAbortedError(self.iteration, str(e)) from e
        finally:
            progress.close()
            log.close()

        self.state = LoopState.TERMINAL
        elapsed = time.time() - start_time
        logger.info(
            f"Training complete in {elapsed:.1f}s: "
            f"{self.iteration - self.start_iteration} iterations, "
            f"loss={self.loss:.4f}, avg_loss={self._avg():.4f}"
        )
        return TrainingResult(
            start_iteration=self.start_iteration,
            final_iteration=self.iteration,
            final_loss=self.loss,
            avg_loss=self._avg(),
            checkpoints=list(self.checkpoints),
            log_path=log.path,
            elapsed_seconds=elapsed,
        )

    def _avg(self) -> float:
        return self.avg_loss if self.avg_loss is not None else 0.0

    def _step(self, log: TrainingLog) -> None:
        graph = self.graph
        training = self.config.training

        loss = 0.0
        for _ in range(training.subdivisions):
            self.data_source.load_minibatch(graph.input, graph.truths)
            graph.forward(training=True)
            graph.backward()
            loss += graph.loss

        self.loss = loss / training.batch
        self.avg_loss = update_average(self.avg_loss, self.loss)

        learning_rate = self.schedule(self.iteration)
        log.write(
            self.iteration, graph.input.width, graph.input.height,
            learning_rate, self.loss, self.avg_loss,
        )
        if self.iteration % self.config.logging.log_every == 0:
            logger.info(
                f"it={self.iteration}, size={graph.input.width}x{graph.input.height}, "
                f"lr={learning_rate:.2e}, loss={self.loss:.4f}, "
                f"avg_loss={self.avg_loss:.4f}"
            )

        graph.update(learning_rate / training.batch)

        path = self.config.checkpoint.checkpoint_path(self.iteration)
        if path is not None:
            self.checkpoints.append(self.store.save(path, graph, self.iteration))

        proposal = self.resize.propose(
            self.iteration, graph.input.width, graph.input.height
        )
        if proposal is not None:
            graph.resize_input(*proposal)

        self.iteration += 1
