"""
LayerForge Parameter Store
===========================
Persists the learned parameters of a NetworkGraph as safetensors files.

File Format:
    tensors   "{layer_index}.{param}" → tensor, e.g. "3.weights", "3.rolling_mean"
    metadata  iteration  the training iteration the parameters belong to
              precision  FP32 or FP16 (FP16 networks store float16 tensors)
              format     "layerforge"

Layer indices, not positions, key the tensors, so a checkpoint only
loads into a graph built from the same network definition.

Usage:
    >>> store = ParameterStore(keep_checkpoints=3)
    >>> store.save("backup/weights_1000.safetensors", graph, iteration=1000)
    >>> iteration = store.load("backup/weights_1000.safetensors", graph)
"""

from __future__ import annotations

import logging
import re
from pathlib import Path
from typing import Optional

import torch
from safetensors import SafetensorError, safe_open
from safetensors.torch import save_file

from layerforge.core.types import Precision
from layerforge.errors import CheckpointError
from layerforge.network.graph import NetworkGraph

logger = logging.getLogger(__name__)

FORMAT_TAG = "layerforge"
_PERIODIC = re.compile(r"^(?P<name>.+)_(?P<iteration>\d+)\.safetensors$")


class ParameterStore:
    """
    Save and restore graph parameters.

    Parameters
    ----------
    keep_checkpoints : int
        After each periodic save, delete all but the newest N checkpoints
        with the same name prefix. 0 keeps everything.
    """

    def __init__(self, keep_checkpoints: int = 0):
        if keep_checkpoints < 0:
            raise ValueError(f"keep_checkpoints must be >= 0, got {keep_checkpoints}")
        self.keep_checkpoints = keep_checkpoints

    def save(self, path: str | Path, graph: NetworkGraph, iteration: int) -> Path:
        """
        Write every layer's parameters plus ``iteration`` to ``path``.

        Raises
        ------
        CheckpointError
            If the file cannot be written.
        """
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)

        dtype = graph.precision.torch_dtype
        tensors = {
            key: value.detach().to("cpu", dtype=dtype).contiguous()
            for key, value in graph.state_dict().items()
        }
        metadata = {
            "iteration": str(int(iteration)),
            "precision": graph.precision.value,
            "format": FORMAT_TAG,
        }
        try:
            save_file(tensors, str(path), metadata=metadata)
        except (OSError, SafetensorError) as e:
            raise CheckpointError(f"cannot write checkpoint: {e}", path=str(path)) from e

        logger.info(
            f"Checkpoint saved: {path} (iteration {iteration}, "
            f"{len(tensors)} tensors, {graph.precision.value})"
        )
        self._prune(path)
        return path

    def load(self, path: str | Path, graph: NetworkGraph) -> int:
        """
        Copy the parameters in ``path`` into ``graph``.

        Returns
        -------
        int
            The iteration stored with the parameters.

        Raises
        ------
        CheckpointError
            If the file is missing, unreadable, not a LayerForge checkpoint,
            or its parameters do not match the graph's layers.
        """
        path = Path(path)
        if not path.exists():
            raise CheckpointError("checkpoint not found", path=str(path))

        try:
            with safe_open(str(path), framework="pt", device="cpu") as f:
                metadata = f.metadata() or {}
                tensors = {key: f.get_tensor(key) for key in f.keys()}
        except (OSError, SafetensorError) as e:
            raise CheckpointError(f"cannot read checkpoint: {e}", path=str(path)) from e

        if metadata.get("format") != FORMAT_TAG:
            raise CheckpointError(
                f"not a {FORMAT_TAG} checkpoint (format={metadata.get('format')!r})",
                path=str(path),
            )
        try:
            iteration = int(metadata.get("iteration", "0"))
        except ValueError as e:
            raise CheckpointError(
                f"bad iteration metadata {metadata.get('iteration')!r}", path=str(path)
            ) from e

        stored = Precision.parse(metadata.get("precision", ""))
        if stored is not None and stored is not graph.precision:
            logger.warning(
                f"Checkpoint precision {stored.value} differs from network "
                f"precision {graph.precision.value}; values are converted"
            )

        try:
            with torch.no_grad():
                graph.load_state_dict(tensors)
        except (KeyError, ValueError) as e:
            raise CheckpointError(
                f"parameters do not match the network: {e}", path=str(path)
            ) from e

        logger.info(f"Checkpoint loaded: {path} (iteration {iteration})")
        return iteration

    def _prune(self, path: Path) -> None:
        if self.keep_checkpoints <= 0:
            return
        match = _PERIODIC.match(path.name)
        if match is None:
            return
        checkpoints = _periodic_checkpoints(path.parent, match.group("name"))
        while len(checkpoints) > self.keep_checkpoints:
            _, old = checkpoints.pop(0)
            try:
                old.unlink()
                logger.info(f"Removed old checkpoint: {old.name}")
            except OSError as e:
                logger.warning(f"Failed to remove old checkpoint {old}: {e}")


def _periodic_checkpoints(directory: Path, name: Optional[str] = None) -> list[tuple[int, Path]]:
    """(iteration, path) of every periodic checkpoint, oldest first."""
    found = []
    for candidate in directory.glob("*.safetensors"):
        match = _PERIODIC.match(candidate.name)
        if match is None:
            continue
        if name is not None and match.group("name") != name:
            continue
        found.append((int(match.group("iteration")), candidate))
    found.sort(key=lambda item: item[0])
    return found


def latest_checkpoint(directory: str | Path, name: Optional[str] = None) -> Optional[Path]:
    """
    The highest-iteration ``{name}_{iteration}.safetensors`` in
    ``directory``, or None if there is none.
    """
    directory = Path(directory)
    if not directory.is_dir():
        return None
    checkpoints = _periodic_checkpoints(directory, name)
    return checkpoints[-1][1] if checkpoints else None
