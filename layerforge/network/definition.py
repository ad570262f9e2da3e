"""
LayerForge Network Definition
==============================
The already-parsed, declarative description of a network: the default
activation, the input block, the anchor table and the ordered layers.

Expected structure (shown as YAML):

    def_activation: leaky
    momentum: 0.9
    decay: 0.0005
    input:
      data_order: NCHW        # or NHWC
      data_type: FP32         # or FP16
      channels: 3
      width: 416
      height: 416
      anchor_reference: 416   # anchors are divided by this
    anchors:
      - {width: 10, height: 14}
      - {width: 23, height: 27}
    layers:
      - {type: convolutional, filters: 16, size: 3, batch_normalize: true}
      - {type: maxpool, size: 2}
      - {type: detection, classes: 2, mask: [0, 1]}

Unknown ``data_order`` / ``data_type`` values fall back to NCHW / FP32 with
a warning. A missing or malformed input block is a ConfigurationError.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Mapping

import yaml

from layerforge.core.types import Anchor, DataLayout, Precision
from layerforge.errors import ConfigurationError

logger = logging.getLogger(__name__)

DEFAULT_ANCHOR_REFERENCE = 416.0


@dataclass(frozen=True)
class InputSpec:
    """The validated input block."""
    layout: DataLayout
    precision: Precision
    channels: int
    width: int
    height: int
    anchor_reference: float = DEFAULT_ANCHOR_REFERENCE


@dataclass
class NetworkDefinition:
    """
    Parameters
    ----------
    input : dict or None
        The raw input block; see :meth:`parse_input`.
    anchors : list
        Raw anchors in pixels, as ``{width, height}`` mappings or pairs.
    layers : list[dict]
        Layer descriptors: ``type`` plus kind-specific options.
    def_activation : str
        Activation used by layers that do not name one.
    momentum, decay : float
        SGD settings shared by every layer.
    """
    input: dict | None = None
    anchors: list = field(default_factory=list)
    layers: list[dict] = field(default_factory=list)
    def_activation: str = "leaky"
    momentum: float = 0.9
    decay: float = 0.0005

    @classmethod
    def from_dict(cls, raw: Mapping[str, Any]) -> NetworkDefinition:
        if not isinstance(raw, Mapping):
            raise ConfigurationError("network definition must be a mapping")
        layers = raw.get("layers") or []
        if not isinstance(layers, list) or not all(isinstance(l, Mapping) for l in layers):
            raise ConfigurationError("'layers' must be a list of mappings", field="layers")
        return cls(
            input=dict(raw["input"]) if isinstance(raw.get("input"), Mapping) else raw.get("input"),
            anchors=list(raw.get("anchors") or []),
            layers=[dict(l) for l in layers],
            def_activation=str(raw.get("def_activation", "leaky")),
            momentum=float(raw.get("momentum", 0.9)),
            decay=float(raw.get("decay", 0.0005)),
        )

    @classmethod
    def from_yaml(cls, path: str | Path) -> NetworkDefinition:
        path = Path(path)
        if not path.exists():
            raise FileNotFoundError(f"Network definition not found: {path}")
        with open(path, "r", encoding="utf-8") as f:
            raw = yaml.safe_load(f)
        if raw is None:
            raise ConfigurationError(f"network definition is empty: {path}")
        return cls.from_dict(raw)

    # ------------------------------------------------------------------

    def parse_input(self) -> InputSpec:
        """
        Validate the input block.

        Raises
        ------
        ConfigurationError
            If the block is missing, or channels/width/height are not
            positive integers.
        """
        block = self.input
        if not isinstance(block, Mapping):
            raise ConfigurationError(
                "the input block is missing", field="input",
                suggestions=["Add an 'input' mapping with channels, width and height"],
            )

        order = block.get("data_order", "NCHW")
        layout = DataLayout.parse(order)
        if layout is None:
            logger.warning(f"'{order}' is not a valid data order, using NCHW")
            layout = DataLayout.NCHW

        dtype = block.get("data_type", "FP32")
        precision = Precision.parse(dtype)
        if precision is None:
            logger.warning(f"Data type '{dtype}' is not supported, using FP32")
            precision = Precision.FP32

        dims = {}
        for key, default in (("channels", 3), ("width", 416), ("height", 416)):
            value = block.get(key, default)
            if isinstance(value, bool) or not isinstance(value, int) or value < 1:
                raise ConfigurationError(
                    f"input {key} must be a positive integer, got {value!r}",
                    field=f"input.{key}",
                )
            dims[key] = value

        reference = block.get("anchor_reference", DEFAULT_ANCHOR_REFERENCE)
        if isinstance(reference, bool) or not isinstance(reference, (int, float)) or reference <= 0:
            raise ConfigurationError(
                f"anchor_reference must be positive, got {reference!r}",
                field="input.anchor_reference",
            )

        return InputSpec(
            layout=layout,
            precision=precision,
            channels=dims["channels"],
            width=dims["width"],
            height=dims["height"],
            anchor_reference=float(reference),
        )

    def parse_anchors(self, reference: float) -> list[Anchor]:
        """
        Normalize raw pixel anchors by ``reference``.

        Anchors whose raw width or height is not strictly positive are
        dropped.
        """
        anchors = []
        for i, raw in enumerate(self.anchors):
            if isinstance(raw, Mapping):
                width, height = raw.get("width", 0), raw.get("height", 0)
            elif isinstance(raw, (list, tuple)) and len(raw) == 2:
                width, height = raw
            else:
                raise ConfigurationError(
                    f"anchor {i} must be {{width, height}} or a pair, got {raw!r}",
                    field=f"anchors[{i}]",
                )
            try:
                width, height = float(width), float(height)
            except (TypeError, ValueError) as e:
                raise ConfigurationError(
                    f"anchor {i} has non-numeric size {raw!r}", field=f"anchors[{i}]"
                ) from e
            if width > 0 and height > 0:
                anchors.append(Anchor.from_pixels(width, height, reference))
            else:
                logger.warning(f"Ignoring anchor {i} with non-positive size {raw!r}")
        return anchors
