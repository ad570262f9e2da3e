"""
LayerForge Detection Head
==========================
Anchor-based detection head: every grid cell predicts, for each anchor in
this head's ``mask``, a box (tx, ty, tw, th), an objectness score and
per-class scores.

Channel Layout (per anchor, ``5 + classes`` channels):
    0,1  tx, ty     → sigmoid, offset of the box centre inside its cell
    2,3  tw, th     → raw, box size = anchor * exp(t)
    4    objectness → sigmoid
    5..  classes    → sigmoid

Training Delta:
    For every prediction the objectness target is 0, unless it already
    overlaps some ground-truth box by more than ``ignore_thresh`` (then it
    is left alone). Each ground-truth box is assigned to the anchor with
    the best shape IoU over the WHOLE anchor table; if that anchor belongs
    to this head, the cell containing the box centre gets box, objectness
    (target 1) and class targets. Box deltas are scaled by ``2 - w*h`` so
    small boxes weigh more.

    loss = sum(delta²)
"""

from __future__ import annotations

import logging
import math
from typing import Optional, Sequence

import numpy as np
import torch

from layerforge.core.tensor import Tensor4D
from layerforge.core.types import ForwardContext
from layerforge.layers.base import Layer, LayerBuild
from layerforge.layers.registry import register_layer

logger = logging.getLogger(__name__)


def box_iou(pred: torch.Tensor, truth: torch.Tensor) -> torch.Tensor:
    """
    IoU between centre-format boxes.

    ``pred`` has shape (..., 4) and ``truth`` (T, 4); the result is (..., T).
    """
    p = pred.unsqueeze(-2)
    p_min, p_max = p[..., :2] - p[..., 2:] / 2, p[..., :2] + p[..., 2:] / 2
    t_min, t_max = truth[:, :2] - truth[:, 2:] / 2, truth[:, :2] + truth[:, 2:] / 2
    overlap = (torch.minimum(p_max, t_max) - torch.maximum(p_min, t_min)).clamp(min=0)
    inter = overlap[..., 0] * overlap[..., 1]
    union = p[..., 2] * p[..., 3] + truth[:, 2] * truth[:, 3] - inter
    return inter / union.clamp(min=1e-12)


@register_layer("detection")
class DetectionLayer(Layer):
    """
    Detection head and loss layer.

    Parameters
    ----------
    classes : int
        Number of object classes.
    mask : sequence of int or None
        Indices into the network anchor table used by this head. None
        uses every anchor.
    ignore_thresh : float
        Predictions overlapping a truth by more than this get no
        objectness penalty.
    """

    is_loss_layer = True

    def __init__(
        self,
        index: int,
        name: str,
        in_channels: int,
        build: LayerBuild,
        classes: int = 1,
        mask: Optional[Sequence[int]] = None,
        ignore_thresh: float = 0.5,
    ):
        super().__init__(index, name, in_channels, build)
        n_anchors = len(build.anchors)
        if n_anchors == 0:
            raise ValueError("detection layer requires a non-empty anchor table")
        self.mask = list(range(n_anchors)) if mask is None else [int(m) for m in mask]
        for m in self.mask:
            if not 0 <= m < n_anchors:
                raise ValueError(f"mask index {m} out of range [0, {n_anchors})")
        if classes < 1:
            raise ValueError(f"classes must be >= 1, got {classes}")
        expected = len(self.mask) * (5 + classes)
        if in_channels != expected:
            raise ValueError(
                f"needs {expected} input channels "
                f"({len(self.mask)} anchors x (5 + {classes} classes)), "
                f"got {in_channels}"
            )
        self.classes = classes
        self.ignore_thresh = ignore_thresh
        self._delta: Optional[torch.Tensor] = None
        self.stats: dict[str, float] = {}

    @property
    def entries(self) -> int:
        return 5 + self.classes

    def forward(self, context: ForwardContext, x: Tensor4D) -> Tensor4D:
        if x.channels != self.in_channels:
            raise ValueError(
                f"expected {self.in_channels} input channels, got {x.channels}"
            )
        inputs = x.nchw().float()
        n, c, h, w = inputs.shape
        out = inputs.reshape(n, len(self.mask), self.entries, h, w).clone()
        out[:, :, 0:2] = torch.sigmoid(out[:, :, 0:2])
        out[:, :, 4:] = torch.sigmoid(out[:, :, 4:])

        self._ensure_output(n, c, w, h)
        self.output.write_nchw(out.view(n, c, h, w))

        self.loss = 0.0
        self._delta = None
        if context.training:
            delta = self._compute_delta(context, out)
            self.loss = float((delta ** 2).sum())
            self._delta = delta.view(n, c, h, w)
        return self.output

    def _compute_delta(self, context: ForwardContext, out: torch.Tensor) -> torch.Tensor:
        n, n_masked, _, h, w = out.shape
        anchors = context.anchors
        device = out.device
        delta = torch.zeros_like(out)

        grid_x = torch.arange(w, device=device, dtype=out.dtype).view(1, 1, 1, w)
        grid_y = torch.arange(h, device=device, dtype=out.dtype).view(1, 1, h, 1)
        anchor_w = torch.tensor(
            [anchors[m].width for m in self.mask], device=device, dtype=out.dtype
        ).view(1, -1, 1, 1)
        anchor_h = torch.tensor(
            [anchors[m].height for m in self.mask], device=device, dtype=out.dtype
        ).view(1, -1, 1, 1)
        pred_boxes = torch.stack(
            [
                (grid_x + out[:, :, 0]) / w,
                (grid_y + out[:, :, 1]) / h,
                torch.exp(out[:, :, 2]) * anchor_w,
                torch.exp(out[:, :, 3]) * anchor_h,
            ],
            dim=-1,
        )

        objectness = out[:, :, 4]
        delta[:, :, 4] = -objectness

        all_w = np.array([a.width for a in anchors], dtype=np.float32)
        all_h = np.array([a.height for a in anchors], dtype=np.float32)
        ious, matched = [], 0

        for b in range(n):
            objects = context.truths.objects(b)
            if len(objects) == 0:
                continue
            truth = torch.from_numpy(
                np.stack([objects["x"], objects["y"], objects["w"], objects["h"]], axis=1)
            ).to(device=device, dtype=out.dtype)
            best_iou = box_iou(pred_boxes[b], truth).max(dim=-1).values
            delta[b, :, 4][best_iou > self.ignore_thresh] = 0

            for t, obj in enumerate(objects):
                class_id = int(obj["class_id"])
                if not 0 <= class_id < self.classes:
                    raise ValueError(
                        f"truth class {class_id} out of range [0, {self.classes})"
                    )
                tw, th = float(obj["w"]), float(obj["h"])
                inter = np.minimum(tw, all_w) * np.minimum(th, all_h)
                shape_iou = inter / (tw * th + all_w * all_h - inter)
                best = int(np.argmax(shape_iou))
                if best not in self.mask:
                    continue

                a = self.mask.index(best)
                tx, ty = float(obj["x"]), float(obj["y"])
                j = min(max(int(tx * w), 0), w - 1)
                i = min(max(int(ty * h), 0), h - 1)
                weight = float(obj["weight"])
                scale = (2.0 - tw * th) * weight
                cell = out[b, a, :, i, j]

                delta[b, a, 0, i, j] = scale * (tx * w - j - cell[0])
                delta[b, a, 1, i, j] = scale * (ty * h - i - cell[1])
                delta[b, a, 2, i, j] = scale * (math.log(tw / anchors[best].width) - cell[2])
                delta[b, a, 3, i, j] = scale * (math.log(th / anchors[best].height) - cell[3])
                delta[b, a, 4, i, j] = weight * (1.0 - cell[4])
                target = torch.zeros(self.classes, device=device, dtype=out.dtype)
                target[class_id] = 1.0
                delta[b, a, 5:, i, j] = weight * (target - cell[5:])

                ious.append(float(box_iou(pred_boxes[b, a, i, j].view(1, 4), truth[t:t + 1])))
                matched += 1

        self.stats = {
            "avg_iou": float(np.mean(ious)) if ious else 0.0,
            "recall50": float(np.mean([iou > 0.5 for iou in ious])) if ious else 0.0,
            "avg_objectness": float(objectness.mean()),
            "count": float(matched),
        }
        logger.debug(
            f"{self.name}: avg_iou={self.stats['avg_iou']:.4f}, "
            f"recall50={self.stats['recall50']:.4f}, "
            f"obj={self.stats['avg_objectness']:.4f}, count={matched}"
        )
        return delta

    def backward(
        self, delta: Optional[Tensor4D], propagate: bool = True
    ) -> Optional[Tensor4D]:
        if self._delta is None:
            raise RuntimeError("backward requires a preceding training forward")
        if not propagate:
            return None
        d = self._delta
        if delta is not None:
            d = d + self._delta_values(delta, d)
        return self._emit_delta(d)
