"""
layerforge.core — Core Data Model
==================================
The leaves of the execution core, used by everything above them:

    - types.py     — DataLayout, Precision, Anchor, TruthBuffer, ForwardContext
    - tensor.py    — Tensor4D (host/device resident 4-D array)
    - workspace.py — WorkspaceAllocator (growth-only shared scratch buffer)
"""

from layerforge.core.types import (
    Anchor,
    DataLayout,
    ForwardContext,
    OBJECT_INFO,
    Precision,
    TruthBuffer,
)
from layerforge.core.tensor import Tensor4D
from layerforge.core.workspace import WorkspaceAllocator
