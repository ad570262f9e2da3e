"""
Activation functions and their derivatives.

Derivatives are computed from the activation's OUTPUT, so layers only
need to keep the activated tensor around for backward.
"""

from __future__ import annotations

import torch

LEAKY_SLOPE = 0.1

ACTIVATIONS = ("linear", "relu", "leaky", "logistic")


def check_activation(name: str) -> str:
    if name not in ACTIVATIONS:
        raise ValueError(
            f"Unknown activation '{name}'. Choose from: {', '.join(ACTIVATIONS)}"
        )
    return name


def activate(name: str, x: torch.Tensor) -> torch.Tensor:
    if name == "linear":
        return x
    if name == "relu":
        return torch.relu(x)
    if name == "leaky":
        return torch.where(x > 0, x, x * LEAKY_SLOPE)
    if name == "logistic":
        return torch.sigmoid(x)
    raise ValueError(f"Unknown activation '{name}'")


def gradient(name: str, y: torch.Tensor) -> torch.Tensor:
    """dy/dx expressed in terms of the output ``y``."""
    if name == "linear":
        return torch.ones_like(y)
    if name == "relu":
        return (y > 0).to(y.dtype)
    if name == "leaky":
        return torch.where(y > 0, torch.ones_like(y), torch.full_like(y, LEAKY_SLOPE))
    if name == "logistic":
        return y * (1.0 - y)
    raise ValueError(f"Unknown activation '{name}'")
