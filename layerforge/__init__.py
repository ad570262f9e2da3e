"""
LayerForge
==========
Execution core of a convolutional detection-network training engine.

This package provides:
    1. An ordered layer graph with a uniform forward/backward/update contract
    2. A growth-only shared workspace on the accelerator device
    3. Parameter checkpoints (safetensors) keyed by training iteration
    4. The iterative training loop: subdivision accumulation, learning-rate
       scheduling, periodic checkpointing and adaptive input resizing

Quick Start:
    >>> from layerforge.config import LayerForgeConfig
    >>> from layerforge.network.definition import NetworkDefinition
    >>> from layerforge.network.graph import NetworkGraph
    >>> config = LayerForgeConfig.from_yaml("configs/default.yaml")
    >>> graph = NetworkGraph(config.training)
    >>> graph.load(NetworkDefinition.from_yaml("configs/tiny-detector.yaml"))

Subpackages:
    - layerforge.core     — Tensor4D, shared types, workspace allocator
    - layerforge.layers   — Layer contract, registry and reference layers
    - layerforge.network  — Network definition and the layer graph
    - layerforge.params   — Parameter checkpoint store
    - layerforge.data     — Mini-batch data sources
    - layerforge.training — Schedules, resize policy, training log and loop
"""

__version__ = "0.1.0"
__author__ = "Aditya"
