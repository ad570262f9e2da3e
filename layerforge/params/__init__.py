"""
layerforge.params — Parameter Checkpoints
==========================================
    - store.py — ParameterStore (safetensors save/load), latest_checkpoint
"""

from layerforge.params.store import ParameterStore, latest_checkpoint
