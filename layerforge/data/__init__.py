"""
layerforge.data — Mini-Batch Sources
=====================================
    - source.py — DataSource contract, SyntheticDataSource, ArrayDataSource
"""

from layerforge.data.source import (
    ArrayDataSource,
    DataSource,
    SyntheticDataSource,
    make_synthetic_arrays,
)
