"""
layerforge.network — Network Definition and Layer Graph
========================================================
    - definition.py — NetworkDefinition (input block, anchors, layers)
    - graph.py      — NetworkGraph (load, forward, backward, update)
"""

from layerforge.network.definition import InputSpec, NetworkDefinition
from layerforge.network.graph import NetworkGraph
