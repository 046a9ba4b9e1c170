"""
Mapping module for the map tracker.

This module contains the map container, map growth during tracking, the
spanning tree builders and the on-disk persistence of maps.
"""

from .ids import IdAllocator
from .map import Map, TransformKind
from .map_growth import MapGrower
from .persistence import MapIntegrityError, MapIO, MapIOError
from .spanning_tree import (
    ExactMaximumSpanningTreeBuilder,
    GreedyCovisibilityTreeBuilder,
    SpanningTreeBuilder,
)

__all__ = [
    "IdAllocator",
    "Map",
    "TransformKind",
    "MapGrower",
    "MapIO",
    "MapIOError",
    "MapIntegrityError",
    "SpanningTreeBuilder",
    "GreedyCovisibilityTreeBuilder",
    "ExactMaximumSpanningTreeBuilder",
]
