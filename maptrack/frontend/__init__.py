"""
Frontend module for the map tracker.

This module contains the per-image data structures (frames, keyframes, map
points), the camera model, map initialization and place recognition.
"""

from .camera import GridGeometry, ImageBounds, PinholeCamera
from .frame import FeatureGrid, Frame
from .initializer import MonocularInitializer, Reconstruction
from .keyframe import Keyframe
from .map_point import MapPoint
from .place_recognition import KeyframeDatabase, OrbVocabulary

__all__ = [
    "PinholeCamera",
    "ImageBounds",
    "GridGeometry",
    "Frame",
    "FeatureGrid",
    "Keyframe",
    "MapPoint",
    "MonocularInitializer",
    "Reconstruction",
    "OrbVocabulary",
    "KeyframeDatabase",
]
