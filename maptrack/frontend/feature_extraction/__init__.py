"""
Feature extraction module for the map tracker.

This module contains the ORB keypoint detector and descriptor extractor and
the descriptor matcher used to associate features with map points.
"""

from .base import BaseFeatureExtractor, KeyPoint, compute_scale_pyramid
from .feature_matcher import ORBMatcher, descriptor_distance, hamming_distance_matrix
from .orb import ORBFeatureExtractor

__all__ = [
    "KeyPoint",
    "BaseFeatureExtractor",
    "ORBFeatureExtractor",
    "ORBMatcher",
    "compute_scale_pyramid",
    "descriptor_distance",
    "hamming_distance_matrix",
]
