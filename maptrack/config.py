"""
Configuration handling for the map tracker.

Components take an optional nested configuration dictionary and read the
values they need with ``config.get(key, default)``. ``DEFAULT_CONFIG`` lists
every section with its default values; user files in YAML format are merged
on top of it with :func:`load_config`.
"""
import copy
import logging
from pathlib import Path
from typing import Any, Dict, Optional, Union

import yaml

DEFAULT_CONFIG: Dict[str, Any] = {
    "feature_extraction": {
        "max_features": 1000,
        "scale_factor": 1.2,
        "n_levels": 8,
        "ini_th_fast": 20,
        "min_th_fast": 7,
    },
    "matching": {
        "covisibility_threshold": 15,
    },
    "tracking": {
        "fps": 30,
        "only_tracking": False,
        "optical_flow": True,
        "motion_model_threshold": 15,
        "min_motion_model_matches": 20,
        "min_reference_matches": 15,
        "min_reference_map_matches": 10,
        "vo_map_matches": 10,
        "max_local_keyframes": 80,
        "local_map_inliers": 30,
        "local_map_inliers_after_reloc": 50,
        "idle_wait": 0.005,
    },
    "optical_flow": {
        "min_keypoints": 100,
        "min_tracked_ratio": 0.75,
        "window_size": 15,
        "max_level": 3,
    },
    "relocalization": {
        "min_bow_matches": 15,
        "min_good_matches": 10,
        "min_inliers": 50,
    },
    "initialization": {
        "min_features": 100,
        "min_matches": 100,
        "min_triangulated": 50,
        "min_parallax_deg": 1.0,
        "search_window": 100,
    },
    "mapping": {
        "min_tracked_for_keyframe": 15,
        "ref_ratio": 0.9,
        "covisible_neighbors": 20,
        "min_found_ratio": 0.25,
        "min_initial_points": 50,
        "cull_keyframes": True,
        "redundant_ratio": 0.9,
    },
    "optimization": {
        "rounds": 4,
        "iterations": 10,
        "chi2_threshold": 5.991,
    },
    "pnp": {
        "min_inliers": 10,
        "ransac_iterations": 300,
        "ransac_threshold": 2.5,
        "confidence": 0.99,
    },
    "vocabulary": {
        "path": None,
        "branching": 10,
        "depth": 4,
        "seed": 0,
    },
    "persistence": {
        "show_progress": False,
    },
}


def merge_config(base: Dict[str, Any], override: Optional[Dict[str, Any]]) -> Dict:
    """
    Recursively merge two configuration dictionaries.

    Args:
        base: Configuration with default values
        override: Values taking precedence over ``base``

    Returns:
        A new merged dictionary; neither input is modified
    """
    merged = copy.deepcopy(base)
    if not override:
        return merged

    for key, value in override.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = merge_config(merged[key], value)
        else:
            merged[key] = copy.deepcopy(value)

    return merged


def load_config(path: Optional[Union[str, Path]] = None) -> Dict[str, Any]:
    """
    Load a YAML configuration file and merge it over the defaults.

    Args:
        path: Path to the YAML file, or None for the defaults only

    Returns:
        Complete configuration dictionary
    """
    if path is None:
        return merge_config(DEFAULT_CONFIG, None)

    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Configuration file not found: {path}")

    with open(path, "r") as f:
        user_config = yaml.safe_load(f) or {}

    if not isinstance(user_config, dict):
        raise ValueError(f"Configuration file {path} must contain a mapping")

    logging.getLogger(__name__).info(f"Loaded configuration from {path}")
    return merge_config(DEFAULT_CONFIG, user_config)
