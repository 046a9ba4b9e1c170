"""
Map Tracker Library

A monocular visual SLAM tracker built on PyTorch and OpenCV. It estimates
the camera pose of every incoming frame against a persistent sparse map of
ORB keyframes and 3D map points, grows that map while tracking, and saves
and restores it across sessions.

Major Components:
- Frontend: Frames, ORB features, keyframes, map points, place recognition
- Backend: SE(3) geometry and motion-only pose optimization
- Mapping: Map container, map growth, spanning tree repair, persistence
- SLAM: Tracking state machine, trajectory log and the tracker itself
- Datasets: Image sequence source with camera calibration
"""
from maptrack.config import DEFAULT_CONFIG, load_config, merge_config
from maptrack.datasets import CalibrationData, ImageSequenceSource
from maptrack.frontend import (
    Frame,
    Keyframe,
    KeyframeDatabase,
    MapPoint,
    OrbVocabulary,
    PinholeCamera,
)
from maptrack.mapping import Map, MapIntegrityError, MapIO, MapIOError
from maptrack.slam import (
    ImageSource,
    PoseSink,
    SceneProxy,
    Tracker,
    TrackingState,
    TrackingType,
    TrajectoryLog,
)

# Version information
from maptrack.version import __version__

__all__ = [
    # Version
    "__version__",
    # Configuration
    "DEFAULT_CONFIG",
    "load_config",
    "merge_config",
    # Frontend
    "Frame",
    "Keyframe",
    "KeyframeDatabase",
    "MapPoint",
    "OrbVocabulary",
    "PinholeCamera",
    # Mapping
    "Map",
    "MapIO",
    "MapIOError",
    "MapIntegrityError",
    # SLAM
    "Tracker",
    "TrackingState",
    "TrackingType",
    "TrajectoryLog",
    "ImageSource",
    "PoseSink",
    "SceneProxy",
    # Datasets
    "CalibrationData",
    "ImageSequenceSource",
]
