from .interfaces import ImageSource, PoseSink, SceneProxy, TrackingType
from .state import TrackingState, TrackingStateMachine
from .tracker import Tracker
from .trajectory import TrajectoryEntry, TrajectoryLog

__all__ = [
    "Tracker",
    "TrackingState",
    "TrackingStateMachine",
    "TrackingType",
    "TrajectoryEntry",
    "TrajectoryLog",
    "ImageSource",
    "PoseSink",
    "SceneProxy",
]
