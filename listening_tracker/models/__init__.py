"""Data models for the listening tracker."""

from .session import Session, SessionSnapshot, TrackerState
from .stats import DailyStats, ListeningPatterns, TopTrack, TotalStats, TrackStats
from .track import Track

__all__ = [
    "DailyStats",
    "ListeningPatterns",
    "Session",
    "SessionSnapshot",
    "TopTrack",
    "TotalStats",
    "Track",
    "TrackStats",
    "TrackerState",
]
