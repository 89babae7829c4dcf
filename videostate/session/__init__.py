"""Per-session playback components: progress tracking, milestone gating, answers."""

from .gate import GateTransitionError, MilestoneGate, Player
from .reconciler import AnswerReconciler
from .tracker import ProgressTracker

__all__ = [
    "AnswerReconciler",
    "GateTransitionError",
    "MilestoneGate",
    "Player",
    "ProgressTracker",
]
