"""
Learning: mastery tracking and adaptive session delivery.
"""

from nuggets.learning.mastery_tracker import MasteryEvidence, MasteryTracker
from nuggets.learning.session_service import SessionService

__all__ = ["MasteryEvidence", "MasteryTracker", "SessionService"]
