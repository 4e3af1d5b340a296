"""Stored records for MindSieve."""

from mindsieve.models.base import now_ms
from mindsieve.models.session import Session
from mindsieve.models.turn import Turn
from mindsieve.models.card import SourceItem, CardSource, QuizItem, StudyCard

__all__ = [
    "now_ms",
    "Session",
    "Turn",
    "SourceItem",
    "CardSource",
    "QuizItem",
    "StudyCard",
]
