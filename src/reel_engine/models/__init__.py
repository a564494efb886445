"""SQLAlchemy models for REEL Engine."""

from reel_engine.models.job import JobRecord
from reel_engine.models.subject import Subject

__all__ = [
    "JobRecord",
    "Subject",
]
