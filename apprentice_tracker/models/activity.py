"""
Activity log model.

Every mutating action appends one entry here. The dashboard reads it as the
"recent activity" feed and each case file shows its own slice.
"""
from sqlalchemy import Column, String, Integer, DateTime
from apprentice_tracker.database import Base, utcnow


class Activity(Base):
    """
    Immutable activity entry describing one action and who performed it.

    Invariants:
    - Once written, never edited or deleted
    - Append-only
    - Always attributed to an actor; the case file is optional
    """
    __tablename__ = "activities"
    __table_args__ = {"sqlite_autoincrement": True}

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    user_id = Column(Integer, nullable=False)
    file_id = Column(Integer, nullable=True, index=True)  # Null for actions outside a case file
    activity_type = Column(String, nullable=False, index=True)  # ActivityType value
    description = Column(String, nullable=False)
    created_at = Column(DateTime, nullable=False, default=utcnow, index=True)
