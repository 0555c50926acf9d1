"""Append-only activity log."""
import logging
from dataclasses import dataclass
from typing import List, Optional

from sqlalchemy.orm import Session

from apprentice_tracker.models.activity import Activity
from apprentice_tracker.models.domain import User
from apprentice_tracker.models.enums import ActivityType
from apprentice_tracker.services.entity_store import EntityStore

logger = logging.getLogger(__name__)

DEFAULT_FEED_LIMIT = 10


@dataclass
class ActivityWithUser:
    activity: Activity
    user: Optional[User]


class ActivityLog:
    """Records and reads activity entries. There is no update or delete."""

    def __init__(self, db: Session, store: Optional[EntityStore] = None):
        self.db = db
        self.store = store or EntityStore(db)

    def record(
        self,
        actor_id: int,
        activity_type: ActivityType,
        description: str,
        file_id: Optional[int] = None,
        commit: bool = True
    ) -> Activity:
        """
        Append one entry.

        With commit=False the entry joins the caller's unit of work and is
        written when the caller commits.
        """
        activity = self.store.create(
            Activity,
            {
                "user_id": actor_id,
                "file_id": file_id,
                "activity_type": activity_type.value,
                "description": description,
            },
            commit=commit,
        )
        logger.info(
            "activity %s by user %s (file %s): %s",
            activity_type.value, actor_id, file_id, description
        )
        return activity

    def recent(self, limit: int = DEFAULT_FEED_LIMIT) -> List[ActivityWithUser]:
        """Newest entries first."""
        activities = (
            self.db.query(Activity)
            .order_by(Activity.created_at.desc(), Activity.id.desc())
            .limit(limit)
            .all()
        )
        return self._with_users(activities)

    def for_file(self, file_id: int) -> List[ActivityWithUser]:
        """Every entry for one case file, newest first."""
        activities = (
            self.db.query(Activity)
            .filter(Activity.file_id == file_id)
            .order_by(Activity.created_at.desc(), Activity.id.desc())
            .all()
        )
        return self._with_users(activities)

    def _with_users(self, activities: List[Activity]) -> List[ActivityWithUser]:
        return [
            ActivityWithUser(activity=a, user=self.store.get(User, a.user_id))
            for a in activities
        ]
