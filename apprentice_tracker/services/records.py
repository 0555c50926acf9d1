"""
Audited CRUD for people, companies, case files and comments.

Each mutation goes through the entity store and appends its activity entry
in the same commit.
"""
import logging
from typing import Any, Dict, Optional, Type

from sqlalchemy.orm import Session

from apprentice_tracker.models.domain import (
    Apprentice,
    CaseFile,
    Comment,
    Company,
    Mentor,
    User,
)
from apprentice_tracker.models.enums import ActivityType
from apprentice_tracker.services.activity_log import ActivityLog
from apprentice_tracker.services.entity_store import EntityStore, ModelT
from apprentice_tracker.services.errors import NotFound, ValidationError

logger = logging.getLogger(__name__)

KIND_LABELS = {
    User: "User",
    Apprentice: "Apprentice",
    Company: "Company",
    Mentor: "Mentor",
    CaseFile: "File",
}

DEFAULT_ADMIN = {
    "username": "admin",
    "password": "admin123",
    "full_name": "Admin User",
    "role": "admin",
    "avatar_url": None,
}


def _file_id_of(record: Any) -> Optional[int]:
    return record.id if isinstance(record, CaseFile) else None


class RecordService:
    """Create/update/delete with an activity entry for every change."""

    def __init__(
        self,
        db: Session,
        store: Optional[EntityStore] = None,
        activity_log: Optional[ActivityLog] = None
    ):
        self.db = db
        self.store = store or EntityStore(db)
        self.activity_log = activity_log or ActivityLog(db, self.store)

    def create(self, model: Type[ModelT], fields: Dict[str, Any], actor_id: int) -> ModelT:
        if model is User and self.db.query(User).filter(User.username == fields.get("username")).first():
            raise ValidationError(f"Username {fields.get('username')!r} is already taken")

        record = self.store.create(model, fields, commit=False)
        label = KIND_LABELS[model]
        if model is CaseFile:
            description = f"File created for apprentice {record.apprentice_id}"
        else:
            description = f"{label} {record.id} created"
        self.activity_log.record(
            actor_id, ActivityType.CREATE, description,
            file_id=_file_id_of(record), commit=False
        )
        self.store.commit()
        self.db.refresh(record)
        return record

    def update(
        self,
        model: Type[ModelT],
        entity_id: int,
        fields: Dict[str, Any],
        actor_id: int
    ) -> ModelT:
        """Partial update; raises NotFound when the record is absent."""
        record = self.store.update(model, entity_id, fields, commit=False)
        if record is None:
            raise NotFound(f"{KIND_LABELS[model]} not found")

        self.activity_log.record(
            actor_id, ActivityType.UPDATE,
            f"{KIND_LABELS[model]} {entity_id} updated",
            file_id=_file_id_of(record), commit=False
        )
        self.store.commit()
        self.db.refresh(record)
        return record

    def delete(self, model: Type[ModelT], entity_id: int, actor_id: int) -> None:
        """
        Remove a record; raises NotFound when absent.

        References to it elsewhere are left dangling.
        """
        if not self.store.delete(model, entity_id):
            raise NotFound(f"{KIND_LABELS[model]} not found")

        self.activity_log.record(
            actor_id, ActivityType.DELETE,
            f"{KIND_LABELS[model]} {entity_id} deleted",
            file_id=entity_id if model is CaseFile else None
        )

    def add_comment(self, file_id: int, user_id: int, text: str) -> Comment:
        """Comment on a case file; the author is the actor."""
        if self.store.get(CaseFile, file_id) is None:
            raise NotFound("File not found")
        if self.store.get(User, user_id) is None:
            raise NotFound("User not found")

        comment = self.store.create(
            Comment, {"file_id": file_id, "user_id": user_id, "text": text}, commit=False
        )
        self.activity_log.record(
            user_id, ActivityType.COMMENT,
            f"Comment added to file {file_id}",
            file_id=file_id, commit=False
        )
        self.store.commit()
        self.db.refresh(comment)
        return comment

    def delete_comment(self, comment_id: int, actor_id: int) -> None:
        comment = self.store.get(Comment, comment_id)
        if comment is None:
            raise NotFound("Comment not found")

        file_id = comment.file_id
        self.store.delete(Comment, comment_id)
        self.activity_log.record(
            actor_id, ActivityType.COMMENT_DELETE,
            f"Comment deleted from file {file_id}",
            file_id=file_id
        )


def ensure_admin_user(db: Session) -> User:
    """Seed the implicit admin identity when the users table is empty."""
    store = EntityStore(db)
    existing = db.query(User).order_by(User.id).first()
    if existing is not None:
        return existing

    admin = store.create(User, dict(DEFAULT_ADMIN))
    logger.info(f"Seeded default admin user (id={admin.id})")
    return admin
