"""
Entity store - keyed CRUD over every entity kind.

One store wraps one Session. Raw reads tolerate dangling references between
records; the joined case-file read does not.
"""
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Any, Dict, List, Optional, Type, TypeVar

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from apprentice_tracker.database import Base, utcnow
from apprentice_tracker.models.domain import (
    Apprentice,
    CaseFile,
    Comment,
    Company,
    Document,
    Mentor,
    User,
)
from apprentice_tracker.services.errors import StorageError

ModelT = TypeVar("ModelT", bound=Base)


@dataclass
class CommentWithUser:
    comment: Comment
    user: Optional[User]


@dataclass
class FileDetails:
    """A case file with everything it references resolved."""
    file: CaseFile
    apprentice: Apprentice
    company: Company
    mentor: Mentor
    documents: List[Document] = field(default_factory=list)
    comments: List[CommentWithUser] = field(default_factory=list)


def touch(record: Any) -> None:
    """
    Refresh updated_at, never moving it backwards.

    Two mutations inside the same clock tick still get distinct, increasing
    timestamps.
    """
    now = utcnow()
    previous = getattr(record, "updated_at", None)
    if previous is not None and now <= previous:
        now = previous + timedelta(microseconds=1)
    record.updated_at = now


class EntityStore:
    """CRUD and enumeration for every entity kind, keyed by model class."""

    def __init__(self, db: Session):
        self.db = db

    def commit(self) -> None:
        """Commit the pending unit of work, surfacing failures as StorageError."""
        try:
            self.db.commit()
        except SQLAlchemyError as exc:
            self.db.rollback()
            raise StorageError("Failed to persist changes") from exc

    def create(self, model: Type[ModelT], fields: Dict[str, Any], commit: bool = True) -> ModelT:
        """Insert a new record; the database assigns the next id and default timestamps."""
        record = model(**fields)
        self.db.add(record)
        if commit:
            self.commit()
            self.db.refresh(record)
        else:
            try:
                self.db.flush()
            except SQLAlchemyError as exc:
                self.db.rollback()
                raise StorageError("Failed to persist changes") from exc
        return record

    def get(self, model: Type[ModelT], entity_id: int, reload: bool = False) -> Optional[ModelT]:
        """Return the record or None. `reload` discards any cached state first."""
        return self.db.get(model, entity_id, populate_existing=reload)

    def update(
        self,
        model: Type[ModelT],
        entity_id: int,
        fields: Dict[str, Any],
        commit: bool = True
    ) -> Optional[ModelT]:
        """
        Merge the given fields over the record.

        Keys absent from `fields` are left untouched. Kinds that track
        updated_at get it refreshed.
        """
        record = self.get(model, entity_id)
        if record is None:
            return None

        for key, value in fields.items():
            setattr(record, key, value)
        if hasattr(model, "updated_at"):
            touch(record)

        if commit:
            self.commit()
            self.db.refresh(record)
        return record

    def delete(self, model: Type[ModelT], entity_id: int) -> bool:
        """Remove the record. Nothing that points at it is touched."""
        record = self.get(model, entity_id)
        if record is None:
            return False
        self.db.delete(record)
        self.commit()
        return True

    def list(self, model: Type[ModelT], *criteria) -> List[ModelT]:
        """All records matching the SQLAlchemy criteria, in insertion order."""
        query = self.db.query(model)
        if criteria:
            query = query.filter(*criteria)
        return query.order_by(model.id).all()

    def get_file_details(self, file_id: int) -> Optional[FileDetails]:
        """
        Join a case file with its apprentice, company, mentor, documents and comments.

        Returns None when the file or any of its three people/company references
        is missing.
        """
        case_file = self.get(CaseFile, file_id)
        if case_file is None:
            return None

        apprentice = self.get(Apprentice, case_file.apprentice_id)
        company = self.get(Company, case_file.company_id)
        mentor = self.get(Mentor, case_file.mentor_id)
        if apprentice is None or company is None or mentor is None:
            return None

        return FileDetails(
            file=case_file,
            apprentice=apprentice,
            company=company,
            mentor=mentor,
            documents=self.list(Document, Document.file_id == file_id),
            comments=self.comments_for_file(file_id),
        )

    def comments_for_file(self, file_id: int) -> List[CommentWithUser]:
        """Comments on a file, each with its author (None if the user is gone)."""
        return [
            CommentWithUser(comment=comment, user=self.get(User, comment.user_id))
            for comment in self.list(Comment, Comment.file_id == file_id)
        ]
