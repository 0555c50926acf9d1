"""Domain models - the people, companies, case files and their documents."""
from sqlalchemy import Column, String, Integer, DateTime, Text, Enum as SQLEnum
from apprentice_tracker.database import Base, utcnow
from apprentice_tracker.models.enums import PipelineStage, DocumentType

# Deleted ids are never handed out again on SQLite (Postgres sequences never reuse)
_NO_ID_REUSE = {"sqlite_autoincrement": True}


class User(Base):
    """Back-office user. Password is stored as given; there is no login flow."""
    __tablename__ = "users"
    __table_args__ = _NO_ID_REUSE

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    username = Column(String, nullable=False, unique=True)
    password = Column(String, nullable=False)
    full_name = Column(String, nullable=False)
    role = Column(String, nullable=False, default="user")
    avatar_url = Column(String, nullable=True)


class Apprentice(Base):
    """
    The apprentice being placed.

    Identity fields may be filled in later from an ID document, but only
    where they are still blank.
    """
    __tablename__ = "apprentices"
    __table_args__ = _NO_ID_REUSE

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    first_name = Column(String, nullable=False)
    last_name = Column(String, nullable=False)
    email = Column(String, nullable=False)
    phone = Column(String, nullable=True)
    birth_date = Column(String, nullable=True)  # ISO date as entered/extracted
    address = Column(String, nullable=True)
    education = Column(String, nullable=True)

    created_at = Column(DateTime, nullable=False, default=utcnow)


class Company(Base):
    """Host company."""
    __tablename__ = "companies"
    __table_args__ = _NO_ID_REUSE

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    name = Column(String, nullable=False)
    siret = Column(String, nullable=True)
    address = Column(String, nullable=True)
    email = Column(String, nullable=True)
    phone = Column(String, nullable=True)

    created_at = Column(DateTime, nullable=False, default=utcnow)


class Mentor(Base):
    """
    Mentor at the host company.

    company_id is a weak reference: deleting the company leaves it dangling.
    """
    __tablename__ = "mentors"
    __table_args__ = _NO_ID_REUSE

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    first_name = Column(String, nullable=False)
    last_name = Column(String, nullable=False)
    position = Column(String, nullable=True)
    email = Column(String, nullable=True)
    phone = Column(String, nullable=True)
    experience = Column(String, nullable=True)
    company_id = Column(Integer, nullable=True, index=True)

    created_at = Column(DateTime, nullable=False, default=utcnow)


class CaseFile(Base):
    """
    A placement case file moving through the five pipeline stages.

    Invariants:
    - stage is always one of the five pipeline stages
    - updated_at never goes backwards and moves on every mutation
    - apprentice/company/mentor ids are not foreign keys; they may dangle
    """
    __tablename__ = "case_files"
    __table_args__ = _NO_ID_REUSE

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    apprentice_id = Column(Integer, nullable=False, index=True)
    company_id = Column(Integer, nullable=False)
    mentor_id = Column(Integer, nullable=False)
    stage = Column(SQLEnum(PipelineStage), nullable=False, default=PipelineStage.REQUEST, index=True)

    # Contract metadata, free text as entered
    start_date = Column(String, nullable=True)
    end_date = Column(String, nullable=True)
    duration = Column(String, nullable=True)
    salary = Column(String, nullable=True)
    work_hours = Column(String, nullable=True)

    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow)


class Document(Base):
    """
    An uploaded document attached to a case file.

    extracted_data holds the JSON extraction result, or a
    {"extracted": false, "timestamp": ...} sentinel when extraction was
    requested but produced nothing.
    """
    __tablename__ = "documents"
    __table_args__ = _NO_ID_REUSE

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    file_id = Column(Integer, nullable=False, index=True)
    name = Column(String, nullable=False)
    type = Column(SQLEnum(DocumentType), nullable=False)
    path = Column(String, nullable=False)
    extracted_data = Column(Text, nullable=True)

    uploaded_at = Column(DateTime, nullable=False, default=utcnow)


class Comment(Base):
    """Free-text note on a case file."""
    __tablename__ = "comments"
    __table_args__ = _NO_ID_REUSE

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    file_id = Column(Integer, nullable=False, index=True)
    user_id = Column(Integer, nullable=False)
    text = Column(Text, nullable=False)

    created_at = Column(DateTime, nullable=False, default=utcnow)
