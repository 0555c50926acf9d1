"""Pytest configuration and shared fixtures."""
import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from apprentice_tracker.database import Base
from apprentice_tracker.models.domain import Apprentice, Company, Mentor, CaseFile
from apprentice_tracker.models.activity import Activity  # noqa: F401  (registers the table)
from apprentice_tracker.models.enums import PipelineStage
from apprentice_tracker.services.entity_store import EntityStore
from apprentice_tracker.services.errors import ExtractionFailed
from apprentice_tracker.services.file_storage import UploadStorage
from apprentice_tracker.services.ingestion import DocumentIngestion
from apprentice_tracker.services.locks import EntityLocks
from apprentice_tracker.services.ocr import IdentityFields
from apprentice_tracker.services.records import ensure_admin_user

# Smallest things the extractor accepts as PNG / JPEG
PNG_BYTES = b"\x89PNG\r\n\x1a\n" + b"\x00" * 64
JPEG_BYTES = b"\xff\xd8\xff\xe0" + b"\x00" * 64

MAX_UPLOAD_BYTES = 10 * 1024 * 1024


class FakeExtractor:
    """Stands in for the Mistral client: returns `result` or raises `error`."""

    def __init__(self, result=None, error=None):
        self.result = result if result is not None else IdentityFields()
        self.error = error
        self.calls = []

    def extract(self, content, mime_type):
        self.calls.append((content, mime_type))
        if self.error is not None:
            raise self.error
        return self.result

    @classmethod
    def returning(cls, **fields):
        return cls(result=IdentityFields(**fields))

    @classmethod
    def failing(cls, message="Mistral API request timed out"):
        return cls(error=ExtractionFailed(message))


@pytest.fixture
def db_session():
    """Create a fresh in-memory database for each test."""
    # One shared connection so the API client's worker threads see the same database
    engine = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)

    TestingSessionLocal = sessionmaker(bind=engine)
    session = TestingSessionLocal()

    yield session

    session.close()


@pytest.fixture
def store(db_session):
    return EntityStore(db_session)


@pytest.fixture
def admin_user(db_session):
    return ensure_admin_user(db_session)


@pytest.fixture
def sample_apprentice(store):
    """Apprentice with names filled in and no address or birth date."""
    return store.create(Apprentice, {
        "first_name": "Alice",
        "last_name": "Martin",
        "email": "alice.martin@example.fr",
    })


@pytest.fixture
def sample_company(store):
    return store.create(Company, {"name": "Boulangerie Dupont", "siret": "12345678900011"})


@pytest.fixture
def sample_mentor(store, sample_company):
    return store.create(Mentor, {
        "first_name": "Jean",
        "last_name": "Dupont",
        "email": "jean.dupont@example.fr",
        "company_id": sample_company.id,
    })


@pytest.fixture
def sample_file(store, admin_user, sample_apprentice, sample_company, sample_mentor):
    """Case file in REQUEST referencing the sample apprentice, company and mentor."""
    return store.create(CaseFile, {
        "apprentice_id": sample_apprentice.id,
        "company_id": sample_company.id,
        "mentor_id": sample_mentor.id,
        "stage": PipelineStage.REQUEST,
    })


@pytest.fixture
def uploads(tmp_path):
    return UploadStorage(str(tmp_path / "uploads"))


@pytest.fixture
def make_ingestion(db_session, uploads):
    """Build a DocumentIngestion around a given extractor."""
    def _make(extractor):
        return DocumentIngestion(
            db_session, extractor, uploads, MAX_UPLOAD_BYTES, locks=EntityLocks()
        )
    return _make
