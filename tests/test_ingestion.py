"""
Tests for document ingestion and fill-if-blank enrichment.

Attaching to a case file degrades gracefully when extraction fails;
ingesting straight onto an apprentice does not.
"""
import json
import threading
from pathlib import Path

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from apprentice_tracker.database import Base
from apprentice_tracker.models.activity import Activity
from apprentice_tracker.models.domain import Apprentice, CaseFile, Company, Document, Mentor, User
from apprentice_tracker.models.enums import ActivityType, DocumentType, PipelineStage
from apprentice_tracker.services.errors import ExtractionFailed, NotFound, StorageError, ValidationError
from apprentice_tracker.services.entity_store import EntityStore
from apprentice_tracker.services.ingestion import (
    MENTOR_RECONCILED_FIELDS,
    PLACEHOLDER_REFERENCE_ID,
    DocumentIngestion,
    fill_if_blank,
)
from apprentice_tracker.services.locks import EntityLocks
from apprentice_tracker.services.ocr import IdentityFields

from conftest import FakeExtractor, JPEG_BYTES, MAX_UPLOAD_BYTES, PNG_BYTES


def _count(db_session, activity_type):
    return db_session.query(Activity).filter(
        Activity.activity_type == activity_type.value
    ).count()


class TestFillIfBlank:
    """The merge policy on its own."""

    def test_never_overwrites_populated_field(self):
        apprentice = Apprentice(first_name="Alice", last_name="Martin", email="a@x.fr")

        changed = fill_if_blank(apprentice, IdentityFields(first_name="Bob"))

        assert changed == []
        assert apprentice.first_name == "Alice"

    def test_fills_blank_and_empty_fields(self):
        apprentice = Apprentice(first_name="", last_name="Martin", email="a@x.fr", address="  ")

        changed = fill_if_blank(apprentice, IdentityFields(
            first_name="ALICE", birth_date="2004-05-17", address="12 Rue de Paris"
        ))

        assert changed == ["first_name", "birth_date", "address"]
        assert apprentice.first_name == "ALICE"
        assert apprentice.birth_date == "2004-05-17"
        assert apprentice.address == "12 Rue de Paris"

    def test_is_idempotent(self):
        apprentice = Apprentice(first_name="", last_name="", email="a@x.fr")
        fields = IdentityFields(first_name="ALICE", last_name="MARTIN", address="12 Rue de Paris")

        first = fill_if_blank(apprentice, fields)
        snapshot = (apprentice.first_name, apprentice.last_name, apprentice.address)
        second = fill_if_blank(apprentice, fields)

        assert first == ["first_name", "last_name", "address"]
        assert second == []
        assert (apprentice.first_name, apprentice.last_name, apprentice.address) == snapshot

    def test_ignores_fields_outside_the_apprentice_record(self):
        apprentice = Apprentice(first_name="A", last_name="B", email="a@x.fr")

        changed = fill_if_blank(apprentice, IdentityFields(id_number="X123", nationality="FR"))

        assert changed == []


class TestAttachDocument:
    """Upload to an existing case file."""

    def test_extraction_fills_blank_address(self, db_session, make_ingestion, sample_file, sample_apprentice, admin_user):
        """Scenario: ID card upload with extraction fills the blank address."""
        ingestion = make_ingestion(FakeExtractor.returning(address="12 Rue de Paris"))

        document = ingestion.attach_document(
            sample_file.id, "ID_CARD", "cni.png", PNG_BYTES, extract=True, actor_id=admin_user.id
        )

        db_session.refresh(sample_apprentice)
        assert sample_apprentice.address == "12 Rue de Paris"
        assert document.file_id == sample_file.id
        assert document.type == DocumentType.ID_CARD
        assert json.loads(document.extracted_data) == {"address": "12 Rue de Paris"}
        assert db_session.query(Document).count() == 1
        assert _count(db_session, ActivityType.OCR_UPDATE) == 1
        assert _count(db_session, ActivityType.DOCUMENT_UPLOAD) == 1

    def test_second_upload_does_not_overwrite(self, db_session, make_ingestion, sample_file, sample_apprentice, admin_user):
        """Scenario: a later extraction with a different address leaves the first one."""
        make_ingestion(FakeExtractor.returning(address="12 Rue de Paris")).attach_document(
            sample_file.id, "ID_CARD", "cni.png", PNG_BYTES, extract=True, actor_id=admin_user.id
        )

        second = make_ingestion(FakeExtractor.returning(address="Other Address")).attach_document(
            sample_file.id, "ID_CARD", "cni-verso.png", PNG_BYTES, extract=True, actor_id=admin_user.id
        )

        db_session.refresh(sample_apprentice)
        assert sample_apprentice.address == "12 Rue de Paris"
        assert second.id is not None
        assert db_session.query(Document).count() == 2
        assert _count(db_session, ActivityType.OCR_UPDATE) == 1
        assert _count(db_session, ActivityType.DOCUMENT_UPLOAD) == 2

    def test_extraction_failure_still_uploads(self, db_session, make_ingestion, sample_file, sample_apprentice, admin_user):
        """Extraction failure is logged and swallowed; the sentinel is stored."""
        ingestion = make_ingestion(FakeExtractor.failing())

        document = ingestion.attach_document(
            sample_file.id, "PASSPORT", "passeport.jpg", JPEG_BYTES, extract=True, actor_id=admin_user.id
        )

        sentinel = json.loads(document.extracted_data)
        assert sentinel["extracted"] is False
        assert "timestamp" in sentinel
        db_session.refresh(sample_apprentice)
        assert sample_apprentice.address is None
        assert _count(db_session, ActivityType.OCR_UPDATE) == 0
        assert _count(db_session, ActivityType.DOCUMENT_UPLOAD) == 1

    def test_non_identity_type_is_never_extracted(self, make_ingestion, sample_file, admin_user):
        extractor = FakeExtractor.returning(address="12 Rue de Paris")

        document = make_ingestion(extractor).attach_document(
            sample_file.id, "CONTRACT", "contrat.png", PNG_BYTES, extract=True, actor_id=admin_user.id
        )

        assert extractor.calls == []
        assert json.loads(document.extracted_data)["extracted"] is False

    def test_extraction_not_requested(self, make_ingestion, sample_file, admin_user):
        extractor = FakeExtractor.returning(address="12 Rue de Paris")

        document = make_ingestion(extractor).attach_document(
            sample_file.id, "ID_CARD", "cni.png", PNG_BYTES, extract=False, actor_id=admin_user.id
        )

        assert extractor.calls == []
        assert document.extracted_data is None

    def test_non_image_skips_extraction(self, make_ingestion, sample_file, admin_user):
        extractor = FakeExtractor.returning(address="12 Rue de Paris")

        document = make_ingestion(extractor).attach_document(
            sample_file.id, "ID_CARD", "cni.pdf", b"%PDF-1.7 ...", extract=True, actor_id=admin_user.id
        )

        assert extractor.calls == []
        assert json.loads(document.extracted_data)["extracted"] is False

    def test_bytes_are_stored_under_unique_paths(self, make_ingestion, sample_file, admin_user):
        ingestion = make_ingestion(FakeExtractor())

        first = ingestion.attach_document(
            sample_file.id, "OTHER", "scan.png", PNG_BYTES, extract=False, actor_id=admin_user.id
        )
        second = ingestion.attach_document(
            sample_file.id, "OTHER", "scan.png", JPEG_BYTES, extract=False, actor_id=admin_user.id
        )

        assert first.path != second.path
        assert Path(first.path).read_bytes() == PNG_BYTES
        assert Path(second.path).read_bytes() == JPEG_BYTES
        assert Path(first.path).name.endswith("-scan.png")

    def test_missing_file_has_no_side_effects(self, db_session, make_ingestion, admin_user, uploads):
        extractor = FakeExtractor.returning(address="12 Rue de Paris")

        with pytest.raises(NotFound):
            make_ingestion(extractor).attach_document(
                999, "ID_CARD", "cni.png", PNG_BYTES, extract=True, actor_id=admin_user.id
            )

        assert extractor.calls == []
        assert db_session.query(Document).count() == 0
        assert db_session.query(Activity).count() == 0
        assert not uploads.root.exists()

    @pytest.mark.parametrize("doc_type, name, content", [
        ("DRIVING_LICENCE", "x.png", PNG_BYTES),
        ("ID_CARD", "", PNG_BYTES),
        ("ID_CARD", "x.png", b""),
        ("ID_CARD", "x.png", b"\x00" * (MAX_UPLOAD_BYTES + 1)),
    ])
    def test_invalid_input_rejected(self, db_session, make_ingestion, sample_file, admin_user, doc_type, name, content):
        with pytest.raises(ValidationError):
            make_ingestion(FakeExtractor()).attach_document(
                sample_file.id, doc_type, name, content, extract=True, actor_id=admin_user.id
            )

        assert db_session.query(Document).count() == 0
        assert db_session.query(Activity).count() == 0

    def test_dangling_apprentice_skips_reconciliation(self, db_session, store, make_ingestion, sample_file, sample_apprentice, admin_user):
        store.delete(Apprentice, sample_apprentice.id)

        document = make_ingestion(FakeExtractor.returning(address="12 Rue de Paris")).attach_document(
            sample_file.id, "ID_CARD", "cni.png", PNG_BYTES, extract=True, actor_id=admin_user.id
        )

        assert document.id is not None
        assert _count(db_session, ActivityType.OCR_UPDATE) == 0

    def test_storage_failure_is_fatal(self, db_session, make_ingestion, sample_file, admin_user, monkeypatch):
        ingestion = make_ingestion(FakeExtractor())

        def broken_save(name, content):
            raise StorageError("Failed to store uploaded file")

        monkeypatch.setattr(ingestion.uploads, "save", broken_save)

        with pytest.raises(StorageError):
            ingestion.attach_document(
                sample_file.id, "OTHER", "scan.png", PNG_BYTES, extract=False, actor_id=admin_user.id
            )
        assert db_session.query(Document).count() == 0

    def test_delete_document_removes_bytes_and_logs(self, db_session, make_ingestion, sample_file, admin_user):
        ingestion = make_ingestion(FakeExtractor())
        document = ingestion.attach_document(
            sample_file.id, "OTHER", "scan.png", PNG_BYTES, extract=False, actor_id=admin_user.id
        )
        path = document.path

        ingestion.delete_document(document.id, admin_user.id)

        assert not Path(path).exists()
        assert db_session.query(Document).count() == 0
        assert _count(db_session, ActivityType.DOCUMENT_DELETE) == 1

        with pytest.raises(NotFound):
            ingestion.delete_document(document.id, admin_user.id)


class TestIngestIdentityDocument:
    """Upload straight onto an apprentice."""

    def test_extraction_failure_fails_everything(self, db_session, make_ingestion, sample_apprentice, admin_user, uploads):
        """Scenario: no document, no case file, no activity when extraction fails."""
        with pytest.raises(ExtractionFailed):
            make_ingestion(FakeExtractor.failing()).ingest_identity_document(
                sample_apprentice.id, PNG_BYTES, admin_user.id
            )

        assert db_session.query(Document).count() == 0
        assert db_session.query(CaseFile).count() == 0
        assert db_session.query(Activity).count() == 0
        assert not uploads.root.exists()

    def test_creates_case_file_with_placeholders(self, db_session, make_ingestion, sample_apprentice, admin_user):
        summary = make_ingestion(FakeExtractor.returning(
            first_name="BOB", birth_date="2004-05-17", address="12 Rue de Paris"
        )).ingest_identity_document(sample_apprentice.id, PNG_BYTES, admin_user.id)

        assert summary.updated_fields == ["birth_date", "address"]
        assert summary.apprentice.first_name == "Alice"
        assert summary.apprentice.address == "12 Rue de Paris"
        assert summary.file_created is True
        assert summary.case_file.apprentice_id == sample_apprentice.id
        assert summary.case_file.stage == PipelineStage.REQUEST
        assert summary.case_file.company_id == PLACEHOLDER_REFERENCE_ID
        assert summary.case_file.mentor_id == PLACEHOLDER_REFERENCE_ID
        assert summary.document.file_id == summary.case_file.id
        assert summary.document.type == DocumentType.ID_CARD
        assert _count(db_session, ActivityType.OCR_UPDATE) == 1
        assert _count(db_session, ActivityType.CREATE) == 1
        assert _count(db_session, ActivityType.DOCUMENT_UPLOAD) == 1

    def test_placeholders_use_existing_company_and_mentor(self, store, make_ingestion, sample_apprentice, admin_user):
        company = store.create(Company, {"name": "Première"})
        store.create(Mentor, {"first_name": "X", "last_name": "Y"})
        mentor = store.create(Mentor, {"first_name": "M", "last_name": "N", "company_id": company.id})

        summary = make_ingestion(FakeExtractor.returning(address="1 rue")).ingest_identity_document(
            sample_apprentice.id, PNG_BYTES, admin_user.id
        )

        assert summary.case_file.company_id == company.id
        assert summary.case_file.mentor_id == mentor.id

    def test_reuses_existing_case_file(self, db_session, make_ingestion, sample_file, sample_apprentice, admin_user):
        summary = make_ingestion(FakeExtractor.returning(address="12 Rue de Paris")).ingest_identity_document(
            sample_apprentice.id, JPEG_BYTES, admin_user.id, document_type="PASSPORT"
        )

        assert summary.file_created is False
        assert summary.case_file.id == sample_file.id
        assert summary.document.type == DocumentType.PASSPORT
        assert db_session.query(CaseFile).count() == 1
        ocr = db_session.query(Activity).filter(
            Activity.activity_type == ActivityType.OCR_UPDATE.value
        ).one()
        assert ocr.file_id == sample_file.id

    def test_nothing_to_fill_logs_no_ocr_update(self, db_session, make_ingestion, sample_file, sample_apprentice, admin_user):
        summary = make_ingestion(FakeExtractor.returning(first_name="BOB")).ingest_identity_document(
            sample_apprentice.id, PNG_BYTES, admin_user.id
        )

        assert summary.updated_fields == []
        assert _count(db_session, ActivityType.OCR_UPDATE) == 0
        assert _count(db_session, ActivityType.DOCUMENT_UPLOAD) == 1

    def test_missing_apprentice(self, db_session, make_ingestion, admin_user):
        extractor = FakeExtractor.returning(address="x")

        with pytest.raises(NotFound):
            make_ingestion(extractor).ingest_identity_document(999, PNG_BYTES, admin_user.id)

        assert extractor.calls == []
        assert db_session.query(Activity).count() == 0

    @pytest.mark.parametrize("doc_type, content", [
        ("CONTRACT", PNG_BYTES),
        ("ID_CARD", b"%PDF-1.7"),
        ("ID_CARD", b""),
    ])
    def test_invalid_input_rejected(self, db_session, make_ingestion, sample_apprentice, admin_user, doc_type, content):
        extractor = FakeExtractor.returning(address="x")

        with pytest.raises(ValidationError):
            make_ingestion(extractor).ingest_identity_document(
                sample_apprentice.id, content, admin_user.id, document_type=doc_type
            )

        assert extractor.calls == []

    def test_extract_identity_stores_nothing(self, db_session, make_ingestion):
        fields = make_ingestion(FakeExtractor.returning(last_name="MARTIN")).extract_identity(PNG_BYTES)

        assert fields.last_name == "MARTIN"
        assert db_session.query(Document).count() == 0
        assert db_session.query(Activity).count() == 0


class TestIngestMentorIdentity:
    """ID documents read onto a mentor: names only, no case file."""

    def test_fills_blank_names_only(self, db_session, store, make_ingestion, admin_user):
        mentor = store.create(Mentor, {"first_name": "", "last_name": "Dupont"})

        summary = make_ingestion(FakeExtractor.returning(
            first_name="JEAN", last_name="DURAND", address="12 Rue de Paris"
        )).ingest_mentor_identity(mentor.id, PNG_BYTES, admin_user.id)

        assert summary.updated_fields == ["first_name"]
        assert summary.mentor.first_name == "JEAN"
        assert summary.mentor.last_name == "Dupont"
        activity = db_session.query(Activity).filter(
            Activity.activity_type == ActivityType.OCR_UPDATE.value
        ).one()
        assert activity.file_id is None
        assert activity.description.startswith("Mentor")
        assert db_session.query(Document).count() == 0
        assert db_session.query(CaseFile).count() == 0

    def test_nothing_to_fill_logs_nothing(self, db_session, make_ingestion, sample_mentor, admin_user):
        summary = make_ingestion(FakeExtractor.returning(
            first_name="PAUL", last_name="DURAND"
        )).ingest_mentor_identity(sample_mentor.id, PNG_BYTES, admin_user.id)

        assert summary.updated_fields == []
        assert summary.mentor.first_name == "Jean"
        assert db_session.query(Activity).count() == 0

    def test_only_names_are_reconciled(self):
        assert MENTOR_RECONCILED_FIELDS == ("first_name", "last_name")

    def test_extraction_failure_writes_nothing(self, db_session, store, make_ingestion, admin_user):
        mentor = store.create(Mentor, {"first_name": "", "last_name": ""})

        with pytest.raises(ExtractionFailed):
            make_ingestion(FakeExtractor.failing()).ingest_mentor_identity(
                mentor.id, PNG_BYTES, admin_user.id
            )

        db_session.refresh(mentor)
        assert mentor.first_name == ""
        assert db_session.query(Activity).count() == 0

    def test_missing_mentor(self, make_ingestion, admin_user):
        extractor = FakeExtractor.returning(first_name="JEAN")

        with pytest.raises(NotFound):
            make_ingestion(extractor).ingest_mentor_identity(999, PNG_BYTES, admin_user.id)

        assert extractor.calls == []

    def test_non_image_rejected(self, make_ingestion, sample_mentor, admin_user):
        with pytest.raises(ValidationError):
            make_ingestion(FakeExtractor()).ingest_mentor_identity(
                sample_mentor.id, b"%PDF-1.7", admin_user.id
            )


class LockRecordingExtractor(FakeExtractor):
    """Notes whether the apprentice's lock was held while extracting."""

    def __init__(self, locks, apprentice_id, **fields):
        super().__init__(result=IdentityFields(**fields))
        self.locks = locks
        self.apprentice_id = apprentice_id
        self.held_during_extract = []

    def extract(self, content, mime_type):
        self.held_during_extract.append(self.locks.is_held("apprentice", self.apprentice_id))
        return super().extract(content, mime_type)


class BarrierExtractor(FakeExtractor):
    """Makes every caller finish extracting together, then race to reconcile."""

    def __init__(self, barrier, address):
        super().__init__(result=IdentityFields(address=address))
        self.barrier = barrier

    def extract(self, content, mime_type):
        self.barrier.wait(timeout=10)
        return super().extract(content, mime_type)


class TestConcurrentReconciliation:
    """Extraction runs unlocked; fill-if-blank under the apprentice lock loses nothing."""

    @pytest.mark.parametrize("mode", ["attach", "direct"])
    def test_apprentice_lock_is_free_during_extraction(self, db_session, uploads, sample_file, sample_apprentice, admin_user, mode):
        locks = EntityLocks()
        extractor = LockRecordingExtractor(locks, sample_apprentice.id, address="12 Rue de Paris")
        ingestion = DocumentIngestion(db_session, extractor, uploads, MAX_UPLOAD_BYTES, locks=locks)

        if mode == "attach":
            ingestion.attach_document(
                sample_file.id, "ID_CARD", "cni.png", PNG_BYTES, extract=True, actor_id=admin_user.id
            )
        else:
            ingestion.ingest_identity_document(sample_apprentice.id, PNG_BYTES, admin_user.id)

        assert extractor.held_during_extract == [False]
        assert len(locks) == 0

    def test_concurrent_uploads_fill_once(self, tmp_path, uploads):
        """
        Eight uploads for the same apprentice, each extracting a different
        address, race to reconcile. Exactly one address wins and exactly one
        OCR_UPDATE is logged.
        """
        engine = create_engine(
            f"sqlite:///{tmp_path / 'race.db'}",
            connect_args={"check_same_thread": False, "timeout": 30},
        )
        Base.metadata.create_all(engine)
        Session = sessionmaker(bind=engine)

        setup = Session()
        seed = EntityStore(setup)
        actor = seed.create(User, {"username": "admin", "password": "x", "full_name": "Admin"})
        apprentice = seed.create(Apprentice, {"first_name": "Alice", "last_name": "Martin", "email": "a@x.fr"})
        case_file = seed.create(CaseFile, {"apprentice_id": apprentice.id, "company_id": 1, "mentor_id": 1})
        actor_id, apprentice_id, file_id = actor.id, apprentice.id, case_file.id
        setup.close()

        workers = 8
        barrier = threading.Barrier(workers)
        locks = EntityLocks()
        errors = []

        def upload(i):
            session = Session()
            try:
                ingestion = DocumentIngestion(
                    session, BarrierExtractor(barrier, f"addr{i}"), uploads, MAX_UPLOAD_BYTES, locks=locks
                )
                ingestion.attach_document(
                    file_id, "ID_CARD", f"cni-{i}.png", PNG_BYTES, extract=True, actor_id=actor_id
                )
            except Exception as exc:
                errors.append(exc)
            finally:
                session.close()

        threads = [threading.Thread(target=upload, args=(i,)) for i in range(workers)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join(timeout=30)

        check = Session()
        try:
            assert errors == []
            address = check.get(Apprentice, apprentice_id).address
            assert address in {f"addr{i}" for i in range(workers)}
            assert check.query(Activity).filter(
                Activity.activity_type == ActivityType.OCR_UPDATE.value
            ).count() == 1
            assert check.query(Document).count() == workers
            assert len(locks) == 0
        finally:
            check.close()
            engine.dispose()


class TestEntityLocks:

    def test_entries_are_dropped_after_release(self):
        locks = EntityLocks()

        with locks.hold("apprentice", 1):
            assert locks.is_held("apprentice", 1)
            assert not locks.is_held("apprentice", 2)
            assert len(locks) == 1

        assert not locks.is_held("apprentice", 1)
        assert len(locks) == 0

    def test_waiter_runs_after_holder(self):
        locks = EntityLocks()
        entered = threading.Event()
        order = []

        def waiter():
            entered.set()
            with locks.hold("case_file", 7):
                order.append("waiter")

        with locks.hold("case_file", 7):
            thread = threading.Thread(target=waiter)
            thread.start()
            entered.wait(timeout=5)
            order.append("holder")
        thread.join(timeout=5)

        assert order == ["holder", "waiter"]
        assert len(locks) == 0
