"""
Document ingestion and identity-field enrichment.

Two entry points:

- attach_document: upload to an existing case file. Extraction is optional
  and a failed extraction only costs the extracted data; the upload goes on.
- ingest_identity_document: upload an ID straight onto an apprentice.
  Extraction is the point of the call, so its failure fails the call. A case
  file is created when the apprentice has none.
- ingest_mentor_identity: read a mentor's ID onto the mentor record. Same
  failure rule; mentors have no case file, so nothing is stored but the
  filled fields.

Extracted fields only ever fill blanks on the apprentice; populated fields
are never overwritten. The extraction call is made before any lock is taken.
"""
import json
import logging
from dataclasses import dataclass, field
from typing import List, Optional, Sequence, Tuple

from sqlalchemy.orm import Session

from apprentice_tracker.database import utcnow
from apprentice_tracker.models.domain import Apprentice, CaseFile, Company, Document, Mentor
from apprentice_tracker.models.enums import (
    ActivityType,
    DocumentType,
    IDENTITY_DOCUMENT_TYPES,
    PipelineStage,
)
from apprentice_tracker.services.activity_log import ActivityLog
from apprentice_tracker.services.entity_store import EntityStore
from apprentice_tracker.services.errors import ExtractionFailed, NotFound, ValidationError
from apprentice_tracker.services.file_storage import UploadStorage
from apprentice_tracker.services.locks import EntityLocks, entity_locks
from apprentice_tracker.services.ocr import (
    IdentityExtractor,
    IdentityFields,
    detect_image_mime,
    require_image,
)

logger = logging.getLogger(__name__)

# Columns an identity document may fill in, per person kind
RECONCILED_FIELDS = ("first_name", "last_name", "birth_date", "address")
MENTOR_RECONCILED_FIELDS = ("first_name", "last_name")

_RECONCILED_BY_KIND = {
    Apprentice: ("apprentice", "Apprentice", RECONCILED_FIELDS),
    Mentor: ("mentor", "Mentor", MENTOR_RECONCILED_FIELDS),
}

# Case files created for an apprentice with none point here when no company/mentor exists yet
PLACEHOLDER_REFERENCE_ID = 0


@dataclass
class IngestionSummary:
    """Outcome of ingest_identity_document."""
    apprentice: Apprentice
    case_file: CaseFile
    document: Document
    extracted: IdentityFields
    updated_fields: List[str] = field(default_factory=list)
    file_created: bool = False


@dataclass
class MentorIdentitySummary:
    """Outcome of ingest_mentor_identity."""
    mentor: Mentor
    extracted: IdentityFields
    updated_fields: List[str] = field(default_factory=list)


def _is_blank(value) -> bool:
    return value is None or (isinstance(value, str) and not value.strip())


def fill_if_blank(
    record,
    fields: IdentityFields,
    names: Sequence[str] = RECONCILED_FIELDS
) -> List[str]:
    """
    Copy extracted values onto the record where its field is blank.

    Returns the names of the fields that changed. Applying the same fields a
    second time changes nothing.
    """
    changed = []
    for name in names:
        extracted = getattr(fields, name)
        if _is_blank(extracted):
            continue
        if _is_blank(getattr(record, name)):
            setattr(record, name, extracted)
            changed.append(name)
    return changed


def not_extracted_sentinel() -> str:
    return json.dumps({"extracted": False, "timestamp": utcnow().isoformat()})


def parse_document_type(value) -> DocumentType:
    if isinstance(value, DocumentType):
        return value
    try:
        return DocumentType(value)
    except ValueError:
        raise ValidationError(
            f"Invalid document type: {value!r}. Expected one of: "
            f"{', '.join(t.value for t in DocumentType)}"
        )


def validate_upload(content: bytes, max_bytes: int) -> None:
    if not content:
        raise ValidationError("No file uploaded")
    if len(content) > max_bytes:
        raise ValidationError(
            f"File too large: the limit is {max_bytes // (1024 * 1024)} MiB"
        )


class DocumentIngestion:
    """Upload, extract, reconcile, persist and log, as one workflow."""

    def __init__(
        self,
        db: Session,
        extractor: IdentityExtractor,
        uploads: UploadStorage,
        max_upload_bytes: int,
        store: Optional[EntityStore] = None,
        activity_log: Optional[ActivityLog] = None,
        locks: Optional[EntityLocks] = None
    ):
        self.db = db
        self.extractor = extractor
        self.uploads = uploads
        self.max_upload_bytes = max_upload_bytes
        self.store = store or EntityStore(db)
        self.activity_log = activity_log or ActivityLog(db, self.store)
        self.locks = locks or entity_locks

    def attach_document(
        self,
        file_id: int,
        document_type,
        name: str,
        content: bytes,
        extract: bool,
        actor_id: int
    ) -> Document:
        """
        Upload a document to an existing case file.

        Side effects, in order:
        - OCR_UPDATE activity, if extraction filled at least one apprentice field
        - the stored bytes and the Document record
        - DOCUMENT_UPLOAD activity

        Raises:
            ValidationError: bad type, missing name, empty or oversized upload
            NotFound: the case file does not exist
            StorageError: bytes or records could not be written
        """
        doc_type = parse_document_type(document_type)
        validate_upload(content, self.max_upload_bytes)
        name = (name or "").strip()
        if not name:
            raise ValidationError("Document name is required")

        case_file = self.store.get(CaseFile, file_id)
        if case_file is None:
            raise NotFound("Associated file not found")

        extraction = None
        if extract and doc_type in IDENTITY_DOCUMENT_TYPES:
            extraction = self._try_extract(content)
            if extraction is not None:
                self._reconcile(
                    Apprentice, case_file.apprentice_id, extraction, actor_id,
                    file_id=case_file.id, missing_ok=True
                )

        if extraction is not None:
            extracted_data = extraction.to_json()
        elif extract:
            extracted_data = not_extracted_sentinel()
        else:
            extracted_data = None

        return self._store_document(
            case_file.id, doc_type, name, content, extracted_data, actor_id
        )

    def ingest_identity_document(
        self,
        apprentice_id: int,
        content: bytes,
        actor_id: int,
        document_type=DocumentType.ID_CARD,
        name: Optional[str] = None
    ) -> IngestionSummary:
        """
        Extract an ID document onto an apprentice and file it.

        Nothing is written unless extraction succeeds. The document goes to the
        apprentice's first case file, or to a new REQUEST-stage one whose
        company/mentor are placeholders (the first company and mentor on
        record, or PLACEHOLDER_REFERENCE_ID) until someone edits it.

        Raises:
            ValidationError: not an identity type, empty/oversized, not JPEG/PNG
            NotFound: the apprentice does not exist
            ExtractionFailed: the extraction call failed
            StorageError: bytes or records could not be written
        """
        doc_type = parse_document_type(document_type)
        if doc_type not in IDENTITY_DOCUMENT_TYPES:
            raise ValidationError("Only ID_CARD and PASSPORT documents can be extracted")
        validate_upload(content, self.max_upload_bytes)
        mime_type = require_image(content)

        apprentice = self.store.get(Apprentice, apprentice_id)
        if apprentice is None:
            raise NotFound("Apprentice not found")

        fields = self.extractor.extract(content, mime_type)

        existing_file = self._first_file_for(apprentice_id)
        updated_fields = self._reconcile(
            Apprentice, apprentice_id, fields, actor_id,
            file_id=existing_file.id if existing_file else None
        )

        case_file, file_created = self._resolve_case_file(apprentice_id, actor_id)
        document_name = (name or "").strip() or f"{doc_type.value.lower()}-apprentice-{apprentice_id}"
        document = self._store_document(
            case_file.id, doc_type, document_name, content, fields.to_json(), actor_id
        )

        return IngestionSummary(
            apprentice=self.store.get(Apprentice, apprentice_id),
            case_file=case_file,
            document=document,
            extracted=fields,
            updated_fields=updated_fields,
            file_created=file_created,
        )

    def ingest_mentor_identity(
        self,
        mentor_id: int,
        content: bytes,
        actor_id: int,
        document_type=DocumentType.ID_CARD
    ) -> MentorIdentitySummary:
        """
        Extract an ID document onto a mentor.

        Only first and last name are filled, and only where blank. An
        OCR_UPDATE activity (no case file) is logged when something changed.

        Raises:
            ValidationError: not an identity type, empty/oversized, not JPEG/PNG
            NotFound: the mentor does not exist
            ExtractionFailed: the extraction call failed
        """
        doc_type = parse_document_type(document_type)
        if doc_type not in IDENTITY_DOCUMENT_TYPES:
            raise ValidationError("Only ID_CARD and PASSPORT documents can be extracted")
        validate_upload(content, self.max_upload_bytes)
        mime_type = require_image(content)

        if self.store.get(Mentor, mentor_id) is None:
            raise NotFound("Mentor not found")

        fields = self.extractor.extract(content, mime_type)
        updated_fields = self._reconcile(Mentor, mentor_id, fields, actor_id)

        return MentorIdentitySummary(
            mentor=self.store.get(Mentor, mentor_id),
            extracted=fields,
            updated_fields=updated_fields,
        )

    def extract_identity(self, content: bytes) -> IdentityFields:
        """Extraction only, nothing is stored. Failures propagate."""
        validate_upload(content, self.max_upload_bytes)
        return self.extractor.extract(content, require_image(content))

    def delete_document(self, document_id: int, actor_id: int) -> None:
        document = self.store.get(Document, document_id)
        if document is None:
            raise NotFound("Document not found")

        file_id, name = document.file_id, document.name
        if not self.uploads.delete(document.path):
            logger.warning(f"Stored bytes for document {document_id} were already gone: {document.path}")
        self.store.delete(Document, document_id)
        self.activity_log.record(
            actor_id, ActivityType.DOCUMENT_DELETE,
            f"Document '{name}' deleted from file {file_id}",
            file_id=file_id
        )

    def read_document(self, document_id: int) -> Tuple[Document, bytes]:
        document = self.store.get(Document, document_id)
        if document is None:
            raise NotFound("Document not found")
        return document, self.uploads.read(document.path)

    def _try_extract(self, content: bytes) -> Optional[IdentityFields]:
        mime_type = detect_image_mime(content)
        if mime_type is None:
            logger.warning("Extraction skipped: upload is not a JPEG or PNG image")
            return None
        try:
            return self.extractor.extract(content, mime_type)
        except ExtractionFailed as exc:
            # Degrade gracefully: the document is still uploaded, just without extracted data
            logger.warning(f"OCR extraction failed, continuing upload without it: {exc.message}")
            return None

    def _reconcile(
        self,
        model,
        entity_id: int,
        fields: IdentityFields,
        actor_id: int,
        file_id: Optional[int] = None,
        missing_ok: bool = False
    ) -> List[str]:
        """Fill-if-blank under the person's lock, on a freshly loaded row."""
        lock_kind, label, names = _RECONCILED_BY_KIND[model]
        with self.locks.hold(lock_kind, entity_id):
            record = self.store.get(model, entity_id, reload=True)
            if record is None:
                if missing_ok:
                    logger.warning(
                        f"{label} {entity_id} referenced by file {file_id} no longer exists; "
                        "extracted fields not applied"
                    )
                    return []
                raise NotFound(f"{label} not found")

            changed = fill_if_blank(record, fields, names)
            if changed:
                self.activity_log.record(
                    actor_id, ActivityType.OCR_UPDATE,
                    f"{label} data updated automatically from ID document",
                    file_id=file_id, commit=False
                )
                self.store.commit()
                logger.info(f"{label} {entity_id} filled from ID document: {', '.join(changed)}")
            return changed

    def _first_file_for(self, apprentice_id: int) -> Optional[CaseFile]:
        files = self.store.list(CaseFile, CaseFile.apprentice_id == apprentice_id)
        return files[0] if files else None

    def _resolve_case_file(self, apprentice_id: int, actor_id: int) -> Tuple[CaseFile, bool]:
        with self.locks.hold("apprentice_files", apprentice_id):
            existing = self._first_file_for(apprentice_id)
            if existing is not None:
                return existing, False

            company = self.db.query(Company).order_by(Company.id).first()
            mentor_query = self.db.query(Mentor)
            if company is not None:
                mentor = (
                    mentor_query.filter(Mentor.company_id == company.id).order_by(Mentor.id).first()
                    or mentor_query.order_by(Mentor.id).first()
                )
            else:
                mentor = mentor_query.order_by(Mentor.id).first()

            case_file = self.store.create(
                CaseFile,
                {
                    "apprentice_id": apprentice_id,
                    "company_id": company.id if company else PLACEHOLDER_REFERENCE_ID,
                    "mentor_id": mentor.id if mentor else PLACEHOLDER_REFERENCE_ID,
                    "stage": PipelineStage.REQUEST,
                },
                commit=False,
            )
            self.activity_log.record(
                actor_id, ActivityType.CREATE,
                f"File created for apprentice {apprentice_id} from identity document",
                file_id=case_file.id, commit=False
            )
            self.store.commit()
            self.db.refresh(case_file)
            return case_file, True

    def _store_document(
        self,
        file_id: int,
        doc_type: DocumentType,
        name: str,
        content: bytes,
        extracted_data: Optional[str],
        actor_id: int
    ) -> Document:
        path = self.uploads.save(name, content)
        document = self.store.create(
            Document,
            {
                "file_id": file_id,
                "name": name,
                "type": doc_type,
                "path": path,
                "extracted_data": extracted_data,
            },
            commit=False,
        )
        self.activity_log.record(
            actor_id, ActivityType.DOCUMENT_UPLOAD,
            f"Document '{name}' uploaded for file {file_id}",
            file_id=file_id, commit=False
        )
        self.store.commit()
        self.db.refresh(document)
        return document
