"""
Document upload and identity extraction endpoints
=================================================

Multipart endpoints. The upload is read at most one byte past the size
limit so an oversized body is rejected without buffering all of it.
"""
from pathlib import Path
from typing import List, Optional

from fastapi import APIRouter, Depends, File, Form, Response, UploadFile, status
from sqlalchemy.orm import Session

from apprentice_tracker.config import Settings, get_settings
from apprentice_tracker.database import get_db
from apprentice_tracker.models.domain import Document
from apprentice_tracker.models.enums import DocumentType
from apprentice_tracker.services.entity_store import EntityStore
from apprentice_tracker.services.errors import NotFound, ValidationError
from apprentice_tracker.services.ingestion import DocumentIngestion
from apprentice_tracker.services.ocr import IdentityFields, detect_image_mime
from apprentice_tracker.api.dependencies import get_actor_id, get_ingestion
from apprentice_tracker.api.schemas import (
    ApprenticeResponse,
    DocumentResponse,
    ErrorResponse,
    ExtractionResponse,
    IdentityFieldsResponse,
    IdentityIngestionResponse,
    MentorResponse,
)

router = APIRouter(tags=["documents"])

ERRORS = {
    400: {"model": ErrorResponse},
    404: {"model": ErrorResponse},
    502: {"model": ErrorResponse},
}


def _read_upload(upload: Optional[UploadFile], settings: Settings) -> bytes:
    if upload is None:
        raise ValidationError("No file uploaded")
    return upload.file.read(settings.max_upload_bytes + 1)


def _fields_out(fields: IdentityFields) -> IdentityFieldsResponse:
    return IdentityFieldsResponse(**fields.model_dump())


@router.get("/documents", response_model=List[DocumentResponse])
def list_documents(file_id: Optional[int] = None, db: Session = Depends(get_db)):
    """All documents, or those of one case file."""
    store = EntityStore(db)
    if file_id is not None:
        return store.list(Document, Document.file_id == file_id)
    return store.list(Document)


@router.get("/documents/{document_id}", response_model=DocumentResponse, responses=ERRORS)
def get_document(document_id: int, db: Session = Depends(get_db)):
    document = EntityStore(db).get(Document, document_id)
    if document is None:
        raise NotFound("Document not found")
    return document


@router.get("/documents/{document_id}/download", responses=ERRORS)
def download_document(document_id: int, ingestion: DocumentIngestion = Depends(get_ingestion)):
    document, content = ingestion.read_document(document_id)
    media_type = detect_image_mime(content) or "application/octet-stream"
    filename = Path(document.path).name
    return Response(
        content=content,
        media_type=media_type,
        headers={"Content-Disposition": f'attachment; filename="{filename}"'},
    )


@router.post("/documents", response_model=DocumentResponse, status_code=status.HTTP_201_CREATED, responses=ERRORS)
def upload_document(
    file_id: int = Form(...),
    type: str = Form(...),
    name: Optional[str] = Form(None),
    extract_data: bool = Form(False),
    file: Optional[UploadFile] = File(None),
    ingestion: DocumentIngestion = Depends(get_ingestion),
    settings: Settings = Depends(get_settings),
    actor_id: int = Depends(get_actor_id)
):
    """
    Upload a document to a case file.

    With extract_data on an ID_CARD or PASSPORT, blank apprentice fields are
    filled from the document. A failed extraction does not fail the upload.
    """
    content = _read_upload(file, settings)
    return ingestion.attach_document(
        file_id=file_id,
        document_type=type,
        name=name or file.filename,
        content=content,
        extract=extract_data,
        actor_id=actor_id,
    )


@router.delete("/documents/{document_id}", status_code=status.HTTP_204_NO_CONTENT, responses=ERRORS)
def delete_document(
    document_id: int,
    ingestion: DocumentIngestion = Depends(get_ingestion),
    actor_id: int = Depends(get_actor_id)
):
    ingestion.delete_document(document_id, actor_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


def _person_type(apprentice_id: Optional[int], mentor_id: Optional[int], person_type: Optional[str]) -> str:
    """Exactly one of apprentice_id / mentor_id; person_type, if sent, must agree."""
    if (apprentice_id is None) == (mentor_id is None):
        raise ValidationError("Provide exactly one of apprentice_id or mentor_id")
    resolved = "apprentice" if apprentice_id is not None else "mentor"
    if person_type is not None and person_type != resolved:
        raise ValidationError(f"person_type {person_type!r} does not match the id provided")
    return resolved


@router.post("/extract-id-card", response_model=IdentityIngestionResponse, responses=ERRORS)
def extract_id_card(
    apprentice_id: Optional[int] = Form(None),
    mentor_id: Optional[int] = Form(None),
    person_type: Optional[str] = Form(None),
    type: str = Form(DocumentType.ID_CARD.value),
    name: Optional[str] = Form(None),
    file: Optional[UploadFile] = File(None),
    ingestion: DocumentIngestion = Depends(get_ingestion),
    settings: Settings = Depends(get_settings),
    actor_id: int = Depends(get_actor_id)
):
    """
    Read an ID card or passport straight onto an apprentice or a mentor.

    For an apprentice the document is filed on their case file. For a mentor
    only blank first/last names are filled. Extraction failure fails the
    request (502) and nothing is written.
    """
    resolved = _person_type(apprentice_id, mentor_id, person_type)
    content = _read_upload(file, settings)

    if resolved == "mentor":
        mentor_summary = ingestion.ingest_mentor_identity(
            mentor_id=mentor_id,
            content=content,
            actor_id=actor_id,
            document_type=type,
        )
        return IdentityIngestionResponse(
            message="ID card information extracted successfully",
            person_type=resolved,
            mentor=MentorResponse.model_validate(mentor_summary.mentor),
            updated_fields=mentor_summary.updated_fields,
            extracted=_fields_out(mentor_summary.extracted),
        )

    summary = ingestion.ingest_identity_document(
        apprentice_id=apprentice_id,
        content=content,
        actor_id=actor_id,
        document_type=type,
        name=name or file.filename,
    )
    return IdentityIngestionResponse(
        message="ID card information extracted successfully",
        person_type=resolved,
        apprentice=ApprenticeResponse.model_validate(summary.apprentice),
        file_id=summary.case_file.id,
        file_created=summary.file_created,
        document=DocumentResponse.model_validate(summary.document),
        updated_fields=summary.updated_fields,
        extracted=_fields_out(summary.extracted),
    )


@router.post("/ocr/extract-id", response_model=ExtractionResponse, responses=ERRORS)
def extract_id(
    file: Optional[UploadFile] = File(None),
    ingestion: DocumentIngestion = Depends(get_ingestion),
    settings: Settings = Depends(get_settings)
):
    """Extraction preview: returns the fields, stores nothing."""
    content = _read_upload(file, settings)
    fields = ingestion.extract_identity(content)
    return ExtractionResponse(
        message="ID card information extracted successfully",
        data=_fields_out(fields),
    )
