"""Enums for the tracker - these define the valid values for stages, document types and activities."""
from enum import Enum


class PipelineStage(str, Enum):
    """The five stages a case file can be in. No other stages are allowed."""
    REQUEST = "REQUEST"
    CREATED = "CREATED"
    VERIFICATION = "VERIFICATION"
    PROCESSING = "PROCESSING"
    VALIDATED = "VALIDATED"


# Canonical display order, not an enforced transition order
PIPELINE_ORDER = [
    PipelineStage.REQUEST,
    PipelineStage.CREATED,
    PipelineStage.VERIFICATION,
    PipelineStage.PROCESSING,
    PipelineStage.VALIDATED,
]

STAGE_LABELS = {
    PipelineStage.REQUEST: "Demande de dossier",
    PipelineStage.CREATED: "Dossier créé",
    PipelineStage.VERIFICATION: "En cours de vérification",
    PipelineStage.PROCESSING: "En traitement",
    PipelineStage.VALIDATED: "Validé",
}


class DocumentType(str, Enum):
    """Document type tags the UI offers."""
    CERFA = "CERFA"
    ID_CARD = "ID_CARD"
    PASSPORT = "PASSPORT"
    CERTIFICATE = "CERTIFICATE"
    CONTRACT = "CONTRACT"
    OTHER = "OTHER"


# Only these can be sent to the extraction service
IDENTITY_DOCUMENT_TYPES = frozenset({DocumentType.ID_CARD, DocumentType.PASSPORT})


class ActivityType(str, Enum):
    """Activity log entry types."""
    CREATE = "CREATE"
    UPDATE = "UPDATE"
    DELETE = "DELETE"
    STAGE_CHANGE = "STAGE_CHANGE"
    DOCUMENT_UPLOAD = "DOCUMENT_UPLOAD"
    DOCUMENT_DELETE = "DOCUMENT_DELETE"
    COMMENT = "COMMENT"
    COMMENT_DELETE = "COMMENT_DELETE"
    OCR_UPDATE = "OCR_UPDATE"
