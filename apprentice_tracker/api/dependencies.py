"""FastAPI dependencies shared by the routers. Tests override these."""
from fastapi import Depends
from sqlalchemy.orm import Session

from apprentice_tracker.config import Settings, get_settings
from apprentice_tracker.database import get_db
from apprentice_tracker.services.file_storage import UploadStorage
from apprentice_tracker.services.ingestion import DocumentIngestion
from apprentice_tracker.services.ocr import IdentityExtractor, MistralIdExtractor


def get_actor_id(settings: Settings = Depends(get_settings)) -> int:
    """The implicit admin identity; every mutation is attributed to it."""
    return settings.admin_user_id


def get_extractor(settings: Settings = Depends(get_settings)) -> IdentityExtractor:
    return MistralIdExtractor.from_settings(settings)


def get_upload_storage(settings: Settings = Depends(get_settings)) -> UploadStorage:
    return UploadStorage(settings.upload_dir)


def get_ingestion(
    db: Session = Depends(get_db),
    extractor: IdentityExtractor = Depends(get_extractor),
    uploads: UploadStorage = Depends(get_upload_storage),
    settings: Settings = Depends(get_settings)
) -> DocumentIngestion:
    return DocumentIngestion(db, extractor, uploads, settings.max_upload_bytes)
