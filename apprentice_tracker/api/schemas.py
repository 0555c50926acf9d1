"""Pydantic schemas for request/response validation."""
from datetime import datetime
from typing import Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field

from apprentice_tracker.models.enums import DocumentType, PipelineStage


class ORMModel(BaseModel):
    model_config = ConfigDict(from_attributes=True)


# User schemas
class UserCreate(BaseModel):
    username: str = Field(..., min_length=1, max_length=100)
    password: str = Field(..., min_length=1)
    full_name: str = Field(..., min_length=1)
    role: str = "user"
    avatar_url: Optional[str] = None


class UserResponse(ORMModel):
    """Password is never sent back."""
    id: int
    username: str
    full_name: str
    role: str
    avatar_url: Optional[str]


# Apprentice schemas
class ApprenticeCreate(BaseModel):
    first_name: str = Field(..., min_length=1)
    last_name: str = Field(..., min_length=1)
    email: str = Field(..., min_length=1)
    phone: Optional[str] = None
    birth_date: Optional[str] = None
    address: Optional[str] = None
    education: Optional[str] = None


class ApprenticeUpdate(BaseModel):
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None
    birth_date: Optional[str] = None
    address: Optional[str] = None
    education: Optional[str] = None


class ApprenticeResponse(ORMModel):
    id: int
    first_name: str
    last_name: str
    email: str
    phone: Optional[str]
    birth_date: Optional[str]
    address: Optional[str]
    education: Optional[str]
    created_at: datetime


# Company schemas
class CompanyCreate(BaseModel):
    name: str = Field(..., min_length=1)
    siret: Optional[str] = None
    address: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None


class CompanyUpdate(BaseModel):
    name: Optional[str] = None
    siret: Optional[str] = None
    address: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None


class CompanyResponse(ORMModel):
    id: int
    name: str
    siret: Optional[str]
    address: Optional[str]
    email: Optional[str]
    phone: Optional[str]
    created_at: datetime


# Mentor schemas
class MentorCreate(BaseModel):
    first_name: str = Field(..., min_length=1)
    last_name: str = Field(..., min_length=1)
    position: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None
    experience: Optional[str] = None
    company_id: Optional[int] = None


class MentorUpdate(BaseModel):
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    position: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None
    experience: Optional[str] = None
    company_id: Optional[int] = None


class MentorResponse(ORMModel):
    id: int
    first_name: str
    last_name: str
    position: Optional[str]
    email: Optional[str]
    phone: Optional[str]
    experience: Optional[str]
    company_id: Optional[int]
    created_at: datetime


# Case file schemas
class CaseFileCreate(BaseModel):
    apprentice_id: int
    company_id: int
    mentor_id: int
    stage: PipelineStage = PipelineStage.REQUEST
    start_date: Optional[str] = None
    end_date: Optional[str] = None
    duration: Optional[str] = None
    salary: Optional[str] = None
    work_hours: Optional[str] = None


class CaseFileUpdate(BaseModel):
    """Stage is deliberately absent: it only moves through PUT /files/{id}/stage."""
    apprentice_id: Optional[int] = None
    company_id: Optional[int] = None
    mentor_id: Optional[int] = None
    start_date: Optional[str] = None
    end_date: Optional[str] = None
    duration: Optional[str] = None
    salary: Optional[str] = None
    work_hours: Optional[str] = None


class StageUpdate(BaseModel):
    # Plain str so an unknown stage reaches the state machine and gets its message
    stage: str


class CaseFileResponse(ORMModel):
    id: int
    apprentice_id: int
    company_id: int
    mentor_id: int
    stage: PipelineStage
    start_date: Optional[str]
    end_date: Optional[str]
    duration: Optional[str]
    salary: Optional[str]
    work_hours: Optional[str]
    created_at: datetime
    updated_at: datetime


# Document schemas
class DocumentResponse(ORMModel):
    id: int
    file_id: int
    name: str
    type: DocumentType
    path: str
    extracted_data: Optional[str]
    uploaded_at: datetime


# Comment schemas
class CommentCreate(BaseModel):
    file_id: int
    user_id: int
    text: str = Field(..., min_length=1, max_length=5000)


class CommentResponse(ORMModel):
    id: int
    file_id: int
    user_id: int
    text: str
    created_at: datetime


class CommentWithUserResponse(CommentResponse):
    user: Optional[UserResponse]


# Activity schemas
class ActivityResponse(ORMModel):
    id: int
    user_id: int
    file_id: Optional[int]
    activity_type: str
    description: str
    created_at: datetime
    user: Optional[UserResponse] = None


class FileDetailsResponse(BaseModel):
    file: CaseFileResponse
    apprentice: ApprenticeResponse
    company: CompanyResponse
    mentor: MentorResponse
    documents: List[DocumentResponse]
    comments: List[CommentWithUserResponse]


# Stats
class StatsResponse(BaseModel):
    total_files: int
    files_by_stage: Dict[str, int]
    validated_files: int
    average_processing_time: float


# Extraction
class IdentityFieldsResponse(BaseModel):
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    birth_date: Optional[str] = None
    address: Optional[str] = None
    id_number: Optional[str] = None
    nationality: Optional[str] = None
    gender: Optional[str] = None


class ExtractionResponse(BaseModel):
    message: str
    data: IdentityFieldsResponse


class IdentityIngestionResponse(BaseModel):
    """Apprentice uploads fill apprentice/file/document; mentor uploads only mentor."""
    message: str
    person_type: str
    apprentice: Optional[ApprenticeResponse] = None
    mentor: Optional[MentorResponse] = None
    file_id: Optional[int] = None
    file_created: bool = False
    document: Optional[DocumentResponse] = None
    updated_fields: List[str]
    extracted: IdentityFieldsResponse


# Settings
class PipelineStageLabel(BaseModel):
    key: str
    name: str


class PipelineSettingsUpdate(BaseModel):
    stages: List[PipelineStageLabel]


class GeneralSettings(BaseModel):
    institution_name: str
    address: str
    contact_email: str


class SettingsResponse(BaseModel):
    general: GeneralSettings
    pipeline: List[PipelineStageLabel]


class PipelineSettingsResponse(BaseModel):
    message: str
    pipeline: List[PipelineStageLabel]


# Error response
class ErrorResponse(BaseModel):
    """Body of every non-2xx response raised by the service layer."""
    message: str
