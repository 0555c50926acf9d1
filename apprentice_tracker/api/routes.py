"""API routes for people, companies, case files, comments, activities, stats and settings."""
from dataclasses import asdict
from typing import List, Optional

from fastapi import APIRouter, Depends, Request, Response, status
from sqlalchemy.orm import Session

from apprentice_tracker.config import Settings, get_settings
from apprentice_tracker.database import get_db
from apprentice_tracker.models.domain import Apprentice, CaseFile, Company, Mentor, User
from apprentice_tracker.models.enums import PipelineStage
from apprentice_tracker.services.activity_log import ActivityLog, ActivityWithUser, DEFAULT_FEED_LIMIT
from apprentice_tracker.services.entity_store import CommentWithUser, EntityStore
from apprentice_tracker.services.errors import NotFound, ValidationError
from apprentice_tracker.services.records import RecordService
from apprentice_tracker.services.state_machine import (
    PipelineStateMachine,
    default_pipeline_display,
    validate_pipeline_display,
)
from apprentice_tracker.services.stats import compute_stats
from apprentice_tracker.api.dependencies import get_actor_id
from apprentice_tracker.api.schemas import (
    ActivityResponse,
    ApprenticeCreate,
    ApprenticeResponse,
    ApprenticeUpdate,
    CaseFileCreate,
    CaseFileResponse,
    CaseFileUpdate,
    CommentCreate,
    CommentResponse,
    CommentWithUserResponse,
    CompanyCreate,
    CompanyResponse,
    CompanyUpdate,
    DocumentResponse,
    ErrorResponse,
    FileDetailsResponse,
    GeneralSettings,
    MentorCreate,
    MentorResponse,
    MentorUpdate,
    PipelineSettingsResponse,
    PipelineSettingsUpdate,
    SettingsResponse,
    StageUpdate,
    StatsResponse,
    UserCreate,
    UserResponse,
)

router = APIRouter()

NOT_FOUND = {404: {"model": ErrorResponse}}
INVALID = {400: {"model": ErrorResponse}}


def _partial(payload, required=()) -> dict:
    """Only the fields the client sent; required columns may not be nulled."""
    fields = payload.model_dump(exclude_unset=True)
    for key in required:
        if key in fields and fields[key] is None:
            raise ValidationError(f"{key} cannot be null")
    return fields


def _get_or_404(db: Session, model, entity_id: int, label: str):
    record = EntityStore(db).get(model, entity_id)
    if record is None:
        raise NotFound(f"{label} not found")
    return record


def _activity_out(entry: ActivityWithUser) -> ActivityResponse:
    out = ActivityResponse.model_validate(entry.activity)
    out.user = UserResponse.model_validate(entry.user) if entry.user else None
    return out


def _comment_out(entry: CommentWithUser) -> CommentWithUserResponse:
    return CommentWithUserResponse(
        **CommentResponse.model_validate(entry.comment).model_dump(),
        user=UserResponse.model_validate(entry.user) if entry.user else None,
    )


# User endpoints
@router.get("/users", response_model=List[UserResponse])
def list_users(db: Session = Depends(get_db)):
    return EntityStore(db).list(User)


@router.get("/users/{user_id}", response_model=UserResponse, responses=NOT_FOUND)
def get_user(user_id: int, db: Session = Depends(get_db)):
    return _get_or_404(db, User, user_id, "User")


@router.post("/users", response_model=UserResponse, status_code=status.HTTP_201_CREATED, responses=INVALID)
def create_user(user_data: UserCreate, db: Session = Depends(get_db), actor_id: int = Depends(get_actor_id)):
    return RecordService(db).create(User, user_data.model_dump(), actor_id)


# Apprentice endpoints
@router.get("/apprentices", response_model=List[ApprenticeResponse])
def list_apprentices(db: Session = Depends(get_db)):
    return EntityStore(db).list(Apprentice)


@router.get("/apprentices/{apprentice_id}", response_model=ApprenticeResponse, responses=NOT_FOUND)
def get_apprentice(apprentice_id: int, db: Session = Depends(get_db)):
    return _get_or_404(db, Apprentice, apprentice_id, "Apprentice")


@router.post("/apprentices", response_model=ApprenticeResponse, status_code=status.HTTP_201_CREATED)
def create_apprentice(data: ApprenticeCreate, db: Session = Depends(get_db), actor_id: int = Depends(get_actor_id)):
    return RecordService(db).create(Apprentice, data.model_dump(), actor_id)


@router.put("/apprentices/{apprentice_id}", response_model=ApprenticeResponse, responses={**NOT_FOUND, **INVALID})
def update_apprentice(
    apprentice_id: int,
    data: ApprenticeUpdate,
    db: Session = Depends(get_db),
    actor_id: int = Depends(get_actor_id)
):
    fields = _partial(data, required=("first_name", "last_name", "email"))
    return RecordService(db).update(Apprentice, apprentice_id, fields, actor_id)


@router.delete("/apprentices/{apprentice_id}", status_code=status.HTTP_204_NO_CONTENT, responses=NOT_FOUND)
def delete_apprentice(apprentice_id: int, db: Session = Depends(get_db), actor_id: int = Depends(get_actor_id)):
    """Case files pointing at this apprentice are left as they are."""
    RecordService(db).delete(Apprentice, apprentice_id, actor_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


# Company endpoints
@router.get("/companies", response_model=List[CompanyResponse])
def list_companies(db: Session = Depends(get_db)):
    return EntityStore(db).list(Company)


@router.get("/companies/{company_id}", response_model=CompanyResponse, responses=NOT_FOUND)
def get_company(company_id: int, db: Session = Depends(get_db)):
    return _get_or_404(db, Company, company_id, "Company")


@router.get("/companies/{company_id}/mentors", response_model=List[MentorResponse])
def list_company_mentors(company_id: int, db: Session = Depends(get_db)):
    return EntityStore(db).list(Mentor, Mentor.company_id == company_id)


@router.post("/companies", response_model=CompanyResponse, status_code=status.HTTP_201_CREATED)
def create_company(data: CompanyCreate, db: Session = Depends(get_db), actor_id: int = Depends(get_actor_id)):
    return RecordService(db).create(Company, data.model_dump(), actor_id)


@router.put("/companies/{company_id}", response_model=CompanyResponse, responses={**NOT_FOUND, **INVALID})
def update_company(
    company_id: int,
    data: CompanyUpdate,
    db: Session = Depends(get_db),
    actor_id: int = Depends(get_actor_id)
):
    fields = _partial(data, required=("name",))
    return RecordService(db).update(Company, company_id, fields, actor_id)


@router.delete("/companies/{company_id}", status_code=status.HTTP_204_NO_CONTENT, responses=NOT_FOUND)
def delete_company(company_id: int, db: Session = Depends(get_db), actor_id: int = Depends(get_actor_id)):
    """Mentors and case files keep their company_id."""
    RecordService(db).delete(Company, company_id, actor_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


# Mentor endpoints
@router.get("/mentors", response_model=List[MentorResponse])
def list_mentors(db: Session = Depends(get_db)):
    return EntityStore(db).list(Mentor)


@router.get("/mentors/{mentor_id}", response_model=MentorResponse, responses=NOT_FOUND)
def get_mentor(mentor_id: int, db: Session = Depends(get_db)):
    return _get_or_404(db, Mentor, mentor_id, "Mentor")


@router.post("/mentors", response_model=MentorResponse, status_code=status.HTTP_201_CREATED)
def create_mentor(data: MentorCreate, db: Session = Depends(get_db), actor_id: int = Depends(get_actor_id)):
    return RecordService(db).create(Mentor, data.model_dump(), actor_id)


@router.put("/mentors/{mentor_id}", response_model=MentorResponse, responses={**NOT_FOUND, **INVALID})
def update_mentor(
    mentor_id: int,
    data: MentorUpdate,
    db: Session = Depends(get_db),
    actor_id: int = Depends(get_actor_id)
):
    fields = _partial(data, required=("first_name", "last_name"))
    return RecordService(db).update(Mentor, mentor_id, fields, actor_id)


@router.delete("/mentors/{mentor_id}", status_code=status.HTTP_204_NO_CONTENT, responses=NOT_FOUND)
def delete_mentor(mentor_id: int, db: Session = Depends(get_db), actor_id: int = Depends(get_actor_id)):
    RecordService(db).delete(Mentor, mentor_id, actor_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


# Case file endpoints
@router.get("/files", response_model=List[CaseFileResponse])
def list_files(stage: Optional[str] = None, db: Session = Depends(get_db)):
    """List case files, optionally for one stage. An unknown stage filter is ignored."""
    if stage in {s.value for s in PipelineStage}:
        return PipelineStateMachine(db).files_in_stage(stage)
    return EntityStore(db).list(CaseFile)


@router.get("/files/{file_id}", response_model=CaseFileResponse, responses=NOT_FOUND)
def get_file(file_id: int, db: Session = Depends(get_db)):
    return _get_or_404(db, CaseFile, file_id, "File")


@router.get("/files/{file_id}/details", response_model=FileDetailsResponse, responses=NOT_FOUND)
def get_file_details(file_id: int, db: Session = Depends(get_db)):
    """
    The file with its apprentice, company, mentor, documents and comments.
    404 when the file or any of the three references is missing.
    """
    details = EntityStore(db).get_file_details(file_id)
    if details is None:
        raise NotFound("File details not found")
    return FileDetailsResponse(
        file=CaseFileResponse.model_validate(details.file),
        apprentice=ApprenticeResponse.model_validate(details.apprentice),
        company=CompanyResponse.model_validate(details.company),
        mentor=MentorResponse.model_validate(details.mentor),
        documents=[DocumentResponse.model_validate(d) for d in details.documents],
        comments=[_comment_out(c) for c in details.comments],
    )


@router.post("/files", response_model=CaseFileResponse, status_code=status.HTTP_201_CREATED)
def create_file(data: CaseFileCreate, db: Session = Depends(get_db), actor_id: int = Depends(get_actor_id)):
    """References are stored as given; they are not checked for existence."""
    return RecordService(db).create(CaseFile, data.model_dump(), actor_id)


@router.put("/files/{file_id}", response_model=CaseFileResponse, responses={**NOT_FOUND, **INVALID})
def update_file(
    file_id: int,
    data: CaseFileUpdate,
    db: Session = Depends(get_db),
    actor_id: int = Depends(get_actor_id)
):
    fields = _partial(data, required=("apprentice_id", "company_id", "mentor_id"))
    return RecordService(db).update(CaseFile, file_id, fields, actor_id)


@router.put("/files/{file_id}/stage", response_model=CaseFileResponse, responses={**NOT_FOUND, **INVALID})
def update_file_stage(
    file_id: int,
    data: StageUpdate,
    db: Session = Depends(get_db),
    actor_id: int = Depends(get_actor_id)
):
    """Move a file to any of the five stages, backwards included."""
    return PipelineStateMachine(db).transition_stage(file_id, data.stage, actor_id)


@router.delete("/files/{file_id}", status_code=status.HTTP_204_NO_CONTENT, responses=NOT_FOUND)
def delete_file(file_id: int, db: Session = Depends(get_db), actor_id: int = Depends(get_actor_id)):
    RecordService(db).delete(CaseFile, file_id, actor_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


# Comment endpoints
@router.get("/files/{file_id}/comments", response_model=List[CommentWithUserResponse])
def list_file_comments(file_id: int, db: Session = Depends(get_db)):
    return [_comment_out(c) for c in EntityStore(db).comments_for_file(file_id)]


@router.post("/comments", response_model=CommentResponse, status_code=status.HTTP_201_CREATED, responses=NOT_FOUND)
def create_comment(data: CommentCreate, db: Session = Depends(get_db)):
    """The comment's author is recorded as the actor."""
    return RecordService(db).add_comment(data.file_id, data.user_id, data.text)


@router.delete("/comments/{comment_id}", status_code=status.HTTP_204_NO_CONTENT, responses=NOT_FOUND)
def delete_comment(comment_id: int, db: Session = Depends(get_db), actor_id: int = Depends(get_actor_id)):
    RecordService(db).delete_comment(comment_id, actor_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


# Activity endpoints
@router.get("/activities", response_model=List[ActivityResponse])
def list_activities(limit: int = DEFAULT_FEED_LIMIT, db: Session = Depends(get_db)):
    """Most recent activity first."""
    if limit < 1:
        raise ValidationError("limit must be a positive integer")
    return [_activity_out(a) for a in ActivityLog(db).recent(limit)]


@router.get("/files/{file_id}/activities", response_model=List[ActivityResponse])
def list_file_activities(file_id: int, db: Session = Depends(get_db)):
    return [_activity_out(a) for a in ActivityLog(db).for_file(file_id)]


# Stats
@router.get("/stats", response_model=StatsResponse)
def get_stats(db: Session = Depends(get_db)):
    """Recomputed from the current case files on every request."""
    return StatsResponse(**asdict(compute_stats(db)))


# Settings
def _pipeline_display(request: Request):
    return getattr(request.app.state, "pipeline_display", None) or default_pipeline_display()


@router.get("/settings", response_model=SettingsResponse)
def get_app_settings(request: Request, settings: Settings = Depends(get_settings)):
    return SettingsResponse(
        general=GeneralSettings(
            institution_name=settings.institution_name,
            address=settings.institution_address,
            contact_email=settings.contact_email,
        ),
        pipeline=_pipeline_display(request),
    )


@router.put("/settings/pipeline", response_model=PipelineSettingsResponse, responses=INVALID)
def update_pipeline_settings(data: PipelineSettingsUpdate, request: Request):
    """Relabel or reorder the pipeline columns. The five stages themselves are fixed."""
    pipeline = validate_pipeline_display([s.model_dump() for s in data.stages])
    request.app.state.pipeline_display = pipeline
    return PipelineSettingsResponse(
        message="Pipeline configuration updated successfully",
        pipeline=pipeline,
    )
