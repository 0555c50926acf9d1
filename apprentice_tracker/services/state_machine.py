"""
Pipeline state machine for case files.

Every stage change MUST go through here so it is validated, timestamped and
logged. Any stage can be reached from any other; the order is for display.
"""
from typing import Dict, Iterable, List, Optional

from sqlalchemy.orm import Session

from apprentice_tracker.models.domain import CaseFile
from apprentice_tracker.models.enums import (
    ActivityType,
    PipelineStage,
    PIPELINE_ORDER,
    STAGE_LABELS,
)
from apprentice_tracker.services.activity_log import ActivityLog
from apprentice_tracker.services.entity_store import EntityStore, touch
from apprentice_tracker.services.errors import NotFound, ValidationError
from apprentice_tracker.services.locks import EntityLocks, entity_locks


def parse_stage(value) -> PipelineStage:
    """Map a raw value onto the fixed vocabulary or raise ValidationError."""
    if isinstance(value, PipelineStage):
        return value
    try:
        return PipelineStage(value)
    except ValueError:
        raise ValidationError(
            f"Invalid stage: {value!r}. Expected one of: "
            f"{', '.join(stage.value for stage in PIPELINE_ORDER)}"
        )


def aggregate_by_stage(files: Iterable[CaseFile]) -> Dict[str, int]:
    """
    Count case files per stage.

    All five keys are always present, in pipeline order, zero when empty.
    """
    counts = {stage.value: 0 for stage in PIPELINE_ORDER}
    for case_file in files:
        counts[PipelineStage(case_file.stage).value] += 1
    return counts


def default_pipeline_display() -> List[Dict[str, str]]:
    return [{"key": stage.value, "name": STAGE_LABELS[stage]} for stage in PIPELINE_ORDER]


def validate_pipeline_display(stages: List[Dict[str, str]]) -> List[Dict[str, str]]:
    """
    Check a display configuration (ordered {key, name} labels).

    It can relabel and reorder the pipeline, never add to it: each key must
    be a known stage and appear at most once.
    """
    if not stages:
        raise ValidationError("Invalid pipeline configuration")

    seen = set()
    cleaned = []
    for entry in stages:
        key = (entry.get("key") or "").strip()
        name = (entry.get("name") or "").strip()
        if not key or not name:
            raise ValidationError(
                "Invalid stage format: each stage must have key and name properties"
            )
        stage = parse_stage(key)
        if stage in seen:
            raise ValidationError(f"Duplicate stage in pipeline configuration: {key}")
        seen.add(stage)
        cleaned.append({"key": stage.value, "name": name})
    return cleaned


class PipelineStateMachine:
    """Moves case files between stages."""

    def __init__(
        self,
        db: Session,
        store: Optional[EntityStore] = None,
        activity_log: Optional[ActivityLog] = None,
        locks: Optional[EntityLocks] = None
    ):
        self.db = db
        self.store = store or EntityStore(db)
        self.activity_log = activity_log or ActivityLog(db, self.store)
        self.locks = locks or entity_locks

    def transition_stage(self, file_id: int, new_stage, actor_id: int) -> CaseFile:
        """
        Move a case file to `new_stage`.

        Invariants:
        - An unknown stage raises ValidationError and nothing is written
        - A missing file raises NotFound and no activity is recorded
        - updated_at strictly increases and exactly one STAGE_CHANGE entry is appended
        - Backward moves are allowed
        """
        stage = parse_stage(new_stage)

        with self.locks.hold("case_file", file_id):
            case_file = self.store.get(CaseFile, file_id, reload=True)
            if case_file is None:
                raise NotFound("File not found")

            case_file.stage = stage
            touch(case_file)
            self.activity_log.record(
                actor_id,
                ActivityType.STAGE_CHANGE,
                f"File stage changed to {stage.value}",
                file_id=case_file.id,
                commit=False,
            )
            self.store.commit()
            self.db.refresh(case_file)

        return case_file

    def files_in_stage(self, stage) -> List[CaseFile]:
        stage = parse_stage(stage)
        return self.store.list(CaseFile, CaseFile.stage == stage)
