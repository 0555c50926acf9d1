"""Dashboard counters, derived from the live case files on every call."""
import math
from dataclasses import dataclass
from typing import Dict

from sqlalchemy.orm import Session

from apprentice_tracker.models.domain import CaseFile
from apprentice_tracker.models.enums import PipelineStage
from apprentice_tracker.services.entity_store import EntityStore
from apprentice_tracker.services.state_machine import aggregate_by_stage

SECONDS_PER_DAY = 24 * 60 * 60


@dataclass
class Stats:
    total_files: int
    files_by_stage: Dict[str, int]
    validated_files: int
    average_processing_time: float  # days


def processing_days(case_file: CaseFile) -> int:
    """Whole days between creation and last update, rounded up."""
    elapsed = abs((case_file.updated_at - case_file.created_at).total_seconds())
    return math.ceil(elapsed / SECONDS_PER_DAY)


def compute_stats(db: Session) -> Stats:
    """
    Totals, per-stage counts, validated count and mean processing time.

    Read-only. Mean processing time covers VALIDATED files only and is 0
    when there are none.
    """
    files = EntityStore(db).list(CaseFile)
    validated = [f for f in files if f.stage == PipelineStage.VALIDATED]

    average = 0.0
    if validated:
        average = sum(processing_days(f) for f in validated) / len(validated)

    return Stats(
        total_files=len(files),
        files_by_stage=aggregate_by_stage(files),
        validated_files=len(validated),
        average_processing_time=average,
    )
