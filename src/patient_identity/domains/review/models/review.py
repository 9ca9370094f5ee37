"""
Review domain models
"""

from typing import List, Optional
from datetime import datetime
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field

from patient_identity.domains.matching.models.matching import DuplicateMatch
from patient_identity.domains.patient.models.patient import PatientRecord, utcnow


class MergeHistoryEntry(BaseModel):
    """One completed merge of local patient records"""
    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=lambda: str(uuid4()))
    merged_from: List[str] = Field(..., min_length=1)
    merged_into: str
    merge_date: datetime = Field(default_factory=utcnow)
    merged_by: str
    notes: Optional[str] = None
    match_id: Optional[str] = None


class MergeOutcome(BaseModel):
    """What a merge produced"""
    model_config = ConfigDict(frozen=True)

    match: DuplicateMatch
    merged_record: PatientRecord
    history_entry: MergeHistoryEntry


class ReviewRequest(BaseModel):
    """Reviewer action on a flagged match"""
    reviewer: str = Field(..., min_length=1)
    notes: Optional[str] = None


class ExternalReviewRequest(ReviewRequest):
    override: bool = Field(default=False, description="Replace a conflicting manually verified identifier")
