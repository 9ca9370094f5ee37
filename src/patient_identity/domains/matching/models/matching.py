"""
Matching domain models
"""

from typing import Any, Dict, List, Optional, Sequence
from datetime import datetime
from enum import Enum
import hashlib

import orjson
from pydantic import BaseModel, ConfigDict, Field, field_validator

from patient_identity.domains.patient.models.patient import PatientRecord, utcnow


class MatchStatus(str, Enum):
    """Review state of a flagged match"""
    PENDING = "pending"
    REVIEWED = "reviewed"
    MERGED = "merged"
    REJECTED = "rejected"


class MatchFactor(BaseModel):
    """One explainable component of a match score"""
    model_config = ConfigDict(frozen=True)

    name: str
    score: float = Field(..., ge=0.0, le=1.0)
    details: str


def sort_factors(factors: Sequence[MatchFactor]) -> List[MatchFactor]:
    """Highest score first; ties ordered by factor name"""
    return sorted(factors, key=lambda factor: (-factor.score, factor.name))


class MatchBreakdown(BaseModel):
    """Weighted score together with the factors that produced it"""
    model_config = ConfigDict(frozen=True)

    score: float = Field(..., ge=0.0, le=1.0)
    factors: List[MatchFactor]


def pair_match_id(patient_id1: str, patient_id2: str) -> str:
    """Stable ID for an unordered pair of patient IDs"""
    key = orjson.dumps(sorted([patient_id1, patient_id2]))
    return f"dup:{hashlib.blake2b(key, digest_size=16).hexdigest()}"


class DuplicateMatch(BaseModel):
    """Two local records suspected to describe the same patient"""
    model_config = ConfigDict(frozen=True)

    match_id: str
    patient1: PatientRecord
    patient2: PatientRecord
    match_score: float = Field(..., ge=0.0, le=1.0)
    match_factors: List[MatchFactor]
    status: MatchStatus = MatchStatus.PENDING
    reviewed_by: Optional[str] = None
    reviewed_at: Optional[datetime] = None
    merge_notes: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)

    @field_validator("patient2")
    @classmethod
    def _distinct_patients(cls, patient2: PatientRecord, info) -> PatientRecord:
        patient1 = info.data.get("patient1")
        if patient1 is not None and patient1.id == patient2.id:
            raise ValueError("a patient cannot be matched with itself")
        return patient2

    @classmethod
    def create(
        cls,
        patient1: PatientRecord,
        patient2: PatientRecord,
        breakdown: MatchBreakdown
    ) -> "DuplicateMatch":
        return cls(
            match_id=pair_match_id(patient1.id, patient2.id),
            patient1=patient1,
            patient2=patient2,
            match_score=breakdown.score,
            match_factors=sort_factors(breakdown.factors)
        )

    @property
    def patient_ids(self) -> frozenset:
        return frozenset((self.patient1.id, self.patient2.id))


class ScanRequest(BaseModel):
    """Body of a duplicate scan; without a patient the whole corpus is scanned"""
    patient: Optional[Dict[str, Any]] = None
    actor: str = Field(default="system", min_length=1)
