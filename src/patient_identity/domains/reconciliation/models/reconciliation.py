"""
Reconciliation domain models - external systems, identifiers and the MPI
"""

from typing import List, Optional, Tuple
from datetime import datetime
from enum import Enum
import hashlib

import orjson
from pydantic import BaseModel, ConfigDict, Field

from patient_identity.domains.matching.models.matching import MatchFactor, MatchStatus
from patient_identity.domains.patient.models.patient import PatientRecord, utcnow


class ExternalSystem(BaseModel):
    """A clinical system whose identifiers are reconciled into the MPI"""
    model_config = ConfigDict(frozen=True, populate_by_name=True)

    id: str = Field(..., min_length=1)
    name: str
    description: str = ""
    identifier_prefix: str = Field(..., alias="identifierPrefix")
    api_endpoint: Optional[str] = Field(None, alias="apiEndpoint")
    api_key: Optional[str] = Field(None, alias="apiKey", exclude=True, repr=False)


DEFAULT_EXTERNAL_SYSTEMS: Tuple[ExternalSystem, ...] = (
    ExternalSystem(
        id="emr1",
        name="Primary EMR",
        description="Main electronic medical record system",
        identifier_prefix="EMR1"
    ),
    ExternalSystem(
        id="lab",
        name="Laboratory System",
        description="External laboratory information system",
        identifier_prefix="LAB"
    ),
    ExternalSystem(
        id="pharmacy",
        name="Pharmacy System",
        description="External pharmacy management system",
        identifier_prefix="PHARM"
    ),
)


class IdentifierSource(str, Enum):
    MANUAL = "manual"
    AUTOMATIC = "automatic"
    IMPORT = "import"


class ExternalIdentifier(BaseModel):
    """A patient's identifier in one external system; unique per (system_id, patient_id)"""
    model_config = ConfigDict(frozen=True)

    system_id: str
    external_id: str
    patient_id: str
    last_updated: datetime = Field(default_factory=utcnow)
    confidence: float = Field(..., ge=0.0, le=1.0)
    source: IdentifierSource
    verified: bool = False

    @property
    def manually_verified(self) -> bool:
        return self.source == IdentifierSource.MANUAL and self.verified


class MatchClassification(str, Enum):
    MATCHED = "matched"
    POTENTIAL = "potential"
    UNMATCHED = "unmatched"


def classify(score: float, match_threshold: float, potential_threshold: float) -> MatchClassification:
    if score >= match_threshold:
        return MatchClassification.MATCHED
    if score >= potential_threshold:
        return MatchClassification.POTENTIAL
    return MatchClassification.UNMATCHED


def external_match_id(patient_id: str, system_id: str, external_id: str) -> str:
    """Stable ID for a local patient / external record pairing"""
    key = orjson.dumps([patient_id, system_id, external_id])
    return f"ext:{hashlib.blake2b(key, digest_size=16).hexdigest()}"


class ExternalCandidate(BaseModel):
    """One record returned by an external system lookup"""
    model_config = ConfigDict(frozen=True, populate_by_name=True)

    external_id: str = Field(..., alias="externalId", min_length=1)
    record: PatientRecord


class MatchResult(BaseModel):
    """A local patient scored against one external system record"""
    model_config = ConfigDict(frozen=True)

    match_id: str
    patient_id: str
    system_id: str
    external_id: str
    match_score: float = Field(..., ge=0.0, le=1.0)
    match_factors: List[MatchFactor]
    external_identifiers: List[ExternalIdentifier] = Field(default_factory=list)
    classification: MatchClassification
    status: MatchStatus = MatchStatus.PENDING
    reviewed_by: Optional[str] = None
    reviewed_at: Optional[datetime] = None
    merge_notes: Optional[str] = None
    last_updated: datetime = Field(default_factory=utcnow)


class MasterPatientIndex(BaseModel):
    """
    Canonical identity of one local patient across external systems.

    Entries are never deleted. A merged-away identity keeps its entry with
    superseded_by pointing at the surviving patient.
    """
    model_config = ConfigDict(frozen=True)

    patient_id: str
    primary_record: PatientRecord
    external_identifiers: List[ExternalIdentifier] = Field(default_factory=list)
    match_results: List[MatchResult] = Field(default_factory=list)
    last_updated: datetime = Field(default_factory=utcnow)
    created_by: str
    updated_by: str
    version: int = 0
    superseded_by: Optional[str] = None

    def identifier_for(self, system_id: str) -> Optional[ExternalIdentifier]:
        for identifier in self.external_identifiers:
            if identifier.system_id == system_id:
                return identifier
        return None

    def match_result(self, match_id: str) -> Optional[MatchResult]:
        for result in self.match_results:
            if result.match_id == match_id:
                return result
        return None


class SystemFailure(BaseModel):
    """Why one external system contributed nothing to a reconciliation"""
    model_config = ConfigDict(frozen=True)

    system_id: str
    error: str
    timed_out: bool = False


class ReconciliationResult(BaseModel):
    model_config = ConfigDict(frozen=True)

    patient_id: str
    matches: List[MatchResult] = Field(default_factory=list)
    succeeded_systems: List[str] = Field(default_factory=list)
    failed_systems: List[SystemFailure] = Field(default_factory=list)


class ReconciliationRequest(BaseModel):
    actor: str = Field(default="system", min_length=1)


class VerifyIdentifierRequest(BaseModel):
    """Operator confirmation of a patient's identifier in one system"""
    external_id: str = Field(..., min_length=1)
    actor: str = Field(..., min_length=1)
    override: bool = Field(default=False, description="Replace a different manually verified identifier")
