"""
Audit domain models
"""

from typing import Any, Dict
from datetime import datetime
from enum import Enum
from uuid import uuid4

from pydantic import BaseModel, Field

from patient_identity.domains.patient.models.patient import utcnow


class AuditEventType(str, Enum):
    ACCESS = "access"
    ERROR = "error"


class PHICategory(str, Enum):
    """Categories of protected health information"""
    PHI = "phi"
    PATIENT_IDENTIFIERS = "patient_identifiers"
    MEDICAL_RECORDS = "medical_records"


class AuditEvent(BaseModel):
    """A single audit trail entry"""
    id: str = Field(default_factory=lambda: str(uuid4()))
    timestamp: datetime = Field(default_factory=utcnow)
    event_type: AuditEventType
    actor: str
    role: str
    category: PHICategory
    action: str
    details: Dict[str, Any] = Field(default_factory=dict)
    source_context: str
    component: str
    success: bool
