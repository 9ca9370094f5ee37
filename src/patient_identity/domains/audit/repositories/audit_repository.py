"""
Audit sinks - implementations of the audit collaborator contract
"""

from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional
import logging

from patient_identity.core.database import BaseRepository, DatabaseManager
from patient_identity.core.exceptions import AuditLogError
from ..models.audit import AuditEvent, AuditEventType, PHICategory


logger = logging.getLogger(__name__)


class AuditLogger(ABC):
    """Audit collaborator called around every read and write touching PHI"""

    async def log_access(
        self,
        actor: str,
        role: str,
        category: PHICategory,
        action: str,
        details: Dict[str, Any],
        source_context: str,
        component: str,
        success: bool
    ) -> None:
        await self.record(AuditEvent(
            event_type=AuditEventType.ACCESS,
            actor=actor,
            role=role,
            category=category,
            action=action,
            details=details,
            source_context=source_context,
            component=component,
            success=success
        ))

    async def log_error(
        self,
        actor: str,
        role: str,
        category: PHICategory,
        action: str,
        details: Dict[str, Any],
        source_context: str,
        component: str
    ) -> None:
        await self.record(AuditEvent(
            event_type=AuditEventType.ERROR,
            actor=actor,
            role=role,
            category=category,
            action=action,
            details=details,
            source_context=source_context,
            component=component,
            success=False
        ))

    @abstractmethod
    async def record(self, event: AuditEvent) -> None:
        """Persist one audit event; raise AuditLogError on failure"""


class InMemoryAuditLogger(AuditLogger):
    """Keeps audit events in a list"""

    def __init__(self):
        self.events: List[AuditEvent] = []

    async def record(self, event: AuditEvent) -> None:
        self.events.append(event)

    def actions(self, event_type: Optional[AuditEventType] = None) -> List[str]:
        return [
            event.action for event in self.events
            if event_type is None or event.event_type == event_type
        ]


class MongoAuditLogger(BaseRepository, AuditLogger):
    """Audit events stored in the patient_audit collection"""

    def __init__(self, db_manager: DatabaseManager):
        super().__init__(db_manager, "patient_audit")

    async def record(self, event: AuditEvent) -> None:
        try:
            await self.insert_one(event.model_dump(mode="json"))
        except Exception as e:
            raise AuditLogError(f"Failed to store audit event {event.id}: {e}") from e
