"""
Audit service - non-fatal wrapper around the audit collaborator
"""

from typing import Any, Dict, Optional
import logging

from patient_identity.core import metrics
from ..models.audit import PHICategory
from ..repositories.audit_repository import AuditLogger


logger = logging.getLogger(__name__)


class SafeAuditor:
    """
    Forwards audit events to the configured sink.

    A failing sink never fails the caller: the failure is logged, counted in
    identity_audit_failures_total and in failure_count.
    """

    def __init__(
        self,
        sink: AuditLogger,
        role: str = "provider",
        source_context: str = "127.0.0.1"
    ):
        self.sink = sink
        self.role = role
        self.source_context = source_context
        self.failure_count = 0

    async def access(
        self,
        actor: str,
        action: str,
        details: Dict[str, Any],
        component: str,
        success: bool = True,
        category: PHICategory = PHICategory.PHI
    ) -> bool:
        try:
            await self.sink.log_access(
                actor, self.role, category, action, details,
                self.source_context, component, success
            )
            return True
        except Exception as e:
            self._record_failure(action, e)
            return False

    async def error(
        self,
        actor: str,
        action: str,
        error: BaseException,
        component: str,
        details: Optional[Dict[str, Any]] = None,
        category: PHICategory = PHICategory.PHI
    ) -> bool:
        payload = dict(details or {})
        payload["error"] = str(error) or error.__class__.__name__
        payload["error_type"] = error.__class__.__name__
        try:
            await self.sink.log_error(
                actor, self.role, category, action, payload,
                self.source_context, component
            )
            return True
        except Exception as e:
            self._record_failure(action, e)
            return False

    def _record_failure(self, action: str, error: Exception) -> None:
        self.failure_count += 1
        metrics.audit_failures.labels(event=action).inc()
        logger.error(f"Audit write failed for '{action}': {error}")
