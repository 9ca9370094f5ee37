"""
Exception hierarchy for the identity resolution engine
"""

from typing import List, Optional


class IdentityResolutionError(Exception):
    """Base exception for all identity resolution errors"""
    pass


class ValidationError(IdentityResolutionError):
    """Raised when a patient record is malformed or missing required fields"""

    def __init__(self, message: str, fields: Optional[List[str]] = None):
        super().__init__(message)
        self.fields = fields or []


class NotFoundError(IdentityResolutionError):
    """Raised when a referenced patient, match or MPI entry does not exist"""

    def __init__(self, resource: str, identifier: str):
        super().__init__(f"{resource} not found: {identifier}")
        self.resource = resource
        self.identifier = identifier


class ExternalSystemError(IdentityResolutionError):
    """Raised when a single external system lookup fails or times out"""

    def __init__(self, system_id: str, message: str, timed_out: bool = False):
        super().__init__(f"External system '{system_id}' failed: {message}")
        self.system_id = system_id
        self.timed_out = timed_out


class AuditLogError(IdentityResolutionError):
    """
    Raised by audit sinks when a write fails.

    Never propagated past SafeAuditor: the core operation's outcome is
    independent of audit durability.
    """
    pass


class InvalidStateTransitionError(IdentityResolutionError):
    """Raised when acting on a match that is not in an actionable state"""

    def __init__(self, match_id: str, current: str, requested: str):
        super().__init__(
            f"Cannot transition match {match_id} from '{current}' to '{requested}'"
        )
        self.match_id = match_id
        self.current = current
        self.requested = requested


class MergeConflictError(IdentityResolutionError):
    """Raised when concurrent MPI updates for the same patient conflict"""

    def __init__(self, patient_id: str, message: str):
        super().__init__(f"MPI conflict for patient {patient_id}: {message}")
        self.patient_id = patient_id


class ConfigurationError(IdentityResolutionError):
    """Raised when configuration values are invalid"""
    pass
