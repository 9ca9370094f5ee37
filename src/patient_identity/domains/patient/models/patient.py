"""
Patient domain models
"""

from typing import Optional, Dict, Any, Union
from datetime import date, datetime, timezone
from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic import ValidationError as PydanticValidationError

from patient_identity.core.exceptions import ValidationError


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Address(BaseModel):
    """Postal address; parts may be empty strings but must be present"""
    model_config = ConfigDict(frozen=True, populate_by_name=True)

    street: str = Field(..., description="Street line")
    city: str = Field(..., description="City")
    state: str = Field(..., description="State or region code")
    zip_code: str = Field(..., alias="zipCode", description="Postal code")


class PatientRecord(BaseModel):
    """
    Patient identity record.

    Frozen: changes go through model_copy(update=...) in explicit update or
    merge operations. camelCase aliases are accepted on input.
    """
    model_config = ConfigDict(frozen=True, populate_by_name=True)

    id: str = Field(..., min_length=1, description="Local patient ID")
    first_name: str = Field(..., alias="firstName")
    last_name: str = Field(..., alias="lastName")
    date_of_birth: date = Field(..., alias="dateOfBirth")
    gender: str = Field(..., description="Administrative gender")
    address: Address
    phone_number: str = Field(..., alias="phoneNumber")
    email: Optional[str] = None
    medical_record_number: Optional[str] = Field(None, alias="medicalRecordNumber")
    ssn: Optional[str] = None
    last_updated: datetime = Field(default_factory=utcnow, alias="lastUpdated")

    @field_validator("first_name", "last_name")
    @classmethod
    def _name_not_blank(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("must not be blank")
        return value

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "PatientRecord":
        """Validate raw patient data, raising ValidationError on any problem"""
        try:
            return cls.model_validate(data)
        except PydanticValidationError as e:
            fields = sorted({
                ".".join(str(part) for part in error["loc"]) or "record"
                for error in e.errors()
            })
            raise ValidationError(
                f"Invalid patient record: {', '.join(fields)}",
                fields=fields
            ) from e

    def to_dict(self) -> Dict[str, Any]:
        """Serialize with ISO-8601 dates"""
        return self.model_dump(mode="json")


def validate_patient(patient: Union[PatientRecord, Dict[str, Any]]) -> PatientRecord:
    """
    Return a validated PatientRecord.

    Records built with model_construct() skip validation, so instances are
    re-checked as well.
    """
    if isinstance(patient, PatientRecord):
        return PatientRecord.from_dict(dict(patient))
    if not isinstance(patient, dict):
        raise ValidationError("Patient record must be a mapping", fields=["record"])
    return PatientRecord.from_dict(patient)
