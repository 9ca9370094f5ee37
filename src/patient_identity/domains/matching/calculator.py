"""
Weighted match calculator

Combines the field scorers into a single score and keeps the per-factor
breakdown so reviewers can see why a pair was flagged.
"""

from typing import List, Optional

from patient_identity.core.config import MatchWeights, IdentifierMatchWeights
from patient_identity.domains.patient.models.patient import PatientRecord
from . import scorers
from .models.matching import MatchBreakdown, MatchFactor, sort_factors

# Rounding keeps score(a, a) == 1.0 despite float accumulation in the sum
SCORE_PRECISION = 10


def _finalize(total: float) -> float:
    return round(min(max(total, 0.0), 1.0), SCORE_PRECISION)


def _mask(value: Optional[str], keep: int = 4) -> str:
    if not value:
        return 'none'
    digits = scorers.digits_only(value) or value
    return f"***{digits[-keep:]}"


class MatchCalculator:
    """Explainable weighted scoring for local and external comparisons"""

    def __init__(
        self,
        weights: Optional[MatchWeights] = None,
        external_weights: Optional[IdentifierMatchWeights] = None
    ):
        self.weights = weights or MatchWeights()
        self.external_weights = external_weights or IdentifierMatchWeights()

    def score(self, patient1: PatientRecord, patient2: PatientRecord) -> MatchBreakdown:
        """Local-to-local comparison: name, date of birth, address, phone"""
        factors = [
            self._name_factor(patient1, patient2),
            self._dob_factor(patient1, patient2),
            MatchFactor(
                name='Address Match',
                score=scorers.address_score(patient1.address, patient2.address),
                details=(
                    f"{patient1.address.street}, {patient1.address.city} vs "
                    f"{patient2.address.street}, {patient2.address.city}"
                )
            ),
            MatchFactor(
                name='Phone Match',
                score=scorers.phone_score(patient1.phone_number, patient2.phone_number),
                details=f"{patient1.phone_number} vs {patient2.phone_number}"
            ),
        ]
        weights = (self.weights.name, self.weights.dob, self.weights.address, self.weights.phone)
        return self._combine(factors, weights)

    def score_against_external(
        self, patient: PatientRecord, external: PatientRecord
    ) -> MatchBreakdown:
        """Local-to-external comparison: name, date of birth, identifiers"""
        factors = [
            self._name_factor(patient, external),
            self._dob_factor(patient, external),
            self._identifier_factor(patient, external),
        ]
        weights = (
            self.external_weights.name,
            self.external_weights.dob,
            self.external_weights.identifier
        )
        return self._combine(factors, weights)

    def match_score(self, patient1: PatientRecord, patient2: PatientRecord) -> float:
        return self.score(patient1, patient2).score

    def _combine(self, factors: List[MatchFactor], weights) -> MatchBreakdown:
        total = sum(factor.score * weight for factor, weight in zip(factors, weights))
        return MatchBreakdown(score=_finalize(total), factors=sort_factors(factors))

    def _name_factor(self, patient1: PatientRecord, patient2: PatientRecord) -> MatchFactor:
        return MatchFactor(
            name='Name Match',
            score=scorers.name_score(patient1, patient2),
            details=(
                f"First name: {patient1.first_name} vs {patient2.first_name}, "
                f"Last name: {patient1.last_name} vs {patient2.last_name}"
            )
        )

    def _dob_factor(self, patient1: PatientRecord, patient2: PatientRecord) -> MatchFactor:
        return MatchFactor(
            name='Date of Birth Match',
            score=scorers.dob_score(patient1.date_of_birth, patient2.date_of_birth),
            details=f"{patient1.date_of_birth.isoformat()} vs {patient2.date_of_birth.isoformat()}"
        )

    def _identifier_factor(self, patient: PatientRecord, external: PatientRecord) -> MatchFactor:
        shared = scorers.shared_identifier_kinds(patient, external)
        if not scorers.has_any_identifier(patient, external):
            details = 'No identifiers on either record'
        elif not shared:
            details = 'No shared identifiers'
        else:
            parts = []
            if 'ssn' in shared:
                parts.append(f"SSN: {_mask(patient.ssn)} vs {_mask(external.ssn)}")
            if 'mrn' in shared:
                parts.append(
                    f"MRN: {patient.medical_record_number} vs {external.medical_record_number}"
                )
            details = ', '.join(parts)

        return MatchFactor(
            name='Identifier Match',
            score=scorers.identifier_score(patient, external),
            details=details
        )
