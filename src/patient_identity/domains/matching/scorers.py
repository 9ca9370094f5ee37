"""
Field similarity scorers

Every scorer is pure, deterministic and symmetric, and returns a float in
[0, 1].
"""

from typing import Optional, Sequence, Tuple
from datetime import date

import jellyfish
import Levenshtein

from patient_identity.domains.patient.models.patient import Address, PatientRecord


def string_similarity(a: str, b: str) -> float:
    """Normalized edit-distance similarity; two empty strings are identical"""
    max_length = max(len(a), len(b))
    if max_length == 0:
        return 1.0
    return 1.0 - Levenshtein.distance(a, b) / max_length


def phonetic_code(token: str) -> str:
    """Metaphone code for a single name token"""
    token = token.strip()
    if not token:
        return ''
    return jellyfish.metaphone(token)


def phonetic_score(tokens_a: Sequence[str], tokens_b: Sequence[str]) -> float:
    """Mean of per-pair binary Metaphone matches"""
    pairs = list(zip(tokens_a, tokens_b))
    if not pairs:
        return 1.0
    matches = sum(1 for a, b in pairs if phonetic_code(a) == phonetic_code(b))
    return matches / len(pairs)


def name_score(patient1: PatientRecord, patient2: PatientRecord) -> float:
    first_name_score = string_similarity(
        patient1.first_name.lower(), patient2.first_name.lower()
    )
    last_name_score = string_similarity(
        patient1.last_name.lower(), patient2.last_name.lower()
    )
    metaphone_score = phonetic_score(
        (patient1.first_name, patient1.last_name),
        (patient2.first_name, patient2.last_name)
    )
    return (first_name_score + last_name_score + metaphone_score) / 3


def dob_score(dob1: date, dob2: date) -> float:
    # Strict equality: day/month transpositions score 0
    return 1.0 if dob1 == dob2 else 0.0


def _exact(a: str, b: str) -> float:
    return 1.0 if a.strip().lower() == b.strip().lower() else 0.0


def address_score(address1: Address, address2: Address) -> float:
    street_score = string_similarity(address1.street.lower(), address2.street.lower())
    city_score = string_similarity(address1.city.lower(), address2.city.lower())
    state_score = _exact(address1.state, address2.state)
    zip_score = _exact(address1.zip_code, address2.zip_code)
    return (street_score + city_score + state_score + zip_score) / 4


def digits_only(value: Optional[str]) -> str:
    return ''.join(filter(str.isdigit, value or ''))


def normalize_phone(phone: str) -> str:
    return digits_only(phone)


def phone_score(phone1: str, phone2: str) -> float:
    return 1.0 if normalize_phone(phone1) == normalize_phone(phone2) else 0.0


def _identifier_pairs(
    patient1: PatientRecord, patient2: PatientRecord
) -> Sequence[Tuple[str, Optional[str], Optional[str]]]:
    return (
        ('ssn', digits_only(patient1.ssn) or None, digits_only(patient2.ssn) or None),
        ('mrn', (patient1.medical_record_number or '').strip().upper() or None,
         (patient2.medical_record_number or '').strip().upper() or None),
    )


def identifier_score(patient1: PatientRecord, patient2: PatientRecord) -> float:
    """
    Mean exact-match over identifier kinds present on both records.

    Two records carrying no identifiers at all agree (1.0), which keeps the
    score reflexive. When identifiers exist but no kind is shared the score
    is 0.0.
    """
    if not has_any_identifier(patient1, patient2):
        return 1.0
    shared = [(a, b) for _, a, b in _identifier_pairs(patient1, patient2) if a and b]
    if not shared:
        return 0.0
    return sum(1.0 for a, b in shared if a == b) / len(shared)


def has_any_identifier(patient1: PatientRecord, patient2: PatientRecord) -> bool:
    return any(a or b for _, a, b in _identifier_pairs(patient1, patient2))


def shared_identifier_kinds(patient1: PatientRecord, patient2: PatientRecord) -> Sequence[str]:
    return [kind for kind, a, b in _identifier_pairs(patient1, patient2) if a and b]
