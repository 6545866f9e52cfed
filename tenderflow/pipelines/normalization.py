"""Normalization of upstream candidate records into ``CanonicalCandidate``.

The extraction service answers in two key styles: legacy PascalCase fields
(``Name``, ``Languages``, ``AcademicQualifications``...) and canonical
snake_case fields. Both may appear in one record; the legacy key wins.
"""
from __future__ import annotations

import logging
import re
from typing import Any, Callable, Mapping

from pydantic import ValidationError

from ..models import (
    CanonicalCandidate,
    EducationRecord,
    LanguageLevel,
    LanguageSkill,
    RegionExperience,
)

logger = logging.getLogger(__name__)


class NormalizationError(ValueError):
    """Raised when a record cannot be mapped into the canonical schema."""
    pass


# canonical field -> legacy service key
SCALAR_KEYS: dict[str, str] = {
    "gender": "Gender",
    "date_of_birth": "DOB",
    "residence_city": "Location",
    "email": "Email",
    "phone": "Phone",
    "social_media": "SocialMedia",
    "last_cv_update": "LastCVUpdate",
    "years_of_experience": "YearsOfExperience",
}

DELIMITED_KEYS: dict[str, str] = {
    "clients_donors": "ClientsOrDonors",
    "technical_sectors": "TechnicalSectors",
    "functional_areas": "FunctionalAreas",
}

# Structured-only fields with no legacy counterpart
STRUCTURED_SCALARS = (
    "first_name",
    "family_name",
    "proposed_role",
    "civil_status",
    "membership_professional_bodies",
    "other_skills",
    "present_position",
    "years_within_firm",
    "publications",
    "signature_name",
    "signature_date",
)

_NATIVE_MARKERS = ("excellent", "native")
_FLUENT_MARKERS = ("good", "fluent")


def normalize_whitespace(text: str) -> str:
    """Normalize whitespace: collapse multiple spaces, remove leading/trailing."""
    text = re.sub(r'\s+', ' ', text)
    return text.strip()


def as_text(value: Any) -> str:
    """Render any scalar-ish upstream value as trimmed text; ``None`` is ``""``."""
    if value is None:
        return ""
    if isinstance(value, bool):
        return "Yes" if value else "No"
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    if isinstance(value, (list, tuple)):
        return ", ".join(part for part in (as_text(v) for v in value) if part)
    return str(value).strip()


def split_delimited(value: Any) -> list[str]:
    """Sequence or comma-joined string -> trimmed list without empty items."""
    if value is None:
        return []
    if isinstance(value, str):
        items = value.split(",")
    elif isinstance(value, (list, tuple)):
        items = [as_text(v) for v in value]
    else:
        items = [as_text(value)]
    return [item.strip() for item in items if item.strip()]


def language_level(descriptor: str) -> LanguageLevel:
    lowered = descriptor.lower()
    if any(marker in lowered for marker in _NATIVE_MARKERS):
        return LanguageLevel.NATIVE
    if any(marker in lowered for marker in _FLUENT_MARKERS):
        return LanguageLevel.FLUENT
    return LanguageLevel.INTERMEDIATE


def parse_language(entry: str) -> LanguageSkill:
    """Parse ``"French (Excellent)"`` into a language and proficiency level."""
    language, _, descriptor = entry.partition(" (")
    return LanguageSkill(
        language=language.strip(),
        level=language_level(descriptor.rstrip(")")).value,
    )


def parse_education(entry: str) -> EducationRecord:
    """Parse ``"Degree, Institution, Year"`` positionally."""
    segments = [segment.strip() for segment in entry.split(",")]
    diploma = segments[0] if segments else ""
    institution = segments[1] if len(segments) > 1 else ""
    to_date = segments[2] if len(segments) > 2 else ""
    return EducationRecord(diploma=diploma, institution=institution, to_date=to_date, year=to_date[:4])


def split_name(name: Any) -> tuple[str, str]:
    """First whitespace-separated token is the given name, the rest the family name."""
    parts = normalize_whitespace(as_text(name)).split(" ", 1)
    first = parts[0]
    family = parts[1] if len(parts) > 1 else ""
    return first, family


def _present(raw: Mapping[str, Any], key: str) -> bool:
    return raw.get(key) is not None


def _pick(raw: Mapping[str, Any], canonical: str, legacy: str | None) -> tuple[Any, bool]:
    """Return ``(value, from_legacy)`` preferring the legacy key."""
    if legacy and _present(raw, legacy):
        return raw[legacy], True
    return raw.get(canonical), False


def _string_list(value: Any) -> list[str]:
    if value is None:
        return []
    if isinstance(value, str):
        value = [value]
    return [text for text in (as_text(v) for v in value) if text]


def _mapping_list(value: Any) -> list[dict[str, str]]:
    if value is None:
        return []
    if isinstance(value, Mapping):
        value = [value]
    if isinstance(value, str):
        raise NormalizationError("Expected a list of records, got text")
    records = []
    for item in value:
        if item is None:
            continue
        if not isinstance(item, Mapping):
            raise NormalizationError(f"Expected a record, got {type(item).__name__}")
        records.append({k: as_text(v) for k, v in item.items()})
    return records


def _records(value: Any, parse_string: Callable[[str], Any], model: type) -> list:
    """Map a list whose items are either free text or already-structured dicts."""
    if value is None:
        return []
    if isinstance(value, (str, Mapping)):
        value = [value]
    records = []
    for item in value:
        if item is None:
            continue
        if isinstance(item, str):
            if item.strip():
                records.append(parse_string(item))
        elif isinstance(item, Mapping):
            records.append(model.model_validate({k: as_text(v) for k, v in item.items()}))
        else:
            raise NormalizationError(f"Unsupported {model.__name__} entry: {type(item).__name__}")
    return records


def _education(value: Any) -> list[EducationRecord]:
    records = _records(value, parse_education, EducationRecord)
    return [
        r.model_copy(update={"year": (r.year or r.to_date or r.from_date)[:4]})
        for r in records
    ]


def _languages(value: Any) -> list[LanguageSkill]:
    return _records(value, parse_language, LanguageSkill)


def _regions(value: Any) -> list[RegionExperience]:
    return _records(value, lambda country: RegionExperience(country=country.strip()), RegionExperience)


def normalize(raw: Mapping[str, Any] | CanonicalCandidate) -> CanonicalCandidate:
    """Map an upstream candidate record onto the canonical schema.

    Pure and idempotent: ``normalize(normalize(x)) == normalize(x)``.

    Args:
        raw: Record in legacy, canonical, or mixed key style

    Returns:
        CanonicalCandidate with every field populated

    Raises:
        NormalizationError: If the record is not a mapping or a nested entry
            cannot be validated
    """
    if isinstance(raw, CanonicalCandidate):
        raw = raw.model_dump()
    if not isinstance(raw, Mapping):
        raise NormalizationError(f"Expected a mapping, got {type(raw).__name__}")

    try:
        fields: dict[str, Any] = {}

        for canonical in STRUCTURED_SCALARS:
            fields[canonical] = as_text(raw.get(canonical))
        if _present(raw, "Name"):
            fields["first_name"], fields["family_name"] = split_name(raw["Name"])

        for canonical, legacy in SCALAR_KEYS.items():
            fields[canonical] = as_text(_pick(raw, canonical, legacy)[0])

        # role descriptions may contain commas, so strings are never split
        fields["role_experience"] = _string_list(_pick(raw, "role_experience", "RoleExperience")[0])

        nationality, _ = _pick(raw, "nationality", "Nationalities")
        fields["nationality"] = as_text(nationality)

        languages, _ = _pick(raw, "language_skills", "Languages")
        fields["language_skills"] = _languages(languages)

        regions, _ = _pick(raw, "specific_experience_in_region", "CountriesOfWork")
        fields["specific_experience_in_region"] = _regions(regions)

        for canonical, legacy in DELIMITED_KEYS.items():
            fields[canonical] = split_delimited(_pick(raw, canonical, legacy)[0])

        education, _ = _pick(raw, "education", "AcademicQualifications")
        fields["education"] = _education(education)

        fields["training"] = _mapping_list(raw.get("training"))
        fields["professional_experience"] = _mapping_list(raw.get("professional_experience"))

        return CanonicalCandidate.model_validate(fields)
    except ValidationError as e:
        raise NormalizationError(f"Record failed validation: {e.error_count()} errors") from e
    except (TypeError, AttributeError) as e:
        raise NormalizationError(f"Record has an unexpected shape: {e}") from e


def score_to_percentage(raw: Any, scale: float) -> float:
    """The single score formula: ``round(clamp(raw * scale, 0, 100), 1)``.

    Non-numeric scores count as 0.
    """
    try:
        value = float(raw) * scale
    except (TypeError, ValueError):
        logger.debug(f"Non-numeric score {raw!r} treated as 0")
        return 0.0
    if value != value:  # NaN
        return 0.0
    return round(min(max(value, 0.0), 100.0), 1)
