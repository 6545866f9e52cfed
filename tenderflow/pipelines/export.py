"""Result export: JSON artifacts and Europass template merging.

The template merge only prepares the context and hands it to docxtpl;
absent values are replaced by the configured placeholder so no template
field is left unfilled.
"""
from __future__ import annotations

import io
import json
import logging
import re
from dataclasses import dataclass
from datetime import date
from pathlib import Path
from typing import Any

from pydantic_core import PydanticSerializationError, to_jsonable_python

from ..config import ExportSettings, settings
from ..models import CanonicalCandidate

logger = logging.getLogger(__name__)

JSON_MEDIA_TYPE = "application/json"
DOCX_MEDIA_TYPE = "application/vnd.openxmlformats-officedocument.wordprocessingml.document"

_ISO_DATE = re.compile(r"^\d{4}-\d{2}-\d{2}$")
_UNSAFE_FILENAME = re.compile(r"[^\w.-]+")


class ExportError(Exception):
    """Raised when an artifact cannot be produced."""
    pass


@dataclass
class ExportArtifact:
    """A downloadable file."""
    filename: str
    media_type: str
    content: bytes


def safe_filename(name: str) -> str:
    return _UNSAFE_FILENAME.sub("_", name).strip("_") or "export"


class ResultExporter:
    """Serializes stage/workflow results and candidate records."""

    def __init__(self, config: ExportSettings | None = None) -> None:
        self.config = config or settings.export

    def export_json(self, data: Any, filename: str) -> ExportArtifact:
        """Pretty-printed JSON of any serializable value, model, or dataclass.

        Raises:
            ExportError: If ``data`` is not JSON-serializable
        """
        try:
            payload = json.dumps(to_jsonable_python(data), indent=2, ensure_ascii=False)
        except (PydanticSerializationError, TypeError, ValueError) as e:
            raise ExportError(f"Result is not JSON-serializable: {e}") from e
        if not filename.endswith(".json"):
            filename = f"{filename}.json"
        return ExportArtifact(safe_filename(filename), JSON_MEDIA_TYPE, payload.encode("utf-8"))

    def _value(self, value: str) -> str:
        return value if value else self.config.placeholder

    def format_date(self, value: str) -> str:
        if not value:
            return self.config.placeholder
        if _ISO_DATE.match(value):
            try:
                return date.fromisoformat(value).strftime(self.config.date_format)
            except ValueError:
                return value
        # partial dates ("2016", "2020-07", "present") are kept as-is
        return value

    def format_period(self, start: str, end: str) -> str:
        if not start and not end:
            return self.config.placeholder
        return f"{self.format_date(start)} - {self.format_date(end)}"

    def build_template_context(self, candidate: CanonicalCandidate, *, today: date | None = None) -> dict[str, Any]:
        """Map a canonical candidate onto the Europass template merge fields."""
        today = today or date.today()
        v = self._value

        training = [
            {"period": v(t.period), "topic": v(t.topic), "provider": v(t.provider)}
            for t in candidate.training
        ] or [{"period": self.config.placeholder, "topic": self.config.empty_training_topic, "provider": ""}]

        return {
            "proposed_role": v(candidate.proposed_role),
            "family_name": v(candidate.family_name),
            "first_name": v(candidate.first_name),
            "date_of_birth": v(candidate.date_of_birth),
            "nationality": v(candidate.nationality),
            "civil_status": v(candidate.civil_status),
            "residence_city": v(candidate.residence_city),
            "education": [
                {
                    "period": self.format_period(e.from_date, e.to_date) if e.from_date else self._value(e.year),
                    "institution": v(e.institution),
                    "diploma": v(e.diploma),
                }
                for e in candidate.education
            ],
            "training": training,
            "languages": [
                {
                    "language": v(lang.language),
                    "read": v(lang.reading or lang.level),
                    "speak": v(lang.speaking or lang.level),
                    "write": v(lang.writing or lang.level),
                }
                for lang in candidate.language_skills
            ],
            "membership_professional_bodies": v(candidate.membership_professional_bodies),
            "other_skills": v(candidate.other_skills),
            "present_position": v(candidate.present_position),
            "years_within_firm": v(candidate.years_within_firm),
            "region_experience": [
                {"country": v(r.country), "period": self.format_period(r.from_date, r.to_date)}
                for r in candidate.specific_experience_in_region
            ],
            "professional_experience": [
                {
                    "period": self.format_period(p.from_date, p.to_date),
                    "location": v(p.location),
                    "company": v(p.company_reference_person),
                    "position": v(p.position),
                    "description": v(p.description),
                }
                for p in candidate.professional_experience
            ],
            "publications": v(candidate.publications),
            "signature_name": v(candidate.signature_name or candidate.full_name),
            "signature_date": v(candidate.signature_date) if candidate.signature_date
            else today.strftime(self.config.date_format),
        }

    def document_filename(self, candidate: CanonicalCandidate) -> str:
        return safe_filename(f"Europass_CV_{candidate.first_name}_{candidate.family_name}.docx")

    def render_document(
        self,
        candidate: CanonicalCandidate,
        template_path: str | Path | None = None,
        *,
        today: date | None = None,
    ) -> ExportArtifact:
        """Merge a candidate into the Europass ``.docx`` template.

        Raises:
            ExportError: If no template is configured, it is missing, or rendering fails
        """
        from docxtpl import DocxTemplate

        path = template_path or self.config.template_path
        if not path:
            raise ExportError("No Europass template configured")
        path = Path(path)
        if not path.is_file():
            raise ExportError(f"Template file not found: {path}")
        if path.suffix.lower() != ".docx":
            raise ExportError("Template file is not a valid .docx file")

        context = self.build_template_context(candidate, today=today)
        try:
            template = DocxTemplate(str(path))
            template.render(context)
            buffer = io.BytesIO()
            template.save(buffer)
        except Exception as e:
            logger.error(f"Error generating document from {path}: {e}", exc_info=True)
            raise ExportError(f"Error generating document: {e}") from e

        logger.info(f"Rendered Europass CV for {candidate.full_name or 'unnamed candidate'}")
        return ExportArtifact(self.document_filename(candidate), DOCX_MEDIA_TYPE, buffer.getvalue())
