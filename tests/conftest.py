"""
Shared fixtures for the tenderflow tests.
"""
import pytest

from tenderflow.config import AdmissionSettings, PDF_MIME
from tenderflow.events import Notifier
from tenderflow.models import UploadDocument

MB = 1024 * 1024


def pdf_document(name="cv.pdf", size=1024, mime_type=PDF_MIME):
    """A PDF-looking upload of exactly ``size`` bytes."""
    header = b"%PDF-1.4\n"
    return UploadDocument(name=name, content=header + b"0" * max(size - len(header), 0), mime_type=mime_type)


@pytest.fixture
def make_pdf():
    return pdf_document


@pytest.fixture
def policy():
    return AdmissionSettings()


@pytest.fixture
def notifier():
    return Notifier()


@pytest.fixture
def legacy_record():
    """A candidate as returned by the CV parsing endpoint."""
    return {
        "Name": "Jane  Mary Doe",
        "Gender": "Female",
        "DOB": "1985-04-12",
        "Location": "Brussels",
        "Email": "jane.doe@example.org",
        "Phone": "+32 123 456",
        "YearsOfExperience": 12,
        "RoleExperience": ["Team Leader, Governance", "Evaluator"],
        "Nationalities": ["Belgian", "French"],
        "Languages": ["French (Excellent)", "English (Good)", "Spanish (basic)"],
        "CountriesOfWork": ["Kenya", "Uganda"],
        "ClientsOrDonors": "EU, World Bank, , UNDP",
        "TechnicalSectors": ["Governance", "Public Finance"],
        "FunctionalAreas": "Evaluation,Training",
        "AcademicQualifications": ["MSc Economics, London School of Economics, 2010"],
    }


@pytest.fixture
def structured_record():
    """A candidate as returned by the Europass parsing endpoint."""
    return {
        "first_name": "Jane",
        "family_name": "Doe",
        "proposed_role": "Team Leader",
        "date_of_birth": "1985-04-12",
        "nationality": "Belgian",
        "civil_status": "Married",
        "residence_city": "Brussels",
        "education": [
            {"institution": "LSE", "diploma": "MSc Economics", "from_date": "2008-09-01", "to_date": "2010-06-30"},
        ],
        "language_skills": [
            {"language": "French", "level": "Native"},
            {"language": "English", "reading": "Fluent", "speaking": "Fluent", "writing": "Intermediate"},
        ],
        "professional_experience": [
            {
                "from_date": "2019-01-15",
                "to_date": "2021-06-30",
                "location": "Nairobi",
                "company_reference_person": "ACME Consulting",
                "position": "Team Leader",
                "description": "Led the governance programme.",
            },
        ],
    }
