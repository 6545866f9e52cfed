"""Tests for the extraction service client, against a mocked transport."""

import asyncio
import json

import httpx
import pytest

from tenderflow.client import (
    ExtractionServiceClient,
    MalformedResponseError,
    TransportError,
    UpstreamError,
)
from tenderflow.config import ServiceSettings

from conftest import pdf_document

BASE_URL = "http://extraction.test"


def run(handler, call):
    """Run ``call(client)`` against a client whose requests go to ``handler``."""
    async def scenario():
        config = ServiceSettings(base_url=BASE_URL)
        async with ExtractionServiceClient(config, transport=httpx.MockTransport(handler)) as client:
            return await call(client)

    return asyncio.run(scenario())


class TestConfig:

    def test_trailing_slash_stripped(self):
        assert ServiceSettings(base_url="http://svc/").base_url == "http://svc"

    def test_no_timeout_by_default(self):
        assert ServiceSettings().timeout_seconds is None


class TestBatchParse:
    """Tests for upload_multiple_files and parse_structured."""

    def test_upload_multiple_files(self):
        seen = {}

        def handler(request):
            seen["path"] = request.url.path
            seen["body"] = request.content
            return httpx.Response(200, json={
                "processed": [{"filename": "cv.pdf", "result": {"Name": "Jane Doe"}}],
                "errors": [],
            })

        response = run(handler, lambda c: c.upload_multiple_files([pdf_document("cv.pdf")]))

        assert seen["path"] == "/upload-multiple-cvs"
        assert b'name="files"; filename="cv.pdf"' in seen["body"]
        assert response.processed[0].payload == {"Name": "Jane Doe"}

    def test_parse_structured_prefers_parsed(self):
        def handler(request):
            assert request.url.path == "/europass-parse"
            return httpx.Response(200, json={
                "processed": [{"filename": "cv.pdf", "parsed": {"first_name": "Jane"}, "result": {"x": 1}}],
            })

        response = run(handler, lambda c: c.parse_structured([pdf_document("cv.pdf")]))

        assert response.processed[0].payload == {"first_name": "Jane"}
        assert response.errors == []

    def test_upstream_detail_is_surfaced(self):
        def handler(request):
            return httpx.Response(422, json={"detail": "Unreadable PDF"})

        response = run(handler, lambda c: c.upload_multiple_files([pdf_document("a.pdf"), pdf_document("b.pdf")]))

        assert response.processed == []
        assert [(e.filename, e.message) for e in response.errors] == [
            ("a.pdf", "Unreadable PDF"),
            ("b.pdf", "Unreadable PDF"),
        ]

    def test_generic_fallback_message(self):
        def handler(request):
            return httpx.Response(500, text="Internal Server Error")

        response = run(handler, lambda c: c.upload_multiple_files([pdf_document("cv.pdf")]))

        assert response.errors[0].message == "Upload failed"

    def test_transport_failure(self):
        def handler(request):
            raise httpx.ConnectError("Connection refused", request=request)

        response = run(handler, lambda c: c.upload_multiple_files([pdf_document("cv.pdf")]))

        assert response.errors[0].message == "Connection refused"

    def test_malformed_envelope(self):
        def handler(request):
            return httpx.Response(200, json={"processed": "nope"})

        response = run(handler, lambda c: c.upload_multiple_files([pdf_document("cv.pdf")]))

        assert response.errors[0].message.startswith("Malformed parse response")


class TestTender:
    """Tests for upload_single_document."""

    def test_processed(self):
        def handler(request):
            assert request.url.path == "/upload-tender"
            return httpx.Response(200, json={
                "status": "processed",
                "result": {"matches": [], "agent_output": {"selected_candidates": []}},
            })

        response = run(handler, lambda c: c.upload_single_document(pdf_document("tender.pdf")))

        assert response.status == "processed"
        assert response.result["matches"] == []

    def test_failure_never_raises(self):
        def handler(request):
            return httpx.Response(503, json={"error": "Model overloaded"})

        response = run(handler, lambda c: c.upload_single_document(pdf_document("tender.pdf")))

        assert response.status == "error"
        assert response.error == "Model overloaded"


class TestWorkflowSteps:
    """Tests for the four workflow endpoints."""

    def test_step1_multipart(self):
        def handler(request):
            assert request.url.path == "/profile-expert/step1"
            assert b'name="cv"; filename="cv.pdf"' in request.content
            assert b'name="tender"; filename="tender.pdf"' in request.content
            return httpx.Response(200, json={
                "cv_assignments": [{"title": "A"}],
                "tender_assignments": [{"title": "B"}],
                "cv_text": "cv",
                "tender_text": "tender",
            })

        extraction = run(handler, lambda c: c.workflow_step1(pdf_document("cv.pdf"), pdf_document("tender.pdf")))

        assert extraction.cv_text == "cv"
        assert extraction.tender_assignments == [{"title": "B"}]

    def test_step2_json_body(self):
        seen = {}

        def handler(request):
            seen["body"] = json.loads(request.content)
            return httpx.Response(200, json={"selected_assignments": [{"title": "A"}]})

        selection = run(handler, lambda c: c.workflow_step2([{"title": "A"}], [{"title": "B"}]))

        assert seen["body"] == {"cv_assignments": [{"title": "A"}], "tender_assignments": [{"title": "B"}]}
        assert selection.selected_assignments == [{"title": "A"}]

    def test_step4_json_body(self):
        seen = {}

        def handler(request):
            seen["path"] = request.url.path
            seen["body"] = json.loads(request.content)
            return httpx.Response(200, json={"expert_profile": "profile text"})

        profile = run(handler, lambda c: c.workflow_step4("write-up", "cv", [{"title": "B"}]))

        assert seen["path"] == "/profile-expert/step4"
        assert seen["body"] == {"write_up": "write-up", "cv_text": "cv", "tender_assignments": [{"title": "B"}]}
        assert profile.expert_profile == "profile text"

    def test_missing_required_field(self):
        def handler(request):
            return httpx.Response(200, json={"cv_assignments": [], "tender_assignments": []})

        with pytest.raises(MalformedResponseError):
            run(handler, lambda c: c.workflow_step1(pdf_document("cv.pdf"), pdf_document("tender.pdf")))

    def test_non_json_body(self):
        def handler(request):
            return httpx.Response(200, text="<html>gateway</html>")

        with pytest.raises(MalformedResponseError):
            run(handler, lambda c: c.workflow_step3([], "cv"))

    def test_upstream_error(self):
        def handler(request):
            return httpx.Response(500)

        with pytest.raises(UpstreamError) as excinfo:
            run(handler, lambda c: c.workflow_step3([], "cv"))

        assert excinfo.value.message == "Failed to process step 3"
        assert excinfo.value.status_code == 500

    def test_transport_error(self):
        def handler(request):
            raise httpx.ReadTimeout("timed out", request=request)

        with pytest.raises(TransportError):
            run(handler, lambda c: c.workflow_step2([], []))
