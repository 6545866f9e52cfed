"""Tests for the admission policy and the upload tracker."""

import asyncio
from unittest.mock import AsyncMock

import pytest

from tenderflow.client import BatchParseResponse, ErrorEntry, ProcessedEntry
from tenderflow.config import DOCX_MIME, PDF_MIME, AdmissionSettings
from tenderflow.events import NotificationKind
from tenderflow.models import FileStatus, UploadDocument
from tenderflow.pipelines.ingest import (
    AdmissionError,
    FileUploadTracker,
    admit_files,
    check_admission,
    detect_mime_type,
    format_file_size,
)

from conftest import MB, pdf_document


def processed(filename, record):
    return BatchParseResponse(processed=[ProcessedEntry(filename=filename, parsed=record)])


def failed(filename, message):
    return BatchParseResponse(errors=[ErrorEntry(filename=filename, error=message)])


def sequential_ids(*ids):
    return iter(ids).__next__


async def settle():
    for _ in range(10):
        await asyncio.sleep(0)


class TestAdmission:
    """Tests for check_admission and admit_files."""

    def test_format_file_size(self):
        assert format_file_size(int(4.5 * MB)) == "4.5 MB"
        assert format_file_size(0) == "0 Bytes"
        assert format_file_size(2048) == "2 KB"

    def test_rejects_file_over_limit(self, policy):
        document = pdf_document("big.pdf", size=5 * MB)

        with pytest.raises(AdmissionError) as excinfo:
            check_admission(document, policy)

        assert excinfo.value.filename == "big.pdf"
        assert excinfo.value.message == (
            'File "big.pdf" is too large. Please upload files less than or equal to 4.5 MB.'
        )

    def test_accepts_file_under_limit(self, policy):
        assert check_admission(pdf_document(size=4 * MB), policy) == PDF_MIME

    def test_accepts_file_exactly_at_limit(self, policy):
        assert check_admission(pdf_document(size=policy.max_file_size), policy) == PDF_MIME

    def test_rejects_unsupported_type(self, policy):
        document = UploadDocument(name="notes.txt", content=b"hello", mime_type="text/plain")

        with pytest.raises(AdmissionError, match="unsupported type"):
            check_admission(document, policy)

    def test_custom_limit(self):
        policy = AdmissionSettings(max_file_size=1024)

        with pytest.raises(AdmissionError, match="1 KB"):
            check_admission(pdf_document(size=2048), policy)

    def test_detect_by_extension(self):
        document = UploadDocument(name="cv.DOCX", content=b"", mime_type="application/octet-stream")

        assert detect_mime_type(document) == DOCX_MIME

    def test_detect_by_magic_number(self):
        document = UploadDocument(name="upload", content=b"%PDF-1.7 ...")

        assert detect_mime_type(document) == PDF_MIME

    def test_admit_files_splits_batch(self, policy):
        report = admit_files(
            [pdf_document("ok.pdf"), pdf_document("big.pdf", size=5 * MB), pdf_document("ok2.pdf")],
            policy,
        )

        assert [d.name for d in report.accepted] == ["ok.pdf", "ok2.pdf"]
        assert [r.filename for r in report.rejected] == ["big.pdf"]

    def test_admit_files_fills_resolved_mime(self, policy):
        report = admit_files([UploadDocument(name="cv.pdf", content=b"%PDF-1.4")], policy)

        assert report.accepted[0].mime_type == PDF_MIME


class TestFileUploadTracker:
    """Tests for FileUploadTracker."""

    def test_rejected_files_never_reach_the_service(self, notifier):
        parse = AsyncMock()
        tracker = FileUploadTracker(parse, notifier=notifier)

        results, rejected = asyncio.run(tracker.submit([pdf_document("big.pdf", size=5 * MB)]))

        parse.assert_not_awaited()
        assert results == []
        assert len(rejected) == 1
        assert tracker.files == []
        assert notifier.recent()[-1].kind == NotificationKind.FILE_REJECTED

    def test_successful_upload(self, notifier, legacy_record):
        parse = AsyncMock(return_value=processed("cv.pdf", legacy_record))
        tracker = FileUploadTracker(parse, notifier=notifier, id_factory=sequential_ids("f1"))

        results, rejected = asyncio.run(tracker.submit([pdf_document("cv.pdf")]))

        assert rejected == []
        entry = results[0]
        assert entry.id == "f1"
        assert entry.status == FileStatus.COMPLETED
        assert entry.progress == 100
        assert entry.result.first_name == "Jane"
        assert entry.extracted_fields == len(legacy_record)
        assert entry.error is None
        assert NotificationKind.BATCH_COMPLETED in [n.kind for n in notifier.recent()]

    def test_one_request_per_file(self):
        parse = AsyncMock(side_effect=lambda docs: processed(docs[0].name, {"Name": "A B"}))
        tracker = FileUploadTracker(parse)

        asyncio.run(tracker.submit([pdf_document("a.pdf"), pdf_document("b.pdf")]))

        assert parse.await_count == 2
        assert [len(call.args[0]) for call in parse.await_args_list] == [1, 1]

    def test_service_error_entry(self):
        parse = AsyncMock(return_value=failed("cv.pdf", "Corrupt file"))
        tracker = FileUploadTracker(parse)

        results, _ = asyncio.run(tracker.submit([pdf_document("cv.pdf")]))

        assert results[0].status == FileStatus.ERROR
        assert results[0].error == "Corrupt file"
        assert results[0].result is None

    def test_parse_exception_becomes_error(self):
        parse = AsyncMock(side_effect=RuntimeError("connection reset"))
        tracker = FileUploadTracker(parse)

        results, _ = asyncio.run(tracker.submit([pdf_document("cv.pdf")]))

        assert results[0].status == FileStatus.ERROR
        assert results[0].error == "connection reset"

    def test_malformed_record_is_quarantined(self):
        parse = AsyncMock(return_value=processed("cv.pdf", {"Languages": [42]}))
        tracker = FileUploadTracker(parse)

        results, _ = asyncio.run(tracker.submit([pdf_document("cv.pdf")]))

        assert results[0].status == FileStatus.ERROR
        assert results[0].error.startswith("Malformed result")

    def test_missing_entry_for_file(self):
        parse = AsyncMock(return_value=BatchParseResponse())
        tracker = FileUploadTracker(parse)

        results, _ = asyncio.run(tracker.submit([pdf_document("cv.pdf")]))

        assert results[0].error == "No result returned for file"

    def test_duplicate_names_do_not_cross_wire(self):
        async def parse(documents):
            document = documents[0]
            name = "First Person" if document.content.endswith(b"1") else "Second Person"
            return processed(document.name, {"Name": name})

        tracker = FileUploadTracker(parse, id_factory=sequential_ids("f1", "f2"))
        first = UploadDocument(name="cv.pdf", content=b"%PDF-1.4 1", mime_type=PDF_MIME)
        second = UploadDocument(name="cv.pdf", content=b"%PDF-1.4 2", mime_type=PDF_MIME)

        asyncio.run(tracker.submit([first, second]))

        assert tracker.get("f1").result.first_name == "First"
        assert tracker.get("f2").result.first_name == "Second"

    @pytest.mark.parametrize("release_order", [("a.pdf", "b.pdf"), ("b.pdf", "a.pdf")])
    def test_independent_completion_in_any_order(self, release_order):
        async def scenario():
            gates = {"a.pdf": asyncio.Event(), "b.pdf": asyncio.Event()}
            responses = {
                "a.pdf": processed("a.pdf", {"Name": "Ann Lee"}),
                "b.pdf": failed("b.pdf", "Corrupt file"),
            }

            async def parse(documents):
                name = documents[0].name
                await gates[name].wait()
                return responses[name]

            tracker = FileUploadTracker(parse, id_factory=sequential_ids("a", "b"))
            task = asyncio.create_task(tracker.submit([pdf_document("a.pdf"), pdf_document("b.pdf")]))
            await settle()

            assert tracker.get("a").status == FileStatus.PROCESSING
            assert tracker.get("b").status == FileStatus.PROCESSING

            first, second = release_order
            gates[first].set()
            await settle()
            assert tracker.get(first[0]).status.is_terminal
            assert tracker.get(second[0]).status == FileStatus.PROCESSING

            gates[second].set()
            await task
            return tracker

        tracker = asyncio.run(scenario())

        assert tracker.get("a").status == FileStatus.COMPLETED
        assert tracker.get("a").result.first_name == "Ann"
        assert tracker.get("b").status == FileStatus.ERROR
        assert tracker.get("b").error == "Corrupt file"

    def test_removed_entry_ignores_late_result(self):
        async def scenario():
            gate = asyncio.Event()

            async def parse(documents):
                await gate.wait()
                return processed(documents[0].name, {"Name": "Ann Lee"})

            tracker = FileUploadTracker(parse, id_factory=sequential_ids("f1"))
            task = asyncio.create_task(tracker.submit([pdf_document("cv.pdf")]))
            await settle()

            assert tracker.remove("f1") is True
            gate.set()
            results, _ = await task
            return tracker, results

        tracker, results = asyncio.run(scenario())

        assert results == []
        assert tracker.files == []

    def test_remove_unknown_entry(self):
        tracker = FileUploadTracker(AsyncMock())

        assert tracker.remove("nope") is False

    def test_by_status_and_clear(self):
        parse = AsyncMock(side_effect=[processed("a.pdf", {"Name": "A"}), failed("b.pdf", "bad")])
        tracker = FileUploadTracker(parse)

        asyncio.run(tracker.submit([pdf_document("a.pdf"), pdf_document("b.pdf")]))

        assert len(tracker.by_status(FileStatus.COMPLETED)) == 1
        assert len(tracker.by_status(FileStatus.ERROR)) == 1
        tracker.clear()
        assert tracker.files == []
