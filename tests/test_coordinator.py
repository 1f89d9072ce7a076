from datetime import datetime
from pathlib import Path

import pytest

from sheet_ingest.consumer import Consumer
from sheet_ingest.coordinator import PipelineCoordinator
from sheet_ingest.errors import (
    ErrorKind,
    InvalidStateError,
    NotFoundError,
    QueueUnavailableError,
    RetryLimitExceededError,
    ValidationError,
)
from sheet_ingest.models.job import Job, JobStatus
from sheet_ingest.processor import Processor
from sheet_ingest.schemas import JobFilters, UploadMetadata

OWNER = "owner-1"


def _upload_files(storage):
    return sorted(Path(storage.upload_dir).iterdir())


def _set_created_at(session_factory, job_id, when):
    with session_factory() as db:
        db.query(Job).filter(Job.job_id == job_id).update({Job.job_created_at: when})
        db.commit()


def test_submit_creates_pending_job(coordinator, queue, storage, alice_bob_xlsx, upload_metadata):
    result = coordinator.submit(alice_bob_xlsx, upload_metadata("Report.XLSX"), OWNER)

    job = coordinator.get_status(result.job_id, OWNER)
    assert job.status == JobStatus.PENDING
    assert job.original_filename == "Report.XLSX"
    assert job.file_size == len(alice_bob_xlsx)
    assert job.total_rows is None
    assert queue.get_job(result.queue_handle).job_id == result.job_id
    assert len(_upload_files(storage)) == 1


def test_job_view_does_not_expose_storage_location(coordinator, alice_bob_xlsx, upload_metadata):
    result = coordinator.submit(alice_bob_xlsx, upload_metadata(), OWNER)

    dumped = coordinator.get_status(result.job_id, OWNER).model_dump()

    assert "source_location" not in dumped
    assert not any("uploads" in str(value) for value in dumped.values())


@pytest.mark.parametrize("data,filename", [
    (b"", "empty.xlsx"),
    (b"PK\x03\x04data", "notes.csv"),
    (b"PK\x03\x04data", "no_extension"),
    (b"PK\x03\x04data", "   "),
])
def test_invalid_uploads_are_rejected_before_any_side_effect(coordinator, queue, storage, data, filename):
    with pytest.raises(ValidationError) as exc_info:
        coordinator.submit(data, UploadMetadata(filename=filename), OWNER)

    assert exc_info.value.kind == ErrorKind.BAD_INPUT
    assert coordinator.list_jobs(OWNER).total == 0
    assert queue.pending_count() == 0
    assert _upload_files(storage) == []


def test_oversized_upload_is_rejected(session_factory, storage, queue):
    coordinator = PipelineCoordinator(session_factory, storage, queue, max_upload_bytes=16)

    with pytest.raises(ValidationError) as exc_info:
        coordinator.submit(b"PK\x03\x04" + b"x" * 32, UploadMetadata(filename="big.xlsx"), OWNER)

    assert "too large" in exc_info.value.user_message


def test_unexpected_mime_type_is_accepted(coordinator, alice_bob_xlsx):
    result = coordinator.submit(alice_bob_xlsx, UploadMetadata(filename="a.xls", mime_type="text/plain"), OWNER)

    assert coordinator.get_status(result.job_id, OWNER).mime_type == "text/plain"


def test_enqueue_failure_rolls_back_submission(coordinator, queue, storage, monkeypatch, alice_bob_xlsx, upload_metadata):
    def unavailable(job_id, options=None):
        raise ConnectionError("broker down")

    monkeypatch.setattr(queue, "enqueue", unavailable)

    with pytest.raises(QueueUnavailableError):
        coordinator.submit(alice_bob_xlsx, upload_metadata(), OWNER)

    assert coordinator.list_jobs(OWNER).total == 0
    assert _upload_files(storage) == []


def test_other_owners_jobs_look_missing(coordinator, alice_bob_xlsx, upload_metadata):
    result = coordinator.submit(alice_bob_xlsx, upload_metadata(), OWNER)

    assert coordinator.get_status(result.job_id, "intruder") is None
    assert coordinator.list_jobs("intruder").total == 0
    for operation in (coordinator.get_records, coordinator.retry, coordinator.cancel, coordinator.delete):
        with pytest.raises(NotFoundError) as exc_info:
            operation(result.job_id, "intruder")
        assert exc_info.value.to_dict() == {
            "error_code": "JOB_NOT_FOUND",
            "kind": "not_found",
            "message": "Job not found",
        }

    assert coordinator.get_status(result.job_id, OWNER).status == JobStatus.PENDING


def test_records_are_paginated_in_order(coordinator, consumer, workbook_bytes, upload_metadata):
    rows = [["b", "a"]] + [[f"b{i}", f"a{i}"] for i in range(1, 31)]
    result = coordinator.submit(workbook_bytes(rows), upload_metadata(), OWNER)
    consumer.run_once(timeout=0)

    first = coordinator.get_records(result.job_id, OWNER, page=1, page_size=4)
    second = coordinator.get_records(result.job_id, OWNER, page=2, page_size=4)

    assert first.total == 60
    assert first.pages == 15
    assert [(r.row_number, r.column_name, r.value) for r in first.items] == [
        (1, "a", "a1"), (1, "b", "b1"), (2, "a", "a2"), (2, "b", "b2"),
    ]
    assert [(r.row_number, r.column_name) for r in second.items] == [
        (3, "a"), (3, "b"), (4, "a"), (4, "b"),
    ]


def test_status_carries_latest_records(coordinator, consumer, workbook_bytes, upload_metadata):
    rows = [["b", "a"]] + [[f"b{i}", f"a{i}"] for i in range(1, 9)]
    result = coordinator.submit(workbook_bytes(rows), upload_metadata(), OWNER)
    assert coordinator.get_status(result.job_id, OWNER).sample_records == []

    consumer.run_once(timeout=0)

    job = coordinator.get_status(result.job_id, OWNER)
    assert [(r.row_number, r.column_name, r.value) for r in job.sample_records] == [
        (8, "a", "a8"), (8, "b", "b8"), (7, "a", "a7"), (7, "b", "b7"), (6, "a", "a6"),
    ]
    assert coordinator.list_jobs(OWNER).items[0].sample_records == []


def test_record_page_size_is_capped(coordinator, consumer, workbook_bytes, upload_metadata):
    rows = [["a", "b", "c", "d"]] + [[i, i, i, i] for i in range(1, 301)]
    result = coordinator.submit(workbook_bytes(rows), upload_metadata(), OWNER)
    consumer.run_once(timeout=0)

    page = coordinator.get_records(result.job_id, OWNER, page=0, page_size=5000)

    assert page.page == 1
    assert page.page_size == 1000
    assert len(page.items) == 1000
    assert page.total == 1200


def test_list_jobs_filters_and_orders_newest_first(coordinator, session_factory, consumer, workbook_bytes, upload_metadata):
    alpha = coordinator.submit(workbook_bytes([["a"], [1]]), upload_metadata("Alpha-sales.xlsx"), OWNER)
    beta = coordinator.submit(workbook_bytes([["a"]]), upload_metadata("beta.xls"), OWNER)
    gamma = coordinator.submit(workbook_bytes([["a"], [1]]), upload_metadata("gamma_SALES.xlsx"), OWNER)
    coordinator.submit(workbook_bytes([["a"], [1]]), upload_metadata("other.xlsx"), "owner-2")

    _set_created_at(session_factory, alpha.job_id, datetime(2024, 1, 1))
    _set_created_at(session_factory, beta.job_id, datetime(2024, 2, 1))
    _set_created_at(session_factory, gamma.job_id, datetime(2024, 3, 1))
    for _ in range(3):
        consumer.run_once(timeout=0)

    everything = coordinator.list_jobs(OWNER)
    assert [job.id for job in everything.items] == [gamma.job_id, beta.job_id, alpha.job_id]

    failed = coordinator.list_jobs(OWNER, JobFilters(status=JobStatus.FAILED))
    assert [job.id for job in failed.items] == [beta.job_id]

    sales = coordinator.list_jobs(OWNER, JobFilters(search="sales"))
    assert [job.id for job in sales.items] == [gamma.job_id, alpha.job_id]

    ranged = coordinator.list_jobs(
        OWNER,
        JobFilters(created_from=datetime(2024, 1, 15), created_to=datetime(2024, 3, 1)),
    )
    assert [job.id for job in ranged.items] == [gamma.job_id, beta.job_id]


def test_list_jobs_page_size_is_capped(coordinator, workbook_bytes, upload_metadata):
    for i in range(3):
        coordinator.submit(workbook_bytes([["a"], [i]]), upload_metadata(f"f{i}.xlsx"), OWNER)

    page = coordinator.list_jobs(OWNER, page=-3, page_size=500)
    assert page.page == 1
    assert page.page_size == 100
    assert page.total == 3

    second = coordinator.list_jobs(OWNER, page=2, page_size=2)
    assert len(second.items) == 1


def test_retry_requires_failed_job(coordinator, alice_bob_xlsx, upload_metadata):
    result = coordinator.submit(alice_bob_xlsx, upload_metadata(), OWNER)

    with pytest.raises(InvalidStateError) as exc_info:
        coordinator.retry(result.job_id, OWNER)
    assert exc_info.value.current == "PENDING"


def test_manual_retry_cap(session_factory, storage, queue, workbook_bytes, upload_metadata):
    coordinator = PipelineCoordinator(session_factory, storage, queue, max_manual_retries=1)
    consumer = Consumer(queue, Processor(session_factory, storage), poll_timeout=0)
    result = coordinator.submit(workbook_bytes([["only", "header"]]), upload_metadata(), OWNER)

    consumer.run_once(timeout=0)
    coordinator.retry(result.job_id, OWNER)
    consumer.run_once(timeout=0)

    assert coordinator.get_status(result.job_id, OWNER).status == JobStatus.FAILED
    with pytest.raises(RetryLimitExceededError):
        coordinator.retry(result.job_id, OWNER)


def test_cancel_pending_job(coordinator, alice_bob_xlsx, upload_metadata):
    result = coordinator.submit(alice_bob_xlsx, upload_metadata(), OWNER)

    cancelled = coordinator.cancel(result.job_id, OWNER)

    assert cancelled.status == JobStatus.CANCELLED
    with pytest.raises(InvalidStateError):
        coordinator.cancel(result.job_id, OWNER)


def test_cancel_completed_job_is_rejected(coordinator, consumer, alice_bob_xlsx, upload_metadata):
    result = coordinator.submit(alice_bob_xlsx, upload_metadata(), OWNER)
    consumer.run_once(timeout=0)

    with pytest.raises(InvalidStateError):
        coordinator.cancel(result.job_id, OWNER)


def test_delete_removes_job_records_and_file(coordinator, consumer, storage, alice_bob_xlsx, upload_metadata):
    result = coordinator.submit(alice_bob_xlsx, upload_metadata(), OWNER)
    consumer.run_once(timeout=0)

    coordinator.delete(result.job_id, OWNER)

    assert coordinator.get_status(result.job_id, OWNER) is None
    with pytest.raises(NotFoundError):
        coordinator.get_records(result.job_id, OWNER)
    assert _upload_files(storage) == []


def test_delete_survives_storage_failure(coordinator, storage, monkeypatch, alice_bob_xlsx, upload_metadata):
    result = coordinator.submit(alice_bob_xlsx, upload_metadata(), OWNER)
    monkeypatch.setattr(storage, "delete", lambda location: False)

    coordinator.delete(result.job_id, OWNER)

    assert coordinator.get_status(result.job_id, OWNER) is None
