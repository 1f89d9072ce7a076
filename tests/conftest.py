from io import BytesIO

import openpyxl
import pytest

from sheet_ingest.app.db.database import create_session_factory, init_db
from sheet_ingest.coordinator import PipelineCoordinator
from sheet_ingest.consumer import Consumer
from sheet_ingest.processor import Processor
from sheet_ingest.queues.base import HandleRegistry, RetryPolicy
from sheet_ingest.queues.memory_queue import InMemoryQueue
from sheet_ingest.schemas import UploadMetadata
from sheet_ingest.services.storage import LocalFileStorage


class FakeClock:
    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def make_xlsx(rows) -> bytes:
    workbook = openpyxl.Workbook()
    sheet = workbook.active
    for row in rows:
        sheet.append(list(row))
    buffer = BytesIO()
    workbook.save(buffer)
    return buffer.getvalue()


def xlsx_upload(name: str = "people.xlsx"):
    return UploadMetadata(
        filename=name,
        mime_type="application/vnd.openxmlformats-officedocument.spreadsheetml.sheet",
    )


@pytest.fixture
def session_factory(tmp_path):
    # file-backed so the worker, tracker and coordinator sessions share state
    factory = create_session_factory(f"sqlite:///{tmp_path / 'ingest.db'}")
    init_db(bind=factory.kw["bind"])
    yield factory
    factory.kw["bind"].dispose()


@pytest.fixture
def storage(tmp_path):
    return LocalFileStorage(str(tmp_path / "uploads"))


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def queue(clock):
    return InMemoryQueue(
        policy=RetryPolicy(max_attempts=3, base_delay=2.0),
        registry=HandleRegistry(keep_completed=10, keep_failed=50),
        clock=clock,
    )


@pytest.fixture
def processor(session_factory, storage):
    return Processor(session_factory, storage, batch_size=100, progress_interval=10)


@pytest.fixture
def consumer(queue, processor):
    return Consumer(queue, processor, poll_timeout=0)


@pytest.fixture
def coordinator(session_factory, storage, queue):
    return PipelineCoordinator(session_factory, storage, queue, max_manual_retries=5)


@pytest.fixture
def alice_bob_xlsx():
    return make_xlsx([["ID", "Name"], [1, "Alice"], ["", "Bob"]])


@pytest.fixture
def workbook_bytes():
    return make_xlsx


@pytest.fixture
def upload_metadata():
    return xlsx_upload
