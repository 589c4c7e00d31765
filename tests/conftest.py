"""Pytest configuration and shared fixtures."""

import os
from datetime import datetime, timezone

import pytest

# Set test environment variables before importing settings
os.environ["TESTING"] = "true"
os.environ["DATABASE_URL"] = "sqlite:///:memory:"
os.environ["BACKFILL_DISPATCH_MODE"] = "inline"
os.environ["BACKFILL_AUTO_RECOVER"] = "false"
os.environ["CELERY_BROKER_URL"] = "memory://"
os.environ["CELERY_RESULT_BACKEND"] = "cache+memory://"
os.environ["CELERY_TASK_ALWAYS_EAGER"] = "true"
os.environ.pop("ADMIN_API_KEY", None)

from sqlalchemy.orm import sessionmaker

from config.settings import BackfillConfig
from src.models import Base, BackfillJob, JobStatus, JobType, generate_job_id
from src.services.backfill_service import BackfillService
from src.services.dispatchers import InlineJobDispatcher
from src.services.exceptions import FatalJobError
from src.services.item_streams import ItemProcessor, ItemResult
from src.services.job_runner import JobRunner
from src.services.job_store import JobStore
from src.utils.database import build_engine


class FakeItemProcessor(ItemProcessor):
    """Scriptable item processor.

    Args:
        items: What ``list_items`` returns (None: cannot enumerate)
        fail: item id -> number of attempts that fail before succeeding
              (a large number fails every attempt)
        skip: item ids reported as already present
        fatal: item ids that raise FatalJobError
        on_item: callback(job, item_id) run before each attempt
    """

    def __init__(self, items=None, fail=None, skip=(), fatal=(), on_item=None):
        self.items = items
        self.fail = dict(fail or {})
        self.skip = set(skip)
        self.fatal = set(fatal)
        self.on_item = on_item
        self.calls = []

    def process_item(self, job, item_id):
        self.calls.append(item_id)
        if self.on_item:
            self.on_item(job, item_id)
        if item_id in self.fatal:
            raise FatalJobError(f"upstream unavailable at {item_id}")
        if self.fail.get(item_id, 0) > 0:
            self.fail[item_id] -= 1
            raise RuntimeError(f"boom on {item_id}")
        if item_id in self.skip:
            return ItemResult.skipped("already collected")
        return ItemResult.processed(snapshot_id=f"snap-{item_id}")

    def list_items(self, job_type, config):
        if self.items is None:
            return super().list_items(job_type, config)
        return list(self.items)


@pytest.fixture
def db_engine():
    """In-memory database shared across threads via StaticPool."""
    engine = build_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)
    yield engine
    Base.metadata.drop_all(engine)
    engine.dispose()


@pytest.fixture
def session_factory(db_engine):
    return sessionmaker(bind=db_engine, expire_on_commit=False)


@pytest.fixture
def store(session_factory):
    return JobStore(session_factory)


@pytest.fixture
def processor():
    return FakeItemProcessor()


@pytest.fixture
def backfill_config():
    """Runner config without delays so retries run instantly."""
    return BackfillConfig(
        dispatch_mode="inline",
        max_item_retries=2,
        retry_base_delay=0.0,
        retry_max_delay=0.0,
        checkpoint_every_items=1,
        checkpoint_interval_seconds=5.0,
        max_retained_errors=100,
    )


@pytest.fixture
def make_service(store, backfill_config):
    """Factory: BackfillService with an inline dispatcher around ``processor``."""

    def _make(processor, config=None):
        config = config or backfill_config
        runner = JobRunner(store, processor, config)
        return BackfillService(store, processor, runner, InlineJobDispatcher(runner), config)

    return _make


@pytest.fixture
def service(make_service, processor):
    return make_service(processor)


@pytest.fixture
def insert_job(session_factory):
    """Insert a job row directly, bypassing admission (for store/query tests)."""

    def _insert(
        status=JobStatus.PENDING,
        target_key=None,
        job_type=JobType.DATA_COLLECTION,
        config=None,
        created_at=None,
        **fields,
    ):
        job_id = fields.pop("job_id", None) or generate_job_id()
        now = created_at or datetime.now(timezone.utc)
        session = session_factory()
        try:
            session.add(
                BackfillJob(
                    job_id=job_id,
                    job_type=JobType(job_type).value,
                    target_key=target_key or f"target-{job_id[:8]}",
                    config=config if config is not None else {
                        "start_date": "2025-01-01",
                        "end_date": "2025-01-03",
                        "skip_existing": True,
                    },
                    status=JobStatus(status).value,
                    errors=[],
                    snapshot_ids=[],
                    created_at=now,
                    updated_at=now,
                    **fields,
                )
            )
            session.commit()
        finally:
            session.close()
        return job_id

    return _insert



@pytest.fixture
def make_processor():
    """Factory for scriptable fake processors."""
    return FakeItemProcessor
