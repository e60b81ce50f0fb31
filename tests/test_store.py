from datetime import timedelta
from unittest.mock import AsyncMock

import pytest
from sqlalchemy import update
from sqlalchemy.exc import OperationalError

from webanalyzer.core.exceptions import (
    JobAlreadyExistsError,
    JobNotFoundError,
    StorageUnavailableError,
)
from webanalyzer.core.job_ids import generate_job_id
from webanalyzer.jobs.models import AnalysisJob, JobStatus, utcnow


def new_job(**overrides) -> dict:
    job = {"job_id": generate_job_id(), "url": "https://example.com", "status": JobStatus.PENDING}
    job.update(overrides)
    return job


async def expire(database, job_id: str, minutes_ago: float = 1):
    async with database.SessionLocal() as session:
        await session.execute(
            update(AnalysisJob)
            .where(AnalysisJob.job_id == job_id)
            .values(expires_at=utcnow() - timedelta(minutes=minutes_ago))
        )
        await session.commit()


async def backdate(database, job_id: str, minutes: float, column: str = "created_at"):
    async with database.SessionLocal() as session:
        await session.execute(
            update(AnalysisJob)
            .where(AnalysisJob.job_id == job_id)
            .values({column: utcnow() - timedelta(minutes=minutes)})
        )
        await session.commit()


class TestCreateAndGet:
    async def test_create_then_get_round_trip(self, store):
        job = new_job()

        created = await store.create(job)
        fetched = await store.get(job["job_id"])

        assert created.job_id == job["job_id"]
        assert fetched is not None
        assert fetched.job_id == job["job_id"]
        assert fetched.url == "https://example.com"
        assert fetched.status == JobStatus.PENDING.value
        assert fetched.created_at.tzinfo is not None
        assert fetched.results is None
        assert fetched.error is None

    async def test_get_missing_returns_none(self, store):
        assert await store.get(generate_job_id()) is None

    async def test_duplicate_create_rejected(self, store):
        job = new_job()
        await store.create(job)

        with pytest.raises(JobAlreadyExistsError):
            await store.create(job)

    @pytest.mark.parametrize("missing", ["job_id", "url", "status"])
    async def test_required_fields(self, store, missing):
        job = new_job()
        job.pop(missing)

        with pytest.raises(ValueError, match=missing):
            await store.create(job)

    async def test_expired_job_is_invisible_and_id_reusable(self, store, database):
        job = new_job()
        await store.create(job)
        await expire(database, job["job_id"])

        assert await store.get(job["job_id"]) is None

        recreated = await store.create(new_job(job_id=job["job_id"], url="https://other.org"))
        assert recreated.url == "https://other.org"


class TestUpdate:
    async def test_update_merges_fields(self, store):
        job = new_job()
        await store.create(job)

        updated = await store.update(
            job["job_id"],
            {"status": JobStatus.COMPLETED, "results": {"page_title": "Hi"}, "http_status_code": 200},
        )
        fetched = await store.get(job["job_id"])

        assert updated.status == JobStatus.COMPLETED.value
        assert fetched.results == {"page_title": "Hi"}
        assert fetched.http_status_code == 200
        assert fetched.url == job["url"]
        assert fetched.updated_at is not None

    async def test_update_missing_job_raises(self, store):
        with pytest.raises(JobNotFoundError):
            await store.update(generate_job_id(), {"status": JobStatus.FAILED})

    async def test_update_rejects_unknown_fields(self, store):
        job = new_job()
        await store.create(job)

        with pytest.raises(ValueError, match="Cannot update"):
            await store.update(job["job_id"], {"job_id": "x"})


class TestConditionalUpdate:
    async def test_update_if_pending_applies_once(self, store):
        job = new_job()
        await store.create(job)

        first = await store.update_if_pending(job["job_id"], {"status": JobStatus.PROCESSING})
        second = await store.update_if_pending(job["job_id"], {"status": JobStatus.PROCESSING})

        assert first is True
        assert second is False
        assert (await store.get(job["job_id"])).status == JobStatus.PROCESSING.value

    async def test_update_if_status_with_several_expected(self, store):
        job = new_job(status=JobStatus.PROCESSING)
        await store.create(job)

        applied = await store.update_if_status(
            job["job_id"],
            [JobStatus.PENDING, JobStatus.PROCESSING],
            {"status": JobStatus.FAILED, "error": "boom"},
        )

        assert applied is True
        assert (await store.get(job["job_id"])).error == "boom"

    async def test_terminal_job_not_overwritten(self, store):
        job = new_job(status=JobStatus.COMPLETED)
        await store.create(job)

        applied = await store.update_if_status(
            job["job_id"], JobStatus.PROCESSING, {"status": JobStatus.FAILED}
        )

        assert applied is False
        assert (await store.get(job["job_id"])).status == JobStatus.COMPLETED.value

    async def test_missing_job_is_not_applied(self, store):
        assert await store.update_if_pending(generate_job_id(), {"status": JobStatus.FAILED}) is False


class TestMaintenance:
    async def test_find_older_than(self, store, database):
        old = new_job()
        recent = new_job()
        processing = new_job(status=JobStatus.PROCESSING)
        for job in (old, recent, processing):
            await store.create(job)
        await backdate(database, old["job_id"], 15)
        await backdate(database, processing["job_id"], 15)

        stale = await store.find_older_than(JobStatus.PENDING, 10)

        assert [job.job_id for job in stale] == [old["job_id"]]

    async def test_find_older_than_by_updated_at(self, store, database):
        job = new_job(status=JobStatus.PROCESSING)
        await store.create(job)
        await store.update(job["job_id"], {"error": None})
        await backdate(database, job["job_id"], 45, column="updated_at")

        stuck = await store.find_older_than(JobStatus.PROCESSING, 30, by="updated_at")

        assert [found.job_id for found in stuck] == [job["job_id"]]

    async def test_purge_expired(self, store, database):
        kept = new_job()
        purged = new_job()
        await store.create(kept)
        await store.create(purged)
        await expire(database, purged["job_id"])

        deleted = await store.purge_expired()

        assert deleted == 1
        assert await store.get(kept["job_id"]) is not None

    async def test_ping(self, store):
        assert await store.ping() is True


class TestRetry:
    async def test_transient_errors_are_retried(self, store):
        operation = AsyncMock(
            side_effect=[OperationalError("SELECT 1", {}, Exception("locked")), "ok"]
        )

        assert await store._with_retry("lookup", operation) == "ok"
        assert operation.await_count == 2

    async def test_exhausted_retries_raise_storage_unavailable(self, store, settings):
        operation = AsyncMock(side_effect=ConnectionRefusedError("down"))

        with pytest.raises(StorageUnavailableError) as exc_info:
            await store._with_retry("lookup", operation)

        assert operation.await_count == settings.storage_max_retries + 1
        assert exc_info.value.status_code == 503
        assert exc_info.value.message == "Storage system is unavailable"

    async def test_non_transient_errors_propagate(self, store):
        operation = AsyncMock(side_effect=JobNotFoundError("1"))

        with pytest.raises(JobNotFoundError):
            await store._with_retry("lookup", operation)

        assert operation.await_count == 1
