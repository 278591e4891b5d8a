"""Tests for the per-attempt log file processing pipeline."""
from __future__ import annotations

import asyncio
from pathlib import Path
from typing import AsyncGenerator
from unittest.mock import AsyncMock

import pytest

from logqueue.errors import FileSourceError
from logqueue.events.channel import EventChannel
from logqueue.events.sinks import MemorySink
from logqueue.jobs.models import JobPayload, JobState
from logqueue.jobs.queue import JobQueue
from logqueue.pipeline.source import open_line_stream
from logqueue.pipeline.worker import LogFileProcessor, estimate_progress
from logqueue.store.stats_store import MemoryStatsStore, StatsStatus

KEYWORDS = ["error", "warning", "critical"]


def _processor(**kwargs) -> tuple[LogFileProcessor, MemoryStatsStore, MemorySink]:
    store = kwargs.pop("store", None)
    if store is None:
        store = MemoryStatsStore()
    sink = MemorySink()
    processor = LogFileProcessor(store, EventChannel(sink), KEYWORDS, **kwargs)
    return processor, store, sink


def _broken_source(lines_before_failure: int):
    async def source(path: str) -> AsyncGenerator[str, None]:
        for i in range(lines_before_failure):
            yield f"[t] INFO line {i}"
        raise OSError("disk went away")

    return source


# ---------------------------------------------------------------------------
# estimate_progress
# ---------------------------------------------------------------------------

@pytest.mark.parametrize("lines,size,expected", [
    (1000, 1_000_000, 10),
    (5000, 1_000_000, 50),
    (20000, 1_000_000, 99),
    (1000, 0, 99),
    (0, 500, 0),
])
def test_estimate_progress(lines: int, size: int, expected: int) -> None:
    assert estimate_progress(lines, size, bytes_per_line=100) == expected


# ---------------------------------------------------------------------------
# Successful attempts
# ---------------------------------------------------------------------------

class TestSuccessfulAttempt:
    def test_example_file(self, tmp_log_file, sample_lines, make_job) -> None:
        path = tmp_log_file(sample_lines)
        job = make_job(path)
        processor, store, sink = _processor()

        result = asyncio.run(processor(job))

        record = asyncio.run(store.get(job.id))
        assert record is not None
        assert record.status is StatsStatus.COMPLETED
        assert record.total_lines == 2
        assert record.error_count == 1
        assert record.warning_count == 0
        assert record.keyword_matches == {"error": 1, "warning": 0, "critical": 0}
        assert record.ip_addresses == {"192.168.1.1": 1}
        assert record.progress == 100
        assert record.file_name == "test.log"
        assert record.user_id == "user-1"

        assert result["statsId"] == job.id
        assert result["totalLines"] == 2
        assert not path.exists()

        completed = sink.of_type("job-completed")
        assert len(completed) == 1
        assert completed[0]["jobId"] == job.id
        assert completed[0]["fileName"] == "test.log"
        assert completed[0]["stats"]["errorCount"] == 1
        assert sink.events[0][0] == "user:user-1"

    def test_zero_byte_file(self, tmp_path: Path, make_job) -> None:
        path = tmp_path / "empty.log"
        path.write_bytes(b"")
        job = make_job(path)
        processor, store, sink = _processor()

        asyncio.run(processor(job))

        record = asyncio.run(store.get(job.id))
        assert record is not None
        assert record.status is StatsStatus.COMPLETED
        assert record.total_lines == 0
        assert record.error_count == 0
        assert record.warning_count == 0
        assert record.keyword_matches == {"error": 0, "warning": 0, "critical": 0}
        assert record.ip_addresses == {}
        assert not path.exists()

    def test_progress_on_line_cadence(self, tmp_log_file, make_job) -> None:
        lines = [f"[t] ERROR failure {i}" for i in range(5)]
        path = tmp_log_file(lines)
        job = make_job(path, file_size=500)
        hook = AsyncMock()
        processor, store, sink = _processor(progress_every=2, on_progress=hook)

        asyncio.run(processor(job))

        progress = sink.of_type("job-progress")
        assert [e["progress"] for e in progress] == [40, 80]
        assert [e["stats"]["totalLines"] for e in progress] == [2, 4]
        assert [e["stats"]["errorCount"] for e in progress] == [2, 4]
        assert hook.await_count == 2
        hook.assert_awaited_with(job.id, 80)
        assert [t for t, _ in sink.events] == ["user:user-1"] * 3

    def test_event_sink_failure_does_not_fail_job(self, tmp_log_file, sample_lines, make_job) -> None:
        path = tmp_log_file(sample_lines)
        job = make_job(path)
        store = MemoryStatsStore()
        sink = AsyncMock()
        sink.publish.side_effect = ConnectionError("socket gone")
        processor = LogFileProcessor(store, EventChannel(sink), KEYWORDS, progress_every=1)

        asyncio.run(processor(job))

        record = asyncio.run(store.get(job.id))
        assert record is not None
        assert record.status is StatsStatus.COMPLETED
        assert sink.publish.await_count == 3

    def test_deeply_nested_payload_does_not_fail_job(self, tmp_log_file, make_job) -> None:
        nested = '{"a": ' + "[" * 100_000 + "]" * 100_000 + "}"
        path = tmp_log_file([f"[t] ERROR boom {nested}", "[t] INFO fine"])
        job = make_job(path)
        processor, store, sink = _processor()

        asyncio.run(processor(job))

        record = asyncio.run(store.get(job.id))
        assert record is not None
        assert record.status is StatsStatus.COMPLETED
        assert record.total_lines == 2
        assert record.error_count == 1
        assert record.ip_addresses == {}
        assert sink.of_type("job-failed") == []

    def test_line_stream_handles_crlf_and_bad_bytes(self, tmp_path: Path) -> None:
        path = tmp_path / "mixed.log"
        path.write_bytes(b"[t] INFO one\r\n[t] WARNING caf\xff\r\nlast")

        async def collect() -> list[str]:
            return [line async for line in open_line_stream(str(path), batch_hint=4)]

        assert asyncio.run(collect()) == ["[t] INFO one", "[t] WARNING caf\ufffd", "last"]


# ---------------------------------------------------------------------------
# Failed attempts
# ---------------------------------------------------------------------------

class TestFailedAttempt:
    def test_missing_file(self, tmp_path: Path, make_job) -> None:
        job = make_job(tmp_path / "gone.log", file_size=10)
        processor, store, sink = _processor()

        with pytest.raises(FileSourceError):
            asyncio.run(processor(job))

        record = asyncio.run(store.get(job.id))
        assert record is not None
        assert record.status is StatsStatus.FAILED
        assert "gone.log" in (record.error or "")

        failed = sink.of_type("job-failed")
        assert len(failed) == 1
        assert failed[0]["final"] is False
        assert failed[0]["attempt"] == 1

    def test_store_create_failure_leaves_no_record(self, tmp_log_file, sample_lines, make_job) -> None:
        path = tmp_log_file(sample_lines)
        job = make_job(path)
        store = MemoryStatsStore()
        store.create = AsyncMock(side_effect=ConnectionError("store down"))  # type: ignore[method-assign]
        processor, _, sink = _processor(store=store)

        with pytest.raises(ConnectionError):
            asyncio.run(processor(job))

        assert asyncio.run(store.get(job.id)) is None
        assert len(sink.of_type("job-failed")) == 1
        assert path.exists()

    def test_store_update_failure_is_a_processing_error(self, tmp_log_file, sample_lines, make_job) -> None:
        path = tmp_log_file(sample_lines)
        job = make_job(path)
        store = MemoryStatsStore()
        store.update = AsyncMock(side_effect=TimeoutError("store slow"))  # type: ignore[method-assign]
        processor, _, sink = _processor(store=store)

        with pytest.raises(TimeoutError):
            asyncio.run(processor(job))

        record = asyncio.run(store.get(job.id))
        assert record is not None
        assert record.status is StatsStatus.PROCESSING
        assert path.exists()
        assert sink.of_type("job-completed") == []

    def test_file_kept_for_retry(self, tmp_log_file, make_job) -> None:
        path = tmp_log_file(["[t] INFO a"])
        job = make_job(path, max_attempts=3, attempts_made=0)
        processor, store, _ = _processor(source=_broken_source(1), delete_failed_files=True)

        with pytest.raises(OSError):
            asyncio.run(processor(job))
        assert path.exists()

    def test_final_failure_keeps_file_by_default(self, tmp_log_file, make_job) -> None:
        path = tmp_log_file(["[t] INFO a"])
        job = make_job(path, max_attempts=3, attempts_made=2)
        processor, store, sink = _processor(source=_broken_source(3))

        with pytest.raises(OSError):
            asyncio.run(processor(job))

        assert path.exists()
        failed = sink.of_type("job-failed")
        assert failed[0]["final"] is True
        assert failed[0]["error"] == "disk went away"
        assert failed[0]["attempt"] == 3

    def test_final_failure_deletes_file_when_configured(self, tmp_log_file, make_job) -> None:
        path = tmp_log_file(["[t] INFO a"])
        job = make_job(path, max_attempts=3, attempts_made=2)
        processor, _, _ = _processor(source=_broken_source(0), delete_failed_files=True)

        with pytest.raises(OSError):
            asyncio.run(processor(job))
        assert not path.exists()


# ---------------------------------------------------------------------------
# Queue + processor
# ---------------------------------------------------------------------------

class TestQueueIntegration:
    def test_always_failing_job_has_one_failed_record(self, tmp_path: Path) -> None:
        processor, store, sink = _processor()

        async def scenario() -> None:
            async with JobQueue(processor, concurrency=2, max_attempts=3) as queue:
                payload = JobPayload(
                    file_path=str(tmp_path / "missing.log"),
                    file_name="missing.log",
                    file_size=10,
                    user_id="user-9",
                )
                await queue.enqueue(payload, job_id="file-9")
                await queue.drain()
                handle = queue.get("file-9")
                assert handle is not None
                assert handle.state is JobState.FAILED
                assert handle.attempts_made == 3

        asyncio.run(scenario())

        assert len(store) == 1
        record = asyncio.run(store.get("file-9"))
        assert record is not None
        assert record.status is StatsStatus.FAILED
        assert record.attempt == 3
        assert [e["final"] for e in sink.of_type("job-failed")] == [False, False, True]
        assert all(topic == "user:user-9" for topic, _ in sink.events)

    def test_many_files_processed_concurrently(self, tmp_path: Path, sample_lines) -> None:
        processor, store, _ = _processor()

        async def scenario() -> None:
            async with JobQueue(processor, concurrency=3) as queue:
                for i in range(6):
                    path = tmp_path / f"f{i}.log"
                    path.write_text("\n".join(sample_lines * (i + 1)) + "\n", encoding="utf-8")
                    await queue.enqueue(
                        JobPayload(
                            file_path=str(path), file_name=path.name,
                            file_size=path.stat().st_size, user_id="u",
                        ),
                        job_id=f"f{i}",
                    )
                await queue.drain()
                assert queue.status().completed == 6

        asyncio.run(scenario())

        for i in range(6):
            record = asyncio.run(store.get(f"f{i}"))
            assert record is not None
            assert record.total_lines == 2 * (i + 1)
            assert record.ip_addresses == {"192.168.1.1": i + 1}
        assert list(tmp_path.glob("f*.log")) == []
