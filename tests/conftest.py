"""Shared pytest fixtures for logqueue tests."""
from __future__ import annotations

from pathlib import Path

import pytest

from logqueue.jobs.models import Job, JobPayload, priority_for_size


@pytest.fixture()
def tmp_log_file(tmp_path: Path):
    """Return a factory that creates temporary log files."""

    def _make(lines: list[str], name: str = "test.log") -> Path:
        p = tmp_path / name
        p.write_text("".join(line + "\n" for line in lines), encoding="utf-8")
        return p

    return _make


@pytest.fixture()
def sample_lines() -> list[str]:
    return [
        "[2025-02-20T10:00:00Z] INFO Application started successfully",
        '[2025-02-20T10:01:15Z] ERROR Database timeout {"userId": 123, "ip": "192.168.1.1"}',
    ]


@pytest.fixture()
def mixed_lines() -> list[str]:
    return [
        "[2025-02-20T10:00:00Z] INFO Application started successfully",
        '[2025-02-20T10:00:01Z] WARNING Slow response {"ip": "10.0.0.7", "ms": 812}',
        '[2025-02-20T10:00:02Z] ERROR Database timeout {"userId": 123, "ip": "192.168.1.1"}',
        "this line has no bracketed timestamp",
        '[2025-02-20T10:00:03Z] CRITICAL Disk full {"ip": "192.168.1.1"}',
        "[2025-02-20T10:00:04Z] ERROR Broken payload {not json}",
        "",
    ]


@pytest.fixture()
def make_job():
    """Return a factory for Job instances pointing at a file."""

    def _make(
        path: Path | str,
        job_id: str = "job-1",
        user_id: str = "user-1",
        max_attempts: int = 3,
        attempts_made: int = 0,
        file_size: int | None = None,
    ) -> Job:
        size = file_size if file_size is not None else (Path(path).stat().st_size if Path(path).exists() else 0)
        return Job(
            id=job_id,
            payload=JobPayload(
                file_path=str(path), file_name=Path(path).name, file_size=size, user_id=user_id
            ),
            priority=priority_for_size(size),
            max_attempts=max_attempts,
            attempts_made=attempts_made,
        )

    return _make
