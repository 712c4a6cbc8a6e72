"""Tests for log rotation, pruning and archival."""

from __future__ import annotations

import json
import os
import time
from datetime import datetime, UTC

import pytest

from farmwork_consent.audit.rotation import ROTATION_JOB_ID, LogRotator, rotation_suffix


def write_bytes(path, size: int) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text("x" * size)


class TestLogRotator:

    def test_rotation_suffix_is_filename_safe(self) -> None:
        suffix = rotation_suffix(datetime(2026, 3, 4, 5, 6, 7, 890000, tzinfo=UTC))

        assert suffix == "2026-03-04T05-06-07-890000Z"
        assert ":" not in suffix

    def test_should_rotate_only_above_limit(self, log_dir) -> None:
        rotator = LogRotator(log_dir, max_file_size=100)
        target = log_dir / "consent.log"

        assert rotator.should_rotate(target) is False
        write_bytes(target, 100)
        assert rotator.should_rotate(target) is False
        write_bytes(target, 101)
        assert rotator.should_rotate(target) is True

    def test_rotate_file_leaves_empty_original(self, log_dir) -> None:
        rotator = LogRotator(log_dir, max_file_size=10)
        target = log_dir / "consent.log"
        write_bytes(target, 50)

        rotated = rotator.rotate_file("consent.log")

        assert rotated is not None
        assert rotated.read_text() == "x" * 50
        assert target.exists()
        assert target.stat().st_size == 0
        assert rotator.rotated_files(target) == [rotated]

    def test_rotate_missing_file(self, log_dir) -> None:
        rotator = LogRotator(log_dir)

        assert rotator.rotate_file(log_dir / "consent.log") is None

    def test_prune_keeps_max_files(self, log_dir) -> None:
        rotator = LogRotator(log_dir, max_file_size=10, max_files=2)
        target = log_dir / "consent-audit.log"

        for _ in range(4):
            write_bytes(target, 20)
            rotator.rotate_file(target)

        assert len(rotator.rotated_files(target)) == 2

    def test_rotate_if_needed(self, log_dir) -> None:
        rotator = LogRotator(log_dir, max_file_size=10)
        write_bytes(log_dir / "consent.log", 50)
        write_bytes(log_dir / "consent-errors.log", 5)

        rotated = rotator.rotate_if_needed()

        assert len(rotated) == 1
        assert rotated[0].name.startswith("consent-")
        assert (log_dir / "consent-errors.log").stat().st_size == 5

    def test_rotation_is_audited(self, log_dir, audit_logger) -> None:
        rotator = LogRotator(log_dir, max_file_size=10, audit_logger=audit_logger)
        write_bytes(log_dir / "consent.log", 50)

        rotated = rotator.rotate_file("consent.log")

        entries = [json.loads(line) for line in audit_logger.audit_log_path.read_text().splitlines()]
        assert entries[-1]["action"] == "log_rotated"
        assert entries[-1]["details"]["rotatedTo"] == rotated.name

    def test_rotated_files_ignore_unrelated_names(self, log_dir) -> None:
        rotator = LogRotator(log_dir)
        write_bytes(log_dir / "consent-audit.log", 5)
        write_bytes(log_dir / "consent-2026-01-01T00-00-00-000000Z.log", 5)

        names = [p.name for p in rotator.rotated_files(log_dir / "consent.log")]

        assert names == ["consent-2026-01-01T00-00-00-000000Z.log"]

    def test_collision_counters_sort_after_base_name(self, log_dir) -> None:
        rotator = LogRotator(log_dir, max_files=2)
        stamp = "2026-01-01T00-00-00-000000Z"
        for name in (f"consent-{stamp}-10.log", f"consent-{stamp}.log",
                     f"consent-{stamp}-2.log", f"consent-{stamp}-1.log"):
            write_bytes(log_dir / name, 5)

        assert [p.name for p in rotator.rotated_files("consent.log")] == [
            f"consent-{stamp}.log",
            f"consent-{stamp}-1.log",
            f"consent-{stamp}-2.log",
            f"consent-{stamp}-10.log",
        ]

        pruned = rotator.prune("consent.log")

        assert [p.name for p in pruned] == [f"consent-{stamp}.log", f"consent-{stamp}-1.log"]
        assert [p.name for p in rotator.rotated_files("consent.log")] == [
            f"consent-{stamp}-2.log",
            f"consent-{stamp}-10.log",
        ]

    def test_archive_old_logs_by_mtime(self, log_dir) -> None:
        rotator = LogRotator(log_dir)
        old = log_dir / "consent-2025-01-01T00-00-00-000000Z.log"
        recent = log_dir / "consent-2026-10-01T00-00-00-000000Z.log"
        write_bytes(old, 5)
        write_bytes(recent, 5)
        stale = time.time() - 400 * 86400
        os.utime(old, (stale, stale))

        moved = rotator.archive_old_logs(retention_days=365)

        assert [p.name for p in moved] == [old.name]
        assert (log_dir / "archive" / old.name).exists()
        assert not old.exists()
        assert recent.exists()


class TestRotationScheduling:

    def test_rejects_non_positive_interval(self, log_dir) -> None:
        rotator = LogRotator(log_dir)

        with pytest.raises(ValueError):
            rotator.schedule_rotation(0)

    @pytest.mark.asyncio
    async def test_schedule_and_cancel(self, log_dir) -> None:
        rotator = LogRotator(log_dir)
        try:
            job = rotator.schedule_rotation(60_000)

            assert job.id == ROTATION_JOB_ID
            assert rotator.scheduler.running
            assert rotator.scheduler.get_job(ROTATION_JOB_ID) is not None

            assert rotator.cancel_rotation() is True
            assert rotator.scheduler.get_job(ROTATION_JOB_ID) is None
            assert rotator.cancel_rotation() is False
        finally:
            rotator.scheduler.shutdown(wait=False)

    def test_cancel_without_scheduler(self, log_dir) -> None:
        assert LogRotator(log_dir).cancel_rotation() is False
