"""
Tests for utility helpers, models and configuration.
"""

import pytest

from droidpilot.core.config import Config
from droidpilot.core.errors import DeviceUnavailable, RetryExhausted
from droidpilot.core.models import RunReport, TestCase, TestOutcome, WorkItem
from droidpilot.utils.helpers import content_hash, file_hash, format_duration, truncate_message


class TestHelpers:
    def test_truncate_message(self):
        assert truncate_message(None, 10) is None
        assert truncate_message("short", 10) == "short"
        truncated = truncate_message("x" * 100, 40)
        assert len(truncated) == 40
        assert truncated.endswith("... [truncated]")

    def test_format_duration(self):
        assert format_duration(12.34) == "12.3s"
        assert format_duration(90) == "1.5m"
        assert format_duration(7200) == "2.0h"

    def test_file_hash_matches_content_hash(self, tmp_path):
        path = tmp_path / "widget_test.dart"
        path.write_bytes(b"testWidgets('login', (tester) async {});")

        assert file_hash(path) == content_hash(path.read_bytes())
        assert TestCase.from_file(path).content_hash == file_hash(path)


class TestModels:
    def test_failure_from_exception(self):
        outcome = TestOutcome.failure("t", "h", TimeoutError(), device_id="emulator-5554")

        assert not outcome.passed
        assert outcome.error_message == "TimeoutError"
        assert outcome.error_type == "TimeoutError"
        assert outcome.failure_reasons == ("TimeoutError",)

    def test_work_item_bound(self):
        item = WorkItem(identity="t", assigned_device="emulator-5554", max_attempts=2)

        assert item.next_attempt() == 1
        assert item.next_attempt() == 2
        with pytest.raises(ValueError):
            item.next_attempt()

    def test_run_report_summary(self):
        report = RunReport(
            outcomes={
                "a": TestOutcome(identity="a", content_hash="1", passed=True, duration=1.0),
                "b": TestOutcome.failure("b", "2", "boom"),
            },
            cached=["a"],
            devices=["emulator-5554"],
            wall_time=3.14159,
        )

        assert report.summary() == {
            "total": 2,
            "passed": 1,
            "failed": 1,
            "cached": 1,
            "devices": ["emulator-5554"],
            "wall_time": 3.14,
        }

    def test_error_messages(self):
        assert str(RetryExhausted("t", 4, ["a", "network down"])) == "Failed after 4 attempts: network down"
        assert str(DeviceUnavailable(None)) == "no device: device unavailable"


class TestConfig:
    def test_env_overrides(self, monkeypatch):
        monkeypatch.setenv("DROIDPILOT_MAX_CONCURRENCY", "5")
        monkeypatch.setenv("DROIDPILOT_RETRY_MAX_RETRIES", "1")

        settings = Config()

        assert settings.max_concurrency == 5
        assert settings.retry_max_retries == 1

    def test_cache_path_is_absolute(self, tmp_path):
        settings = Config(cache_db_path=str(tmp_path / "cache.db"))

        assert settings.get_cache_path() == str(tmp_path / "cache.db")
