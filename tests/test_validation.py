"""Tests for record validation."""

from datetime import datetime, timedelta, timezone

import pytest

from savesync.protocols import ValidationError
from savesync.validation import RecordValidator, sanitize_identifier

START = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


@pytest.fixture
def validator(config):
    return RecordValidator(config, clock=lambda: START)


class TestSanitizeIdentifier:
    def test_valid(self):
        assert sanitize_identifier("device-a", "device_id") == []

    def test_non_string(self):
        assert "must be a string" in sanitize_identifier(42, "owner_id")[0]

    def test_empty(self):
        assert sanitize_identifier("   ", "owner_id") == ["owner_id cannot be empty"]

    def test_too_long(self):
        assert "too long" in sanitize_identifier("x" * 300, "owner_id")[0]

    def test_control_characters(self):
        assert "control characters" in sanitize_identifier("bad\nid", "owner_id")[0]


class TestValidate:
    def test_valid_record_passes(self, validator, make_record):
        record = make_record(saved_at=START)
        assert validator.validate(record) is record

    def test_failures_are_collected_together(self, validator, make_record):
        record = make_record(owner_id="", device_id="", saved_at=START)
        record.payload.inventory.currencies["coins"] = -5

        with pytest.raises(ValidationError) as exc_info:
            validator.validate(record)

        failures = exc_info.value.failures
        assert len(failures) == 3
        assert any("owner_id" in f for f in failures)
        assert any("device_id" in f for f in failures)
        assert any("coins" in f for f in failures)

    def test_negative_sync_version(self, validator, make_record):
        with pytest.raises(ValidationError, match="sync_version"):
            validator.validate(make_record(sync_version=-1, saved_at=START))

    def test_future_timestamp_beyond_skew(self, validator, make_record):
        record = make_record(saved_at=START + timedelta(minutes=10))
        with pytest.raises(ValidationError, match="in the future"):
            validator.validate(record)

    def test_future_timestamp_within_skew(self, validator, make_record):
        validator.validate(make_record(saved_at=START + timedelta(minutes=2)))

    def test_implausibly_old(self, validator, make_record):
        record = make_record(saved_at=START - timedelta(days=4000))
        with pytest.raises(ValidationError, match="implausibly old"):
            validator.validate(record)

    def test_naive_timestamp(self, validator, make_record):
        record = make_record(saved_at=datetime(2026, 3, 1, 12, 0))
        with pytest.raises(ValidationError, match="timezone-aware"):
            validator.validate(record)

    def test_non_finite_statistic(self, validator, make_record):
        record = make_record(saved_at=START)
        record.payload.statistics.counters["distance"] = float("inf")
        with pytest.raises(ValidationError, match="finite"):
            validator.validate(record)


class TestSizeAndMonotonic:
    def test_check_size(self, config):
        validator = RecordValidator(config)
        assert validator.check_size(b"x" * 10) == b"x" * 10
        with pytest.raises(ValidationError, match="exceeds max_save_size"):
            validator.check_size(b"x" * (config.max_save_size + 1))

    def test_check_size_counts_uncompressed_document(self, config):
        validator = RecordValidator(config)
        assert validator.check_size(b"x", raw_size=config.max_save_size) == b"x"
        with pytest.raises(ValidationError, match="save document is"):
            validator.check_size(b"x", raw_size=config.max_save_size + 1)

    def test_lower_sync_version_rejected_after_observe(self, validator, make_record):
        validator.observe(make_record(sync_version=5))
        with pytest.raises(ValidationError, match="lower than 5"):
            validator.check_monotonic(make_record(sync_version=4))
        validator.check_monotonic(make_record(sync_version=5))

    def test_scopes_are_independent(self, validator, make_record):
        validator.observe(make_record(sync_version=7), scope=0)
        validator.check_monotonic(make_record(sync_version=1), scope=1)
        assert validator.high_water("player-1", "device-a", scope=0) == 7
        assert validator.high_water("player-1", "device-a", scope=1) == 0

    def test_other_devices_are_independent(self, validator, make_record):
        validator.observe(make_record(sync_version=7, device_id="device-a"))
        validator.check_monotonic(make_record(sync_version=1, device_id="device-b"))
