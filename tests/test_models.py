"""
Unit tests for the cost record wire representation.
"""

from datetime import datetime, timezone

import pytest

from kube_cost_guard.storage.models import CostRecord


class TestCostRecordSerialization:
    """Test conversion to and from the wire representation."""

    def test_to_dict(self):
        """Verify the wire keys."""
        record = CostRecord(
            kind="weighted",
            strategy="WeightedPricingStrategy",
            value=537537578,
            dimensions={"service": "api"},
            end_time=datetime(2024, 1, 15, 10, 30, tzinfo=timezone.utc),
        )

        assert record.to_dict() == {
            "kind": "weighted",
            "strategy": "WeightedPricingStrategy",
            "value": 537537578,
            "dimensions": {"service": "api"},
            "endTime": "2024-01-15T10:30:00+00:00",
        }

    def test_from_dict_accepts_zulu_suffix(self):
        """Verify RFC 3339 timestamps ending in Z are accepted."""
        record = CostRecord.from_dict({
            "kind": "cpu",
            "strategy": "CPUPricingStrategy",
            "value": 5,
            "dimensions": {"service": "api"},
            "endTime": "2024-01-15T10:30:00Z",
        })

        assert record.end_time == datetime(2024, 1, 15, 10, 30, tzinfo=timezone.utc)
        assert CostRecord.from_dict(record.to_dict()) == record

    def test_from_dict_missing_fields(self):
        """Verify missing fields are reported."""
        with pytest.raises(ValueError, match="missing fields"):
            CostRecord.from_dict({"kind": "cpu"})

    def test_from_dict_rejects_fractional_value(self):
        """Verify values must be integral micro-cents."""
        with pytest.raises(ValueError, match="'value' must be an integer"):
            CostRecord.from_dict({
                "kind": "cpu",
                "strategy": "s",
                "value": 1.5,
                "dimensions": {},
                "endTime": "2024-01-15T10:30:00Z",
            })

    def test_default_end_time_is_aware(self):
        """Verify records default to an aware UTC end time."""
        assert CostRecord(kind="cpu", strategy="s", value=1).end_time.tzinfo is not None
