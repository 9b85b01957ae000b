"""Tests for Settings validation."""
import pytest
from pydantic import ValidationError

from fieldsync.config import Settings


class TestSettings:
    def test_defaults_are_consistent(self):
        settings = Settings(_env_file=None)
        assert settings.claim_lease_seconds > settings.delivery_timeout_seconds
        assert settings.cycle_lease_seconds > settings.delivery_timeout_seconds

    def test_claim_lease_shorter_than_delivery_rejected(self):
        with pytest.raises(ValidationError, match="claim_lease_seconds"):
            Settings(_env_file=None, claim_lease_seconds=20, delivery_timeout_seconds=30)

    def test_cycle_lease_shorter_than_delivery_rejected(self):
        with pytest.raises(ValidationError, match="cycle_lease_seconds"):
            Settings(_env_file=None, cycle_lease_seconds=30, delivery_timeout_seconds=30)
