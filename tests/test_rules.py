"""
Business rule configuration tests - load, save, update and fallback.
"""

import json
import pytest
from datetime import datetime
from unittest.mock import patch
from pydantic import ValidationError as PydanticValidationError

from slabtrack.api.schemas import BusinessRuleSet
from slabtrack.core.config import CONFIG_KEY
from slabtrack.core.rules import DEFAULT_BUSINESS_RULES, RuleConfigService
from slabtrack.core.storage import MemoryStorage, StorageError

FIXED_NOW = datetime(2025, 6, 1, 12, 0, 0)


@pytest.fixture
def storage():
    return MemoryStorage()


@pytest.fixture
def service(storage):
    return RuleConfigService(storage, clock=lambda: FIXED_NOW)


class TestLoad:
    """Test loading persisted rules."""

    def test_first_load_persists_defaults(self, service, storage):
        assert service.load() == DEFAULT_BUSINESS_RULES
        stored = json.loads(storage.get(CONFIG_KEY))
        assert stored["version"] == "1.0.0"
        assert stored["businessRules"]["minThickness"] == 10
        assert stored["lastUpdated"] == "2025-06-01T12:00:00"

    def test_loads_stored_rules(self, storage):
        storage.set(CONFIG_KEY, json.dumps({
            "version": "1.0.0",
            "businessRules": {"minThickness": 15, "maxThickness": 40},
            "lastUpdated": "2025-05-01T09:00:00",
        }))
        service = RuleConfigService(storage)
        rules = service.get_rules()
        assert (rules.min_thickness, rules.max_thickness) == (15, 40)
        assert service.last_updated == datetime(2025, 5, 1, 9, 0)

    def test_version_mismatch_resets_to_defaults(self, storage, service):
        storage.set(CONFIG_KEY, json.dumps({"version": "0.1.0", "businessRules": {"minThickness": 15}}))
        assert service.load() == DEFAULT_BUSINESS_RULES
        assert json.loads(storage.get(CONFIG_KEY))["version"] == "1.0.0"

    def test_corrupt_config_falls_back(self, storage, service):
        storage.set(CONFIG_KEY, "{broken")
        with patch("slabtrack.core.rules.logger") as mock_logger:
            assert service.load() == DEFAULT_BUSINESS_RULES
            mock_logger.error.assert_called_once()

    def test_invalid_stored_rules_fall_back(self, storage, service):
        storage.set(CONFIG_KEY, json.dumps({"version": "1.0.0", "businessRules": {"minThickness": 90}}))
        assert service.load() == DEFAULT_BUSINESS_RULES


class TestUpdate:
    """Test changing and resetting rules."""

    def test_partial_update_either_casing(self, service, storage):
        rules = service.update({"min_thickness": 12, "defaultLocation": "Yard B"})
        assert rules.min_thickness == 12
        assert rules.default_location == "Yard B"
        assert rules.max_thickness == 50
        assert json.loads(storage.get(CONFIG_KEY))["businessRules"]["defaultLocation"] == "Yard B"

    def test_invalid_update_not_saved(self, service):
        service.load()
        with pytest.raises(PydanticValidationError):
            service.update({"minLength": 5000})
        assert service.get_rules() == DEFAULT_BUSINESS_RULES

    def test_reset_to_defaults(self, service):
        service.update({"requireSerialNumber": False})
        assert service.reset_to_defaults() == DEFAULT_BUSINESS_RULES

    def test_save_failure_raises(self, service, storage):
        with patch.object(storage, "set", side_effect=StorageError("read-only")):
            with pytest.raises(StorageError):
                service.save(BusinessRuleSet(min_thickness=12))
        assert service.get_rules() == DEFAULT_BUSINESS_RULES


class TestValidate:
    """Test checking a rule mapping without applying it."""

    def test_valid_mapping(self):
        assert RuleConfigService.validate({"minWidth": 400}) == (True, [])

    def test_invalid_mapping(self):
        ok, messages = RuleConfigService.validate({"minWidth": 4000})
        assert not ok
        assert any("minimum width must be less than maximum" in m for m in messages)
