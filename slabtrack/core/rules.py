"""
Business-rule configuration.
Rules are persisted under the config key with a version string; a missing,
unreadable or mismatched configuration falls back to the defaults.
"""

import json
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Tuple

from pydantic import ValidationError

from ..api.schemas import BusinessRuleSet
from ..util.logging import logger
from .config import CONFIG_KEY, CONFIG_VERSION
from .schema import to_camel
from .storage import IStorage, StorageError

DEFAULT_BUSINESS_RULES = BusinessRuleSet()


class RuleConfigService:
    """Loads, updates and persists the active business-rule set."""

    def __init__(self, storage: IStorage, clock: Callable[[], datetime] = datetime.now):
        self.storage = storage
        self.clock = clock
        self._rules: Optional[BusinessRuleSet] = None
        self.last_updated: Optional[datetime] = None

    def load(self) -> BusinessRuleSet:
        """Load rules from storage, falling back to defaults."""
        try:
            raw = self.storage.get(CONFIG_KEY)
            if raw:
                stored = json.loads(raw)
                if stored.get("version") == CONFIG_VERSION:
                    self._rules = BusinessRuleSet.model_validate(stored.get("businessRules") or {})
                    last_updated = stored.get("lastUpdated")
                    self.last_updated = datetime.fromisoformat(last_updated) if last_updated else None
                    return self._rules
                logger.warning(f"Rule configuration version {stored.get('version')} does not match {CONFIG_VERSION}, using defaults")

            self._rules = DEFAULT_BUSINESS_RULES
            self.save()
            return self._rules
        except (StorageError, ValueError, ValidationError, AttributeError) as e:
            logger.error(f"Error loading rule configuration: {e}")
            self._rules = DEFAULT_BUSINESS_RULES
            return self._rules

    def get_rules(self) -> BusinessRuleSet:
        """Current rules; loads on first use."""
        if self._rules is None:
            return self.load()
        return self._rules

    def save(self, rules: BusinessRuleSet = None) -> BusinessRuleSet:
        """Persist rules (or the current ones). Raises StorageError on failure."""
        to_save = rules or self._rules or DEFAULT_BUSINESS_RULES
        self.last_updated = self.clock()
        payload = {
            "version": CONFIG_VERSION,
            "businessRules": to_save.model_dump(by_alias=True, mode="json"),
            "lastUpdated": self.last_updated.isoformat(),
        }
        try:
            self.storage.set(CONFIG_KEY, json.dumps(payload))
        except StorageError as e:
            logger.error(f"Error saving rule configuration: {e}")
            raise
        self._rules = to_save
        logger.log_operation("rules.save", "success", {"version": CONFIG_VERSION})
        return to_save

    def update(self, changes: Dict[str, Any]) -> BusinessRuleSet:
        """Merge partial changes (either key casing) into the current rules.

        Raises pydantic.ValidationError when the merged set is invalid;
        nothing is saved in that case.
        """
        merged = self.get_rules().model_dump(by_alias=True)
        merged.update({to_camel(key): value for key, value in changes.items()})
        return self.save(BusinessRuleSet.model_validate(merged))

    def reset_to_defaults(self) -> BusinessRuleSet:
        return self.save(DEFAULT_BUSINESS_RULES)

    @staticmethod
    def validate(data: Dict[str, Any]) -> Tuple[bool, List[str]]:
        """Check a rule mapping without applying it."""
        try:
            BusinessRuleSet.model_validate(data)
            return True, []
        except ValidationError as e:
            return False, [error["msg"] for error in e.errors()]
