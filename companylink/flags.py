"""
Feature flags for company-profile discovery.

Flags are evaluated deterministically: the same flag settings and the
same user identifier always give the same answer. Percentage rollouts hash
"<flag_key>:<identifier>" into a bucket in [0, 100).

Reads never block on writes. Admin operations build a new flag dict and
swap the reference in one assignment; evaluations read whichever dict was
current when they started.
"""

import hashlib
import json
import threading
import zlib
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

from pydantic import ValidationError as SchemaError

from .errors import ValidationError
from .logger import get_logger
from .models import UserContext
from .schema import FeatureFlagModel, FlagPatchModel, validate_flag_document, validate_flag_patch
from .storage import diff_dict, load_json, save_json

DISCOVERY_FLAG = "linkedin_discovery_enabled"
AUTO_SEARCH_FLAG = "linkedin_auto_search"
MANUAL_ENTRY_FLAG = "linkedin_manual_entry"
CONFIDENCE_DISPLAY_FLAG = "linkedin_confidence_display"
ADVANCED_CACHING_FLAG = "linkedin_advanced_caching"
DETAILED_MONITORING_FLAG = "linkedin_monitoring_detailed"
STRICT_RATE_LIMIT_FLAG = "linkedin_rate_limit_strict"

REASON_NOT_FOUND = "flag not found"
REASON_DISABLED = "flag disabled"
REASON_CONDITION = "condition not met"
REASON_IN_ROLLOUT = "within rollout"
REASON_OUT_OF_ROLLOUT = "outside rollout"

# Built-in defaults predate anything written by an admin
DEFAULTS_TIMESTAMP = datetime(2024, 1, 1)


@dataclass(frozen=True)
class FlagCondition:
    field: str
    operator: str
    value: Any


@dataclass
class FeatureFlag:
    key: str
    name: str
    enabled: bool
    rollout_percentage: int = 100
    description: str = ""
    conditions: List[FlagCondition] = field(default_factory=list)
    experiment_group: Optional[str] = None
    created_at: datetime = field(default_factory=datetime.now)
    updated_at: datetime = field(default_factory=datetime.now)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "key": self.key,
            "name": self.name,
            "description": self.description,
            "enabled": self.enabled,
            "rollout_percentage": self.rollout_percentage,
            "conditions": [
                {"field": c.field, "operator": c.operator, "value": c.value}
                for c in self.conditions
            ],
            "experiment_group": self.experiment_group,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
        }

    @classmethod
    def from_model(cls, model: FeatureFlagModel) -> "FeatureFlag":
        return cls(
            key=model.key,
            name=model.name,
            description=model.description,
            enabled=model.enabled,
            rollout_percentage=model.rollout_percentage,
            conditions=[FlagCondition(c.field, c.operator, c.value) for c in model.conditions],
            experiment_group=model.experiment_group,
            # Compare timestamps as naive local time throughout
            created_at=_naive(model.created_at),
            updated_at=_naive(model.updated_at),
        )


@dataclass
class FlagEvaluation:
    flag_key: str
    enabled: bool
    reason: str
    variant: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)


def _naive(ts: datetime) -> datetime:
    if ts.tzinfo is None:
        return ts
    return ts.astimezone().replace(tzinfo=None)


def stable_identifier(context: UserContext) -> str:
    """user_id, else email, else a digest of the custom map, else 'anonymous'."""
    if context.user_id:
        return context.user_id
    if context.email:
        return context.email.lower()
    if context.custom:
        canonical = json.dumps(sorted(context.custom.items()), separators=(",", ":"))
        return "custom:" + hashlib.sha1(canonical.encode("utf-8")).hexdigest()[:16]
    return "anonymous"


def rollout_bucket(flag_key: str, identifier: str) -> int:
    """Deterministic bucket in [0, 100) for a flag/identifier pair."""
    return zlib.crc32(f"{flag_key}:{identifier}".encode("utf-8")) % 100


def _context_value(context: UserContext, name: str) -> Optional[str]:
    if name == "user_id":
        return context.user_id
    if name == "email":
        return context.email
    if name == "email_domain":
        if context.email and "@" in context.email:
            return context.email.rsplit("@", 1)[1].lower()
        return None
    value = context.custom.get(name)
    return None if value is None else str(value)


def condition_matches(condition: FlagCondition, context: UserContext) -> bool:
    """Check one targeting condition. A missing context value never matches."""
    actual = _context_value(context, condition.field)
    if actual is None:
        return False

    op = condition.operator
    value = condition.value
    if op in ("in", "not_in"):
        options = [str(v) for v in value] if isinstance(value, (list, tuple)) else [str(value)]
        found = actual in options
        return found if op == "in" else not found

    expected = str(value)
    if op == "equals":
        return actual == expected
    if op == "not_equals":
        return actual != expected
    if op == "contains":
        return expected in actual
    if op == "starts_with":
        return actual.startswith(expected)
    if op == "ends_with":
        return actual.endswith(expected)
    return False


def default_flags(config) -> List[FeatureFlag]:
    """The built-in flag set, seeded from configuration."""

    def flag(key, name, description, enabled, rollout=100, conditions=None, group=None):
        return FeatureFlag(
            key=key,
            name=name,
            description=description,
            enabled=enabled,
            rollout_percentage=rollout,
            conditions=conditions or [],
            experiment_group=group,
            created_at=DEFAULTS_TIMESTAMP,
            updated_at=DEFAULTS_TIMESTAMP,
        )

    return [
        flag(DISCOVERY_FLAG, "Company Profile Discovery",
             "Enable company profile discovery", config.discovery_enabled,
             rollout=config.rollout_percentage, group=config.experiment_group),
        flag(AUTO_SEARCH_FLAG, "Auto Search",
             "Search automatically while the company name is typed", config.auto_search),
        flag(MANUAL_ENTRY_FLAG, "Manual Entry",
             "Allow manual entry of profile URLs", config.manual_entry),
        flag(CONFIDENCE_DISPLAY_FLAG, "Show Confidence Scores",
             "Display confidence scores for matches", config.show_confidence),
        flag(ADVANCED_CACHING_FLAG, "Advanced Caching",
             "Use the persistent cache tier", True),
        flag(DETAILED_MONITORING_FLAG, "Detailed Monitoring",
             "Keep request context on recorded errors", config.monitoring_enabled,
             conditions=[FlagCondition("environment", "equals", "production")]),
        flag(STRICT_RATE_LIMIT_FLAG, "Strict Rate Limiting",
             "Spend no extra quota on retries", config.is_production),
        flag("linkedin_ab_test_new_ui", "A/B Test: New UI",
             "Test the new discovery UI", True, rollout=20,
             conditions=[FlagCondition("cohort", "equals", "beta_user")],
             group="ui_test_2024"),
    ]


class FeatureFlagEvaluator:
    """Evaluates flags for a UserContext and owns the admin surface."""

    def __init__(
        self,
        flags: Optional[List[FeatureFlag]] = None,
        storage_path: Optional[Path] = None,
        clock: Callable[[], datetime] = datetime.now,
        logger=None,
    ):
        self._clock = clock
        self._logger = logger or get_logger()
        self._write_lock = threading.Lock()
        self.storage_path = storage_path
        self._flags: Dict[str, FeatureFlag] = {f.key: f for f in (flags or [])}

        if storage_path is not None:
            self._load_stored(storage_path)

    @classmethod
    def from_config(cls, config, clock: Callable[[], datetime] = datetime.now, logger=None) -> "FeatureFlagEvaluator":
        return cls(
            flags=default_flags(config),
            storage_path=config.flags_path,
            clock=clock,
            logger=logger,
        )

    # Evaluation

    def evaluate(self, flag_key: str, context: Optional[UserContext] = None) -> FlagEvaluation:
        context = context or UserContext()
        flags = self._flags
        metadata: Dict[str, Any] = {"evaluated_at": self._clock().isoformat()}

        flag = flags.get(flag_key)
        if flag is None:
            return FlagEvaluation(flag_key, False, REASON_NOT_FOUND, metadata=metadata)

        metadata["rollout_percentage"] = flag.rollout_percentage
        if not flag.enabled:
            return FlagEvaluation(flag_key, False, REASON_DISABLED, metadata=metadata)

        for condition in flag.conditions:
            if not condition_matches(condition, context):
                metadata["failed_condition"] = condition.field
                return FlagEvaluation(flag_key, False, REASON_CONDITION, metadata=metadata)

        bucket = rollout_bucket(flag_key, stable_identifier(context))
        metadata["bucket"] = bucket
        if bucket < flag.rollout_percentage:
            return FlagEvaluation(
                flag_key, True, REASON_IN_ROLLOUT,
                variant=flag.experiment_group, metadata=metadata,
            )
        return FlagEvaluation(flag_key, False, REASON_OUT_OF_ROLLOUT, metadata=metadata)

    def evaluate_all(self, context: Optional[UserContext] = None) -> Dict[str, FlagEvaluation]:
        return {key: self.evaluate(key, context) for key in self._flags}

    def is_enabled(self, flag_key: str, context: Optional[UserContext] = None) -> bool:
        return self.evaluate(flag_key, context).enabled

    # Admin

    def get(self, flag_key: str) -> Optional[FeatureFlag]:
        return self._flags.get(flag_key)

    def list_flags(self) -> List[FeatureFlag]:
        return sorted(self._flags.values(), key=lambda f: f.key)

    def add(self, flag: FeatureFlag) -> FeatureFlag:
        """Add or replace a flag after validating its shape."""
        try:
            model = FeatureFlagModel.model_validate(flag.to_dict())
        except SchemaError as e:
            raise ValidationError(f"Invalid flag '{flag.key}': {e.errors()[0]['msg']}") from e

        stored = FeatureFlag.from_model(model)
        self._swap(lambda flags: flags.__setitem__(stored.key, stored))
        self._logger.info("Feature flag added", flag_key=stored.key, enabled=stored.enabled)
        return stored

    def update(self, flag_key: str, patch: Dict[str, Any]) -> FeatureFlag:
        """
        Apply a partial update to an existing flag.

        Raises:
            KeyError: Unknown flag
            ValidationError: Patch has unknown keys or bad values
        """
        errors = validate_flag_patch(patch)
        if errors:
            raise ValidationError(f"Invalid patch for '{flag_key}': {'; '.join(errors)}")

        with self._write_lock:
            current = self._flags.get(flag_key)
            if current is None:
                raise KeyError(flag_key)

            fields = FlagPatchModel.model_validate(patch).model_dump(exclude_unset=True)
            if "conditions" in fields:
                fields["conditions"] = [
                    FlagCondition(c["field"], c["operator"], c["value"]) for c in fields["conditions"]
                ]
            before = current.to_dict()
            updated = FeatureFlag(**{**current.__dict__, **fields, "updated_at": self._clock()})
            try:
                FeatureFlagModel.model_validate(updated.to_dict())
            except SchemaError as e:
                raise ValidationError(f"Invalid patch for '{flag_key}': {e.errors()[0]['msg']}") from e

            flags = dict(self._flags)
            flags[flag_key] = updated
            self._flags = flags
            self._persist(flags)

        changes = diff_dict(before, updated.to_dict())
        changes.pop("updated_at", None)
        self._logger.info("Feature flag updated", flag_key=flag_key, changes=changes)
        return updated

    def remove(self, flag_key: str) -> bool:
        with self._write_lock:
            if flag_key not in self._flags:
                return False
            flags = dict(self._flags)
            del flags[flag_key]
            self._flags = flags
            self._persist(flags)
        self._logger.info("Feature flag removed", flag_key=flag_key)
        return True

    def export_all(self) -> str:
        """Serialize every flag as a flat JSON array."""
        return json.dumps([f.to_dict() for f in self.list_flags()], indent=2)

    def import_all(self, document: str) -> bool:
        """
        Import flags from a JSON array. All or nothing.

        Every record is validated before any flag changes. Imported flags
        replace existing flags with the same key; others are kept.
        """
        try:
            data = json.loads(document)
        except (TypeError, ValueError) as e:
            self._logger.error("Flag import rejected: invalid JSON", error=str(e))
            return False

        errors = validate_flag_document(data)
        if errors:
            self._logger.error("Flag import rejected", errors=errors[:10], error_count=len(errors))
            return False

        imported = [FeatureFlag.from_model(FeatureFlagModel.model_validate(item)) for item in data]

        def apply(flags):
            for flag in imported:
                flags[flag.key] = flag

        self._swap(apply)
        self._logger.info("Feature flags imported", count=len(imported))
        return True

    def _swap(self, mutate: Callable[[Dict[str, FeatureFlag]], None]) -> None:
        """Copy, mutate and publish the flag dict under the write lock."""
        with self._write_lock:
            flags = dict(self._flags)
            mutate(flags)
            self._flags = flags
            self._persist(flags)

    def _persist(self, flags: Dict[str, FeatureFlag]) -> None:
        if self.storage_path is None:
            return
        try:
            save_json(self.storage_path, [f.to_dict() for f in flags.values()])
        except OSError as e:
            self._logger.error("Failed to save feature flags", path=str(self.storage_path), error=str(e))

    def _load_stored(self, path: Path) -> None:
        """Stored flags override defaults only when they are newer."""
        data = load_json(path, default=None)
        if data is None:
            return

        errors = validate_flag_document(data)
        if errors:
            self._logger.warning("Ignoring invalid stored feature flags", path=str(path), errors=errors[:10])
            return

        flags = dict(self._flags)
        for item in data:
            stored = FeatureFlag.from_model(FeatureFlagModel.model_validate(item))
            existing = flags.get(stored.key)
            if existing is None or stored.updated_at > existing.updated_at:
                flags[stored.key] = stored
        self._flags = flags
        self._logger.debug("Loaded stored feature flags", path=str(path), count=len(data))
