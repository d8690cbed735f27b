import re
from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator

MIN_SEARCH_LENGTH = 3

PROFILE_URL_RE = re.compile(r"^https?://(www\.)?linkedin\.com/company/[a-zA-Z0-9\-_]+/?$")

CONDITION_OPERATORS = (
    "equals",
    "not_equals",
    "in",
    "not_in",
    "contains",
    "starts_with",
    "ends_with",
)

NULLABLE_PATCH_FIELDS = ("experiment_group",)


def _is_non_empty_str(v: Any) -> bool:
    return isinstance(v, str) and v.strip() != ""


def validate_search_term(term: Any, min_length: int = MIN_SEARCH_LENGTH) -> List[str]:
    """
    Returns a list of validation error messages. Empty list means valid.
    """
    errors: List[str] = []
    if not isinstance(term, str):
        errors.append("Company name must be a string")
    elif not _is_non_empty_str(term):
        errors.append("Company name is required")
    elif len(term.strip()) < min_length:
        errors.append(f"Company name must be at least {min_length} characters")
    return errors


def validate_profile_url(url: Any) -> List[str]:
    """Check a manually entered company-profile URL."""
    errors: List[str] = []
    if not _is_non_empty_str(url):
        errors.append("Profile URL is required")
    elif not PROFILE_URL_RE.match(url.strip()):
        errors.append(
            "Profile URL must look like https://www.linkedin.com/company/<name>"
        )
    return errors


class FlagConditionModel(BaseModel):
    model_config = ConfigDict(extra="forbid")

    field: str = Field(min_length=1)
    operator: str
    value: Any

    @field_validator("operator")
    @classmethod
    def _known_operator(cls, v: str) -> str:
        if v not in CONDITION_OPERATORS:
            raise ValueError(f"unknown operator: {v}")
        return v


class FeatureFlagModel(BaseModel):
    """Strict shape of one flag in an exported/imported flag document."""

    model_config = ConfigDict(extra="forbid")

    key: str = Field(min_length=1)
    name: str
    description: str = ""
    enabled: bool = Field(strict=True)
    rollout_percentage: int = Field(ge=0, le=100, strict=True)
    conditions: List[FlagConditionModel] = Field(default_factory=list)
    experiment_group: Optional[str] = None
    created_at: datetime
    updated_at: datetime


class FlagPatchModel(BaseModel):
    """
    Fields an admin may change on an existing flag.

    Only the fields present in the patch are applied. experiment_group is
    the one field that may be cleared with null.
    """

    model_config = ConfigDict(extra="forbid")

    name: str = Field(default="", min_length=1)
    description: str = ""
    enabled: bool = Field(default=True, strict=True)
    rollout_percentage: int = Field(default=100, ge=0, le=100, strict=True)
    conditions: List[FlagConditionModel] = Field(default_factory=list)
    experiment_group: Optional[str] = None

    @model_validator(mode="before")
    @classmethod
    def _reject_nulls(cls, data: Any) -> Any:
        if isinstance(data, dict):
            nulls = sorted(k for k, v in data.items() if v is None and k not in NULLABLE_PATCH_FIELDS)
            if nulls:
                raise ValueError(f"null is not allowed for: {', '.join(nulls)}")
        return data


def validate_flag_document(data: Any) -> List[str]:
    """
    Validate a flag document (a flat list of flag objects).

    Returns a list of error messages. Empty list means valid.
    """
    if not isinstance(data, list):
        return ["Flag document must be a JSON array"]

    errors: List[str] = []
    seen = set()
    for i, item in enumerate(data):
        try:
            flag = FeatureFlagModel.model_validate(item)
        except ValidationError as e:
            for err in e.errors():
                loc = ".".join(str(p) for p in err["loc"])
                errors.append(f"flags[{i}].{loc}: {err['msg']}")
            continue
        if flag.key in seen:
            errors.append(f"flags[{i}].key: duplicate key '{flag.key}'")
        seen.add(flag.key)
    return errors


def validate_flag_patch(patch: Dict[str, Any]) -> List[str]:
    try:
        FlagPatchModel.model_validate(patch)
    except ValidationError as e:
        return [
            f"{'.'.join(str(p) for p in err['loc']) or 'patch'}: {err['msg']}"
            for err in e.errors()
        ]
    return []
