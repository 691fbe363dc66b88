"""
TimeSync Backend — Record Field Schemas
=========================================

What:  Pydantic models describing the domain fields of each record kind.
How:   A change's `fields` payload is validated against the model for its
       kind: in full for creates, and as the merged (stored + submitted)
       state for updates. Unknown field names are rejected.
Who:   Used by the Sync Coordinator (request validation) and the Merge
       Engine (merged-state validation).
"""

from typing import Any, Dict, Optional, Type

from pydantic import BaseModel, Field, ValidationError as PydanticValidationError, model_validator

from timesync.exceptions import ValidationError

DEFAULT_COLOR = "#808080"


class TimeEntryFields(BaseModel):
    """Domain fields of a time entry. Times are epoch milliseconds."""

    description: str = Field(default="", max_length=10_000)
    start_time: int = Field(ge=0, description="Start of the entry (epoch ms)")
    end_time: Optional[int] = Field(
        default=None, ge=0, description="End of the entry (epoch ms); null while running"
    )
    project_id: Optional[str] = Field(default=None, max_length=64)
    category_id: Optional[str] = Field(default=None, max_length=64)

    model_config = {"extra": "forbid"}

    @model_validator(mode="after")
    def check_time_range(self) -> "TimeEntryFields":
        if self.end_time is not None and self.end_time < self.start_time:
            raise ValueError("end_time must not be earlier than start_time")
        return self


class ProjectFields(BaseModel):
    name: str = Field(min_length=1, max_length=255)
    color: str = Field(default=DEFAULT_COLOR, max_length=32)

    model_config = {"extra": "forbid"}


class CategoryFields(BaseModel):
    name: str = Field(min_length=1, max_length=255)
    color: str = Field(default=DEFAULT_COLOR, max_length=32)
    weekly_target_hours: Optional[float] = Field(default=None, ge=0, le=168)

    model_config = {"extra": "forbid"}


FIELD_SCHEMAS: Dict[str, Type[BaseModel]] = {
    "time_entry": TimeEntryFields,
    "project": ProjectFields,
    "category": CategoryFields,
}


def check_field_names(kind: str, fields: Dict[str, Any], record_id: str) -> None:
    """Reject field names the kind does not define."""
    allowed = FIELD_SCHEMAS[kind].model_fields.keys()
    unknown = sorted(set(fields) - set(allowed))
    if unknown:
        raise ValidationError(
            message=f"Unknown field(s) for {kind}: {', '.join(unknown)}",
            field="fields",
            context={"kind": kind, "record_id": record_id, "unknown_fields": unknown},
        )


def validate_fields(kind: str, fields: Dict[str, Any], record_id: str) -> Dict[str, Any]:
    """
    Validate a complete field set for `kind` and return it normalized
    (defaults filled in).

    Raises:
        ValidationError: missing required fields, wrong types, or
            cross-field rule violations. The record id is carried in the
            error context.
    """
    schema = FIELD_SCHEMAS[kind]
    try:
        return schema.model_validate(fields).model_dump()
    except PydanticValidationError as e:
        problems = [
            {"field": ".".join(str(p) for p in err["loc"]) or "fields", "message": err["msg"]}
            for err in e.errors()
        ]
        raise ValidationError(
            message=f"Invalid fields for {kind} '{record_id}'",
            field="fields",
            context={"kind": kind, "record_id": record_id, "problems": problems},
        )
