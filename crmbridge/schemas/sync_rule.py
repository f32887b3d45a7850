"""
Sync rule schemas - the shapes stored in SyncRule.conditions / SyncRule.actions.

Keys keep the camelCase names the rule builder writes (searchBy,
fieldMappings, amocrmPipelineId, ...); Python code uses snake_case attributes.
"""
from typing import Any, Optional
from pydantic import BaseModel, ConfigDict, Field, field_validator


CONDITION_TYPES = ("event_type", "pipeline", "status", "field_equals", "field_contains", "field_not_empty")
SEARCH_BY_VALUES = ("phone", "email", "name")


class Condition(BaseModel):
    """One leaf of a rule's condition tree."""
    model_config = ConfigDict(extra="allow")

    type: str
    field: Optional[str] = None
    value: Optional[Any] = None


class ConditionTree(BaseModel):
    """All leaves share the single top-level operator."""
    operator: str = Field(default="AND", description="AND or OR")
    rules: list[Condition] = Field(default_factory=list)


class FieldMapping(BaseModel):
    """Target of one mapped source field."""
    entity: str = Field(default="contact", description="contact or lead")
    field: str = Field(..., description="Standard field name or numeric custom field id")
    type: str = Field(default="standard", description="standard or custom")

    @field_validator("field", mode="before")
    @classmethod
    def _coerce_field(cls, v):
        return str(v) if isinstance(v, int) else v


class SyncAction(BaseModel):
    """
    One action in a rule's action list.

    field_mappings values are FieldMapping-shaped dicts or the legacy
    bare-string form (sourceField -> targetField); the field mapper
    validates each one separately so one bad entry only skips itself.
    """
    model_config = ConfigDict(populate_by_name=True, extra="allow")

    type: str
    search_by: str = Field(default="phone", alias="searchBy")
    field_mappings: dict[str, Any] = Field(
        default_factory=dict, alias="fieldMappings"
    )
    create_if_not_found: bool = Field(default=True, alias="createIfNotFound")

    # AmoCRM routing overrides
    amocrm_pipeline_id: Optional[str] = Field(default=None, alias="amocrmPipelineId")
    amocrm_status_id: Optional[str] = Field(default=None, alias="amocrmStatusId")

    # LPTracker routing overrides
    lptracker_stage_id: Optional[str] = Field(default=None, alias="lptrackerStageId")
    lptracker_project_id: Optional[str] = Field(default=None, alias="lptrackerProjectId")

    @field_validator(
        "amocrm_pipeline_id", "amocrm_status_id", "lptracker_stage_id", "lptracker_project_id",
        mode="before",
    )
    @classmethod
    def _coerce_ids(cls, v):
        if v is None or v == "":
            return None
        return str(v)

    @field_validator("search_by", mode="before")
    @classmethod
    def _default_search_by(cls, v):
        return v if v in SEARCH_BY_VALUES else "phone"

    @field_validator("field_mappings", mode="before")
    @classmethod
    def _default_mappings(cls, v):
        return v if isinstance(v, dict) else {}
