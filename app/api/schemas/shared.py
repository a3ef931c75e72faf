"""
Pydantic models shared by the import routers and the import domain.

JSON payloads use camelCase keys (``importJobId``, ``totalRows``); Python code
uses the snake_case attribute names.
"""
from datetime import datetime
from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic.alias_generators import to_camel


LEAD_FIELDS = (
    "external_id",
    "first_name",
    "last_name",
    "email",
    "phone",
    "company",
    "job_title",
    "address",
    "city",
    "postal_code",
    "country",
    "status",
    "source",
    "notes",
    "assigned_to",
)

LeadField = Literal[
    "external_id",
    "first_name",
    "last_name",
    "email",
    "phone",
    "company",
    "job_title",
    "address",
    "city",
    "postal_code",
    "country",
    "status",
    "source",
    "notes",
    "assigned_to",
]

DuplicateCheckField = Literal["email", "phone", "external_id"]


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# ---------------------------------------------------------------------------
# Column mapping
# ---------------------------------------------------------------------------

class ColumnMappingEntry(CamelModel):
    source_column: str
    source_index: int = Field(ge=0)
    target_field: Optional[LeadField] = None
    confidence: float = Field(default=0.0, ge=0.0, le=1.0)
    is_manual: bool = False
    sample_values: List[str] = Field(default_factory=list)


class ColumnMapping(CamelModel):
    mappings: List[ColumnMappingEntry]
    has_header_row: bool = True
    header_row_index: int = Field(default=0, ge=0)

    @model_validator(mode="after")
    def _check_targets(self):
        targets = [m.target_field for m in self.mappings if m.target_field]
        duplicated = sorted({t for t in targets if targets.count(t) > 1})
        if duplicated:
            raise ValueError(f"Fields mapped more than once: {', '.join(duplicated)}")
        if not targets:
            raise ValueError("At least one column must be mapped to a lead field")
        return self


# ---------------------------------------------------------------------------
# Assignment configuration (tagged on ``mode``)
# ---------------------------------------------------------------------------

class NoAssignment(CamelModel):
    mode: Literal["none"] = "none"


class RoundRobinAssignment(CamelModel):
    mode: Literal["round_robin"] = "round_robin"
    user_ids: List[str] = Field(min_length=1)


class SpecificAssignment(CamelModel):
    mode: Literal["specific"] = "specific"
    user_id: str = Field(min_length=1)


class AssignmentRule(CamelModel):
    field: LeadField
    operator: Literal["equals", "contains", "starts_with"] = "equals"
    value: str
    user_id: str = Field(min_length=1)


class RuleAssignment(CamelModel):
    mode: Literal["rule"] = "rule"
    rules: List[AssignmentRule] = Field(min_length=1)


AssignmentConfig = Annotated[
    Union[NoAssignment, RoundRobinAssignment, SpecificAssignment, RuleAssignment],
    Field(discriminator="mode"),
]


class DuplicateConfig(CamelModel):
    strategy: Literal["skip", "overwrite", "merge"] = "skip"
    check_fields: List[DuplicateCheckField] = Field(default_factory=lambda: ["email"])
    check_database: bool = True
    check_within_file: bool = True

    @field_validator("check_fields")
    @classmethod
    def _dedupe_fields(cls, value: List[str]) -> List[str]:
        seen: List[str] = []
        for field in value:
            if field not in seen:
                seen.append(field)
        return seen


# ---------------------------------------------------------------------------
# Requests
# ---------------------------------------------------------------------------

class ImportOptionsRequest(CamelModel):
    assignment_config: Dict[str, Any] = Field(default_factory=lambda: {"mode": "none"})
    duplicate_config: DuplicateConfig = Field(default_factory=DuplicateConfig)


class ParseTaskPayload(CamelModel):
    import_job_id: str
    start_chunk: int = Field(default=0, ge=0)


class CommitTaskPayload(CamelModel):
    import_job_id: str
    batch_marker: Optional[int] = None


# ---------------------------------------------------------------------------
# Responses
# ---------------------------------------------------------------------------

class ImportJobProgress(CamelModel):
    id: str
    status: str
    total_rows: int
    processed_rows: int
    valid_rows: int
    invalid_rows: int
    imported_rows: int
    skipped_rows: int
    current_chunk: int
    total_chunks: int
    error_message: Optional[str] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class ImportJobDetail(ImportJobProgress):
    file_name: str
    file_type: str
    file_size: Optional[int] = None
    encoding: Optional[str] = None
    delimiter: Optional[str] = None
    sheet_name: Optional[str] = None
    column_mapping: Optional[Dict[str, Any]] = None
    assignment_config: Optional[Dict[str, Any]] = None
    duplicate_config: Optional[Dict[str, Any]] = None
    error_report_path: Optional[str] = None
    worker_id: Optional[str] = None
    created_by: Optional[str] = None
    created_at: Optional[datetime] = None


class UploadResponse(CamelModel):
    success: bool
    import_job_id: str
    file_name: str
    file_type: str
    total_rows: int
    headers: List[str]
    column_mapping: Dict[str, Any]
    encoding: Optional[str] = None
    delimiter: Optional[str] = None
    sheet_name: Optional[str] = None


class JobActionResponse(CamelModel):
    success: bool
    import_job_id: str
    status: str
    message: Optional[str] = None
    message_id: Optional[str] = None


class CommitBatchResult(CamelModel):
    import_job_id: str
    status: str
    processed: int = 0
    imported: int = 0
    skipped: int = 0
    remaining: int = 0
    # cancelled, status_changed, time_budget, locked, terminal, not_started,
    # parse_incomplete, dispatch_failed
    stopped_reason: Optional[str] = None


class ParseChunkResult(CamelModel):
    import_job_id: str
    status: str
    chunk: int
    inserted: int = 0
    valid: int = 0
    invalid: int = 0
    next_chunk: Optional[int] = None


class ResumeResponse(CamelModel):
    success: bool
    result: Optional[CommitBatchResult] = None
    remaining_before: int = 0
    message: Optional[str] = None


class ResumeStatusResponse(CamelModel):
    job: ImportJobDetail
    remaining_valid_rows: int
