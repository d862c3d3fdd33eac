from __future__ import annotations

from datetime import date, datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


def _normalize_policy(value: Optional[str]) -> str:
    # unknown values are left for the resolver to reject with InvalidPolicy
    if value is None:
        return value
    return value.strip().lower()


class RecordCreateRequest(BaseModel):
    fields: Dict[str, Any]
    policy: str = "prompt"

    @field_validator("policy")
    @classmethod
    def validate_policy(cls, value: str) -> str:
        return _normalize_policy(value)


class RecordUpdateRequest(BaseModel):
    fields: Dict[str, Any]

    @field_validator("fields")
    @classmethod
    def validate_fields(cls, value: Dict[str, Any]) -> Dict[str, Any]:
        if not value:
            raise ValueError("No fields to update")
        return value


class ResolveRequest(BaseModel):
    candidate: Optional[Dict[str, Any]] = None
    record_id: Optional[int] = None
    policy: str

    @field_validator("policy")
    @classmethod
    def validate_policy(cls, value: str) -> str:
        return _normalize_policy(value)

    @model_validator(mode="after")
    def validate_target(self) -> "ResolveRequest":
        if (self.candidate is None) == (self.record_id is None):
            raise ValueError("Provide exactly one of candidate or record_id")
        return self


class CheckDuplicatesRequest(BaseModel):
    fields: Dict[str, Any]
    exclude_record_id: Optional[int] = None


class AssignRequest(BaseModel):
    agent_name: Optional[str] = None
    tl_name: Optional[str] = None
    team_id: Optional[int] = None

    @model_validator(mode="after")
    def validate_target(self) -> "AssignRequest":
        if self.agent_name is None and self.tl_name is None and self.team_id is None:
            raise ValueError("agent_name, tl_name or team_id is required")
        return self


class UploadStageRequest(BaseModel):
    header_mapping: Dict[str, str] = Field(default_factory=dict)
    rows: List[Dict[str, Any]]

    @field_validator("rows")
    @classmethod
    def validate_rows(cls, value: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
        if not value:
            raise ValueError("rows must not be empty")
        return value


class UploadConfirmRequest(BaseModel):
    proceed: bool = True
    policy: str = "skip"

    @field_validator("policy")
    @classmethod
    def validate_policy(cls, value: str) -> str:
        return _normalize_policy(value)


class CustomerRecordRead(BaseModel):
    id: int
    c_unique_id: str
    mobile: Optional[str] = None
    ref_mobile_1: Optional[str] = None
    ref_mobile_2: Optional[str] = None
    ref_mobile_3: Optional[str] = None
    ref_mobile_4: Optional[str] = None
    ref_mobile_5: Optional[str] = None
    ref_mobile_6: Optional[str] = None
    ref_mobile_7: Optional[str] = None
    email: Optional[str] = None
    crn: Optional[str] = None
    loan_card_no: Optional[str] = None
    c_name: Optional[str] = None
    product: Optional[str] = None
    bank_name: Optional[str] = None
    banker_name: Optional[str] = None
    agent_name: Optional[str] = None
    tl_name: Optional[str] = None
    fl_supervisor: Optional[str] = None
    team_id: Optional[int] = None
    dpd_vintage: Optional[str] = None
    pos: Optional[float] = None
    emi_amt: Optional[float] = None
    loan_amt: Optional[float] = None
    paid_amt: Optional[float] = None
    settl_amt: Optional[float] = None
    paid_date: Optional[date] = None
    shots: Optional[int] = None
    office_address: Optional[str] = None
    resi_address: Optional[str] = None
    pincode: Optional[str] = None
    calling_code: Optional[str] = None
    field_code: Optional[str] = None
    disposition: Optional[str] = None
    calling_feedback: Optional[str] = None
    field_feedback: Optional[str] = None
    new_track_no: Optional[str] = None
    comment: Optional[str] = None
    scheduled_at: Optional[datetime] = None
    created_by: str
    created_at: datetime
    last_updated: datetime
    model_config = ConfigDict(from_attributes=True)


class ChangeLogEntryRead(BaseModel):
    id: int
    record_id: int
    c_unique_id: Optional[str] = None
    field: str
    old_value: Optional[str] = None
    new_value: Optional[str] = None
    changed_by: str
    changed_at: datetime
    model_config = ConfigDict(from_attributes=True)


class DuplicateHitRead(BaseModel):
    field: str
    value: str
    record_id: int
    c_unique_id: str
    record_name: Optional[str] = None
    message: str


class DuplicateReportRead(BaseModel):
    has_duplicates: bool
    hits: List[DuplicateHitRead] = Field(default_factory=list)
    messages: List[str] = Field(default_factory=list)


class FieldErrorRead(BaseModel):
    field: str
    code: str
    message: str


class MutationResponse(BaseModel):
    status: str
    written: int = 0
    record: Optional[CustomerRecordRead] = None
    changes: List[ChangeLogEntryRead] = Field(default_factory=list)
    report: Optional[DuplicateReportRead] = None
    errors: List[FieldErrorRead] = Field(default_factory=list)


class RecordUpdateResponse(BaseModel):
    record: CustomerRecordRead
    changes: List[ChangeLogEntryRead]


class UploadRowIssue(BaseModel):
    row: int
    field: Optional[str] = None
    value: Optional[str] = None
    messages: List[str] = Field(default_factory=list)
    first_row: Optional[int] = None


class UploadSummary(BaseModel):
    upload_id: str
    total_rows: int
    valid_rows: int
    invalid_rows: List[UploadRowIssue] = Field(default_factory=list)
    duplicates: List[UploadRowIssue] = Field(default_factory=list)
    batch_duplicates: List[UploadRowIssue] = Field(default_factory=list)
    expires_at: datetime


class UploadConfirmation(BaseModel):
    upload_id: str
    status: str
    inserted: int = 0
    replaced: int = 0
    appended: int = 0
    skipped: int = 0
    invalid: int = 0
    created_identifiers: List[str] = Field(default_factory=list)


class OperationLogRead(BaseModel):
    id: int
    entity_type: str
    entity_id: Optional[int]
    action: str
    description: str
    actor: Optional[str] = None
    metadata: Optional[Dict[str, Any]] = None
    created_at: datetime
    model_config = ConfigDict(from_attributes=True)
