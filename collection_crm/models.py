from datetime import date, datetime
from typing import Optional

from sqlalchemy import DateTime
from sqlmodel import Field, Relationship, SQLModel

from .timezone_utils import now_local_naive


class CustomerRecord(SQLModel, table=True):
    __tablename__ = "customer_record"

    id: Optional[int] = Field(default=None, primary_key=True)
    c_unique_id: str = Field(index=True, unique=True, max_length=40)

    # identity-bearing
    mobile: Optional[str] = Field(default=None, index=True, max_length=40)
    ref_mobile_1: Optional[str] = Field(default=None, index=True, max_length=40)
    ref_mobile_2: Optional[str] = Field(default=None, max_length=40)
    ref_mobile_3: Optional[str] = Field(default=None, max_length=40)
    ref_mobile_4: Optional[str] = Field(default=None, max_length=40)
    ref_mobile_5: Optional[str] = Field(default=None, max_length=40)
    ref_mobile_6: Optional[str] = Field(default=None, max_length=40)
    ref_mobile_7: Optional[str] = Field(default=None, max_length=40)
    email: Optional[str] = Field(default=None, index=True, max_length=120)
    crn: Optional[str] = Field(default=None, index=True, max_length=40)
    loan_card_no: Optional[str] = Field(default=None, index=True, max_length=40)

    c_name: Optional[str] = Field(default=None, max_length=100)
    product: Optional[str] = Field(default=None, max_length=15)
    bank_name: Optional[str] = Field(default=None, max_length=100)
    banker_name: Optional[str] = Field(default=None, max_length=100)
    agent_name: Optional[str] = Field(default=None, index=True, max_length=100)
    tl_name: Optional[str] = Field(default=None, max_length=100)
    fl_supervisor: Optional[str] = Field(default=None, max_length=100)
    team_id: Optional[int] = Field(default=None, index=True)
    dpd_vintage: Optional[str] = Field(default=None, max_length=20)
    pos: Optional[float] = None
    emi_amt: Optional[float] = None
    loan_amt: Optional[float] = None
    paid_amt: Optional[float] = None
    settl_amt: Optional[float] = None
    paid_date: Optional[date] = None
    shots: Optional[int] = None
    office_address: Optional[str] = Field(default=None, max_length=255)
    resi_address: Optional[str] = Field(default=None, max_length=255)
    pincode: Optional[str] = Field(default=None, max_length=10)
    calling_code: Optional[str] = Field(default=None, max_length=10)
    field_code: Optional[str] = Field(default=None, max_length=10)
    disposition: Optional[str] = Field(default=None, max_length=50)
    calling_feedback: Optional[str] = Field(default=None, max_length=500)
    field_feedback: Optional[str] = Field(default=None, max_length=500)
    new_track_no: Optional[str] = Field(default=None, max_length=50)
    comment: Optional[str] = Field(default=None, max_length=500)
    scheduled_at: Optional[datetime] = Field(default=None, index=True, sa_type=DateTime)

    created_by: str = Field(default="", max_length=100)
    created_at: datetime = Field(default_factory=now_local_naive, sa_type=DateTime)
    last_updated: datetime = Field(default_factory=now_local_naive, sa_type=DateTime)

    changes: list["ChangeLogEntry"] = Relationship(
        back_populates="record",
        sa_relationship_kwargs={"cascade": "all, delete-orphan"},
    )


class ChangeLogEntry(SQLModel, table=True):
    __tablename__ = "customer_change_log"

    id: Optional[int] = Field(default=None, primary_key=True)
    record_id: int = Field(foreign_key="customer_record.id", index=True, ondelete="CASCADE")
    c_unique_id: Optional[str] = Field(default=None, index=True, max_length=40)
    field: str = Field(max_length=50)
    old_value: Optional[str] = None
    new_value: Optional[str] = None
    changed_by: str = Field(max_length=100)
    changed_at: datetime = Field(default_factory=now_local_naive, index=True, sa_type=DateTime)

    record: Optional[CustomerRecord] = Relationship(back_populates="changes")


class IdentifierSequence(SQLModel, table=True):
    __tablename__ = "identifier_sequence"

    prefix: str = Field(primary_key=True, max_length=10)
    last_identifier: str = Field(max_length=40)
    updated_at: datetime = Field(default_factory=now_local_naive, sa_type=DateTime)


class UploadStaging(SQLModel, table=True):
    __tablename__ = "upload_staging"

    upload_id: str = Field(primary_key=True, max_length=32)
    created_by: str = Field(max_length=100)
    payload_json: str
    record_count: int = 0
    created_at: datetime = Field(default_factory=now_local_naive, sa_type=DateTime)
    expires_at: datetime = Field(index=True, sa_type=DateTime)


class OperationLog(SQLModel, table=True):
    __tablename__ = "operation_log"

    id: Optional[int] = Field(default=None, primary_key=True)
    entity_type: str = Field(index=True)
    entity_id: Optional[int] = Field(default=None, index=True)
    action: str
    description: str = Field(default="")
    actor: Optional[str] = None
    metadata_json: Optional[str] = None
    created_at: datetime = Field(default_factory=now_local_naive, sa_type=DateTime)
