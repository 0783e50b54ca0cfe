import uuid
from datetime import date
from typing import Optional, List
from pydantic import BaseModel, Field, field_validator


class ReportBase(BaseModel):
    title: str = Field(max_length=255)
    description: Optional[str] = None
    site: Optional[str] = Field(default=None, max_length=255)
    department: Optional[str] = Field(default=None, max_length=255)
    location: Optional[str] = Field(default=None, max_length=255)
    date_of_reporting: Optional[date] = None
    image_urls: List[str] = []

    @field_validator("image_urls", mode="before")
    @classmethod
    def _image_urls_list(cls, v):
        # Persisted shape is a list of URLs; a bare string is one URL
        if v is None:
            return []
        if isinstance(v, str):
            return [v]
        return v


class HazardReportCreate(ReportBase):
    date_of_finding: Optional[date] = None
    risk_level: Optional[str] = None  # low|medium|high|critical
    hazard_characteristics: Optional[str] = None
    responsible_department: Optional[str] = None


class IncidentReportCreate(ReportBase):
    date_of_incident: Optional[date] = None
    time_of_incident: Optional[str] = None
    severity_level: Optional[str] = None
    incident_type: Optional[str] = None
    incident_category: Optional[str] = None
    witnesses: Optional[str] = None
    immediate_actions_taken: Optional[str] = None


class SOTReportCreate(ReportBase):
    observation_date: Optional[date] = None
    personal_category: Optional[str] = None
    details_if_observation: Optional[str] = None
    time_duration: Optional[str] = None
    type_of_work: Optional[str] = None
    add_action: Optional[str] = None


class EvidenceIn(BaseModel):
    file_name: str = Field(max_length=255)
    file_url: str = Field(max_length=2048)
    file_type: Optional[str] = Field(default=None, max_length=100)


class AssignmentCreate(BaseModel):
    report_id: uuid.UUID
    assignee_id: uuid.UUID
    action: str
    target_completion_date: Optional[date] = None
    remark: Optional[str] = None
    # Defaults to the caller; any other value is refused
    reviewer_id: Optional[uuid.UUID] = None


class CompletionSubmit(BaseModel):
    evidence: List[EvidenceIn] = []


class ReviewDecision(BaseModel):
    decision: str  # approved|rejected
    reason: Optional[str] = None

    @field_validator("decision")
    @classmethod
    def _decision(cls, v: str) -> str:
        v = (v or "").strip().lower()
        if v not in {"approved", "rejected"}:
            raise ValueError("decision must be 'approved' or 'rejected'")
        return v
