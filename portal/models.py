# Domain models for the portal frontend: remote payloads, forms, page state

import json
import re
from collections import Counter
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from .config import CITIZEN_ATTACHMENT_TYPES, EVIDENCE_EXTENSIONS, MAX_ATTACHMENT_BYTES

# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------
class UserRole(str, Enum):
    CITIZEN = "citizen"
    OFFICER = "officer"
    ADMIN = "admin"

class GrievanceStatus(str, Enum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    RESOLVED = "resolved"
    REVERTED = "reverted"
    ASSIGNED = "assigned"

class UpdateStatus(str, Enum):
    IN_PROGRESS = "in_progress"
    RESOLVED = "resolved"

GRIEVANCE_CATEGORIES = [
    "Municipal Issues",
    "Utility Services",
    "Public Safety & Law Enforcement",
    "Healthcare & Sanitation",
    "Transport & Infrastructure",
    "Digital and Online Services",
    "Education & Youth Services",
    "Government Schemes & Services",
    "Others",
]

STATUS_LABELS = {
    GrievanceStatus.PENDING.value: "Pending",
    GrievanceStatus.IN_PROGRESS.value: "In Progress",
    GrievanceStatus.RESOLVED.value: "Resolved",
    GrievanceStatus.REVERTED.value: "Reverted",
    GrievanceStatus.ASSIGNED.value: "Assigned",
}

# The remote API is not consistent about status spelling
_STATUS_ALIASES = {"revert_back": "reverted", "reverted_back": "reverted", "inprogress": "in_progress"}

EMAIL_RE = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")


def normalize_status(raw: Optional[str]) -> str:
    """Map any remote spelling ("In Progress", "in_progress", "revert_back") to a status key."""
    if not raw:
        return GrievanceStatus.PENDING.value
    key = re.sub(r"[\s-]+", "_", str(raw).strip().lower())
    return _STATUS_ALIASES.get(key, key)


def status_label(status: Optional[str]) -> str:
    key = normalize_status(status)
    return STATUS_LABELS.get(key, key.replace("_", " ").title())


def is_valid_email(email: str) -> bool:
    return bool(email) and EMAIL_RE.match(email) is not None


# ---------------------------------------------------------------------------
# Remote payloads
# ---------------------------------------------------------------------------
class RemoteModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

class Person(RemoteModel):
    name: Optional[str] = None
    email: Optional[str] = None

class Officer(RemoteModel):
    name: str
    email: str = ""

class GrievanceSummary(RemoteModel):
    """One row of a grievance list, from any of the citizen/officer/admin listings."""
    grievance_id: str = Field(..., alias="grievanceId")
    record_id: Optional[str] = Field(None, alias="_id")
    title: str = ""
    description: str = ""
    category: str = ""
    status: str = GrievanceStatus.PENDING.value
    priority: str = "Medium"
    submitted_at: Optional[datetime] = Field(None, alias="submittedAt")
    assigned_date: Optional[datetime] = Field(None, alias="assignedDate")
    citizen: Optional[Person] = Field(None, alias="citizenId")
    officer: Optional[Person] = Field(None, alias="officerId")
    assigned_officer_name: Optional[str] = Field(None, alias="assignedOfficerName")

    @field_validator("status", mode="before")
    @classmethod
    def _normalize_status(cls, v):
        return normalize_status(v)

    @field_validator("priority", mode="before")
    @classmethod
    def _default_priority(cls, v):
        return v or "Medium"

    @property
    def status_label(self) -> str:
        return status_label(self.status)

    @property
    def officer_name(self) -> Optional[str]:
        if self.assigned_officer_name:
            return self.assigned_officer_name
        return self.officer.name if self.officer else None

    @property
    def short_description(self) -> str:
        if len(self.description) <= 50:
            return self.description
        return self.description[:50] + "..."

class Location(RemoteModel):
    address: Optional[str] = None
    addressLine: Optional[str] = None
    city: Optional[str] = None
    district: Optional[str] = None
    state: Optional[str] = None
    pincode: Optional[str] = None

    @property
    def display(self) -> str:
        if self.address:
            return self.address
        parts = [self.addressLine, self.city, self.district, self.state, self.pincode]
        return ", ".join(p for p in parts if p) or "Not provided"

class Evidence(RemoteModel):
    file_url: Optional[str] = Field(None, alias="fileUrl")
    url: Optional[str] = None
    description: Optional[str] = None
    file_type: Optional[str] = Field(None, alias="fileType")
    uploaded_by: Optional[str] = Field(None, alias="uploadedBy")
    uploaded_at: Optional[datetime] = Field(None, alias="uploadedAt")

    @property
    def src(self) -> Optional[str]:
        return self.file_url or self.url

class LogAttachment(RemoteModel):
    file_url: str = Field(..., alias="fileUrl")
    file_type: str = Field("", alias="fileType")

    @property
    def is_image(self) -> bool:
        return self.file_type.startswith("image/")

    @property
    def label(self) -> str:
        _, _, subtype = self.file_type.partition("/")
        return subtype.upper() if subtype else "File"

class LogEntry(RemoteModel):
    officer_name: str = Field("", alias="officerName")
    timestamp: Optional[datetime] = None
    status: Optional[str] = None
    message: Optional[str] = None
    attachments: List[LogAttachment] = Field(default_factory=list)

    @property
    def status_label(self) -> Optional[str]:
        return status_label(self.status) if self.status else None

class GrievanceDetail(RemoteModel):
    grievance_id: Optional[str] = Field(None, alias="grievanceId")
    title: str = ""
    category: str = ""
    description: str = ""
    status: str = GrievanceStatus.PENDING.value
    priority: str = "Medium"
    submitted_date: Optional[datetime] = Field(None, alias="submittedDate")
    assigned_date: Optional[datetime] = Field(None, alias="assignedDate")
    location: Location = Field(default_factory=Location)
    citizen: Optional[str] = None
    evidence: List[Evidence] = Field(default_factory=list)
    logs: List[LogEntry] = Field(default_factory=list)

    @field_validator("status", mode="before")
    @classmethod
    def _normalize_status(cls, v):
        return normalize_status(v)

    @field_validator("location", mode="before")
    @classmethod
    def _location_from_string(cls, v):
        if v is None:
            return {}
        if isinstance(v, str):
            try:
                return json.loads(v)
            except ValueError:
                return {"address": v}
        return v

    @property
    def status_label(self) -> str:
        return status_label(self.status)

# ---------------------------------------------------------------------------
# Analytics
# ---------------------------------------------------------------------------
class OfficerPerformance(RemoteModel):
    officer_name: str = Field(..., alias="officerName")
    assigned: int = 0
    resolved: int = 0
    resolution_rate: str = Field("0%", alias="resolutionRate")
    avg_resolution_time: str = Field("N/A", alias="avgResolutionTime")

    @field_validator("resolution_rate", "avg_resolution_time", mode="before")
    @classmethod
    def _as_text(cls, v):
        return "" if v is None else str(v)

class MonthlyTrend(RemoteModel):
    month: str
    submitted: int = 0
    resolved: int = 0

class SystemMetrics(RemoteModel):
    response_time: str = Field("N/A", alias="responseTime")
    resolution_rate: str = Field("N/A", alias="resolutionRate")
    satisfaction_score: str = Field("N/A", alias="satisfactionScore")
    reopening_rate: str = Field("N/A", alias="reopeningRate")

    @field_validator("*", mode="before")
    @classmethod
    def _as_text(cls, v):
        return "N/A" if v is None else str(v)

class AnalyticsReport(RemoteModel):
    total_grievances: int = Field(0, alias="totalGrievances")
    resolved: int = 0
    in_progress: int = Field(0, alias="inProgress")
    pending: int = 0
    average_resolution_time: Optional[str] = Field(None, alias="averageResolutionTime")
    officer_performance: List[OfficerPerformance] = Field(default_factory=list, alias="officerPerformance")
    category_breakdown: List[Dict[str, Any]] = Field(default_factory=list, alias="categoryBreakdown")
    monthly_trends: List[MonthlyTrend] = Field(default_factory=list, alias="monthlyTrends")
    system_metrics: SystemMetrics = Field(default_factory=SystemMetrics, alias="systemMetrics")

    @field_validator("average_resolution_time", mode="before")
    @classmethod
    def _as_text(cls, v):
        return None if v is None else str(v)

    @classmethod
    def merge(cls, dashboard: dict, performance: dict, extended: dict) -> "AnalyticsReport":
        """Combine the three admin aggregates into one report."""
        return cls.model_validate({
            **dashboard,
            "officerPerformance": performance.get("performance") or [],
            "categoryBreakdown": extended.get("categoryBreakdown") or [],
            "monthlyTrends": extended.get("monthlyTrends") or [],
            "systemMetrics": extended.get("systemMetrics") or {},
        })

    @property
    def resolution_time_label(self) -> str:
        if self.average_resolution_time and self.average_resolution_time != "0":
            return f"{self.average_resolution_time} days"
        return "N/A"

    @property
    def avg_per_officer(self) -> float:
        if not self.officer_performance:
            return 0.0
        return round(self.total_grievances / len(self.officer_performance), 1)

# ---------------------------------------------------------------------------
# Page state
# ---------------------------------------------------------------------------
def grievance_stats(grievances: List[GrievanceSummary]) -> Dict[str, int]:
    counts = Counter(g.status for g in grievances)
    return {
        "total": len(grievances),
        "resolved": counts[GrievanceStatus.RESOLVED.value],
        "in_progress": counts[GrievanceStatus.IN_PROGRESS.value],
        "pending": counts[GrievanceStatus.PENDING.value],
    }

def workload_summary(grievances: List[GrievanceSummary]) -> Dict[str, Any]:
    by_status = Counter(g.status_label for g in grievances)
    by_priority = Counter(g.priority.title() for g in grievances)
    by_category = Counter(g.category or "Uncategorised" for g in grievances)
    open_count = sum(1 for g in grievances if g.status != GrievanceStatus.RESOLVED.value)
    total = len(grievances)
    return {
        "total": total,
        "open": open_count,
        "resolved": total - open_count,
        "resolution_rate": f"{round(100 * (total - open_count) / total)}%" if total else "0%",
        "by_status": dict(by_status.most_common()),
        "by_priority": dict(by_priority.most_common()),
        "by_category": dict(by_category.most_common()),
    }

class AdminBoard(BaseModel):
    """The admin dashboard lists, updated locally after a successful assignment."""
    pending: List[GrievanceSummary] = Field(default_factory=list)
    all_complaints: List[GrievanceSummary] = Field(default_factory=list)
    officers: List[Officer] = Field(default_factory=list)

    def apply_assignment(self, grievance_id: str, officer_name: str) -> None:
        self.pending = [g for g in self.pending if g.grievance_id != grievance_id]
        for g in self.all_complaints:
            if g.grievance_id == grievance_id:
                g.assigned_officer_name = officer_name
                g.status = GrievanceStatus.ASSIGNED.value

# ---------------------------------------------------------------------------
# Forms
# ---------------------------------------------------------------------------
class GrievanceForm(BaseModel):
    category: str = ""
    title: str = ""
    description: str = ""
    street: str = ""
    city: str = ""
    district: str = ""
    state: str = ""
    postal_code: str = ""

    @field_validator("*", mode="before")
    @classmethod
    def _strip(cls, v):
        return (v or "").strip()

    def first_error(self) -> Optional[str]:
        """Return the message for the first invalid field, in form order."""
        checks = [
            (self.category in GRIEVANCE_CATEGORIES, "Please select a category."),
            (bool(self.title), "A clear title is required."),
            (bool(self.description), "A detailed description is necessary."),
            (bool(self.street), "Street address is required for location."),
            (bool(self.city), "City is required for jurisdiction."),
            (bool(self.district), "District helps in coordinating with authorities."),
            (bool(self.state), "State is required for proper routing."),
            (len(self.postal_code) == 6, "A valid 6-digit postal code is required."),
        ]
        for ok, message in checks:
            if not ok:
                return message
        return None

    def location_payload(self) -> str:
        return json.dumps({
            "state": self.state, "district": self.district, "city": self.city,
            "addressLine": self.street, "pincode": self.postal_code,
        })

class StatusUpdateForm(BaseModel):
    status: str = ""
    notes: str = ""
    has_evidence: bool = False

    def first_error(self) -> Optional[str]:
        if self.status not in {s.value for s in UpdateStatus}:
            return "Please select a status."
        if not self.notes.strip():
            return "Please add update notes."
        if self.status == UpdateStatus.RESOLVED.value and not self.has_evidence:
            return "Please upload evidence when status is set to Resolved."
        return None


def citizen_attachment_error(filename: str, size: int) -> Optional[str]:
    if Path(filename).suffix.lower() not in CITIZEN_ATTACHMENT_TYPES:
        return "Supported formats: PDF, JPG, PNG."
    if size > MAX_ATTACHMENT_BYTES:
        return "Attachments must be 5MB or smaller."
    return None


def evidence_attachment_error(filename: str) -> Optional[str]:
    if Path(filename).suffix.lower() not in EVIDENCE_EXTENSIONS:
        return "Evidence must be an image, PDF or Word document."
    return None
