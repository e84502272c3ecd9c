"""Typed records shared by the dashboard services."""

import math
from dataclasses import dataclass, field, asdict
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

# Sheets the clustering service knows how to read, one per track level
SHEET_OPTIONS = ("REKAP-TK1", "REKAP-TK2", "REKAP-TK3", "REKAP-TK4")

MESSAGE_UNSENT = "belum terkirim"
MESSAGE_SENT = "terkirim"

DISCIPLINE_LABELS = ("Disiplin", "SP-I", "SP-II", "SP-III")


def coerce_count(value: Any) -> int:
    """Coerce an attendance count to an int; anything non-numeric becomes 0."""
    if value is None or isinstance(value, bool):
        return 0
    try:
        number = float(str(value).strip()) if isinstance(value, str) else float(value)
    except (TypeError, ValueError):
        return 0
    if not math.isfinite(number):
        return 0
    return int(number)


def _text(value: Any) -> str:
    if value is None:
        return ""
    return str(value).strip()


def normalize_id_number(value: Any) -> str:
    """ID numbers as text, whether they arrive as ints, floats or strings.

    Spreadsheet columns with a blank cell come back as floats, so
    ``2023001.0`` and ``"2023001.0"`` both become ``"2023001"``.
    """
    if isinstance(value, bool):
        return ""
    if isinstance(value, float):
        if not math.isfinite(value):
            return ""
        if value.is_integer():
            return str(int(value))
    text = _text(value)
    if text.endswith(".0") and text[:-2].isdigit():
        return text[:-2]
    return text


class Role(Enum):
    """Account roles as stored in ``users.role``."""
    ADMIN = "admin"
    STUDENT = "mahasiswa"


class ReconciliationOutcome(Enum):
    """Per-record result of bulk student registration."""
    CREATED = "created"
    ALREADY_EXISTS = "already_exists"
    RATE_LIMITED = "rate_limited"
    POLICY_DENIED = "policy_denied"
    ERROR = "error"


@dataclass(frozen=True)
class Session:
    """Tokens for one authenticated account."""
    access_token: str
    refresh_token: Optional[str]
    account_id: str
    email: Optional[str] = None
    expires_at: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> Optional["Session"]:
        if not data or not data.get("access_token") or not data.get("account_id"):
            return None
        return cls(
            access_token=data["access_token"],
            refresh_token=data.get("refresh_token"),
            account_id=data["account_id"],
            email=data.get("email"),
            expires_at=data.get("expires_at"),
        )


@dataclass
class Profile:
    """A row of the ``users`` table."""
    account_id: str
    email: str
    id_number: str
    display_name: str
    role: str = Role.STUDENT.value
    level_user: int = 0
    guardian_name: Optional[str] = None
    guardian_contact: Optional[str] = None
    advisor_name: Optional[str] = None
    advisor_contact: Optional[str] = None
    track_level: Optional[str] = None
    section: Optional[str] = None
    account_linked: bool = True

    @property
    def is_admin(self) -> bool:
        return self.role == Role.ADMIN.value or self.level_user == 1

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "Profile":
        return cls(
            account_id=row["id"],
            email=row.get("email") or "",
            id_number=row.get("nim") or "",
            display_name=row.get("nama") or "",
            role=row.get("role") or Role.STUDENT.value,
            level_user=int(row.get("level_user") or 0),
            guardian_name=row.get("nama_wali"),
            guardian_contact=row.get("no_wa_wali"),
            advisor_name=row.get("nama_dosen_pembimbing"),
            advisor_contact=row.get("no_wa_dosen_pembimbing"),
            track_level=row.get("tingkat"),
            section=row.get("kelas"),
            account_linked=bool(row.get("account_linked", True)),
        )

    def to_row(self) -> Dict[str, Any]:
        return {
            "id": self.account_id,
            "email": self.email,
            "nim": self.id_number,
            "nama": self.display_name,
            "role": self.role,
            "level_user": self.level_user,
            "nama_wali": self.guardian_name,
            "no_wa_wali": self.guardian_contact,
            "nama_dosen_pembimbing": self.advisor_name,
            "no_wa_dosen_pembimbing": self.advisor_contact,
            "tingkat": self.track_level,
            "kelas": self.section,
            "account_linked": self.account_linked,
        }

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> Optional["Profile"]:
        if not data:
            return None
        return cls(**{k: v for k, v in data.items() if k in cls.__dataclass_fields__})


@dataclass
class Period:
    id: str
    name: str
    academic_year: Optional[str] = None
    semester_label: Optional[str] = None

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "Period":
        return cls(
            id=row["id"],
            name=row.get("nama_periode") or "",
            academic_year=row.get("tahun_ajaran"),
            semester_label=row.get("semester"),
        )


@dataclass
class Batch:
    id: str
    name: str
    date: Optional[str]
    period_id: str
    period: Optional[Period] = None

    @classmethod
    def from_row(cls, row: Dict[str, Any], period: Optional[Period] = None) -> "Batch":
        batch_date = row.get("tgl_batch")
        if batch_date is not None and not isinstance(batch_date, str):
            batch_date = batch_date.isoformat()
        return cls(
            id=row["id"],
            name=row.get("nama_batch") or "",
            date=batch_date,
            period_id=row.get("id_periode"),
            period=period,
        )


@dataclass
class ClusteringRow:
    """One row returned by the clustering service, normalised at the boundary."""
    id_number: str
    student_name: str
    track_level: str = ""
    section: str = ""
    total_absences: int = 0
    total_sessions: int = 0
    discipline_status: str = ""
    cluster_label: str = "0"
    insight: str = ""
    raw: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_api(cls, data: Dict[str, Any]) -> "ClusteringRow":
        cluster = data.get("Cluster")
        return cls(
            id_number=normalize_id_number(data.get("NIM")),
            student_name=_text(data.get("Nama Mahasiswa")),
            track_level=_text(data.get("TINGKAT")),
            section=_text(data.get("KELAS")),
            total_absences=coerce_count(data.get("TOTAL_A")),
            total_sessions=coerce_count(data.get("JP")),
            discipline_status=_text(data.get("KEDISIPLINAN")),
            cluster_label=_text(cluster) if cluster is not None and _text(cluster) else "0",
            insight=_text(data.get("Insight")),
            raw=dict(data),
        )

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class StudentRecord:
    """Input to bulk registration, extracted from an uploaded dataset."""
    id_number: str
    display_name: str
    track_level: str = ""
    section: str = ""
    guardian_name: Optional[str] = None
    guardian_contact: Optional[str] = None
    advisor_name: Optional[str] = None
    advisor_contact: Optional[str] = None

    @classmethod
    def from_clustering_row(cls, row: ClusteringRow) -> "StudentRecord":
        return cls(
            id_number=row.id_number,
            display_name=row.student_name,
            track_level=row.track_level,
            section=row.section,
        )

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "StudentRecord":
        return cls(
            id_number=normalize_id_number(data.get("id_number") or data.get("nim")),
            display_name=_text(data.get("display_name") or data.get("nama")),
            track_level=_text(data.get("track_level") or data.get("tingkat")),
            section=_text(data.get("section") or data.get("kelas")),
            guardian_name=data.get("guardian_name") or data.get("nama_wali"),
            guardian_contact=data.get("guardian_contact") or data.get("no_wa_wali"),
            advisor_name=data.get("advisor_name") or data.get("nama_dosen_pembimbing"),
            advisor_contact=data.get("advisor_contact") or data.get("no_wa_dosen_pembimbing"),
        )

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class ClusteringResult:
    """A persisted row of ``hasil_clustering``, optionally joined."""
    id: str
    user_id: Optional[str]
    batch_id: str
    id_number: str
    student_name: str
    track_level: str
    section: str
    total_absences: int
    total_sessions: int
    discipline_status: str
    cluster_label: str
    insight: str
    raw_row: Dict[str, Any] = field(default_factory=dict)
    message_status: str = MESSAGE_UNSENT
    profile: Optional[Profile] = None
    batch: Optional[Batch] = None

    @property
    def period(self) -> Optional[Period]:
        return self.batch.period if self.batch else None

    @property
    def attendance_percentage(self) -> float:
        if self.total_sessions <= 0:
            return 0.0
        return round((self.total_sessions - self.total_absences) / self.total_sessions * 100, 1)

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["attendance_percentage"] = self.attendance_percentage
        return data


@dataclass
class RecordOutcome:
    record: StudentRecord
    outcome: ReconciliationOutcome
    account_id: Optional[str] = None
    email: Optional[str] = None
    detail: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id_number": self.record.id_number,
            "display_name": self.record.display_name,
            "outcome": self.outcome.value,
            "account_id": self.account_id,
            "email": self.email,
            "detail": self.detail,
        }


@dataclass
class ReconciliationReport:
    outcomes: List[RecordOutcome] = field(default_factory=list)
    halted: bool = False

    def add(self, outcome: RecordOutcome) -> None:
        self.outcomes.append(outcome)

    def counts(self) -> Dict[str, int]:
        """Outcome counts, omitting outcomes that did not occur."""
        counts: Dict[str, int] = {}
        for item in self.outcomes:
            counts[item.outcome.value] = counts.get(item.outcome.value, 0) + 1
        return counts

    def of(self, outcome: ReconciliationOutcome) -> List[RecordOutcome]:
        return [item for item in self.outcomes if item.outcome is outcome]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "counts": self.counts(),
            "halted": self.halted,
            "outcomes": [item.to_dict() for item in self.outcomes],
        }


@dataclass
class SaveReport:
    batch_id: str
    saved: int
    skipped: int
    skipped_id_numbers: List[str] = field(default_factory=list)
    duplicates: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class DispatchSummary:
    results_processed: int = 0
    attempted: int = 0
    delivered: int = 0
    failures: List[Dict[str, str]] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class WorkflowMessage:
    """The single user-facing summary every workflow produces."""
    type: str
    text: str
    details: Optional[Dict[str, Any]] = None
    timestamp: str = None

    def __post_init__(self):
        if self.timestamp is None:
            self.timestamp = datetime.now(timezone.utc).isoformat()

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)
