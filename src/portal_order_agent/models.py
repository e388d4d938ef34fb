from __future__ import annotations

from datetime import date, datetime, timezone
from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Address(BaseModel):
    model_config = ConfigDict(frozen=True)

    line1: str = ""
    line2: str = ""
    city: str = ""
    state: str = ""
    zip_code: str = ""

    def is_empty(self) -> bool:
        return not any((self.line1, self.city, self.state, self.zip_code))


class Patient(BaseModel):
    model_config = ConfigDict(frozen=True)

    first_name: str
    last_name: str
    date_of_birth: date
    sex: str = ""
    phone: str = ""
    address: Address = Field(default_factory=Address)

    # Payer identifiers
    insurance_provider: str = ""
    insurance_id: str = ""
    medicaid_id: str = ""
    medicare_id: str = ""

    @property
    def full_name(self) -> str:
        return f"{self.first_name} {self.last_name}".strip()


class LabTest(BaseModel):
    model_config = ConfigDict(frozen=True)

    code: str
    name: str = ""

    @property
    def search_text(self) -> str:
        return self.code or self.name


class OrderingProvider(BaseModel):
    model_config = ConfigDict(frozen=True)

    name: str
    npi: str = ""
    initials: str = ""

    @property
    def effective_initials(self) -> str:
        if self.initials:
            return self.initials.upper()
        # "Dr. Jane Q. Public" -> "JQP"
        words = [w for w in self.name.replace(",", " ").split() if w.rstrip(".").lower() not in {"dr", "md", "do", "np", "pa"}]
        return "".join(w[0] for w in words if w[:1].isalpha()).upper()


class OrderRequest(BaseModel):
    """
    An order as handed to the engine. Frozen: reconciliation produces a new copy instead.
    """

    model_config = ConfigDict(frozen=True)

    correlation_id: str
    portal: str
    patient: Patient
    tests: tuple[LabTest, ...]
    diagnosis_codes: tuple[str, ...] = ()
    provider: OrderingProvider
    collection_date: Optional[date] = None
    special_instructions: str = ""

    @field_validator("portal")
    @classmethod
    def _normalize_portal(cls, v: str) -> str:
        return (v or "").strip().lower()

    @field_validator("tests")
    @classmethod
    def _require_tests(cls, v: tuple[LabTest, ...]) -> tuple[LabTest, ...]:
        if not v:
            raise ValueError("an order needs at least one test")
        return v

    @field_validator("diagnosis_codes")
    @classmethod
    def _normalize_codes(cls, v: tuple[str, ...]) -> tuple[str, ...]:
        return tuple(c.strip().upper() for c in v if c and c.strip())


class Verification(str, Enum):
    VERIFIED = "verified"
    UNVERIFIED = "unverified"
    NOT_APPLICABLE = "not_applicable"


class EnrichedPatient(BaseModel):
    model_config = ConfigDict(frozen=True)

    patient: Patient
    verification: Verification
    is_eligible: Optional[bool] = None
    replaced_fields: tuple[str, ...] = ()
    note: str = ""


class Session(BaseModel):
    portal: str
    # Playwright storage_state JSON; never interpreted here.
    state: str = Field(repr=False)
    created_at: datetime
    expires_at: datetime
    is_valid: bool = True

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        return (now or utcnow()) >= self.expires_at


class NavigationStage(str, Enum):
    UNAUTHENTICATED = "unauthenticated"
    AUTHENTICATED = "authenticated"
    PATIENT_LOCATED = "patient_located"
    PATIENT_CREATED = "patient_created"
    ORDER_DETAILS = "order_details"
    VALIDATED = "validated"
    SUBMITTED = "submitted"
    CONFIRMED = "confirmed"
    FAILED = "failed"


_STAGE_RANK = {
    NavigationStage.UNAUTHENTICATED: 0,
    NavigationStage.AUTHENTICATED: 1,
    NavigationStage.PATIENT_LOCATED: 2,
    NavigationStage.PATIENT_CREATED: 2,
    NavigationStage.ORDER_DETAILS: 3,
    NavigationStage.VALIDATED: 4,
    NavigationStage.SUBMITTED: 5,
    NavigationStage.CONFIRMED: 6,
}


class NavigationState:
    """
    Per-order workflow position. Moves one stage forward at a time, or to FAILED from anywhere
    that is not already terminal.
    """

    def __init__(self) -> None:
        self._stage = NavigationStage.UNAUTHENTICATED
        self._history: list[NavigationStage] = [self._stage]

    @property
    def stage(self) -> NavigationStage:
        return self._stage

    @property
    def history(self) -> tuple[NavigationStage, ...]:
        return tuple(self._history)

    @property
    def is_terminal(self) -> bool:
        return self._stage in (NavigationStage.CONFIRMED, NavigationStage.FAILED)

    def can_advance(self, to: NavigationStage) -> bool:
        if self.is_terminal:
            return False
        if to is NavigationStage.FAILED:
            return True
        return _STAGE_RANK[to] == _STAGE_RANK[self._stage] + 1

    def advance(self, to: NavigationStage) -> None:
        if not self.can_advance(to):
            raise ValueError(f"illegal navigation transition {self._stage.value} -> {to.value}")
        self._stage = to
        self._history.append(to)


class AuditEntry(BaseModel):
    model_config = ConfigDict(frozen=True)

    stage: str
    captured_at: datetime
    # Relative path under the audit root; None when the screenshot itself failed.
    reference: Optional[str] = None


class AuditRecord:
    """Append-only list of audit entries for one order."""

    def __init__(self, order_id: str) -> None:
        self.order_id = order_id
        self._entries: list[AuditEntry] = []

    def append(self, entry: AuditEntry) -> None:
        self._entries.append(entry)

    @property
    def entries(self) -> tuple[AuditEntry, ...]:
        return tuple(self._entries)

    def last_reference(self) -> Optional[str]:
        for entry in reversed(self._entries):
            if entry.reference:
                return entry.reference
        return None

    def __len__(self) -> int:
        return len(self._entries)


class FailureClass(str, Enum):
    TRANSIENT = "transient"
    STRUCTURAL = "structural"


class EscalationTarget(str, Enum):
    HUMAN = "human"
    DOCUMENT_FALLBACK = "document_fallback"


class RetryDecision(BaseModel):
    model_config = ConfigDict(frozen=True)

    failure_class: FailureClass
    error_type: str
    retry: bool
    backoff_seconds: float = 0.0
    escalation: Optional[EscalationTarget] = None
    attempt: int = 1
    stage: str = ""
    reason: str = ""


class OrderStatus(str, Enum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    PREVIEW = "preview"
    COMPLETED = "completed"
    FAILED = "failed"
    NEEDS_MANUAL_REVIEW = "needs_manual_review"
    CANCELLED = "cancelled"


class EscalationPayload(BaseModel):
    order: OrderRequest
    tests: tuple[LabTest, ...]
    diagnosis_codes: tuple[str, ...]
    failure_type: str
    failure_description: str
    failure_class: FailureClass
    escalation_target: EscalationTarget
    stage: str = ""
    screenshot_reference: Optional[str] = None
    document_reference: Optional[str] = None
    timestamp: datetime = Field(default_factory=utcnow)


class OrderOutcome(BaseModel):
    correlation_id: str
    status: OrderStatus
    confirmation_number: Optional[str] = None
    audit: tuple[AuditEntry, ...] = ()
    last_screenshot: Optional[str] = None
    error: Optional[str] = None
    escalation: Optional[EscalationTarget] = None
    verification: Optional[Verification] = None
    document_reference: Optional[str] = None
