"""Pydantic models for API request/response serialization."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Generic, TypeVar
from uuid import UUID

from pydantic import BaseModel, Field

from app.models.enums import SponsorType

T = TypeVar("T")


def _now() -> datetime:
    return datetime.now(timezone.utc)


# ---------------------------------------------------------------------------
# Envelope
# ---------------------------------------------------------------------------

class ApiResponse(BaseModel, Generic[T]):
    """Every response: ``{success, message, data, timestamp}``."""
    success: bool = True
    message: str = "OK"
    data: T | None = None
    timestamp: datetime = Field(default_factory=_now)


class ErrorDetail(BaseModel):
    code: str
    message: str
    details: list[str] = []


class ErrorResponse(BaseModel):
    success: bool = False
    message: str
    error: ErrorDetail
    timestamp: datetime = Field(default_factory=_now)


def error_envelope(code: str, message: str, details: list[str] | None = None) -> dict[str, Any]:
    body = ErrorResponse(message=message, error=ErrorDetail(code=code, message=message, details=details or []))
    return body.model_dump(mode="json")


class PageResponse(BaseModel, Generic[T]):
    content: list[T]
    totalElements: int
    totalPages: int
    size: int
    number: int
    first: bool
    last: bool


# ---------------------------------------------------------------------------
# Catalog
# ---------------------------------------------------------------------------

class TestStandardSummary(BaseModel):
    id: UUID
    name: str
    description: str | None = None
    testsIncluded: list[str] = []


class TestStandardResponse(TestStandardSummary):
    slug: str | None = None
    price: str
    currency: str
    sampleType: str | None = None
    turnaroundTime: str | None = None
    active: bool


class CenterSummary(BaseModel):
    id: UUID
    name: str
    address: str


class CenterResponse(CenterSummary):
    city: str
    state: str
    country: str
    phone: str | None = None
    totalTestsCompleted: int


# ---------------------------------------------------------------------------
# Assessment codes
# ---------------------------------------------------------------------------

class GenerateCodeRequest(BaseModel):
    """Patient buys a self-funded code."""
    testId: UUID
    centerId: UUID | None = None
    validityDays: int | None = None


class SponsorCodeRequest(BaseModel):
    """Sponsor funds a code for a patient, or a claimable code when ``patientId`` is omitted."""
    patientId: UUID | None = None
    testId: UUID
    sponsorType: SponsorType = SponsorType.EMPLOYER
    validityDays: int | None = None


class UseCodeRequest(BaseModel):
    code: str = Field(..., min_length=1, max_length=32)
    centerId: UUID


class ClaimCodeRequest(BaseModel):
    code: str = Field(..., min_length=1, max_length=32)


class AssessmentCodeResponse(BaseModel):
    id: UUID
    code: str
    testStandardId: UUID
    testStandard: TestStandardSummary | None = None
    patientId: UUID | None = None
    patientName: str | None = None
    sponsorId: UUID | None = None
    sponsorType: str
    sourceType: str
    status: str
    validUntil: datetime
    usedAt: datetime | None = None
    diagnosticCenterId: UUID | None = None
    diagnosticCenter: CenterSummary | None = None
    preferredCenterId: UUID | None = None
    pricePaid: str | None = None
    currency: str | None = None
    createdAt: datetime


class ValidatedTestStandard(TestStandardSummary):
    referenceRanges: dict[str, str] = {}


class CodeValidationResponse(BaseModel):
    valid: bool
    code: str
    reason: str | None = None
    patientName: str | None = None
    testStandard: ValidatedTestStandard | None = None
    sponsorType: str | None = None
    validUntil: datetime | None = None
    status: str | None = None
    message: str | None = None


class PublicCodeInfoResponse(BaseModel):
    code: str
    sponsorName: str
    sponsorType: str
    testName: str
    testDescription: str | None = None
    testsIncluded: list[str] = []
    validUntil: datetime
    status: str


class SponsoredCodeRedemption(BaseModel):
    assessmentCode: str
    message: str


# ---------------------------------------------------------------------------
# Results
# ---------------------------------------------------------------------------

class ResultParameterIn(BaseModel):
    """One test parameter; content rules live in the lab result JSON schema."""
    parameter: str | None = None
    value: str
    unit: str | None = None
    referenceRange: str
    interpretation: str | None = None
    status: str


class SubmitResultRequest(BaseModel):
    assessmentCodeId: str = Field(..., min_length=1)
    testData: dict[str, ResultParameterIn] = Field(..., min_length=1)
    overallStatus: str | None = None
    notes: str | None = None
    testedAt: datetime | None = None

    def parameters(self) -> list[dict[str, Any]]:
        """``testData`` as the ordered parameter list, keyed names filling gaps."""
        items = []
        for name, param in self.testData.items():
            entry = param.model_dump(exclude_none=True)
            entry["parameter"] = param.parameter or name
            items.append(entry)
        return items


class ResultParameterOut(BaseModel):
    parameter: str
    value: str
    unit: str | None = None
    referenceRange: str
    interpretation: str | None = None
    status: str


class TestResultResponse(BaseModel):
    id: UUID
    resultNumber: str
    assessmentCodeId: UUID
    patientId: UUID
    diagnosticCenterId: UUID
    diagnosticCenter: CenterSummary | None = None
    testStandardId: UUID
    testStandard: TestStandardSummary | None = None
    results: list[ResultParameterOut]
    overallStatus: str | None = None
    notes: str | None = None
    viewed: bool
    viewedAt: datetime | None = None
    sponsorNotified: bool
    sponsorNotifiedAt: datetime | None = None
    testedAt: datetime
    uploadedAt: datetime


# ---------------------------------------------------------------------------
# Notifications / health
# ---------------------------------------------------------------------------

class NotificationResponse(BaseModel):
    id: UUID
    type: str
    title: str
    message: str
    data: dict[str, Any] | None = None
    read: bool
    createdAt: datetime


class HealthResponse(BaseModel):
    status: str = "healthy"
    environment: str
    database: str = "connected"
