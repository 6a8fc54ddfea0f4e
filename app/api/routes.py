"""
FastAPI routes – the main API surface.

Handlers resolve the caller, call one service operation, commit, and wrap
the outcome in the ``{success, message, data, timestamp}`` envelope.
Domain errors raised by the services are rendered by the handlers in
``app.main``; nothing here catches them.
"""

from __future__ import annotations

import logging
from uuid import UUID

from fastapi import APIRouter, Depends, Query
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from app.api.deps import (
    SessionContext,
    get_session_context,
    get_sponsor_notifier,
    require_roles,
)
from app.config import settings
from app.models.database import get_db
from app.models.enums import SponsorType, UserRole
from app.models.screening import (
    AssessmentCode,
    DiagnosticCenter,
    Notification,
    TestResult,
    TestStandard,
)
from app.schemas.api import (
    ApiResponse,
    AssessmentCodeResponse,
    CenterResponse,
    CenterSummary,
    ClaimCodeRequest,
    CodeValidationResponse,
    GenerateCodeRequest,
    HealthResponse,
    NotificationResponse,
    PageResponse,
    PublicCodeInfoResponse,
    SponsorCodeRequest,
    SponsoredCodeRedemption,
    SubmitResultRequest,
    TestResultResponse,
    TestStandardResponse,
    TestStandardSummary,
    UseCodeRequest,
    ValidatedTestStandard,
)
from app.services import catalog, codes, notifications, results
from app.services.clock import as_utc
from app.services.errors import Forbidden, InvalidInput
from app.services.notifications import SponsorNotifier
from app.services.pagination import Page

logger = logging.getLogger(__name__)

router = APIRouter()


# ---------------------------------------------------------------------------
# Serialisation helpers
# ---------------------------------------------------------------------------

def _standard_summary(standard: TestStandard | None) -> TestStandardSummary | None:
    if standard is None:
        return None
    return TestStandardSummary(
        id=standard.id,
        name=standard.name,
        description=standard.description,
        testsIncluded=list(standard.tests_included or []),
    )


def _standard_out(standard: TestStandard) -> TestStandardResponse:
    return TestStandardResponse(
        id=standard.id,
        name=standard.name,
        description=standard.description,
        testsIncluded=list(standard.tests_included or []),
        slug=standard.slug,
        price=str(standard.price),
        currency=standard.currency,
        sampleType=standard.sample_type,
        turnaroundTime=standard.turnaround_time,
        active=standard.active,
    )


def _center_summary(center: DiagnosticCenter | None) -> CenterSummary | None:
    if center is None:
        return None
    return CenterSummary(id=center.id, name=center.name, address=center.address)


def _code_out(record: AssessmentCode, *, include_name: bool = False) -> AssessmentCodeResponse:
    return AssessmentCodeResponse(
        id=record.id,
        code=record.code,
        testStandardId=record.test_standard_id,
        testStandard=_standard_summary(record.test_standard),
        patientId=record.patient_id,
        patientName=codes.patient_name(record) if include_name else None,
        sponsorId=record.sponsor_id,
        sponsorType=record.sponsor_type,
        sourceType=record.source_type,
        status=record.status,
        validUntil=as_utc(record.valid_until),
        usedAt=as_utc(record.used_at),
        diagnosticCenterId=record.diagnostic_center_id,
        diagnosticCenter=_center_summary(record.diagnostic_center),
        preferredCenterId=record.preferred_center_id,
        pricePaid=str(record.price_paid) if record.price_paid is not None else None,
        currency=record.currency,
        createdAt=as_utc(record.created_at),
    )


def _result_out(result: TestResult) -> TestResultResponse:
    return TestResultResponse(
        id=result.id,
        resultNumber=result.result_number,
        assessmentCodeId=result.assessment_code_id,
        patientId=result.patient_id,
        diagnosticCenterId=result.diagnostic_center_id,
        diagnosticCenter=_center_summary(result.diagnostic_center),
        testStandardId=result.test_standard_id,
        testStandard=_standard_summary(result.test_standard),
        results=results.result_parameters(result),
        overallStatus=result.overall_status,
        notes=results.result_notes(result),
        viewed=result.viewed,
        viewedAt=as_utc(result.viewed_at),
        sponsorNotified=result.sponsor_notified,
        sponsorNotifiedAt=as_utc(result.sponsor_notified_at),
        testedAt=as_utc(result.tested_at),
        uploadedAt=as_utc(result.uploaded_at),
    )


def _notification_out(notification: Notification) -> NotificationResponse:
    return NotificationResponse(
        id=notification.id,
        type=notification.type,
        title=notification.title,
        message=notification.message,
        data=notification.data,
        read=notification.read,
        createdAt=as_utc(notification.created_at),
    )


def _page_out(page: Page, convert) -> PageResponse:
    return PageResponse(
        content=[convert(item) for item in page.items],
        totalElements=page.total,
        totalPages=page.total_pages,
        size=page.size,
        number=page.page,
        first=page.first,
        last=page.last,
    )


# ---------------------------------------------------------------------------
# Health check
# ---------------------------------------------------------------------------

@router.get("/health", response_model=HealthResponse)
def health_check(db: Session = Depends(get_db)):
    """Basic health endpoint – verifies DB connectivity."""
    try:
        db.execute(text("SELECT 1"))
        db_status = "connected"
    except SQLAlchemyError:
        logger.warning("Health check could not reach the database")
        db_status = "disconnected"
    return HealthResponse(
        status="healthy",
        environment=settings.ENVIRONMENT,
        database=db_status,
    )


# ---------------------------------------------------------------------------
# Assessment codes
# ---------------------------------------------------------------------------

@router.post("/codes/generate", response_model=ApiResponse[AssessmentCodeResponse])
def generate_code(
    request: GenerateCodeRequest,
    ctx: SessionContext = Depends(require_roles(UserRole.PATIENT)),
    db: Session = Depends(get_db),
):
    """Issue a self-funded code to the calling patient."""
    record = codes.issue_code(
        db,
        patient_id=ctx.user_id,
        test_standard_id=request.testId,
        validity_days=request.validityDays,
        preferred_center_id=request.centerId,
        actor=ctx.user_id,
    )
    db.commit()
    return ApiResponse(message="Assessment code generated", data=_code_out(record, include_name=True))


@router.get("/codes/validate/{code}", response_model=ApiResponse[CodeValidationResponse])
def validate_code(
    code: str,
    ctx: SessionContext = Depends(require_roles(UserRole.CENTER, UserRole.ADMIN)),
    db: Session = Depends(get_db),
):
    """Check a code as it is typed at the center. Failures are returned as data."""
    outcome = codes.validate_code(db, code)
    # Persist a lazy expiry, if one happened.
    db.commit()

    snapshot = outcome.snapshot
    data = CodeValidationResponse(
        valid=outcome.valid,
        code=outcome.code,
        reason=outcome.reason.value if outcome.reason else None,
        validUntil=outcome.valid_until,
        status=outcome.status,
        message=outcome.message,
    )
    if snapshot is not None:
        data.patientName = snapshot.patient_name
        data.sponsorType = snapshot.sponsor_type
        data.testStandard = ValidatedTestStandard(
            id=snapshot.test_standard_id,
            name=snapshot.test_name,
            description=snapshot.test_description,
            testsIncluded=snapshot.tests_included,
            referenceRanges=snapshot.reference_ranges,
        )
    return ApiResponse(message=outcome.message or "", data=data)


@router.post("/codes/use", response_model=ApiResponse[AssessmentCodeResponse])
def use_code(
    request: UseCodeRequest,
    ctx: SessionContext = Depends(require_roles(UserRole.CENTER, UserRole.ADMIN)),
    db: Session = Depends(get_db),
):
    """Redeem a code at sample collection."""
    if ctx.role == UserRole.CENTER.value and not ctx.owns_center(request.centerId):
        raise Forbidden("You can only redeem codes for your own center")
    record = codes.redeem_code(db, code=request.code, center_id=request.centerId, actor=ctx.user_id)
    db.commit()
    return ApiResponse(message="Code redeemed", data=_code_out(record))


@router.post("/codes/claim", response_model=ApiResponse[AssessmentCodeResponse])
def claim_code(
    request: ClaimCodeRequest,
    ctx: SessionContext = Depends(require_roles(UserRole.PATIENT)),
    db: Session = Depends(get_db),
):
    """Take ownership of a code a sponsor handed out."""
    record = codes.claim_code(db, code=request.code, patient_id=ctx.user_id, actor=ctx.user_id)
    db.commit()
    return ApiResponse(message="Code claimed", data=_code_out(record, include_name=True))


@router.get("/codes/my", response_model=ApiResponse[PageResponse[AssessmentCodeResponse]])
def my_codes(
    page: int = Query(0, ge=0),
    size: int = Query(20, ge=1, le=100),
    ctx: SessionContext = Depends(require_roles(UserRole.PATIENT)),
    db: Session = Depends(get_db),
):
    found = codes.list_patient_codes(db, ctx.user_id, page=page, size=size)
    return ApiResponse(data=_page_out(found, _code_out))


@router.get("/codes/my/active", response_model=ApiResponse[list[AssessmentCodeResponse]])
def my_active_codes(
    ctx: SessionContext = Depends(require_roles(UserRole.PATIENT)),
    db: Session = Depends(get_db),
):
    found = codes.list_patient_codes(db, ctx.user_id, active_only=True, size=100)
    return ApiResponse(data=[_code_out(record) for record in found.items])


# ---------------------------------------------------------------------------
# Sponsors
# ---------------------------------------------------------------------------

@router.post("/sponsors/codes", response_model=ApiResponse[AssessmentCodeResponse])
def sponsor_code(
    request: SponsorCodeRequest,
    ctx: SessionContext = Depends(require_roles(UserRole.SPONSOR)),
    db: Session = Depends(get_db),
):
    """
    Fund a code for a patient, or a claimable code when no patient is named.
    The sponsor later learns completion, never results.
    """
    if request.sponsorType == SponsorType.SELF:
        raise InvalidInput("Sponsored codes cannot be self-funded")
    record = codes.issue_code(
        db,
        patient_id=request.patientId,
        test_standard_id=request.testId,
        funding=codes.SponsorFunding(sponsor_type=request.sponsorType, sponsor_id=ctx.user_id),
        validity_days=request.validityDays,
        actor=ctx.user_id,
    )
    db.commit()
    return ApiResponse(message="Sponsored code generated", data=_code_out(record))


@router.post("/sponsors/redeem", response_model=ApiResponse[SponsoredCodeRedemption])
def redeem_sponsored_code(
    request: ClaimCodeRequest,
    ctx: SessionContext = Depends(require_roles(UserRole.PATIENT)),
    db: Session = Depends(get_db),
):
    record = codes.claim_code(db, code=request.code, patient_id=ctx.user_id, actor=ctx.user_id)
    db.commit()
    return ApiResponse(
        message="Code claimed",
        data=SponsoredCodeRedemption(
            assessmentCode=record.code,
            message="Present this code at a diagnostic center to take your test",
        ),
    )


@router.get("/sponsors/code/{code}", response_model=ApiResponse[PublicCodeInfoResponse])
def sponsored_code_info(code: str, db: Session = Depends(get_db)):
    """Public: who sponsored a code and for which test. No patient data."""
    info = codes.public_code_info(db, code)
    return ApiResponse(
        data=PublicCodeInfoResponse(
            code=info.code,
            sponsorName=info.sponsor_name,
            sponsorType=info.sponsor_type,
            testName=info.test_name,
            testDescription=info.test_description,
            testsIncluded=info.tests_included,
            validUntil=info.valid_until,
            status=info.status,
        )
    )


@router.get("/notifications", response_model=ApiResponse[PageResponse[NotificationResponse]])
def my_notifications(
    page: int = Query(0, ge=0),
    size: int = Query(20, ge=1, le=100),
    ctx: SessionContext = Depends(get_session_context),
    db: Session = Depends(get_db),
):
    found = notifications.list_notifications(db, ctx.user_id, page=page, size=size)
    return ApiResponse(data=_page_out(found, _notification_out))


# ---------------------------------------------------------------------------
# Results
# ---------------------------------------------------------------------------

@router.post("/results/submit", response_model=ApiResponse[TestResultResponse])
def submit_result(
    request: SubmitResultRequest,
    ctx: SessionContext = Depends(require_roles(UserRole.CENTER)),
    db: Session = Depends(get_db),
    notifier: SponsorNotifier = Depends(get_sponsor_notifier),
):
    """Upload lab results for a code this center redeemed."""
    record = results.resolve_code(db, request.assessmentCodeId)
    center_id = record.diagnostic_center_id if record is not None else None
    if center_id is not None and not ctx.owns_center(center_id):
        raise Forbidden("Only the center that collected the sample can submit its results")

    result = results.submit_result(
        db,
        assessment_code_id=request.assessmentCodeId,
        results=request.parameters(),
        tested_at=request.testedAt,
        overall_status=request.overallStatus,
        notes=request.notes,
        center_id=center_id,
        actor=ctx.user_id,
        notifier=notifier,
    )
    db.commit()
    return ApiResponse(message="Results uploaded successfully", data=_result_out(result))


@router.get("/results/my", response_model=ApiResponse[PageResponse[TestResultResponse]])
def my_results(
    page: int = Query(0, ge=0),
    size: int = Query(20, ge=1, le=100),
    ctx: SessionContext = Depends(require_roles(UserRole.PATIENT)),
    db: Session = Depends(get_db),
):
    found = results.list_patient_results(db, ctx.user_id, page=page, size=size)
    return ApiResponse(data=_page_out(found, _result_out))


@router.get("/results/center", response_model=ApiResponse[PageResponse[TestResultResponse]])
def center_results(
    page: int = Query(0, ge=0),
    size: int = Query(20, ge=1, le=100),
    ctx: SessionContext = Depends(require_roles(UserRole.CENTER)),
    db: Session = Depends(get_db),
):
    found = results.list_center_results(db, ctx.user, page=page, size=size)
    return ApiResponse(data=_page_out(found, _result_out))


@router.get("/results/number/{result_number}", response_model=ApiResponse[TestResultResponse])
def result_by_number(
    result_number: str,
    ctx: SessionContext = Depends(get_session_context),
    db: Session = Depends(get_db),
):
    result = results.get_result_by_number(db, result_number, ctx.user)
    db.commit()
    return ApiResponse(data=_result_out(result))


@router.get("/results/{result_id}", response_model=ApiResponse[TestResultResponse])
def result_detail(
    result_id: UUID,
    ctx: SessionContext = Depends(get_session_context),
    db: Session = Depends(get_db),
):
    """A patient's first read of their own result records the view."""
    result = results.get_result(db, result_id, ctx.user)
    db.commit()
    return ApiResponse(data=_result_out(result))


# ---------------------------------------------------------------------------
# Catalog
# ---------------------------------------------------------------------------

@router.get("/tests", response_model=ApiResponse[PageResponse[TestStandardResponse]])
def list_tests(page: int = Query(0, ge=0), size: int = Query(20, ge=1, le=100), db: Session = Depends(get_db)):
    return ApiResponse(data=_page_out(catalog.list_test_standards(db, page=page, size=size), _standard_out))


@router.get("/tests/slug/{slug}", response_model=ApiResponse[TestStandardResponse])
def test_by_slug(slug: str, db: Session = Depends(get_db)):
    return ApiResponse(data=_standard_out(catalog.get_test_standard_by_slug(db, slug)))


@router.get("/tests/{test_id}", response_model=ApiResponse[TestStandardResponse])
def test_detail(test_id: UUID, db: Session = Depends(get_db)):
    return ApiResponse(data=_standard_out(catalog.get_test_standard(db, test_id)))


@router.get("/centers/{center_id}", response_model=ApiResponse[CenterResponse])
def center_detail(center_id: UUID, db: Session = Depends(get_db)):
    center = catalog.get_center(db, center_id)
    return ApiResponse(
        data=CenterResponse(
            id=center.id,
            name=center.name,
            address=center.address,
            city=center.city,
            state=center.state,
            country=center.country,
            phone=center.phone,
            totalTestsCompleted=center.total_tests_completed,
        )
    )
