"""
Result submission and result access.

A result is written once, by the center that redeemed the code, and bound
1:1 to that code. Patient, center and test standard are copied from the code
at submission time. Afterwards only two flags ever change: ``viewed`` (the
patient's first read) and ``sponsor_notified`` (set by the notification path).
"""

from __future__ import annotations

import logging
import secrets
from datetime import datetime
from typing import Any
from uuid import UUID

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.config import settings
from app.models.enums import CodeStatus, OverallStatus, SponsorType, UserRole, values
from app.models.screening import AssessmentCode, DiagnosticCenter, TestResult, User
from app.schemas.lab import LAB_RESULT_SCHEMA
from app.services.audit import log_action
from app.services.clock import as_utc, utcnow
from app.services.codes import CODE_ALPHABET, find_code
from app.services.encryption import phi_cipher
from app.services.errors import (
    CodeGenerationError,
    CodeNotFound,
    CodeNotRedeemed,
    DuplicateSubmission,
    Forbidden,
    InvalidInput,
    ResultNotFound,
)
from app.services.notifications import CompletionNotice, InAppSponsorNotifier, SponsorNotifier
from app.services.pagination import Page, paginate
from app.services.validation import validate_against_schema

logger = logging.getLogger(__name__)

RESULT_NUMBER_PREFIX = "PSR"


def generate_result_number(now: datetime) -> str:
    suffix = "".join(secrets.choice(CODE_ALPHABET) for _ in range(6))
    return f"{RESULT_NUMBER_PREFIX}-{now:%y%m%d}-{suffix}"


def result_parameters(result: TestResult) -> list[dict[str, Any]]:
    return phi_cipher.decrypt_json(result.encrypted_results, default=[])


def result_notes(result: TestResult) -> str | None:
    return phi_cipher.decrypt(result.encrypted_notes or "") or None


def derive_overall_status(parameters: list[dict[str, Any]]) -> OverallStatus:
    statuses = {p.get("status") for p in parameters}
    if "abnormal" in statuses:
        return OverallStatus.ABNORMAL
    if "borderline" in statuses:
        return OverallStatus.REQUIRES_ATTENTION
    return OverallStatus.NORMAL


def resolve_code(db: Session, reference: UUID | str) -> AssessmentCode | None:
    """Accept either the code's id or its 12-character value."""
    if isinstance(reference, UUID):
        return db.get(AssessmentCode, reference)
    try:
        return db.get(AssessmentCode, UUID(str(reference)))
    except ValueError:
        return find_code(db, str(reference))


def _unique_result_number(db: Session, now: datetime) -> str:
    attempts = settings.CODE_GENERATION_MAX_ATTEMPTS
    for _ in range(attempts):
        candidate = generate_result_number(now)
        if db.scalar(select(TestResult.id).where(TestResult.result_number == candidate)) is None:
            return candidate
    raise CodeGenerationError("Could not allocate a result number, please try again")


def _check_tested_at(tested_at: datetime | None, record: AssessmentCode, now: datetime) -> datetime:
    if tested_at is None:
        return now
    tested_at = as_utc(tested_at)
    if tested_at > now:
        raise InvalidInput("testedAt cannot be in the future")
    if record.used_at is not None and tested_at < as_utc(record.used_at):
        raise InvalidInput("testedAt cannot be earlier than sample collection")
    return tested_at


# ---------------------------------------------------------------------------
# Submission
# ---------------------------------------------------------------------------

def submit_result(
    db: Session,
    *,
    assessment_code_id: UUID | str,
    results: list[dict[str, Any]],
    tested_at: datetime | None = None,
    overall_status: OverallStatus | str | None = None,
    notes: str | None = None,
    center_id: UUID | None = None,
    actor: UUID | str | None = None,
    notifier: SponsorNotifier | None = None,
    now: datetime | None = None,
) -> TestResult:
    """
    Store lab results for a redeemed code and tell a non-self sponsor that the
    test is complete.

    ``center_id`` restricts submission to the redeeming center when given.
    """
    now = now or utcnow()

    record = resolve_code(db, assessment_code_id)
    if record is None:
        raise CodeNotFound()
    if record.status != CodeStatus.USED.value:
        raise CodeNotRedeemed()
    if center_id is not None and record.diagnostic_center_id != center_id:
        raise Forbidden("Only the center that collected the sample can submit its results")

    existing = db.scalar(select(TestResult.id).where(TestResult.assessment_code_id == record.id))
    if existing is not None:
        raise DuplicateSubmission()

    errors = validate_against_schema(results, LAB_RESULT_SCHEMA)
    if errors:
        raise InvalidInput("Please fill in all test parameters and values", details=errors)

    if overall_status is None:
        overall = derive_overall_status(results)
    else:
        try:
            overall = OverallStatus(overall_status)
        except ValueError as exc:
            raise InvalidInput(f"overallStatus must be one of {', '.join(values(OverallStatus))}") from exc

    tested = _check_tested_at(tested_at, record, now)

    result = TestResult(
        result_number=_unique_result_number(db, now),
        assessment_code_id=record.id,
        patient_id=record.patient_id,
        diagnostic_center_id=record.diagnostic_center_id,
        test_standard_id=record.test_standard_id,
        encrypted_results=phi_cipher.encrypt_json(results),
        overall_status=overall.value,
        encrypted_notes=phi_cipher.encrypt(notes) if notes else None,
        tested_at=tested,
        uploaded_at=now,
        uploaded_by=actor if isinstance(actor, UUID) else None,
    )
    db.add(result)
    try:
        db.flush()
    except IntegrityError as exc:
        # Lost the race against a concurrent submission for the same code.
        raise DuplicateSubmission() from exc

    db.execute(
        update(DiagnosticCenter)
        .where(DiagnosticCenter.id == record.diagnostic_center_id)
        .values(total_tests_completed=DiagnosticCenter.total_tests_completed + 1)
        .execution_options(synchronize_session=False)
    )

    log_action(
        db,
        actor=actor,
        action="submit_result",
        resource_type="TestResult",
        resource_id=result.id,
        detail={"assessment_code_id": str(record.id), "result_number": result.result_number},
        timestamp=now,
    )
    logger.info("Result %s submitted for code %s", result.result_number, record.code)

    if record.sponsor_type != SponsorType.SELF.value:
        notify_sponsor(db, result, record, notifier or InAppSponsorNotifier(), now=now)
    return result


def notify_sponsor(
    db: Session,
    result: TestResult,
    record: AssessmentCode,
    notifier: SponsorNotifier,
    *,
    now: datetime | None = None,
) -> bool:
    """Send the completion notice; a failed delivery leaves ``sponsor_notified`` false."""
    now = now or utcnow()
    center = db.get(DiagnosticCenter, record.diagnostic_center_id)
    notice = CompletionNotice(
        code=record.code,
        sponsor_id=record.sponsor_id,
        sponsor_type=record.sponsor_type,
        center_name=center.name if center is not None else "",
        completed_at=now,
    )
    # A notifier that fails mid-write only rolls back its own savepoint.
    try:
        with db.begin_nested():
            notifier.notify(db, notice)
    except Exception:
        logger.exception("Sponsor notification failed for code %s", notice.code)
        return False

    result.sponsor_notified = True
    result.sponsor_notified_at = now
    db.flush()
    log_action(
        db,
        actor=None,
        action="notify_sponsor",
        resource_type="TestResult",
        resource_id=result.id,
        detail={"sponsor_type": record.sponsor_type},
        timestamp=now,
    )
    return True


# ---------------------------------------------------------------------------
# Access
# ---------------------------------------------------------------------------

def _center_ids(reader: User) -> set[UUID]:
    return {center.id for center in reader.centers}


def read_result(db: Session, result: TestResult, reader: User, *, now: datetime | None = None) -> TestResult:
    """
    Return a result the reader may see; a patient's first read sets ``viewed``.

    Sponsors never read results. Unknown and forbidden look the same, so a
    result's existence is not disclosed.
    """
    role = reader.role
    if role == UserRole.ADMIN.value:
        return result
    if role == UserRole.CENTER.value and result.diagnostic_center_id in _center_ids(reader):
        return result
    if role != UserRole.PATIENT.value or result.patient_id != reader.id:
        raise ResultNotFound()

    if not result.viewed:
        now = now or utcnow()
        db.execute(
            update(TestResult)
            .where(TestResult.id == result.id, TestResult.viewed.is_(False))
            .values(viewed=True, viewed_at=now)
            .execution_options(synchronize_session=False)
        )
        db.refresh(result)
    return result


def get_result(db: Session, result_id: UUID, reader: User, *, now: datetime | None = None) -> TestResult:
    result = db.get(TestResult, result_id)
    if result is None:
        raise ResultNotFound()
    return read_result(db, result, reader, now=now)


def get_result_by_number(db: Session, number: str, reader: User, *, now: datetime | None = None) -> TestResult:
    result = db.scalars(
        select(TestResult).where(TestResult.result_number == number.strip().upper())
    ).first()
    if result is None:
        raise ResultNotFound()
    return read_result(db, result, reader, now=now)


def list_patient_results(db: Session, patient_id: UUID, *, page: int = 0, size: int = 20) -> Page:
    stmt = (
        select(TestResult)
        .where(TestResult.patient_id == patient_id)
        .order_by(TestResult.uploaded_at.desc())
    )
    return paginate(db, stmt, page=page, size=size)


def list_center_results(db: Session, center: User, *, page: int = 0, size: int = 20) -> Page:
    stmt = (
        select(TestResult)
        .where(TestResult.diagnostic_center_id.in_(list(_center_ids(center))))
        .order_by(TestResult.uploaded_at.desc())
    )
    return paginate(db, stmt, page=page, size=size)
