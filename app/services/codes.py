"""
Assessment-code lifecycle: issuance, validation and redemption.

State machine of a code:

    pending --(redeem)--------------------> used      (terminal)
    pending --(validate after deadline)---> expired   (terminal, lazy)

A sponsored code may be issued without a patient; it stays ``pending`` and
is bound to the first patient who claims it. Only claimed codes redeem.

Every transition is a conditional UPDATE guarded on ``status = 'pending'``,
so the database row is the only synchronisation point between concurrent
requests. Services flush; the caller owns the transaction.
"""

from __future__ import annotations

import logging
import re
import secrets
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Callable
from uuid import UUID

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from app.config import settings
from app.models.enums import (
    CodeStatus,
    SourceType,
    SponsorType,
    UserRole,
    ValidationReason,
)
from app.models.screening import AssessmentCode, DiagnosticCenter, TestStandard, User
from app.schemas.lab import default_reference_range
from app.services.audit import log_action
from app.services.clock import as_utc, utcnow
from app.services.encryption import phi_cipher
from app.services.errors import (
    AlreadyClaimed,
    AlreadyRedeemed,
    CenterNotFound,
    CodeExpired,
    CodeGenerationError,
    CodeNotClaimed,
    CodeNotFound,
    InvalidInput,
    InvalidTestStandard,
    UserNotFound,
)
from app.services.pagination import Page, paginate

logger = logging.getLogger(__name__)

CODE_LENGTH = 12
CODE_PREFIX = "PSN"
# No 0/O or 1/I: codes are read aloud and typed by hand.
CODE_ALPHABET = "ABCDEFGHJKLMNPQRSTUVWXYZ23456789"

_WELL_FORMED = re.compile(r"^[A-Z0-9]{%d}$" % CODE_LENGTH)

MESSAGES = {
    ValidationReason.INVALID_FORMAT: "Assessment codes are 12 letters and numbers",
    ValidationReason.NOT_FOUND: "This code is not valid or has expired",
    ValidationReason.ALREADY_USED: "This code has already been used",
    ValidationReason.EXPIRED: "This code is not valid or has expired",
    ValidationReason.UNCLAIMED: "This sponsored code has not been claimed by a patient yet",
}
VALID_MESSAGE = "Code is valid. Verify the patient's identity before sample collection"


# ---------------------------------------------------------------------------
# Code values
# ---------------------------------------------------------------------------

def generate_code() -> str:
    """Random candidate code, e.g. ``PSN8K2M9L4P7``. Uniqueness is checked by the caller."""
    body = "".join(secrets.choice(CODE_ALPHABET) for _ in range(CODE_LENGTH - len(CODE_PREFIX)))
    return CODE_PREFIX + body


def normalize_code(raw: str | None) -> str:
    return (raw or "").strip().upper()


def is_well_formed(code: str) -> bool:
    return bool(_WELL_FORMED.match(code))


def find_code(db: Session, code: str) -> AssessmentCode | None:
    return db.scalars(select(AssessmentCode).where(AssessmentCode.code == normalize_code(code))).first()


def is_past_deadline(record: AssessmentCode, now: datetime) -> bool:
    return now > as_utc(record.valid_until)


def patient_name(record: AssessmentCode) -> str:
    return phi_cipher.decrypt(record.encrypted_patient_name or "")


def _load_patient(db: Session, patient_id: UUID) -> User:
    patient = db.get(User, patient_id)
    if patient is None or patient.role != UserRole.PATIENT.value or patient.status != "active":
        raise UserNotFound("Patient not found")
    return patient


def _name_snapshot(patient: User) -> str:
    return phi_cipher.encrypt(patient.full_name or patient.email or "Patient")


# ---------------------------------------------------------------------------
# Issuance
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class SponsorFunding:
    """Who pays for a code. ``self`` funding may only name the patient."""

    sponsor_type: SponsorType = SponsorType.SELF
    sponsor_id: UUID | None = None
    source_type: SourceType | None = None

    @property
    def resolved_source_type(self) -> SourceType:
        if self.source_type is not None:
            return self.source_type
        if self.sponsor_type == SponsorType.SELF:
            return SourceType.SELF_PURCHASE
        return SourceType.SPONSOR_REQUEST


def _check_validity_days(validity_days: int | None) -> int:
    if validity_days is None:
        return settings.CODE_DEFAULT_VALIDITY_DAYS
    maximum = settings.CODE_MAX_VALIDITY_DAYS
    if isinstance(validity_days, bool) or not isinstance(validity_days, int):
        raise InvalidInput("validityDays must be a whole number of days")
    if not 1 <= validity_days <= maximum:
        raise InvalidInput(f"validityDays must be between 1 and {maximum}")
    return validity_days


def _check_sponsor(db: Session, patient: User | None, funding: SponsorFunding) -> UUID | None:
    if funding.sponsor_type == SponsorType.SELF:
        if patient is None:
            raise InvalidInput("A self-funded code needs a patient")
        if funding.sponsor_id is not None and funding.sponsor_id != patient.id:
            raise InvalidInput("A self-funded code cannot name another sponsor")
        return funding.sponsor_id
    if funding.sponsor_id is None:
        if patient is None:
            raise InvalidInput("A claimable code must name its sponsor")
    elif db.get(User, funding.sponsor_id) is None:
        raise UserNotFound("Sponsor not found")
    return funding.sponsor_id


def _unique_code(db: Session, generator: Callable[[], str], max_attempts: int) -> str:
    for attempt in range(1, max_attempts + 1):
        candidate = normalize_code(generator())
        taken = db.scalar(select(AssessmentCode.id).where(AssessmentCode.code == candidate))
        if taken is None:
            return candidate
        logger.warning("Assessment code collision (attempt %d/%d)", attempt, max_attempts)
    raise CodeGenerationError()


def issue_code(
    db: Session,
    *,
    patient_id: UUID | None,
    test_standard_id: UUID,
    funding: SponsorFunding | None = None,
    validity_days: int | None = None,
    preferred_center_id: UUID | None = None,
    actor: UUID | str | None = None,
    now: datetime | None = None,
    generator: Callable[[], str] = generate_code,
    max_attempts: int | None = None,
) -> AssessmentCode:
    """
    Create a ``pending`` code for an active test standard.

    ``patient_id`` may be ``None`` only for sponsored funding: the code is then
    claimable by the first patient who presents it.
    """
    now = now or utcnow()
    funding = funding or SponsorFunding()
    days = _check_validity_days(validity_days)

    standard = db.get(TestStandard, test_standard_id)
    if standard is None or not standard.active:
        raise InvalidTestStandard()

    patient = _load_patient(db, patient_id) if patient_id is not None else None
    sponsor_id = _check_sponsor(db, patient, funding)

    if preferred_center_id is not None:
        center = db.get(DiagnosticCenter, preferred_center_id)
        if center is None or not center.is_active:
            raise CenterNotFound()

    value = _unique_code(db, generator, max_attempts or settings.CODE_GENERATION_MAX_ATTEMPTS)
    record = AssessmentCode(
        code=value,
        test_standard_id=standard.id,
        patient_id=patient.id if patient is not None else None,
        encrypted_patient_name=_name_snapshot(patient) if patient is not None else None,
        sponsor_id=sponsor_id,
        sponsor_type=funding.sponsor_type.value,
        source_type=funding.resolved_source_type.value,
        preferred_center_id=preferred_center_id,
        status=CodeStatus.PENDING.value,
        valid_until=now + timedelta(days=days),
        price_paid=standard.price,
        currency=standard.currency or settings.DEFAULT_CURRENCY,
        created_at=now,
    )
    db.add(record)
    db.flush()

    log_action(
        db,
        actor=actor or record.patient_id or sponsor_id,
        action="issue",
        resource_type="AssessmentCode",
        resource_id=record.id,
        detail={
            "sponsor_type": record.sponsor_type,
            "validity_days": days,
            "claimable": record.patient_id is None,
        },
        timestamp=now,
    )
    logger.info("Issued code %s (%s funded, valid %d days)", record.code, record.sponsor_type, days)
    return record


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class CodeSnapshot:
    """What a center sees about a valid code before sample collection."""

    patient_name: str
    test_standard_id: UUID
    test_name: str
    test_description: str | None
    tests_included: list[str]
    reference_ranges: dict[str, str]
    sponsor_type: str
    valid_until: datetime


@dataclass
class CodeValidation:
    code: str
    valid: bool
    reason: ValidationReason | None = None
    message: str | None = None
    status: str | None = None
    valid_until: datetime | None = None
    snapshot: CodeSnapshot | None = field(default=None, repr=False)


def _expire(db: Session, record: AssessmentCode, now: datetime) -> None:
    result = db.execute(
        update(AssessmentCode)
        .where(AssessmentCode.id == record.id, AssessmentCode.status == CodeStatus.PENDING.value)
        .values(status=CodeStatus.EXPIRED.value)
        .execution_options(synchronize_session=False)
    )
    db.refresh(record)
    if result.rowcount:
        log_action(
            db,
            actor=None,
            action="expire",
            resource_type="AssessmentCode",
            resource_id=record.id,
            detail={"valid_until": as_utc(record.valid_until).isoformat()},
            timestamp=now,
        )


def _snapshot(record: AssessmentCode) -> CodeSnapshot:
    standard = record.test_standard
    tests = list(standard.tests_included or [])
    return CodeSnapshot(
        patient_name=patient_name(record),
        test_standard_id=standard.id,
        test_name=standard.name,
        test_description=standard.description,
        tests_included=tests,
        reference_ranges={test: default_reference_range(test) for test in tests},
        sponsor_type=record.sponsor_type,
        valid_until=as_utc(record.valid_until),
    )


def validate_code(db: Session, code: str, *, now: datetime | None = None) -> CodeValidation:
    """
    Check whether a code can be redeemed right now.

    Never raises for an unusable code: the outcome is returned as data, since
    this is polled while a person types. The one write is lazy expiry, which
    moves a pending code past its deadline to ``expired``.
    """
    now = now or utcnow()
    value = normalize_code(code)

    def rejected(reason: ValidationReason, record: AssessmentCode | None = None) -> CodeValidation:
        return CodeValidation(
            code=value,
            valid=False,
            reason=reason,
            message=MESSAGES[reason],
            status=record.status if record is not None else None,
            valid_until=as_utc(record.valid_until) if record is not None else None,
        )

    if not is_well_formed(value):
        return rejected(ValidationReason.INVALID_FORMAT)

    record = find_code(db, value)
    if record is None:
        return rejected(ValidationReason.NOT_FOUND)
    if record.status == CodeStatus.USED.value:
        return rejected(ValidationReason.ALREADY_USED, record)
    if record.status == CodeStatus.EXPIRED.value or is_past_deadline(record, now):
        if record.status == CodeStatus.PENDING.value:
            _expire(db, record, now)
            logger.info("Code %s expired on validation", record.code)
        return rejected(ValidationReason.EXPIRED, record)
    if record.patient_id is None:
        return rejected(ValidationReason.UNCLAIMED, record)

    return CodeValidation(
        code=value,
        valid=True,
        message=VALID_MESSAGE,
        status=record.status,
        valid_until=as_utc(record.valid_until),
        snapshot=_snapshot(record),
    )


# ---------------------------------------------------------------------------
# Redemption
# ---------------------------------------------------------------------------

def _ensure_redeemable(record: AssessmentCode, now: datetime) -> None:
    if record.status == CodeStatus.USED.value:
        raise AlreadyRedeemed()
    if record.status == CodeStatus.EXPIRED.value or is_past_deadline(record, now):
        raise CodeExpired()


def redeem_code(
    db: Session,
    *,
    code: str,
    center_id: UUID,
    actor: UUID | str | None = None,
    now: datetime | None = None,
) -> AssessmentCode:
    """
    Bind a pending code to the center collecting the sample.

    At most one caller wins: the transition is a single UPDATE guarded on
    ``status = 'pending'`` and the deadline, and a caller whose UPDATE touches
    no row gets ``AlreadyRedeemed`` (or ``CodeExpired``).
    """
    now = now or utcnow()
    value = normalize_code(code)
    if not is_well_formed(value):
        raise InvalidInput(MESSAGES[ValidationReason.INVALID_FORMAT])

    center = db.get(DiagnosticCenter, center_id)
    if center is None or not center.is_active:
        raise CenterNotFound()

    record = find_code(db, value)
    if record is None:
        raise CodeNotFound()
    _ensure_redeemable(record, now)
    if record.patient_id is None:
        raise CodeNotClaimed()

    result = db.execute(
        update(AssessmentCode)
        .where(
            AssessmentCode.id == record.id,
            AssessmentCode.status == CodeStatus.PENDING.value,
            AssessmentCode.valid_until >= now,
            AssessmentCode.patient_id.is_not(None),
        )
        .values(status=CodeStatus.USED.value, used_at=now, diagnostic_center_id=center.id)
        .execution_options(synchronize_session=False)
    )
    db.refresh(record)
    if result.rowcount != 1:
        logger.info("Redemption of %s lost to a concurrent request", record.code)
        _ensure_redeemable(record, now)
        raise AlreadyRedeemed()

    log_action(
        db,
        actor=actor or center.user_id,
        action="redeem",
        resource_type="AssessmentCode",
        resource_id=record.id,
        detail={"diagnostic_center_id": str(center.id)},
        timestamp=now,
    )
    logger.info("Code %s redeemed at center %s", record.code, center.id)
    return record


# ---------------------------------------------------------------------------
# Sponsored codes: claiming and public lookup
# ---------------------------------------------------------------------------

def claim_code(
    db: Session,
    *,
    code: str,
    patient_id: UUID,
    actor: UUID | str | None = None,
    now: datetime | None = None,
) -> AssessmentCode:
    """
    Bind a claimable sponsored code to the patient presenting it.

    Like redemption this is a single UPDATE guarded on ``patient_id IS NULL``,
    so a code handed out by a sponsor ends up with exactly one patient. Once
    set, the patient never changes.
    """
    now = now or utcnow()
    value = normalize_code(code)
    if not is_well_formed(value):
        raise InvalidInput(MESSAGES[ValidationReason.INVALID_FORMAT])

    patient = _load_patient(db, patient_id)
    record = find_code(db, value)
    if record is None:
        raise CodeNotFound()
    if record.patient_id is not None:
        raise AlreadyClaimed()
    _ensure_redeemable(record, now)

    result = db.execute(
        update(AssessmentCode)
        .where(
            AssessmentCode.id == record.id,
            AssessmentCode.patient_id.is_(None),
            AssessmentCode.status == CodeStatus.PENDING.value,
            AssessmentCode.valid_until >= now,
        )
        .values(patient_id=patient.id, encrypted_patient_name=_name_snapshot(patient))
        .execution_options(synchronize_session=False)
    )
    db.refresh(record)
    if result.rowcount != 1:
        logger.info("Claim of %s lost to a concurrent request", record.code)
        if record.patient_id is None:
            _ensure_redeemable(record, now)
        raise AlreadyClaimed()

    log_action(
        db,
        actor=actor or patient.id,
        action="claim",
        resource_type="AssessmentCode",
        resource_id=record.id,
        detail={"sponsor_type": record.sponsor_type},
        timestamp=now,
    )
    logger.info("Sponsored code %s claimed", record.code)
    return record


@dataclass(frozen=True)
class PublicCodeInfo:
    """What anyone holding a sponsored code may learn about it. No patient data."""

    code: str
    sponsor_name: str
    sponsor_type: str
    test_name: str
    test_description: str | None
    tests_included: list[str]
    valid_until: datetime
    status: str


def public_code_info(db: Session, code: str, *, now: datetime | None = None) -> PublicCodeInfo:
    """Describe a sponsored code before it is claimed. Self-funded codes are not public."""
    now = now or utcnow()
    value = normalize_code(code)
    record = find_code(db, value) if is_well_formed(value) else None
    if record is None or record.sponsor_type == SponsorType.SELF.value:
        raise CodeNotFound()

    status = record.status
    if status == CodeStatus.PENDING.value and is_past_deadline(record, now):
        status = CodeStatus.EXPIRED.value

    sponsor = db.get(User, record.sponsor_id) if record.sponsor_id is not None else None
    standard = record.test_standard
    return PublicCodeInfo(
        code=record.code,
        sponsor_name=sponsor.full_name if sponsor is not None else "",
        sponsor_type=record.sponsor_type,
        test_name=standard.name,
        test_description=standard.description,
        tests_included=list(standard.tests_included or []),
        valid_until=as_utc(record.valid_until),
        status=status,
    )


# ---------------------------------------------------------------------------
# Patient listings
# ---------------------------------------------------------------------------

def list_patient_codes(
    db: Session,
    patient_id: UUID,
    *,
    page: int = 0,
    size: int = 20,
    active_only: bool = False,
    now: datetime | None = None,
) -> Page:
    stmt = select(AssessmentCode).where(AssessmentCode.patient_id == patient_id)
    if active_only:
        stmt = stmt.where(
            AssessmentCode.status == CodeStatus.PENDING.value,
            AssessmentCode.valid_until >= (now or utcnow()),
        )
    return paginate(db, stmt.order_by(AssessmentCode.created_at.desc()), page=page, size=size)
