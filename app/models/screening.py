"""
Data models for the assessment-code lifecycle.

- Assessment codes are permanent audit records: created at issuance,
  mutated at claim (sponsored codes issued without a patient), redemption
  and lazily at expiry, never deleted.
- Test results are bound 1:1 to a redeemed code and carry denormalized
  copies of patient/center/standard so later changes cannot rewrite history.
- PHI (patient name snapshot, result payload, lab notes) is stored encrypted.
"""

import uuid
from datetime import datetime, timezone

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    Enum,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
    Uuid,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import relationship

from app.models.database import Base
from app.models.enums import (
    CenterStatus,
    CodeStatus,
    OverallStatus,
    SourceType,
    SponsorType,
    UserRole,
    values,
)

JSONType = JSON().with_variant(JSONB(), "postgresql")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ---------------------------------------------------------------------------
# User – patients, center staff, sponsors and admins
# ---------------------------------------------------------------------------
class User(Base):
    __tablename__ = "users"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    email = Column(String(255), unique=True, nullable=True)
    first_name = Column(String(128))
    last_name = Column(String(128))
    role = Column(Enum(*values(UserRole), name="user_role_enum"), nullable=False, default="patient")
    status = Column(
        Enum("active", "inactive", "suspended", "deleted", name="user_status_enum"),
        nullable=False,
        default="active",
    )
    created_at = Column(DateTime(timezone=True), default=_utcnow, nullable=False)

    centers = relationship("DiagnosticCenter", back_populates="owner", lazy="selectin")

    @property
    def full_name(self) -> str:
        return " ".join(part for part in (self.first_name, self.last_name) if part)


# ---------------------------------------------------------------------------
# Test Standard – the purchasable test package definition
# ---------------------------------------------------------------------------
class TestStandard(Base):
    __tablename__ = "test_standards"
    __test__ = False

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    name = Column(Text, nullable=False)
    slug = Column(String(128), unique=True)
    description = Column(Text)
    price = Column(Numeric(12, 2), nullable=False)
    currency = Column(String(8), nullable=False, default="NGN")
    tests_included = Column(JSONType, nullable=False, default=list)
    sample_type = Column(String(64))
    turnaround_time = Column(String(64))
    active = Column(Boolean, nullable=False, default=True)
    display_order = Column(Integer, default=0)
    created_at = Column(DateTime(timezone=True), default=_utcnow)


# ---------------------------------------------------------------------------
# Diagnostic Center – redeems codes and authors results
# ---------------------------------------------------------------------------
class DiagnosticCenter(Base):
    __tablename__ = "diagnostic_centers"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id = Column(Uuid, ForeignKey("users.id"), nullable=False)
    name = Column(Text, nullable=False)
    address = Column(Text, nullable=False)
    city = Column(String(128), nullable=False)
    state = Column(String(128), nullable=False)
    country = Column(String(64), nullable=False, default="Nigeria")
    phone = Column(String(32))
    status = Column(Enum(*values(CenterStatus), name="center_status_enum"), nullable=False, default="pending")
    total_tests_completed = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime(timezone=True), default=_utcnow)

    owner = relationship("User", back_populates="centers")

    @property
    def is_active(self) -> bool:
        return self.status == CenterStatus.ACTIVE.value


# ---------------------------------------------------------------------------
# Assessment Code – the code registry
# ---------------------------------------------------------------------------
class AssessmentCode(Base):
    __tablename__ = "assessment_codes"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    code = Column(String(12), unique=True, nullable=False)
    test_standard_id = Column(Uuid, ForeignKey("test_standards.id"), nullable=False)
    patient_id = Column(Uuid, ForeignKey("users.id"), nullable=True, comment="NULL until claimed")
    encrypted_patient_name = Column(Text, nullable=True, comment="Fernet-encrypted name snapshot")
    sponsor_id = Column(Uuid, ForeignKey("users.id"), nullable=True)
    sponsor_type = Column(Enum(*values(SponsorType), name="sponsor_type_enum"), nullable=False, default="self")
    source_type = Column(
        Enum(*values(SourceType), name="code_source_type_enum"), nullable=False, default="self_purchase"
    )
    preferred_center_id = Column(Uuid, ForeignKey("diagnostic_centers.id"), nullable=True)
    status = Column(Enum(*values(CodeStatus), name="code_status_enum"), nullable=False, default="pending")
    valid_until = Column(DateTime(timezone=True), nullable=False)
    used_at = Column(DateTime(timezone=True), nullable=True)
    diagnostic_center_id = Column(Uuid, ForeignKey("diagnostic_centers.id"), nullable=True)
    price_paid = Column(Numeric(12, 2))
    currency = Column(String(8), default="NGN")
    created_at = Column(DateTime(timezone=True), default=_utcnow, nullable=False)

    test_standard = relationship("TestStandard")
    patient = relationship("User", foreign_keys=[patient_id])
    diagnostic_center = relationship("DiagnosticCenter", foreign_keys=[diagnostic_center_id])
    preferred_center = relationship("DiagnosticCenter", foreign_keys=[preferred_center_id])
    result = relationship("TestResult", back_populates="assessment_code", uselist=False)

    __table_args__ = (
        Index("ix_assessment_codes_patient", "patient_id"),
        Index("ix_assessment_codes_status", "status"),
    )


# ---------------------------------------------------------------------------
# Test Result – anonymized lab output, one per redeemed code
# ---------------------------------------------------------------------------
class TestResult(Base):
    __tablename__ = "test_results"
    __test__ = False

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    result_number = Column(String(32), unique=True, nullable=False)
    assessment_code_id = Column(Uuid, ForeignKey("assessment_codes.id"), nullable=False)
    patient_id = Column(Uuid, ForeignKey("users.id"), nullable=False)
    diagnostic_center_id = Column(Uuid, ForeignKey("diagnostic_centers.id"), nullable=False)
    test_standard_id = Column(Uuid, ForeignKey("test_standards.id"), nullable=False)
    encrypted_results = Column(Text, nullable=False, comment="Fernet-encrypted JSON parameter list")
    overall_status = Column(Enum(*values(OverallStatus), name="overall_status_enum"))
    encrypted_notes = Column(Text, nullable=True)
    viewed = Column(Boolean, nullable=False, default=False)
    viewed_at = Column(DateTime(timezone=True))
    sponsor_notified = Column(Boolean, nullable=False, default=False)
    sponsor_notified_at = Column(DateTime(timezone=True))
    tested_at = Column(DateTime(timezone=True), nullable=False)
    uploaded_at = Column(DateTime(timezone=True), default=_utcnow, nullable=False)
    uploaded_by = Column(Uuid, ForeignKey("users.id"), nullable=True)

    assessment_code = relationship("AssessmentCode", back_populates="result")
    diagnostic_center = relationship("DiagnosticCenter")
    test_standard = relationship("TestStandard")

    __table_args__ = (
        UniqueConstraint("assessment_code_id", name="uq_test_result_code"),
        Index("ix_test_results_patient", "patient_id"),
        Index("ix_test_results_center", "diagnostic_center_id"),
    )


# ---------------------------------------------------------------------------
# Notification – in-app messages (sponsor completion notices)
# ---------------------------------------------------------------------------
class Notification(Base):
    __tablename__ = "notifications"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    recipient_type = Column(
        Enum("user", "center", "sponsor", "admin", name="notification_recipient_enum"), nullable=False
    )
    user_id = Column(Uuid, ForeignKey("users.id"), nullable=True)
    type = Column(String(64), nullable=False)
    title = Column(Text, nullable=False)
    message = Column(Text, nullable=False)
    data = Column(JSONType)
    read = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime(timezone=True), default=_utcnow, nullable=False)

    __table_args__ = (Index("ix_notifications_user", "user_id"),)


# ---------------------------------------------------------------------------
# Audit Log – immutable compliance trail
# ---------------------------------------------------------------------------
class AuditLog(Base):
    __tablename__ = "audit_log"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    actor = Column(String(128), nullable=False, comment="User or service identity")
    action = Column(String(64), nullable=False, comment="issue | redeem | expire | submit_result | ...")
    resource_type = Column(String(64), nullable=False)
    resource_id = Column(Uuid, nullable=False)
    detail = Column(JSONType, comment="Context for the action")
    timestamp = Column(DateTime(timezone=True), default=_utcnow, nullable=False)

    __table_args__ = (Index("ix_audit_timestamp", "timestamp"),)
