"""Value sets shared by the ORM models, services and API schemas."""

from enum import Enum


class UserRole(str, Enum):
    PATIENT = "patient"
    CENTER = "center"
    SPONSOR = "sponsor"
    ADMIN = "admin"


class CodeStatus(str, Enum):
    PENDING = "pending"
    USED = "used"
    EXPIRED = "expired"


class SponsorType(str, Enum):
    SELF = "self"
    EMPLOYER = "employer"
    NGO = "ngo"
    PARTNER = "partner"
    FAMILY = "family"
    OTHER = "other"


class SourceType(str, Enum):
    SELF_PURCHASE = "self_purchase"
    SPONSOR_REQUEST = "sponsor_request"
    HOME_SERVICE = "home_service"
    PRIME_BENEFIT = "prime_benefit"


class CenterStatus(str, Enum):
    PENDING = "pending"
    ACTIVE = "active"
    SUSPENDED = "suspended"
    REJECTED = "rejected"


class ParameterStatus(str, Enum):
    NORMAL = "normal"
    ABNORMAL = "abnormal"
    BORDERLINE = "borderline"


class OverallStatus(str, Enum):
    NORMAL = "normal"
    ABNORMAL = "abnormal"
    REQUIRES_ATTENTION = "requires_attention"


class ValidationReason(str, Enum):
    """Why a code failed validation."""

    INVALID_FORMAT = "invalid_format"
    NOT_FOUND = "not_found"
    ALREADY_USED = "already_used"
    EXPIRED = "expired"
    UNCLAIMED = "unclaimed"


def values(enum_cls) -> tuple[str, ...]:
    return tuple(member.value for member in enum_cls)
