"""Shared fixtures: an in-memory database per test and a few seeded actors."""

import os

os.environ.setdefault("DATABASE_URL", "sqlite://")

from datetime import datetime, timezone
from decimal import Decimal

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from app.models.database import Base
from app.models.screening import DiagnosticCenter, TestStandard, User

NOW = datetime(2026, 3, 1, 9, 0, tzinfo=timezone.utc)


@pytest.fixture
def engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(bind=engine, autocommit=False, autoflush=False)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def make_user(db):
    def factory(role="patient", first_name="Ada", last_name="Obi", status="active"):
        user = User(
            email=f"{first_name.lower()}.{role}.{os.urandom(3).hex()}@example.ng",
            first_name=first_name,
            last_name=last_name,
            role=role,
            status=status,
        )
        db.add(user)
        db.flush()
        return user

    return factory


@pytest.fixture
def make_center(db, make_user):
    def factory(name="Lagos Diagnostics", status="active", owner=None):
        owner = owner or make_user(role="center", first_name="Center", last_name="Staff")
        center = DiagnosticCenter(
            user_id=owner.id,
            name=name,
            address="12 Allen Avenue, Ikeja",
            city="Lagos",
            state="Lagos",
            status=status,
        )
        db.add(center)
        db.flush()
        db.refresh(owner)
        return center

    return factory


@pytest.fixture
def patient(make_user):
    return make_user(role="patient", first_name="Ada", last_name="Obi")


@pytest.fixture
def sponsor(make_user):
    return make_user(role="sponsor", first_name="Acme", last_name="Ltd")


@pytest.fixture
def center(make_center):
    return make_center()


@pytest.fixture
def standard(db):
    standard = TestStandard(
        name="Essential STI Panel",
        slug="essential-sti-panel",
        description="HIV, Hepatitis B and Syphilis screening",
        price=Decimal("15000.00"),
        currency="NGN",
        tests_included=["HIV 1&2 Antibody", "Hepatitis B Surface Antigen", "Syphilis VDRL"],
        sample_type="Blood",
        turnaround_time="24-48 hours",
        active=True,
    )
    db.add(standard)
    db.flush()
    return standard


@pytest.fixture
def lab_results():
    return [
        {"parameter": "HIV 1&2 Antibody", "value": "Non-Reactive", "referenceRange": "Non-Reactive", "status": "normal"},
        {"parameter": "Hepatitis B Surface Antigen", "value": "Negative", "referenceRange": "Negative", "status": "normal"},
        {"parameter": "Syphilis VDRL", "value": "Non-Reactive", "referenceRange": "Non-Reactive", "status": "normal"},
    ]
