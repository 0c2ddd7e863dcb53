"""
Shared fixtures for all tests.

Each test gets its own file-backed SQLite database under ``tmp_path`` so
that concurrency tests can open several connections to the same store.
"""
from datetime import timedelta

import pytest
from sqlalchemy.orm import sessionmaker

import ereferral.models  # noqa: F401  registers every table on Base.metadata
from ereferral.models.database import Base, make_engine, utcnow
from ereferral.models.schemas import (
    AppointmentCreate,
    AppointmentStatus,
    FindingUpsert,
    ReferralCategory,
    ReferralCreate,
)
from ereferral.services import appointments, referrals
from ereferral.services.integration import MockCentralSystem

# MBOs known to MockCentralSystem
INSURED_WITH_SUPPLEMENTAL = "123456789"
INSURED_NO_SUPPLEMENTAL = "987654321"
UNINSURED = "000000000"


# ---------------------------------------------------------------------------
# Database
# ---------------------------------------------------------------------------

@pytest.fixture
def engine(tmp_path):
    engine = make_engine(f"sqlite:///{tmp_path / 'ereferral-test.db'}")
    Base.metadata.create_all(bind=engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def central():
    return MockCentralSystem()


# ---------------------------------------------------------------------------
# Factories
# ---------------------------------------------------------------------------

@pytest.fixture
def make_referral(db, central):
    """Submit a referral through the Central System and return it."""
    def _make(
        mbo=INSURED_NO_SUPPLEMENTAL,
        category=ReferralCategory.FULL_TREATMENT,
        diagnosis_code="I10",
        department="Cardiology",
    ):
        return referrals.submit_referral(
            db,
            central,
            ReferralCreate(
                patient_mbo=mbo,
                patient_name="Ana Kovač",
                diagnosis_code=diagnosis_code,
                diagnosis_name="Essential hypertension",
                procedure_code="CARD-01",
                procedure_name="Cardiology examination",
                target_department=department,
                category=category,
                note="Control after therapy change",
            ),
        )
    return _make


@pytest.fixture
def make_appointment(db, central):
    """Book an appointment one day ahead, optionally on a referral."""
    def _make(mbo=INSURED_NO_SUPPLEMENTAL, referral=None):
        start = utcnow().replace(microsecond=0) + timedelta(days=1)
        return appointments.book_appointment(
            db,
            central,
            AppointmentCreate(
                patient_mbo=mbo,
                referral_id=referral.id if referral is not None else None,
                start_time=start,
                end_time=start + timedelta(minutes=30),
            ),
        )
    return _make


@pytest.fixture
def completed_visit(db, central, make_referral, make_appointment):
    """A referral with a completed appointment and a draft finding."""
    def _make(mbo=INSURED_NO_SUPPLEMENTAL, **referral_kwargs):
        referral = make_referral(mbo=mbo, **referral_kwargs)
        appointment = make_appointment(mbo=mbo, referral=referral)
        appointments.update_status(db, central, appointment.id, AppointmentStatus.COMPLETED)
        finding = appointments.upsert_finding(
            db,
            FindingUpsert(
                appointment_id=appointment.id,
                anamnesis="Headache for two weeks",
                status_praesens="BP 150/95",
                therapy="Continue ramipril",
            ),
        )
        return referral, appointment, finding
    return _make
