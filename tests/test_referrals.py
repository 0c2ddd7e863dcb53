"""
Referral lifecycle tests: submission, takeover, release and calendar sync.
"""
import threading

import pytest

from ereferral.exceptions import Conflict, InvalidTransition, NotFound, PolicyViolation, TransientFailure
from ereferral.enterprise.audit import referral_timeline
from ereferral.models.audit import AuditMessage
from ereferral.models.referral import Referral
from ereferral.models.schemas import (
    InternalReferralCreate,
    MessageStatus,
    MessageType,
    ReferralCategory,
    ReferralCreate,
    ReferralStatus,
)
from ereferral.services import appointments, referrals
from ereferral.services.integration import MockCentralSystem


class TestSubmission:

    def test_submitted_referral_is_sent_with_external_id(self, db, make_referral):
        referral = make_referral()
        assert referral.status == ReferralStatus.SENT
        assert referral.external_id.startswith("REF-")
        assert not referral.is_taken_over

        timeline = referral_timeline(db, referral.id)
        assert [(m.type, m.status) for m in timeline] == [(MessageType.SEND_REFERRAL, MessageStatus.SENT)]

    def test_lookup_by_internal_or_external_id(self, db, make_referral):
        referral = make_referral()
        assert referrals.get_referral(db, referral.id).id == referral.id
        assert referrals.get_referral(db, referral.external_id).id == referral.id

    def test_unknown_referral(self, db):
        with pytest.raises(NotFound):
            referrals.get_referral(db, "nope")

    def test_rejected_submission_stores_only_audit(self, db):
        central = MockCentralSystem(fail_on={"submit_referral"})
        with pytest.raises(TransientFailure):
            referrals.submit_referral(
                db,
                central,
                ReferralCreate(
                    patient_mbo="987654321",
                    patient_name="Ana Kovač",
                    diagnosis_code="I10",
                    procedure_code="CARD-01",
                    target_department="Cardiology",
                ),
            )
        assert db.query(Referral).count() == 0
        failed = db.query(AuditMessage).one()
        assert failed.type == MessageType.SEND_REFERRAL
        assert failed.status == MessageStatus.FAILED

    def test_list_filters_by_department(self, db, make_referral):
        make_referral(department="Cardiology")
        make_referral(department="Radiology")
        assert len(referrals.list_referrals(db)) == 2
        assert [r.target_department for r in referrals.list_referrals(db, "Radiology")] == ["Radiology"]


class TestTakeover:

    def test_takeover_sets_owner_and_status(self, db, central, make_referral):
        referral = make_referral()
        taken = referrals.takeover_referral(db, central, referral.external_id, "DR-42")
        assert taken.status == ReferralStatus.IN_PROGRESS
        assert taken.is_taken_over
        assert taken.taken_over_by == "DR-42"
        assert taken.taken_over_at is not None
        assert referral_timeline(db, referral.id)[-1].type == MessageType.TAKEOVER

    def test_second_takeover_conflicts_without_side_effects(self, db, central, make_referral):
        referral = make_referral()
        referrals.takeover_referral(db, central, referral.id, "DR-1")
        entries_before = db.query(AuditMessage).count()

        with pytest.raises(Conflict) as excinfo:
            referrals.takeover_referral(db, central, referral.id, "DR-2")

        assert excinfo.value.code == "ALREADY_TAKEN_OVER"
        db.expire_all()
        assert referrals.get_referral(db, referral.id).taken_over_by == "DR-1"
        assert db.query(AuditMessage).count() == entries_before

    def test_rejected_takeover_leaves_referral_unowned(self, db, make_referral):
        referral = make_referral()
        central = MockCentralSystem(fail_on={"takeover_referral"})
        with pytest.raises(TransientFailure):
            referrals.takeover_referral(db, central, referral.id, "DR-1")

        db.expire_all()
        stored = referrals.get_referral(db, referral.id)
        assert not stored.is_taken_over
        assert stored.status == ReferralStatus.SENT
        last = referral_timeline(db, referral.id)[-1]
        assert (last.type, last.status) == (MessageType.TAKEOVER, MessageStatus.FAILED)

    def test_concurrent_takeovers_yield_one_winner(self, session_factory, central, make_referral):
        referral_id = make_referral().id
        barrier = threading.Barrier(2)
        outcomes = []

        def attempt(doctor_id):
            session = session_factory()
            try:
                barrier.wait()
                referrals.takeover_referral(session, central, referral_id, doctor_id)
                outcomes.append(("ok", doctor_id))
            except Conflict:
                outcomes.append(("conflict", doctor_id))
            finally:
                session.close()

        threads = [threading.Thread(target=attempt, args=(f"DR-{n}",)) for n in (1, 2)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join(timeout=30)

        assert sorted(kind for kind, _ in outcomes) == ["conflict", "ok"]
        winner = next(doctor for kind, doctor in outcomes if kind == "ok")

        check = session_factory()
        try:
            stored = check.query(Referral).filter(Referral.id == referral_id).one()
            assert stored.taken_over_by == winner
            takeovers = (
                check.query(AuditMessage)
                .filter(AuditMessage.referral_id == referral_id, AuditMessage.type == MessageType.TAKEOVER)
                .count()
            )
            assert takeovers == 1
        finally:
            check.close()


class TestRelease:

    def test_release_clears_ownership(self, db, central, make_referral):
        referral = make_referral()
        referrals.takeover_referral(db, central, referral.id, "DR-1")

        released = referrals.release_reservation(db, referral.id)

        assert released.status == ReferralStatus.SENT
        assert not released.is_taken_over
        assert released.taken_over_by is None
        assert referral_timeline(db, referral.id)[-1].type == MessageType.RELEASE_RESERVATION
        # available again
        assert referrals.takeover_referral(db, central, referral.id, "DR-2").taken_over_by == "DR-2"

    def test_release_refused_after_realization(self, db, central, completed_visit):
        referral, _, finding = completed_visit()
        appointments.send_finding(db, central, finding.id)
        with pytest.raises(InvalidTransition):
            referrals.release_reservation(db, referral.id)


class TestCalendarSync:

    def test_sync_reserves_sent_referral(self, db, central, make_referral, make_appointment):
        referral = make_referral()
        appointment = make_appointment(referral=referral)

        synced = appointments.sync_calendar(db, central, appointment.id)

        assert synced.calendar_id.startswith("SK-")
        assert synced.calendar_synced_at is not None
        assert referrals.get_referral(db, referral.id).status == ReferralStatus.RESERVED

    def test_sync_does_not_regress_in_progress_referral(self, db, central, make_referral, make_appointment):
        referral = make_referral()
        appointment = make_appointment(referral=referral)
        referrals.takeover_referral(db, central, referral.id, "DR-1")

        appointments.sync_calendar(db, central, appointment.id)

        assert referrals.get_referral(db, referral.id).status == ReferralStatus.IN_PROGRESS


class TestInternalReferrals:

    def test_a1_referral_cannot_be_derived(self, db, make_referral):
        referral = make_referral(category=ReferralCategory.CONSULTATIVE)
        with pytest.raises(PolicyViolation) as excinfo:
            referrals.create_internal_referral(
                db,
                referral.id,
                InternalReferralCreate(category=ReferralCategory.DIAGNOSTICS, procedure_code="RTG-1", department="Radiology"),
            )
        assert excinfo.value.code == "A1_INTERNAL_REFERRAL_FORBIDDEN"

    def test_internal_referral_copies_diagnosis(self, db, make_referral):
        referral = make_referral(category=ReferralCategory.FULL_TREATMENT)
        internal = referrals.create_internal_referral(
            db,
            referral.external_id,
            InternalReferralCreate(category=ReferralCategory.DIAGNOSTICS, procedure_code="RTG-1", department="Radiology"),
        )
        assert internal.original_referral_id == referral.id
        assert internal.diagnosis_code == "I10"
        assert [i.id for i in referrals.list_internal_referrals(db, referral.id)] == [internal.id]
