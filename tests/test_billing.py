"""
Billing tests: copayment rules, invoice issuance and atomic batch submission.
"""
from decimal import Decimal

import pytest

from ereferral.enterprise.audit import messages_for
from ereferral.exceptions import Conflict, NotFound, PolicyViolation, TransientFailure, UnsignedDependency
from ereferral.models.billing import Invoice, InvoiceBatch
from ereferral.models.schemas import (
    BatchStatus,
    InvoicePayer,
    InvoiceStatus,
    InvoiceType,
    MessageStatus,
    MessageType,
)
from ereferral.services import appointments, billing
from ereferral.services.integration import MockCentralSystem

INSURED_WITH_SUPPLEMENTAL = "123456789"
INSURED_NO_SUPPLEMENTAL = "987654321"


class InvoiceReversedDuringSubmission(MockCentralSystem):
    """Reverses one invoice from another session while the batch is in flight."""

    def __init__(self, session_factory, invoice_id):
        super().__init__()
        self.session_factory = session_factory
        self.invoice_id = invoice_id

    def submit_batch(self, payload):
        session = self.session_factory()
        try:
            session.query(Invoice).filter(Invoice.id == self.invoice_id).update(
                {Invoice.status: InvoiceStatus.CANCELLED}, synchronize_session=False
            )
            session.commit()
        finally:
            session.close()
        return super().submit_batch(payload)


class TestCopayment:

    def test_standard_rate(self):
        assert billing.compute_copayment(Decimal("15.00"), "I10", False) == Decimal("3.00")

    def test_capped(self):
        assert billing.compute_copayment(Decimal("100.00"), "I10", False) == Decimal("5.00")

    def test_supplemental_insurance_covers_copayment(self):
        assert billing.compute_copayment(Decimal("15.00"), "I10", True) == Decimal("0.00")

    def test_oncology_exemption(self):
        assert billing.compute_copayment(Decimal("15.00"), "C76.4", False) == Decimal("0.00")


class TestIssuance:

    def test_patient_without_supplemental_gets_two_invoices(self, db, make_referral):
        referral = make_referral(mbo=INSURED_NO_SUPPLEMENTAL)

        issued = billing.issue_referral_invoices(db, referral.id)

        assert issued.copayment_amount == Decimal("3.00")
        assert issued.fund_invoice.payer == InvoicePayer.FUND
        assert issued.fund_invoice.type == InvoiceType.INSTITUTIONAL
        assert Decimal(issued.fund_invoice.amount) == Decimal("15.00")
        assert issued.patient_invoice.payer == InvoicePayer.PATIENT
        assert issued.patient_invoice.type == InvoiceType.COPAYMENT
        assert Decimal(issued.patient_invoice.amount) == Decimal("3.00")
        assert all(inv.status == InvoiceStatus.ISSUED for inv in issued.invoices)

    def test_supplemental_patient_gets_fund_invoice_only(self, db, make_referral, make_appointment):
        referral = make_referral(mbo=INSURED_WITH_SUPPLEMENTAL)
        # booking refreshes the insurance cache
        make_appointment(mbo=INSURED_WITH_SUPPLEMENTAL, referral=referral)

        issued = billing.issue_referral_invoices(db, referral.id)

        assert issued.patient_invoice is None
        assert db.query(Invoice).count() == 1

    def test_oncology_referral_gets_fund_invoice_only(self, db, make_referral):
        referral = make_referral(mbo=INSURED_NO_SUPPLEMENTAL, diagnosis_code="C76.4")
        issued = billing.issue_referral_invoices(db, referral.id)
        assert [inv.payer for inv in issued.invoices] == [InvoicePayer.FUND]

    def test_appointment_with_draft_finding_is_not_billable(self, db, completed_visit):
        _, appointment, _ = completed_visit()
        with pytest.raises(UnsignedDependency):
            billing.issue_appointment_invoices(db, appointment.id)
        assert db.query(Invoice).count() == 0

    def test_appointment_with_signed_finding_is_billable(self, db, central, completed_visit):
        _, appointment, finding = completed_visit()
        appointments.send_finding(db, central, finding.id)

        issued = billing.issue_appointment_invoices(db, appointment.id)

        assert {inv.appointment_id for inv in issued.invoices} == {appointment.id}
        issue_entries = [m for m in messages_for(db, appointment_id=appointment.id) if m.type == MessageType.ISSUE_INVOICE]
        assert len(issue_entries) == 1


class TestBatch:

    @pytest.fixture
    def issued_ids(self, db, make_referral):
        issued = billing.issue_referral_invoices(db, make_referral(mbo=INSURED_NO_SUPPLEMENTAL).id)
        return [inv.id for inv in issued.invoices]

    def test_successful_batch_marks_every_invoice(self, db, central, issued_ids):
        batch = billing.submit_batch(db, central, issued_ids)

        assert batch.status == BatchStatus.SENT
        assert batch.external_id.startswith("BCH-")
        db.expire_all()
        for invoice_id in issued_ids:
            invoice = billing.get_invoice(db, invoice_id)
            assert invoice.status == InvoiceStatus.SENT
            assert invoice.batch_id == batch.id
            sent = [m for m in messages_for(db, invoice_id=invoice_id) if m.type == MessageType.SEND_INVOICE]
            assert [m.status for m in sent] == [MessageStatus.SENT]
        summary = billing.batch_summary(db, batch.id)
        assert summary["invoice_count"] == 2
        assert summary["total_amount"] == "18.00"

    def test_rejected_batch_changes_no_invoice(self, db, issued_ids):
        central = MockCentralSystem(fail_on={"submit_batch"})

        with pytest.raises(TransientFailure) as excinfo:
            billing.submit_batch(db, central, issued_ids)

        db.expire_all()
        assert all(billing.get_invoice(db, i).status == InvoiceStatus.ISSUED for i in issued_ids)
        assert all(billing.get_invoice(db, i).batch_id is None for i in issued_ids)
        batch = db.query(InvoiceBatch).filter(InvoiceBatch.id == excinfo.value.detail["batch_id"]).one()
        assert batch.status == BatchStatus.FAILED

    def test_rejected_batch_can_be_retried(self, db, central, issued_ids):
        with pytest.raises(TransientFailure):
            billing.submit_batch(db, MockCentralSystem(fail_on={"submit_batch"}), issued_ids)
        batch = billing.submit_batch(db, central, issued_ids)
        assert batch.status == BatchStatus.SENT

    def test_unknown_invoice_fails_before_any_batch(self, db, central, issued_ids):
        with pytest.raises(NotFound):
            billing.submit_batch(db, central, issued_ids + ["missing"])
        assert db.query(InvoiceBatch).count() == 0

    def test_sent_invoice_cannot_be_batched_again(self, db, central, issued_ids):
        billing.submit_batch(db, central, issued_ids)
        with pytest.raises(PolicyViolation) as excinfo:
            billing.submit_batch(db, central, issued_ids[:1])
        assert excinfo.value.code == "INVOICE_NOT_BATCHABLE"

    def test_empty_batch(self, db, central):
        with pytest.raises(PolicyViolation):
            billing.submit_batch(db, central, [])

    def test_invoice_changed_in_flight_fails_the_whole_batch(self, db, session_factory, issued_ids):
        central = InvoiceReversedDuringSubmission(session_factory, issued_ids[0])

        with pytest.raises(Conflict) as excinfo:
            billing.submit_batch(db, central, issued_ids)

        assert excinfo.value.code == "BATCH_MEMBERS_CHANGED"
        db.expire_all()
        untouched = billing.get_invoice(db, issued_ids[1])
        assert untouched.status == InvoiceStatus.ISSUED
        assert untouched.batch_id is None
        assert db.query(InvoiceBatch).one().status == BatchStatus.FAILED
        failed = [m for m in messages_for(db, invoice_id=issued_ids[1]) if m.type == MessageType.SEND_INVOICE]
        assert [m.status for m in failed] == [MessageStatus.FAILED]


class TestBatchReport:

    def test_report_lists_every_invoice(self, db, central, make_referral):
        referral = make_referral(mbo=INSURED_NO_SUPPLEMENTAL)
        issued = billing.issue_referral_invoices(db, referral.id)
        batch = billing.submit_batch(db, central, [inv.id for inv in issued.invoices])

        report = billing.batch_report(db, batch.id)

        assert report.filename == f"HZZO_HZZO_F1_{batch.external_id}.xml"
        assert f'batchId="{batch.external_id}"' in report.content
        assert "<InstitutionName>WBS test</InstitutionName>" in report.content
        assert "<TotalAmount>18.00</TotalAmount>" in report.content
        assert report.content.count(f'<Patient MBO="{INSURED_NO_SUPPLEMENTAL}">') == 2
        assert report.content.count(f"<ReferralId>{referral.id}</ReferralId>") == 2
        assert "<HasSupplemental>false</HasSupplemental>" in report.content

    def test_failed_batch_has_no_report(self, db, make_referral):
        issued = billing.issue_referral_invoices(db, make_referral().id)
        with pytest.raises(TransientFailure) as excinfo:
            billing.submit_batch(db, MockCentralSystem(fail_on={"submit_batch"}), [inv.id for inv in issued.invoices])

        with pytest.raises(PolicyViolation) as refused:
            billing.batch_report(db, excinfo.value.detail["batch_id"])
        assert refused.value.code == "BATCH_NOT_SENT"

    def test_unknown_batch(self, db):
        with pytest.raises(NotFound):
            billing.batch_report(db, "missing")
