"""
Billing and invoice engine.

Each billable event produces a fund invoice and, unless the patient is
exempt, a patient copayment invoice.  Issued invoices are later submitted to
the Central System in batches; a batch and all of its invoices change state
in a single commit.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal
from typing import List, Optional, Sequence

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from ereferral.config import get_settings
from ereferral.enterprise.audit import record_message
from ereferral.exceptions import Conflict, NotFound, PolicyViolation, TransientFailure
from ereferral.models.billing import Invoice, InvoiceBatch
from ereferral.models.database import utcnow
from ereferral.models.patient import Patient
from ereferral.models.referral import Referral
from ereferral.models.schemas import (
    BatchStatus,
    InvoicePayer,
    InvoiceStatus,
    InvoiceType,
    MessageDirection,
    MessageStatus,
    MessageType,
)
from ereferral.services import guards, referrals
from ereferral.services.appointments import get_appointment
from ereferral.services.integration import CentralSystemClient, CentralSystemError
from ereferral.services.templates import hl7_timestamp, message_id, render_template

logger = logging.getLogger(__name__)

BASE_TARIFF = Decimal("15.00")
COPAYMENT_RATE = Decimal("0.2")
COPAYMENT_CAP = Decimal("5.00")
# Oncology diagnosis covered 100% by the fund.
ONCOLOGY_EXEMPT_CODE = "C76.4"
CENTS = Decimal("0.01")


@dataclass
class InvoiceIssue:
    fund_invoice: Invoice
    patient_invoice: Optional[Invoice]
    copayment_amount: Decimal

    @property
    def invoices(self) -> List[Invoice]:
        return [inv for inv in (self.fund_invoice, self.patient_invoice) if inv is not None]


def compute_copayment(
    base_amount: Decimal, diagnosis_code: Optional[str], has_supplemental: bool
) -> Decimal:
    """Patient share of ``base_amount``; zero when the patient owes nothing."""
    if diagnosis_code == ONCOLOGY_EXEMPT_CODE:
        return Decimal("0.00")
    if has_supplemental:
        return Decimal("0.00")
    return min(base_amount * COPAYMENT_RATE, COPAYMENT_CAP).quantize(CENTS, rounding=ROUND_HALF_UP)


def _issue(
    db: Session,
    patient: Patient,
    diagnosis_code: Optional[str],
    description: str,
    referral_id: Optional[str] = None,
    appointment_id: Optional[str] = None,
) -> InvoiceIssue:
    fund_invoice = Invoice(
        referral_id=referral_id,
        appointment_id=appointment_id,
        patient_id=patient.id,
        amount=BASE_TARIFF,
        payer=InvoicePayer.FUND,
        type=InvoiceType.INSTITUTIONAL,
        description=description,
        status=InvoiceStatus.ISSUED,
    )
    db.add(fund_invoice)

    copayment = compute_copayment(BASE_TARIFF, diagnosis_code, patient.has_supplemental)
    patient_invoice = None
    if copayment > 0:
        patient_invoice = Invoice(
            referral_id=referral_id,
            appointment_id=appointment_id,
            patient_id=patient.id,
            amount=copayment,
            payer=InvoicePayer.PATIENT,
            payer_name=patient.full_name,
            type=InvoiceType.COPAYMENT,
            description=f"Copayment for {description}",
            status=InvoiceStatus.ISSUED,
        )
        db.add(patient_invoice)
    elif diagnosis_code == ONCOLOGY_EXEMPT_CODE:
        logger.info("Oncology exemption (%s): 100%% fund coverage", ONCOLOGY_EXEMPT_CODE)
    db.flush()

    record_message(
        db,
        type=MessageType.ISSUE_INVOICE,
        direction=MessageDirection.OUTGOING,
        status=MessageStatus.SENT,
        payload={"fundInvoiceId": fund_invoice.id, "amount": str(BASE_TARIFF), "copayment": str(copayment)},
        patient_mbo=patient.mbo,
        referral_id=referral_id,
        invoice_id=fund_invoice.id,
        appointment_id=appointment_id,
    )
    db.commit()
    db.refresh(fund_invoice)
    if patient_invoice is not None:
        db.refresh(patient_invoice)
    return InvoiceIssue(fund_invoice, patient_invoice, copayment)


def _describe(referral: Optional[Referral]) -> str:
    if referral is None:
        return "Specialist Examination (Walk-in)"
    return f"{referral.procedure_name or 'Specialist Examination'} ({referral.target_department})"


def issue_referral_invoices(db: Session, reference: str) -> InvoiceIssue:
    referral = referrals.get_referral(db, reference)
    logger.info("Issuing invoices for referral %s", referral.id)
    return _issue(
        db,
        referral.patient,
        referral.diagnosis_code,
        _describe(referral),
        referral_id=referral.id,
    )


def issue_appointment_invoices(db: Session, appointment_id: str) -> InvoiceIssue:
    """Invoice a completed appointment; its finding must be signed."""
    appointment = get_appointment(db, appointment_id)
    guards.enforce(guards.finding_is_billable(appointment))
    referral = appointment.referral
    logger.info("Issuing invoices for appointment %s", appointment.id)
    return _issue(
        db,
        appointment.patient,
        referral.diagnosis_code if referral else None,
        _describe(referral),
        referral_id=referral.id if referral else None,
        appointment_id=appointment.id,
    )


def get_invoice(db: Session, invoice_id: str) -> Invoice:
    invoice = db.query(Invoice).filter(Invoice.id == invoice_id).first()
    if invoice is None:
        raise NotFound(f"Invoice {invoice_id} not found.", code="INVOICE_NOT_FOUND")
    return invoice


def _invoice_payload(invoice: Invoice) -> str:
    referral_ref = invoice.referral_id
    if referral_ref is None and invoice.appointment is not None:
        referral_ref = invoice.appointment.referral_id
    return render_template(
        "SEND_INVOICE",
        {
            "messageId": message_id("MSG-INV"),
            "timestamp": hl7_timestamp(),
            "invoiceId": invoice.id,
            "invoiceType": invoice.type.value,
            "amount": f"{Decimal(invoice.amount):.2f}",
            "referralId": referral_ref or "DIRECT",
        },
    )


def _invoice_mbo(invoice: Invoice) -> str:
    return invoice.patient.mbo if invoice.patient is not None else "UNKNOWN"


def _fail_batch(db: Session, batch_id: str, invoices: Sequence[Invoice], payloads: dict, error: str) -> None:
    db.rollback()
    db.query(InvoiceBatch).filter(InvoiceBatch.id == batch_id).update(
        {InvoiceBatch.status: BatchStatus.FAILED}, synchronize_session=False
    )
    for invoice in invoices:
        record_message(
            db,
            type=MessageType.SEND_INVOICE,
            direction=MessageDirection.OUTGOING,
            status=MessageStatus.FAILED,
            payload=payloads[invoice.id],
            response={"batchId": batch_id},
            error_message=error,
            patient_mbo=_invoice_mbo(invoice),
            referral_id=invoice.referral_id,
            invoice_id=invoice.id,
        )
    db.commit()


def submit_batch(
    db: Session, central: CentralSystemClient, invoice_ids: Sequence[str], batch_type: str = "HZZO_F1"
) -> InvoiceBatch:
    """Submit issued invoices to the Central System as one batch.

    Either the batch and every named invoice end up SENT, or none of the
    invoices change and the batch is marked FAILED.
    """
    ids = list(dict.fromkeys(invoice_ids))
    if not ids:
        raise PolicyViolation("A batch needs at least one invoice.", code="EMPTY_BATCH")

    invoices = db.query(Invoice).filter(Invoice.id.in_(ids)).all()
    missing = set(ids) - {inv.id for inv in invoices}
    if missing:
        raise NotFound(f"Invoices not found: {', '.join(sorted(missing))}.", code="INVOICE_NOT_FOUND",
                       detail={"missing": sorted(missing)})
    not_issued = [inv.id for inv in invoices if inv.status != InvoiceStatus.ISSUED]
    if not_issued:
        raise PolicyViolation(
            "Only issued invoices can be batched; already sent or reversed: " + ", ".join(sorted(not_issued)),
            code="INVOICE_NOT_BATCHABLE",
            detail={"invoice_ids": sorted(not_issued)},
        )

    batch = InvoiceBatch(type=batch_type, status=BatchStatus.PROCESSING)
    db.add(batch)
    db.commit()
    batch_id = batch.id
    logger.info("Processing batch %s with %s invoices", batch_id, len(ids))

    payloads = {inv.id: _invoice_payload(inv) for inv in invoices}
    envelope = render_template(
        "BATCH_WRAPPER",
        {
            "batchId": batch_id,
            "timestamp": hl7_timestamp(),
            "batchContent": "\n".join(payloads[inv.id] for inv in invoices),
        },
    )

    try:
        external_batch_id = central.submit_batch(envelope)
    except CentralSystemError as exc:
        logger.error("Batch %s rejected by the Central System: %s", batch_id, exc)
        _fail_batch(db, batch_id, invoices, payloads, str(exc))
        raise TransientFailure(
            f"Batch submission failed: {exc}. No invoice was marked as sent; you may retry.",
            detail={"batch_id": batch_id},
        ) from exc

    sent_at = utcnow()
    try:
        db.query(InvoiceBatch).filter(InvoiceBatch.id == batch_id).update(
            {InvoiceBatch.status: BatchStatus.SENT, InvoiceBatch.external_id: external_batch_id,
             InvoiceBatch.sent_at: sent_at},
            synchronize_session=False,
        )
        updated = (
            db.query(Invoice)
            .filter(Invoice.id.in_(ids), Invoice.status == InvoiceStatus.ISSUED)
            .update(
                {Invoice.status: InvoiceStatus.SENT, Invoice.batch_id: batch_id, Invoice.sent_at: sent_at},
                synchronize_session=False,
            )
        )
        if updated != len(ids):
            raise Conflict(
                f"Batch {batch_id}: {len(ids) - updated} invoices changed while the batch was in flight.",
                code="BATCH_MEMBERS_CHANGED",
            )
        for invoice in invoices:
            record_message(
                db,
                type=MessageType.SEND_INVOICE,
                direction=MessageDirection.OUTGOING,
                status=MessageStatus.SENT,
                payload=payloads[invoice.id],
                response={"batchId": batch_id, "externalBatchId": external_batch_id},
                patient_mbo=_invoice_mbo(invoice),
                referral_id=invoice.referral_id,
                invoice_id=invoice.id,
            )
        db.commit()
    except (Conflict, SQLAlchemyError) as exc:
        logger.error("Batch %s could not be recorded: %s", batch_id, exc)
        _fail_batch(db, batch_id, invoices, payloads, str(exc))
        raise

    batch = db.query(InvoiceBatch).filter(InvoiceBatch.id == batch_id).one()
    logger.info("Batch %s sent as %s", batch_id, external_batch_id)
    return batch


def batch_summary(db: Session, batch_id: str) -> dict:
    batch = db.query(InvoiceBatch).filter(InvoiceBatch.id == batch_id).first()
    if batch is None:
        raise NotFound(f"Batch {batch_id} not found.", code="BATCH_NOT_FOUND")
    return {
        "batch_id": batch.id,
        "external_id": batch.external_id,
        "status": batch.status.value,
        "invoice_count": len(batch.invoices),
        "total_amount": str(sum((Decimal(inv.amount) for inv in batch.invoices), Decimal("0.00"))),
    }


@dataclass
class BatchReport:
    filename: str
    content: str


def _report_patient(invoice: Invoice) -> Optional[Patient]:
    if invoice.patient is not None:
        return invoice.patient
    if invoice.referral is not None:
        return invoice.referral.patient
    if invoice.appointment is not None:
        return invoice.appointment.patient
    return None


def batch_report(db: Session, batch_id: str) -> BatchReport:
    """Export an accepted batch as the fund's XML report."""
    batch = db.query(InvoiceBatch).filter(InvoiceBatch.id == batch_id).first()
    if batch is None:
        raise NotFound(f"Batch {batch_id} not found.", code="BATCH_NOT_FOUND")
    if batch.status != BatchStatus.SENT:
        raise PolicyViolation(
            f"Batch {batch_id} is {batch.status.value}; only sent batches can be reported.",
            code="BATCH_NOT_SENT",
        )

    settings = get_settings()
    lines = []
    for invoice in batch.invoices:
        patient = _report_patient(invoice)
        lines.append({
            "id": invoice.id,
            "mbo": patient.mbo if patient is not None else "UNKNOWN",
            "hasSupplemental": "true" if patient is not None and patient.has_supplemental else "false",
            "amount": f"{Decimal(invoice.amount):.2f}",
            "referralId": invoice.referral_id or "DIRECT",
        })
    total = sum((Decimal(inv.amount) for inv in batch.invoices), Decimal("0.00"))
    content = render_template(
        "HZZO_BATCH_REPORT",
        {
            "batchType": batch.type,
            "batchId": batch.external_id,
            "institutionCode": settings.institution_code,
            "institutionName": settings.institution_name,
            "systemName": settings.system_name,
            "timestamp": utcnow().isoformat(),
            "totalAmount": f"{total:.2f}",
            "invoices": lines,
        },
    )
    logger.info("Generated fund report for batch %s (%s invoices)", batch.id, len(lines))
    return BatchReport(filename=f"HZZO_{batch.type}_{batch.external_id}.xml", content=content)
