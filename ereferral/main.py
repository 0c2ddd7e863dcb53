"""
FastAPI application exposing the e-referral compliance API.

Routes are thin: they resolve the session, the Central System client and
the caller's role, then delegate to the engines in ``ereferral.services``.
Business errors propagate as ``BaseAppException`` and are rendered by a
single exception handler.
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import List, Optional

from fastapi import Depends, FastAPI, Query, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response
from sqlalchemy.orm import Session

from ereferral import __version__
from ereferral.config import get_settings
from ereferral.enterprise import audit
from ereferral.enterprise.auth import UserContext, require_any_role, require_auth, require_role
from ereferral.exceptions import BaseAppException
from ereferral.models.database import Base, engine, get_db
from ereferral.models.schemas import (
    AppointmentCreate,
    AppointmentRead,
    AppointmentStatusUpdate,
    AppointmentUpdateResult,
    AuditMessageRead,
    BatchRead,
    BatchSubmitRequest,
    DocumentType,
    FindingRead,
    FindingUpsert,
    InsuranceRead,
    InternalReferralCreate,
    InternalReferralRead,
    InvoiceIssueRequest,
    InvoiceIssueResult,
    InvoiceRead,
    ReferralCreate,
    ReferralRead,
    StornoRequest,
    StornoResult,
    TakeoverRequest,
    TherapyRecommendationCreate,
    TherapyRecommendationRead,
)
from ereferral.services import appointments as appointment_service
from ereferral.services import billing as billing_service
from ereferral.services import patients as patient_service
from ereferral.services import referrals as referral_service
from ereferral.services import storno as storno_service
from ereferral.services.integration import CentralSystemClient, MockCentralSystem

settings = get_settings()

# Configure logging
logging.basicConfig(level=getattr(logging, settings.log_level.upper(), logging.INFO))
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Create all tables at startup.  In production you may use alembic migrations.
    Base.metadata.create_all(bind=engine)
    logger.info("e-referral API %s started (system %s)", __version__, settings.system_id)
    yield


app = FastAPI(title="e-Referral Compliance API", version=__version__, lifespan=lifespan)
app.state.central = MockCentralSystem()

# Allow cross-origin requests for development
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(BaseAppException)
async def handle_app_exception(request: Request, exc: BaseAppException):
    if exc.http_status >= 500:
        logger.warning("%s %s failed: %s", request.method, request.url.path, exc.message)
    return JSONResponse(status_code=exc.http_status, content=exc.to_dict())


def get_central_client(request: Request) -> CentralSystemClient:
    return request.app.state.central


clinical = require_any_role("doctor")


# ---------------------------------------------------------------------------
# Patients and referrals
# ---------------------------------------------------------------------------

@app.get("/patients/{mbo}/insurance", response_model=InsuranceRead)
def api_check_insurance(
    mbo: str,
    db: Session = Depends(get_db),
    central: CentralSystemClient = Depends(get_central_client),
    user: UserContext = Depends(clinical),
):
    """Look up insurance in the Central System and refresh the local cache."""
    info = patient_service.refresh_insurance(db, central, mbo)
    return InsuranceRead(
        mbo=info.mbo,
        policy_status=info.policy_status,
        has_supplemental=info.has_supplemental,
        insurance_category=info.insurance_category,
        first_name=info.first_name,
        last_name=info.last_name,
    )


@app.post("/referrals", response_model=ReferralRead, status_code=status.HTTP_201_CREATED)
def api_submit_referral(
    referral_in: ReferralCreate,
    db: Session = Depends(get_db),
    central: CentralSystemClient = Depends(get_central_client),
    user: UserContext = Depends(clinical),
):
    return referral_service.submit_referral(db, central, referral_in)


@app.get("/referrals", response_model=List[ReferralRead])
def api_list_referrals(
    department: Optional[str] = None,
    db: Session = Depends(get_db),
    user: UserContext = Depends(require_auth),
):
    """List referrals, newest first, optionally for one target department."""
    return referral_service.list_referrals(db, department)


@app.get("/referrals/{reference}", response_model=ReferralRead)
def api_get_referral(reference: str, db: Session = Depends(get_db), user: UserContext = Depends(require_auth)):
    """Retrieve a referral by internal or Central System id."""
    return referral_service.get_referral(db, reference)


@app.post("/referrals/{reference}/takeover", response_model=ReferralRead)
def api_takeover_referral(
    reference: str,
    takeover_in: TakeoverRequest,
    db: Session = Depends(get_db),
    central: CentralSystemClient = Depends(get_central_client),
    user: UserContext = Depends(clinical),
):
    return referral_service.takeover_referral(
        db, central, reference, takeover_in.doctor_id, takeover_in.institution_code
    )


@app.post("/referrals/{reference}/release", response_model=ReferralRead)
def api_release_referral(reference: str, db: Session = Depends(get_db), user: UserContext = Depends(clinical)):
    return referral_service.release_reservation(db, reference)


@app.post(
    "/referrals/{reference}/internal",
    response_model=InternalReferralRead,
    status_code=status.HTTP_201_CREATED,
)
def api_create_internal_referral(
    reference: str,
    referral_in: InternalReferralCreate,
    db: Session = Depends(get_db),
    user: UserContext = Depends(clinical),
):
    return referral_service.create_internal_referral(db, reference, referral_in)


@app.get("/referrals/{reference}/internal", response_model=List[InternalReferralRead])
def api_list_internal_referrals(reference: str, db: Session = Depends(get_db), user: UserContext = Depends(require_auth)):
    return referral_service.list_internal_referrals(db, reference)


@app.get("/referrals/{reference}/timeline", response_model=List[AuditMessageRead])
def api_referral_timeline(reference: str, db: Session = Depends(get_db), user: UserContext = Depends(require_auth)):
    """Audit entries of a referral, oldest first."""
    referral = referral_service.get_referral(db, reference)
    return audit.referral_timeline(db, referral.id)


# ---------------------------------------------------------------------------
# Appointments
# ---------------------------------------------------------------------------

@app.post("/appointments", response_model=AppointmentRead, status_code=status.HTTP_201_CREATED)
def api_book_appointment(
    appointment_in: AppointmentCreate,
    db: Session = Depends(get_db),
    central: CentralSystemClient = Depends(get_central_client),
    user: UserContext = Depends(clinical),
):
    return appointment_service.book_appointment(db, central, appointment_in)


@app.get("/appointments", response_model=List[AppointmentRead])
def api_list_appointments(db: Session = Depends(get_db), user: UserContext = Depends(require_auth)):
    return appointment_service.list_appointments(db)


@app.get("/appointments/{appointment_id}", response_model=AppointmentRead)
def api_get_appointment(appointment_id: str, db: Session = Depends(get_db), user: UserContext = Depends(require_auth)):
    return appointment_service.get_appointment(db, appointment_id)


@app.post("/appointments/{appointment_id}/sync", response_model=AppointmentRead)
def api_sync_calendar(
    appointment_id: str,
    db: Session = Depends(get_db),
    central: CentralSystemClient = Depends(get_central_client),
    user: UserContext = Depends(clinical),
):
    return appointment_service.sync_calendar(db, central, appointment_id)


@app.post("/appointments/{appointment_id}/status", response_model=AppointmentUpdateResult)
def api_update_appointment_status(
    appointment_id: str,
    status_in: AppointmentStatusUpdate,
    db: Session = Depends(get_db),
    central: CentralSystemClient = Depends(get_central_client),
    user: UserContext = Depends(clinical),
):
    """Change appointment status.  A failed auto-takeover is returned as a warning."""
    appointment, warnings = appointment_service.update_status(db, central, appointment_id, status_in.status)
    return AppointmentUpdateResult(appointment=AppointmentRead.model_validate(appointment), warnings=warnings)


@app.post("/appointments/{appointment_id}/cancel", response_model=AppointmentRead)
def api_cancel_appointment(appointment_id: str, db: Session = Depends(get_db), user: UserContext = Depends(clinical)):
    return appointment_service.cancel_appointment(db, appointment_id)


@app.delete("/appointments/{appointment_id}", status_code=status.HTTP_204_NO_CONTENT)
def api_delete_appointment(
    appointment_id: str, db: Session = Depends(get_db), user: UserContext = Depends(require_role("admin"))
):
    appointment_service.delete_appointment(db, appointment_id)


@app.post(
    "/appointments/{appointment_id}/recommendations",
    response_model=TherapyRecommendationRead,
    status_code=status.HTTP_201_CREATED,
)
def api_issue_recommendation(
    appointment_id: str,
    recommendation_in: TherapyRecommendationCreate,
    db: Session = Depends(get_db),
    central: CentralSystemClient = Depends(get_central_client),
    user: UserContext = Depends(clinical),
):
    return appointment_service.issue_therapy_recommendation(db, central, appointment_id, recommendation_in)


@app.post("/appointments/{appointment_id}/invoices", response_model=InvoiceIssueResult, status_code=status.HTTP_201_CREATED)
def api_invoice_appointment(
    appointment_id: str,
    db: Session = Depends(get_db),
    user: UserContext = Depends(require_any_role("billing", "doctor")),
):
    issued = billing_service.issue_appointment_invoices(db, appointment_id)
    return InvoiceIssueResult(
        invoices=[InvoiceRead.model_validate(inv) for inv in issued.invoices],
        copayment_amount=issued.copayment_amount,
    )


# ---------------------------------------------------------------------------
# Clinical findings
# ---------------------------------------------------------------------------

@app.put("/findings", response_model=FindingRead)
def api_upsert_finding(finding_in: FindingUpsert, db: Session = Depends(get_db), user: UserContext = Depends(clinical)):
    """Create or update the draft finding of a completed appointment."""
    return appointment_service.upsert_finding(db, finding_in)


@app.post("/findings/{finding_id}/send", response_model=FindingRead)
def api_send_finding(
    finding_id: str,
    db: Session = Depends(get_db),
    central: CentralSystemClient = Depends(get_central_client),
    user: UserContext = Depends(clinical),
):
    return appointment_service.send_finding(db, central, finding_id)


# ---------------------------------------------------------------------------
# Billing
# ---------------------------------------------------------------------------

@app.post("/invoices", response_model=InvoiceIssueResult, status_code=status.HTTP_201_CREATED)
def api_issue_invoices(
    issue_in: InvoiceIssueRequest,
    db: Session = Depends(get_db),
    user: UserContext = Depends(require_any_role("billing", "doctor")),
):
    issued = billing_service.issue_referral_invoices(db, issue_in.referral_id)
    return InvoiceIssueResult(
        invoices=[InvoiceRead.model_validate(inv) for inv in issued.invoices],
        copayment_amount=issued.copayment_amount,
    )


@app.get("/invoices/{invoice_id}", response_model=InvoiceRead)
def api_get_invoice(invoice_id: str, db: Session = Depends(get_db), user: UserContext = Depends(require_auth)):
    return billing_service.get_invoice(db, invoice_id)


@app.post("/batches", response_model=BatchRead, status_code=status.HTTP_201_CREATED)
def api_submit_batch(
    batch_in: BatchSubmitRequest,
    db: Session = Depends(get_db),
    central: CentralSystemClient = Depends(get_central_client),
    user: UserContext = Depends(require_role("billing")),
):
    """Send issued invoices as one batch; all of them change state or none do."""
    return billing_service.submit_batch(db, central, batch_in.invoice_ids, batch_in.batch_type)


@app.get("/batches/{batch_id}")
def api_batch_summary(batch_id: str, db: Session = Depends(get_db), user: UserContext = Depends(require_auth)):
    return billing_service.batch_summary(db, batch_id)


@app.get("/batches/{batch_id}/report")
def api_batch_report(batch_id: str, db: Session = Depends(get_db), user: UserContext = Depends(require_auth)):
    """Download a sent batch as the fund's XML report."""
    report = billing_service.batch_report(db, batch_id)
    return Response(
        content=report.content,
        media_type="application/xml",
        headers={"Content-Disposition": f'attachment; filename="{report.filename}"'},
    )


# ---------------------------------------------------------------------------
# Storno and audit
# ---------------------------------------------------------------------------

@app.post("/storno/{document_type}/{document_id}", response_model=StornoResult)
def api_storno(
    document_type: DocumentType,
    document_id: str,
    storno_in: Optional[StornoRequest] = None,
    db: Session = Depends(get_db),
    central: CentralSystemClient = Depends(get_central_client),
    user: UserContext = Depends(require_any_role("doctor", "billing")),
):
    """Reverse a referral, invoice or report within its storno window."""
    reason_code = storno_in.reason_code if storno_in else "CANCELLATION"
    outcome = storno_service.storno_document(db, central, document_type, document_id, reason_code)
    return StornoResult(
        document_type=outcome.document_type, document_id=outcome.document_id, message=outcome.message
    )


@app.get("/messages", response_model=List[AuditMessageRead])
def api_list_messages(
    limit: int = Query(100, gt=0, le=1000),
    db: Session = Depends(get_db),
    user: UserContext = Depends(require_auth),
):
    """Most recent Central System interactions."""
    return audit.list_messages(db, limit)
