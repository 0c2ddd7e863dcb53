"""
Pydantic models and enums used throughout the e-referral API.

Statuses are closed enumerations; services never compare raw status strings.
The enum values are the labels exchanged with the Central System and shown to
staff, so referral statuses keep their Croatian wording.
"""

from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field


class ReferralStatus(str, Enum):
    """Lifecycle state of a referral."""
    SENT = "POSLANA"               # Initial state after acknowledged submission
    RESERVED = "REZERVIRANA"       # Linked to a central calendar slot
    IN_PROGRESS = "U OBRADI"       # Taken over by a specialist
    REALIZED = "REALIZIRANA"       # Finding transmitted; terminal success
    CANCELLED = "STORNIRANA"       # Reversed; terminal
    CANCEL_FAILED = "STORNO_FAILED"  # Reversal rejected; storno may be retried
    EXPIRED = "ISTEKLA"            # Set by the Central System


class ReferralCategory(str, Enum):
    CONSULTATIVE = "A1"
    CONSULTATIVE_WITH_DIAGNOSTICS = "A2"
    FULL_TREATMENT = "C1"
    CONTINUED_TREATMENT = "C2"
    DIAGNOSTICS = "D1"
    HOSPITALIZATION = "B1"


class AppointmentStatus(str, Enum):
    SCHEDULED = "scheduled"
    CONFIRMED = "confirmed"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class InvoiceStatus(str, Enum):
    ISSUED = "ISSUED"
    SENT = "SENT_TO_CENTRAL"
    CANCELLED = "STORNIRANA"
    CANCEL_FAILED = "STORNO_FAILED"


class InvoicePayer(str, Enum):
    FUND = "HZZO"
    PATIENT = "PATIENT"


class InvoiceType(str, Enum):
    INSTITUTIONAL = "SKZZ"
    COPAYMENT = "COP_PATIENT"


class BatchStatus(str, Enum):
    PROCESSING = "PROCESSING"
    SENT = "SENT"
    FAILED = "FAILED"


class MessageDirection(str, Enum):
    OUTGOING = "OUTGOING"
    INCOMING = "INCOMING"


class MessageStatus(str, Enum):
    SENT = "SENT"
    FAILED = "FAILED"
    PENDING = "PENDING"


class MessageType(str, Enum):
    CHECK_INSURANCE = "CHECK_INSURANCE"
    SEND_REFERRAL = "SEND_REFERRAL"
    TAKEOVER = "TAKEOVER"
    CALENDAR_SYNC = "CALENDAR_SYNC"
    SEND_FINDING = "SEND_FINDING"
    RELEASE_RESERVATION = "RELEASE_RESERVATION"
    STORNO_REQUEST = "STORNO_REQUEST"
    ISSUE_INVOICE = "ISSUE_INVOICE"
    SEND_INVOICE = "SEND_INVOICE"
    THERAPY_RECOMMENDATION = "THERAPY_RECOMMENDATION"


class DocumentType(str, Enum):
    """Documents the storno engine can reverse."""
    REFERRAL = "REFERRAL"
    INVOICE = "INVOICE"
    REPORT = "REPORT"


# ---------------------------------------------------------------------------
# Referrals
# ---------------------------------------------------------------------------

class ReferralCreate(BaseModel):
    patient_mbo: str = Field(..., min_length=1, description="Patient insurance number (MBO)")
    patient_name: str = Field(..., min_length=1)
    diagnosis_code: str = Field(..., description="MKB-10 code")
    diagnosis_name: Optional[str] = None
    procedure_code: str
    procedure_name: Optional[str] = None
    target_department: str
    category: ReferralCategory = ReferralCategory.CONSULTATIVE
    note: Optional[str] = None
    doctor_id: Optional[str] = Field(None, description="Referring doctor; defaults to the configured one")
    birth_date: Optional[date] = None


class ReferralRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    external_id: Optional[str]
    patient_id: str
    diagnosis_code: str
    diagnosis_name: Optional[str]
    procedure_code: str
    procedure_name: Optional[str]
    target_department: str
    category: ReferralCategory
    note: Optional[str]
    status: ReferralStatus
    is_taken_over: bool
    taken_over_by: Optional[str]
    taken_over_at: Optional[datetime]
    created_at: datetime


class TakeoverRequest(BaseModel):
    doctor_id: str
    institution_code: Optional[str] = None


class InternalReferralCreate(BaseModel):
    category: ReferralCategory
    procedure_code: str
    procedure_name: Optional[str] = None
    department: str
    note: Optional[str] = None


class InternalReferralRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    original_referral_id: str
    patient_id: str
    category: ReferralCategory
    procedure_code: str
    procedure_name: Optional[str]
    diagnosis_code: str
    department: str
    note: Optional[str]
    created_at: datetime


# ---------------------------------------------------------------------------
# Appointments and findings
# ---------------------------------------------------------------------------

class AppointmentCreate(BaseModel):
    patient_mbo: str = Field(..., min_length=1)
    referral_id: Optional[str] = None
    start_time: datetime
    end_time: datetime


class AppointmentStatusUpdate(BaseModel):
    status: AppointmentStatus


class AppointmentRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    patient_id: str
    referral_id: Optional[str]
    start_time: datetime
    end_time: datetime
    status: AppointmentStatus
    calendar_id: Optional[str]
    calendar_synced_at: Optional[datetime]
    referral_diagnosis: Optional[str]
    referral_procedure: Optional[str]
    referral_category: Optional[ReferralCategory]
    referral_note: Optional[str]
    insurance_status: Optional[str]
    insurance_category: Optional[str]
    has_supplemental: Optional[bool]


class AppointmentUpdateResult(BaseModel):
    appointment: AppointmentRead
    warnings: List[str] = Field(default_factory=list)


class FindingUpsert(BaseModel):
    appointment_id: str
    anamnesis: Optional[str] = None
    status_praesens: Optional[str] = None
    therapy: Optional[str] = None


class FindingRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    appointment_id: str
    anamnesis: Optional[str]
    status_praesens: Optional[str]
    therapy: Optional[str]
    external_id: Optional[str]
    signed_at: Optional[datetime]
    created_at: datetime


class TherapyRecommendationCreate(BaseModel):
    medicine_code: str
    dosage: str
    duration: Optional[str] = None
    note: Optional[str] = None


class TherapyRecommendationRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    appointment_id: str
    patient_id: str
    medicine_code: str
    dosage: str
    duration: Optional[str]
    note: Optional[str]
    external_id: Optional[str]


# ---------------------------------------------------------------------------
# Billing
# ---------------------------------------------------------------------------

class InvoiceIssueRequest(BaseModel):
    referral_id: str


class InvoiceRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    referral_id: Optional[str]
    appointment_id: Optional[str]
    amount: Decimal
    payer: InvoicePayer
    payer_name: Optional[str]
    type: InvoiceType
    description: Optional[str]
    status: InvoiceStatus
    batch_id: Optional[str]
    external_id: Optional[str]
    sent_at: Optional[datetime]
    created_at: datetime


class InvoiceIssueResult(BaseModel):
    invoices: List[InvoiceRead]
    copayment_amount: Decimal


class BatchSubmitRequest(BaseModel):
    invoice_ids: List[str] = Field(..., min_length=1)
    batch_type: str = "HZZO_F1"


class BatchRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    type: str
    status: BatchStatus
    external_id: Optional[str]
    sent_at: Optional[datetime]
    created_at: datetime


# ---------------------------------------------------------------------------
# Storno and audit
# ---------------------------------------------------------------------------

class StornoRequest(BaseModel):
    reason_code: str = "CANCELLATION"


class StornoResult(BaseModel):
    document_type: DocumentType
    document_id: str
    message: str


class AuditMessageRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    type: MessageType
    direction: MessageDirection
    status: MessageStatus
    payload: str
    response: Optional[str]
    error_message: Optional[str]
    patient_mbo: Optional[str]
    referral_id: Optional[str]
    invoice_id: Optional[str]
    appointment_id: Optional[str]
    created_at: datetime


class InsuranceRead(BaseModel):
    mbo: str
    policy_status: str
    has_supplemental: bool
    insurance_category: Optional[str] = None
    first_name: Optional[str] = None
    last_name: Optional[str] = None
