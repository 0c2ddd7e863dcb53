"""
Append-only audit log of Central System interactions.

`record_message` only adds the entry to the caller's session.  The caller
commits it together with the entity change it describes, so the log and the
entity state can never disagree.
"""

from __future__ import annotations

import json
import logging
from typing import Any, List, Optional, Union

from sqlalchemy.orm import Session

from ereferral.models.audit import AuditMessage
from ereferral.models.schemas import MessageDirection, MessageStatus, MessageType

logger = logging.getLogger(__name__)


def _as_text(value: Any) -> Optional[str]:
    if value is None or isinstance(value, str):
        return value
    return json.dumps(value, default=str)


def record_message(
    db: Session,
    type: MessageType,
    direction: MessageDirection,
    status: MessageStatus,
    payload: Union[str, dict],
    response: Union[str, dict, None] = None,
    error_message: Optional[str] = None,
    patient_mbo: Optional[str] = None,
    referral_id: Optional[str] = None,
    invoice_id: Optional[str] = None,
    appointment_id: Optional[str] = None,
) -> AuditMessage:
    entry = AuditMessage(
        type=type,
        direction=direction,
        status=status,
        payload=_as_text(payload),
        response=_as_text(response),
        error_message=error_message,
        patient_mbo=patient_mbo,
        referral_id=referral_id,
        invoice_id=invoice_id,
        appointment_id=appointment_id,
    )
    db.add(entry)
    logger.debug("Audit %s %s %s referral=%s invoice=%s", type.value, direction.value, status.value, referral_id, invoice_id)
    return entry


def list_messages(db: Session, limit: int = 100) -> List[AuditMessage]:
    """Most recent entries first."""
    return (
        db.query(AuditMessage)
        .order_by(AuditMessage.created_at.desc(), AuditMessage.id.desc())
        .limit(limit)
        .all()
    )


def referral_timeline(db: Session, referral_id: str) -> List[AuditMessage]:
    """Entries about one referral, oldest first."""
    return (
        db.query(AuditMessage)
        .filter(AuditMessage.referral_id == referral_id)
        .order_by(AuditMessage.created_at.asc(), AuditMessage.id.asc())
        .all()
    )


def messages_for(
    db: Session,
    patient_mbo: Optional[str] = None,
    invoice_id: Optional[str] = None,
    appointment_id: Optional[str] = None,
) -> List[AuditMessage]:
    """Entries about a patient, invoice or appointment, oldest first."""
    query = db.query(AuditMessage)
    if patient_mbo is not None:
        query = query.filter(AuditMessage.patient_mbo == patient_mbo)
    if invoice_id is not None:
        query = query.filter(AuditMessage.invoice_id == invoice_id)
    if appointment_id is not None:
        query = query.filter(AuditMessage.appointment_id == appointment_id)
    return query.order_by(AuditMessage.created_at.asc(), AuditMessage.id.asc()).all()
