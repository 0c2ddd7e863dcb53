"""
Compliance guard layer.

Guards are stateless predicates evaluated before a mutating operation.  Each
returns a `GuardResult` naming the rule; `enforce` turns a denial into the
matching exception so callers fail before touching any row.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional

from ereferral.exceptions import PolicyViolation, UnsignedDependency
from ereferral.models.appointment import Appointment, ClinicalFinding
from ereferral.models.referral import Referral
from ereferral.models.schemas import ReferralCategory
from ereferral.services.integration import InsuranceInfo

logger = logging.getLogger(__name__)

RESTRICTED_CATEGORY = ReferralCategory.CONSULTATIVE


@dataclass(frozen=True)
class GuardResult:
    allowed: bool
    reason_code: Optional[str] = None
    message: Optional[str] = None
    unsigned: bool = False

    @classmethod
    def allow(cls) -> "GuardResult":
        return cls(True)

    @classmethod
    def deny(cls, reason_code: str, message: str, unsigned: bool = False) -> "GuardResult":
        return cls(False, reason_code, message, unsigned)


def enforce(result: GuardResult) -> None:
    if result.allowed:
        return
    logger.info("Guard %s denied: %s", result.reason_code, result.message)
    if result.unsigned:
        raise UnsignedDependency(result.message, code=result.reason_code)
    raise PolicyViolation(result.message, code=result.reason_code)


def can_derive_referral(referral: Referral) -> GuardResult:
    """Internal referrals may not be issued on a consultative (A1) referral."""
    if referral.category == RESTRICTED_CATEGORY:
        return GuardResult.deny(
            "A1_INTERNAL_REFERRAL_FORBIDDEN",
            "A1 consultative referral: the specialist cannot issue internal referrals based on it.",
        )
    return GuardResult.allow()


def can_recommend_therapy(appointment: Appointment) -> GuardResult:
    """Therapy recommendations are not allowed on appointments booked on an A1 referral."""
    category = appointment.referral_category
    if category is None and appointment.referral is not None:
        category = appointment.referral.category
    if category == RESTRICTED_CATEGORY:
        return GuardResult.deny(
            "A1_THERAPY_RECOMMENDATION_FORBIDDEN",
            "A1 consultative referral: the specialist cannot issue therapy recommendations based on it.",
        )
    return GuardResult.allow()


def insurance_allows_booking(info: InsuranceInfo) -> GuardResult:
    if not info.is_active:
        return GuardResult.deny(
            "INSURANCE_INACTIVE",
            f"Appointment rejected: insurance of patient {info.mbo} is {info.policy_status}.",
        )
    return GuardResult.allow()


def finding_is_mutable(finding: Optional[ClinicalFinding]) -> GuardResult:
    """A signed finding can only be edited after a storno reopens it."""
    if finding is not None and finding.is_signed:
        return GuardResult.deny(
            "FINDING_ALREADY_SIGNED",
            "A signed clinical finding already exists. Perform storno first to edit it.",
        )
    return GuardResult.allow()


def finding_is_billable(appointment: Appointment) -> GuardResult:
    finding = appointment.finding
    if finding is None or not finding.is_signed:
        return GuardResult.deny(
            "FINDING_NOT_SIGNED",
            f"Cannot issue an invoice for appointment {appointment.id}: its clinical finding is not signed.",
            unsigned=True,
        )
    return GuardResult.allow()


def appointment_is_cancellable(appointment: Appointment) -> GuardResult:
    if appointment.finding is not None and appointment.finding.is_signed:
        return GuardResult.deny(
            "APPOINTMENT_HAS_SIGNED_FINDING",
            f"Appointment {appointment.id} has a signed clinical finding and cannot be cancelled or deleted.",
        )
    return GuardResult.allow()
