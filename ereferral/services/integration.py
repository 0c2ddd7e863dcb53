"""
Integration layer for the Central System (national health-insurance interchange).

Engines talk to the Central System only through `CentralSystemClient`.  The
real transport (SOAP/REST, signatures, schema validation) is not part of this
package; `MockCentralSystem` acknowledges calls in process so the rest of the
application can run end to end.  It holds no referral, appointment or invoice
state: that lives in the database only.
"""

from __future__ import annotations

import abc
import logging
import uuid
from dataclasses import dataclass, replace
from datetime import date, timedelta
from typing import Dict, Iterable, List, Optional, Tuple

logger = logging.getLogger(__name__)


class CentralSystemError(RuntimeError):
    """Raised when the Central System rejects a call or cannot be reached."""


@dataclass
class InsuranceInfo:
    """Insurance record returned by the OsigInfo lookup."""

    mbo: str
    policy_status: str
    has_supplemental: bool
    insurance_category: Optional[str] = "AO"
    first_name: str = "Test"
    last_name: str = "Patient"
    birth_date: Optional[date] = None
    gender: Optional[str] = None
    policy_number: Optional[str] = None
    valid_until: Optional[date] = None

    @property
    def is_active(self) -> bool:
        return self.policy_status == "ACTIVE"


class CentralSystemClient(abc.ABC):
    """Operations the compliance layer needs from the Central System."""

    @abc.abstractmethod
    def submit_referral(self, payload: str) -> str:
        """Submit a referral; returns the Central-assigned referral id."""

    @abc.abstractmethod
    def takeover_referral(self, payload: str) -> str:
        """Claim a referral for the institution; returns an acknowledgment id."""

    @abc.abstractmethod
    def sync_calendar(self, appointment_id: str) -> str:
        """Register an appointment with the central calendar; returns its slot id."""

    @abc.abstractmethod
    def send_finding(self, payload: str) -> str:
        """Transmit a signed finding; returns the Central-assigned finding id."""

    @abc.abstractmethod
    def send_storno(self, payload: str) -> str:
        """Request reversal of a document; returns an acknowledgment id."""

    @abc.abstractmethod
    def submit_batch(self, payload: str) -> str:
        """Submit an invoice batch envelope; returns the Central batch id."""

    @abc.abstractmethod
    def lookup_insurance(self, mbo: str) -> InsuranceInfo:
        """Fetch the current insurance record of a patient."""

    @abc.abstractmethod
    def issue_recommendation(self, payload: str) -> str:
        """Register a therapy recommendation; returns its Central id."""


def _default_insurance() -> Dict[str, InsuranceInfo]:
    return {
        "123456789": InsuranceInfo(
            mbo="123456789", policy_status="ACTIVE", has_supplemental=True,
            first_name="Ivan", last_name="Horvat", birth_date=date(1985, 5, 15), gender="M",
        ),
        "987654321": InsuranceInfo(
            mbo="987654321", policy_status="ACTIVE", has_supplemental=False,
            first_name="Ana", last_name="Kovač", birth_date=date(1990, 3, 2), gender="F",
        ),
        "000000000": InsuranceInfo(
            mbo="000000000", policy_status="INACTIVE", has_supplemental=False,
            first_name="Petar", last_name="Babić", birth_date=date(1970, 1, 1), gender="M",
        ),
    }


class MockCentralSystem(CentralSystemClient):
    """In-process stand-in for the Central System.

    ``fail_on`` names operations (method names) that should be rejected,
    which is how tests simulate an unreachable or refusing remote side.
    """

    def __init__(
        self,
        insurance: Optional[Dict[str, InsuranceInfo]] = None,
        fail_on: Iterable[str] = (),
    ) -> None:
        self.insurance = _default_insurance()
        if insurance:
            self.insurance.update(insurance)
        self.fail_on = set(fail_on)
        # Outbound traffic as (operation, payload); a wire log, not entity state.
        self.sent: List[Tuple[str, str]] = []

    def _call(self, operation: str, payload: str) -> None:
        if operation in self.fail_on:
            logger.info("Central System rejected %s", operation)
            raise CentralSystemError(f"Central System rejected {operation}")
        logger.info("Central System accepted %s", operation)
        self.sent.append((operation, payload))

    @staticmethod
    def _new_id(prefix: str) -> str:
        return f"{prefix}-{uuid.uuid4().hex[:10].upper()}"

    def submit_referral(self, payload: str) -> str:
        self._call("submit_referral", payload)
        return self._new_id("REF")

    def takeover_referral(self, payload: str) -> str:
        self._call("takeover_referral", payload)
        return self._new_id("TKO")

    def sync_calendar(self, appointment_id: str) -> str:
        self._call("sync_calendar", appointment_id)
        return self._new_id("SK")

    def send_finding(self, payload: str) -> str:
        self._call("send_finding", payload)
        return self._new_id("CEZIH-NAL")

    def send_storno(self, payload: str) -> str:
        self._call("send_storno", payload)
        return self._new_id("STR")

    def submit_batch(self, payload: str) -> str:
        self._call("submit_batch", payload)
        return self._new_id("BCH")

    def lookup_insurance(self, mbo: str) -> InsuranceInfo:
        mbo = mbo.strip()
        self._call("lookup_insurance", mbo)
        info = self.insurance.get(mbo)
        if info is None:
            info = InsuranceInfo(mbo=mbo, policy_status="ACTIVE", has_supplemental=True)
        policy_number = info.policy_number or f"HZZO-{mbo[:6]}"
        valid_until = info.valid_until
        if valid_until is None and info.is_active:
            valid_until = date.today() + timedelta(days=365)
        return replace(info, policy_number=policy_number, valid_until=valid_until)

    def issue_recommendation(self, payload: str) -> str:
        self._call("issue_recommendation", payload)
        return self._new_id("REC")
