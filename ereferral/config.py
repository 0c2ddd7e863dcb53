"""
Runtime configuration.

Values come from environment variables so that the same build can point at a
test interchange or a production one.  Regulatory constants (tariffs, storno
windows) are not configurable and live next to the code that applies them.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from functools import lru_cache
from typing import Dict, Optional


def _parse_department_map(raw: str) -> Dict[str, str]:
    """Parse ``"Radiology=DR-RAD-01,Cardiology=DR-CAR-02"`` into a dict."""
    mapping: Dict[str, str] = {}
    for item in raw.split(","):
        item = item.strip()
        if not item or "=" not in item:
            continue
        department, doctor_id = item.split("=", 1)
        mapping[department.strip()] = doctor_id.strip()
    return mapping


@dataclass(frozen=True)
class Settings:
    database_url: str = "sqlite:///./ereferral.db"
    system_id: str = "WBS-PLAT-01"
    system_name: str = "WBS platform"
    institution_code: str = "12345678"
    institution_name: str = "WBS test"
    default_doctor_id: str = "DR-WBS-01"
    department_doctor_ids: Dict[str, str] = field(default_factory=dict)
    log_level: str = "INFO"

    def doctor_for_department(self, department: Optional[str]) -> str:
        """Staff identity that acts on behalf of a department."""
        if department and department in self.department_doctor_ids:
            return self.department_doctor_ids[department]
        return self.default_doctor_id


def load_settings() -> Settings:
    return Settings(
        database_url=os.getenv("DATABASE_URL", "sqlite:///./ereferral.db"),
        system_id=os.getenv("CENTRAL_SYSTEM_ID", "WBS-PLAT-01"),
        system_name=os.getenv("CENTRAL_SYSTEM_NAME", "WBS platform"),
        institution_code=os.getenv("INSTITUTION_CODE", "12345678"),
        institution_name=os.getenv("INSTITUTION_NAME", "WBS test"),
        default_doctor_id=os.getenv("DEFAULT_DOCTOR_ID", "DR-WBS-01"),
        department_doctor_ids=_parse_department_map(os.getenv("DEPARTMENT_DOCTOR_IDS", "")),
        log_level=os.getenv("LOG_LEVEL", "INFO"),
    )


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return load_settings()
