"""
API-key authentication for the e-referral API.

Each caller presents an ``X-API-Key`` header that maps to one staff role:
``doctor`` for clinical work, ``billing`` for invoices and batches,
``auditor`` for read-only access to the audit trail, and ``admin``, which
passes every role check and alone may hard-delete appointments.
"""

from dataclasses import dataclass

from fastapi import Depends, Header, HTTPException

ADMIN_ROLE = "admin"


@dataclass
class UserContext:
    api_key: str
    role: str

    @property
    def is_admin(self) -> bool:
        return self.role == ADMIN_ROLE


# Development keys; deployments replace this table.
ENTERPRISE_KEYS = {
    "dev-admin-key": ADMIN_ROLE,
    "dev-doctor-key": "doctor",
    "dev-billing-key": "billing",
    "dev-auditor-key": "auditor",
}


def require_auth(x_api_key: str = Header(...)) -> UserContext:
    role = ENTERPRISE_KEYS.get(x_api_key)
    if role is None:
        raise HTTPException(status_code=401, detail="Invalid API key")
    return UserContext(api_key=x_api_key, role=role)


def require_role(required: str):
    return require_any_role(required)


def require_any_role(*allowed: str):
    """Dependency accepting a caller whose role is one of ``allowed``.

    ``admin`` passes every check.
    """
    def checker(user: UserContext = Depends(require_auth)) -> UserContext:
        if not user.is_admin and user.role not in allowed:
            raise HTTPException(
                status_code=403,
                detail=f"Requires role: {' or '.join(allowed)}"
            )
        return user
    return checker
