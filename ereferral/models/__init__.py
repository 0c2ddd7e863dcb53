# Import ORM modules so every mapper is registered before relationships resolve.
from ereferral.models import appointment, audit, billing, patient, referral  # noqa: F401
