from lab_requests.models.lab import LabRecord
from lab_requests.models.patient import PatientRecord
from lab_requests.models.user import User, UserPermission, UserSession

__all__ = [
    "User",
    "UserSession",
    "UserPermission",
    "LabRecord",
    "PatientRecord",
]
