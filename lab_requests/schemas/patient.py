from datetime import date

from pydantic import BaseModel


class PatientSummary(BaseModel):
    """Read-only patient context shown next to a lab request."""
    id: str
    full_name: str
    code: str | None = None
    sex: str | None = None
    date_of_birth: date | None = None
