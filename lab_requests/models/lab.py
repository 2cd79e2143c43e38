from uuid import uuid4

from sqlalchemy import String, Text
from sqlalchemy.orm import Mapped, mapped_column

from lab_requests.database import Base


class LabRecord(Base):
    __tablename__ = "labs"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=lambda: str(uuid4()))
    code: Mapped[str] = mapped_column(String(32), unique=True, index=True, nullable=False)
    patient_id: Mapped[str] = mapped_column(String(36), index=True, nullable=False)
    type: Mapped[str] = mapped_column(String(255), nullable=False)
    status: Mapped[str] = mapped_column(String(16), index=True, nullable=False, default="requested")
    result: Mapped[str | None] = mapped_column(Text, nullable=True)
    # JSON-encoded list of note strings, oldest first.
    notes: Mapped[str] = mapped_column(Text, nullable=False, default="[]")
    requested_on: Mapped[str] = mapped_column(String(32), nullable=False)
    completed_on: Mapped[str | None] = mapped_column(String(32), nullable=True)
    canceled_on: Mapped[str | None] = mapped_column(String(32), nullable=True)
