import uuid
from datetime import datetime, timezone

from sqlalchemy import (
    Column,
    String,
    Boolean,
    Date,
    DateTime,
    JSON,
    Integer,
    Text,
)

from .database import Base


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class RepairRecord(Base):
    """One row of the fixed repair knowledge base, keyed by device category."""
    __tablename__ = "repair_records"
    id = Column(Integer, primary_key=True, autoincrement=True)
    category = Column(String, nullable=False, index=True)
    title = Column(String, nullable=False)
    symptoms = Column(Text, default="")
    diagnosis = Column(Text, default="")
    reason = Column(Text, default="")
    fix_steps = Column(Text, default="")
    tools_needed = Column(Text, default="")
    estimated_cost = Column(String, nullable=True)
    tip = Column(Text, nullable=True)

    def searchable_text(self) -> str:
        parts = [
            self.title, self.symptoms, self.diagnosis, self.reason,
            self.fix_steps, self.tools_needed, self.tip,
        ]
        return " ".join(p for p in parts if p).lower()


class DiagnosticSession(Base):
    __tablename__ = "diagnostic_sessions"
    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    user_id = Column(String, nullable=True, index=True)
    status = Column(String, nullable=False, default="pending")
    description = Column(Text, nullable=False, default="")
    device_category = Column(String, nullable=False, default="device")
    image_refs = Column(JSON, default=list)
    image_analysis = Column(JSON, nullable=True)
    description_analysis = Column(JSON, nullable=True)
    result = Column(JSON, nullable=True)
    source = Column(String, nullable=True)
    created_at = Column(DateTime, default=_utcnow)
    updated_at = Column(DateTime, default=_utcnow, onupdate=_utcnow)


class Profile(Base):
    """Per-user entitlement record. Rows are created by the identity provider's signup hook."""
    __tablename__ = "profiles"
    id = Column(String, primary_key=True)
    is_premium = Column(Boolean, nullable=False, default=False)
    remaining_quota = Column(Integer, nullable=False, default=0)
    quota_reset_on = Column(Date, nullable=True)
