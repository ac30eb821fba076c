"""
Session persistence for diagnosis flows.

create() and get() raise SQLAlchemyError. Every other write is best-effort:
commit() is last-write-wins and upserts unknown ids, and failures are logged
and reported as False instead of raised.
"""
import logging
import uuid
from typing import Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import sessionmaker

from .db_models import DiagnosticSession
from .models import DiagnosisResult, SessionInputs, SessionStatus

logger = logging.getLogger(__name__)

ANALYSIS_COLUMNS = ("image_analysis", "description_analysis")


class SessionStore:
    def __init__(self, session_factory: sessionmaker):
        self.session_factory = session_factory

    def create(self, user_id: Optional[str], inputs: SessionInputs, session_id: Optional[str] = None) -> DiagnosticSession:
        with self.session_factory() as db:
            record = DiagnosticSession(
                id=session_id or str(uuid.uuid4()),
                user_id=user_id,
                status=SessionStatus.PENDING.value,
                description=inputs.description,
                device_category=inputs.device_category,
                image_refs=list(inputs.image_refs),
            )
            db.add(record)
            db.commit()
            db.refresh(record)
            db.expunge(record)
        return record

    def get(self, session_id: str) -> Optional[DiagnosticSession]:
        with self.session_factory() as db:
            record = db.get(DiagnosticSession, session_id)
            if record is not None:
                db.expunge(record)
            return record

    def save_analysis(self, session_id: str, kind: str, analysis: dict) -> bool:
        """Store an image_analysis or description_analysis payload. Never raises."""
        if kind not in ANALYSIS_COLUMNS:
            raise ValueError(f"Unknown analysis kind: {kind}")
        try:
            with self.session_factory() as db:
                record = db.get(DiagnosticSession, session_id)
                if record is None:
                    return False
                setattr(record, kind, analysis)
                db.commit()
            return True
        except SQLAlchemyError as e:
            logger.error(f"Failed to store {kind} for session {session_id}: {e}")
            return False

    def mark_analyzing(self, session_id: str) -> bool:
        return self._set_status(session_id, SessionStatus.ANALYZING)

    def mark_failed(self, session_id: str) -> bool:
        return self._set_status(session_id, SessionStatus.FAILED)

    def _set_status(self, session_id: str, status: SessionStatus) -> bool:
        try:
            with self.session_factory() as db:
                record = db.get(DiagnosticSession, session_id)
                if record is None:
                    return False
                record.status = status.value
                db.commit()
            return True
        except SQLAlchemyError as e:
            logger.error(f"Failed to set session {session_id} to {status.value}: {e}")
            return False

    def commit(
        self,
        session_id: str,
        result: Optional[DiagnosisResult],
        source: Optional[str],
        status: SessionStatus = SessionStatus.COMPLETED,
        user_id: Optional[str] = None,
        inputs: Optional[SessionInputs] = None,
    ) -> bool:
        """Write the final result for a session. Never raises."""
        try:
            with self.session_factory() as db:
                record = db.get(DiagnosticSession, session_id)
                if record is None:
                    record = DiagnosticSession(id=session_id, user_id=user_id)
                    if inputs is not None:
                        record.description = inputs.description
                        record.device_category = inputs.device_category
                        record.image_refs = list(inputs.image_refs)
                    db.add(record)
                record.result = result.to_wire() if result is not None else None
                record.source = source
                record.status = status.value
                db.commit()
            logger.info(f"Session {session_id} committed: {status.value} via {source}")
            return True
        except SQLAlchemyError as e:
            logger.error(f"Failed to commit session {session_id}: {e}")
            return False
