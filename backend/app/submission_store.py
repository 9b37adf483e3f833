"""Persistent store of individual submission records."""
import json
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session

from .errors import StorageUnavailable
from .models import SubmissionRecord


class SubmissionRecordStore:
    """Owns the ``submissions`` rows.

    Records are insert-only: there is no update method, and a
    respondent who submits again creates a new record.  ``save`` flushes but
    does not commit; the caller owns the transaction.
    """

    def __init__(self, db: Session):
        self.db = db

    def save(
        self,
        form_id: str,
        answers: List[Dict[str, Any]],
        metadata: Dict[str, Any],
        status: str,
        completion_time_ms: Optional[int] = None,
        idempotency_key: Optional[str] = None,
    ) -> SubmissionRecord:
        record = SubmissionRecord(
            submission_id=uuid.uuid4().hex,
            form_id=form_id,
            answers_json=json.dumps(answers),
            metadata_json=json.dumps(metadata),
            status=status,
            completion_time_ms=completion_time_ms,
            idempotency_key=idempotency_key,
            created_ts_utc=datetime.now(timezone.utc).isoformat(),
        )
        self.db.add(record)
        try:
            self.db.flush()
        except OperationalError as e:
            raise StorageUnavailable("Submission storage is unavailable") from e
        return record

    def get(self, submission_id: str) -> Optional[SubmissionRecord]:
        return self.db.query(SubmissionRecord).filter(
            SubmissionRecord.submission_id == submission_id
        ).first()

    def find_by_idempotency_key(self, form_id: str, key: str) -> Optional[SubmissionRecord]:
        return self.db.query(SubmissionRecord).filter(
            SubmissionRecord.form_id == form_id,
            SubmissionRecord.idempotency_key == key,
        ).first()

    def list_for_form(
        self,
        form_id: str,
        status: Optional[str] = None,
        device_type: Optional[str] = None,
        browser: Optional[str] = None,
        limit: int = 100,
    ) -> List[SubmissionRecord]:
        """Newest first.  Metadata filters are applied after the status
        filter since metadata is stored as opaque JSON."""
        query = self.db.query(SubmissionRecord).filter(
            SubmissionRecord.form_id == form_id
        )
        if status:
            query = query.filter(SubmissionRecord.status == status)
        query = query.order_by(
            SubmissionRecord.created_ts_utc.desc(), SubmissionRecord.id.desc()
        )

        if not device_type and not browser:
            return query.limit(limit).all()

        matched = []
        for record in query:
            metadata = json.loads(record.metadata_json)
            if device_type and metadata.get("deviceType") != device_type:
                continue
            if browser and metadata.get("browser") != browser:
                continue
            matched.append(record)
            if len(matched) >= limit:
                break
        return matched
