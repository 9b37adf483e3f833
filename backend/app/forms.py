"""Form metadata lookups backed by the ``forms`` table."""
import json
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import List, Optional

from sqlalchemy.orm import Session

from .models import FormRecord


@dataclass(frozen=True)
class FormInfo:
    form_id: str
    owner_id: str
    title: str
    short_id: str
    required_question_ids: List[str] = field(default_factory=list)


def _to_info(record: FormRecord) -> FormInfo:
    return FormInfo(
        form_id=record.form_id,
        owner_id=record.owner_id,
        title=record.title,
        short_id=record.short_id,
        required_question_ids=json.loads(record.required_question_ids_json or "[]"),
    )


class FormDirectory:
    """Read access to form metadata owned by the form editor.

    ``register`` exists only for the admin seeding endpoint; intake and
    analytics never write here.
    """

    def __init__(self, db: Session):
        self.db = db

    def resolve(self, form_id: str) -> Optional[FormInfo]:
        """Look a form up by its id or its public short id.  An exact form id
        match wins over another form's short id."""
        if not form_id:
            return None
        record = self.db.query(FormRecord).filter(FormRecord.form_id == form_id).first()
        if record is None:
            record = self.db.query(FormRecord).filter(FormRecord.short_id == form_id).first()
        return _to_info(record) if record else None

    def list_owned(self, owner_id: str) -> List[FormInfo]:
        records = (
            self.db.query(FormRecord)
            .filter(FormRecord.owner_id == owner_id)
            .order_by(FormRecord.created_ts_utc, FormRecord.id)
            .all()
        )
        return [_to_info(r) for r in records]

    def register(
        self,
        form_id: str,
        owner_id: str,
        title: str,
        short_id: str,
        required_question_ids: List[str],
    ) -> FormInfo:
        existing = self.db.query(FormRecord).filter(FormRecord.form_id == form_id).first()
        if existing:
            existing.owner_id = owner_id
            existing.title = title
            existing.short_id = short_id
            existing.required_question_ids_json = json.dumps(required_question_ids)
            record = existing
        else:
            record = FormRecord(
                form_id=form_id,
                owner_id=owner_id,
                title=title,
                short_id=short_id,
                required_question_ids_json=json.dumps(required_question_ids),
                created_ts_utc=datetime.now(timezone.utc).isoformat(),
            )
            self.db.add(record)
        self.db.commit()
        return _to_info(record)
