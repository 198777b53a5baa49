"""Records, optimistic entries and change events."""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional

from pydantic import BaseModel, Field, field_validator

PROVISIONAL_PREFIX = "temp-"


def naive_utc(value: datetime) -> datetime:
    """Backend timestamps arrive tz-aware; local ones are naive UTC."""
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


class Record(BaseModel):
    """A single entity fetched from or written to the remote store."""

    id: str                                 # Immutable for the record's lifetime
    created_at: datetime                    # Ordering key, never mutated
    fields: Dict[str, Any] = {}

    @field_validator("created_at")
    @classmethod
    def _naive_utc(cls, value: datetime) -> datetime:
        return naive_utc(value)

    @classmethod
    def from_row(
        cls,
        row: dict,
        id_field: str = "id",
        order_field: str = "created_at",
    ) -> "Record":
        """Build a Record from a flat backend row."""
        if id_field not in row or row[id_field] is None:
            raise KeyError(f"Row has no '{id_field}' column")
        created = row.get(order_field)
        if created is None:
            created = datetime.utcnow()
        fields = {
            k: v for k, v in row.items() if k not in (id_field, order_field)
        }
        return cls(id=str(row[id_field]), created_at=created, fields=fields)

    def to_row(self, id_field: str = "id", order_field: str = "created_at") -> dict:
        """Flatten back into a backend-shaped row."""
        row = dict(self.fields)
        row[id_field] = self.id
        row[order_field] = self.created_at.isoformat()
        return row

    def get(self, field: str, default: Any = None) -> Any:
        if field == "id":
            return self.id
        if field == "created_at":
            return self.created_at
        return self.fields.get(field, default)

    @property
    def is_provisional(self) -> bool:
        return self.id.startswith(PROVISIONAL_PREFIX)


class OptimisticKind(str, Enum):
    INSERT = "insert"
    UPDATE = "update"
    DELETE = "delete"


class OptimisticRecord(BaseModel):
    """
    Handle for a local change applied before remote confirmation.

    For inserts, ``record`` carries a provisional id. For updates and deletes,
    ``previous`` holds the last authoritative version of the entry, so a
    rollback restores what the backend most recently reported. ``patch`` is
    the local change an update lays on top of it.
    """

    handle: str
    kind: OptimisticKind = OptimisticKind.INSERT
    record: Record
    previous: Optional[Record] = None
    patch: Dict[str, Any] = {}
    pending: bool = True
    created_at: datetime = Field(default_factory=datetime.utcnow)


class ChangeKind(str, Enum):
    INSERTED = "inserted"
    UPDATED = "updated"
    DELETED = "deleted"


class ChangeEvent(BaseModel):
    """
    A discrete change notification from a table's change feed.

    ``context`` carries whatever the feed knows about the affected row beyond
    the record itself (the old row for updates/deletes, foreign keys).
    """

    kind: ChangeKind
    table: str
    record: Optional[Record] = None
    record_id: Optional[str] = None
    context: Dict[str, Any] = {}

    @property
    def target_id(self) -> Optional[str]:
        if self.record is not None:
            return self.record.id
        return self.record_id

    @property
    def row(self) -> dict:
        """Best available field mapping for relevance checks."""
        row = dict(self.context)
        if self.record is not None:
            row.update(self.record.fields)
            row["id"] = self.record.id
        elif self.record_id is not None:
            row.setdefault("id", self.record_id)
        return row

    @classmethod
    def inserted(cls, table: str, record: Record) -> "ChangeEvent":
        return cls(kind=ChangeKind.INSERTED, table=table, record=record)

    @classmethod
    def updated(cls, table: str, record: Record, old: Optional[dict] = None) -> "ChangeEvent":
        return cls(kind=ChangeKind.UPDATED, table=table, record=record, context=old or {})

    @classmethod
    def deleted(cls, table: str, record_id: str, old: Optional[dict] = None) -> "ChangeEvent":
        return cls(
            kind=ChangeKind.DELETED,
            table=table,
            record_id=str(record_id),
            context=old or {},
        )
