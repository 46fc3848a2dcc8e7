import json
import re
import sqlite3
import threading
import uuid
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Tuple

from ...domain.errors import ConflictError, NotFoundError, ValidationError
from ...domain.models import SubscriptionRecord
from ...domain.ports.persistence import PersistenceGateway
from ...domain.timestamps import to_datetime, utcnow

_PATH_PATTERN = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*(\.[A-Za-z_][A-Za-z0-9_]*)*$")
_OPERATORS = {"$lte": "<=", "$gte": ">=", "$lt": "<", "$gt": ">", "$ne": "!="}


class SQLitePersistence(PersistenceGateway):
    """SQLite-backed document store for subscription records."""

    def __init__(self, path: Path) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        self._conn = sqlite3.connect(path, check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._lock = threading.Lock()
        self._initialize()

    def _initialize(self) -> None:
        with self._conn:
            self._conn.executescript(
                """
                CREATE TABLE IF NOT EXISTS subscriptions (
                    id TEXT PRIMARY KEY,
                    document TEXT NOT NULL,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                );

                CREATE INDEX IF NOT EXISTS idx_subscriptions_due
                    ON subscriptions(
                        json_extract(document, '$.status'),
                        json_extract(document, '$.dates.date_order_next')
                    );

                CREATE INDEX IF NOT EXISTS idx_subscriptions_user
                    ON subscriptions(json_extract(document, '$.user_id'));
                """
            )

    def close(self) -> None:
        self._conn.close()

    # SubscriptionRepository API ---------------------------------------------
    def find(
        self,
        query: Optional[Mapping[str, Any]] = None,
        *,
        limit: Optional[int] = None,
        offset: int = 0,
        sort: Optional[str] = None,
    ) -> List[SubscriptionRecord]:
        where, params = self._build_where(query or {})
        statement = "SELECT id, document FROM subscriptions"
        if where:
            statement += " WHERE " + " AND ".join(where)
        if sort:
            column, sort_params, descending = self._sort_clause(sort)
            statement += f" ORDER BY {column} {'DESC' if descending else 'ASC'}, rowid ASC"
            params.extend(sort_params)
        else:
            statement += " ORDER BY rowid ASC"
        if limit is not None or offset:
            statement += " LIMIT ? OFFSET ?"
            params.extend([limit if limit is not None else -1, max(offset, 0)])
        with self._lock:
            cur = self._conn.execute(statement, params)
            rows = cur.fetchall()
        return [self._row_to_record(row) for row in rows]

    def find_by_id(self, subscription_id: str) -> Optional[SubscriptionRecord]:
        with self._lock:
            cur = self._conn.execute(
                "SELECT id, document FROM subscriptions WHERE id = ?", (subscription_id,)
            )
            row = cur.fetchone()
        return self._row_to_record(row) if row else None

    def insert(self, record: SubscriptionRecord) -> SubscriptionRecord:
        subscription_id = uuid.uuid4().hex
        document = self._dump(record.to_document())
        now = self._now()
        with self._lock, self._conn:
            self._conn.execute(
                "INSERT INTO subscriptions (id, document, created_at, updated_at) VALUES (?, ?, ?, ?)",
                (subscription_id, document, now, now),
            )
            cur = self._conn.execute(
                "SELECT id, document FROM subscriptions WHERE id = ?", (subscription_id,)
            )
            row = cur.fetchone()
        if not row:
            raise RuntimeError("Failed to persist subscription.")
        return self._row_to_record(row)

    def update_by_id(
        self,
        subscription_id: str,
        changes: Dict[str, Any],
        *,
        expected: Optional[Mapping[str, Any]] = None,
    ) -> SubscriptionRecord:
        with self._lock, self._conn:
            cur = self._conn.execute(
                "SELECT id, document FROM subscriptions WHERE id = ?", (subscription_id,)
            )
            row = cur.fetchone()
            if not row:
                raise NotFoundError(f"Subscription {subscription_id} not found")
            stored = json.loads(row["document"])
            if expected:
                mismatched = self._mismatched_paths(stored, expected)
                if mismatched:
                    raise ConflictError(
                        f"Subscription {subscription_id} changed concurrently ({', '.join(mismatched)})"
                    )
            stored.update({key: value for key, value in changes.items() if key != "id"})
            merged = SubscriptionRecord.from_document(json.loads(self._dump(stored))).to_document()
            merged.pop("id", None)
            self._conn.execute(
                "UPDATE subscriptions SET document = ?, updated_at = ? WHERE id = ?",
                (self._dump(merged), self._now(), subscription_id),
            )
            cur = self._conn.execute(
                "SELECT id, document FROM subscriptions WHERE id = ?", (subscription_id,)
            )
            row = cur.fetchone()
        return self._row_to_record(row)

    # Query helpers ------------------------------------------------------------
    def _build_where(self, query: Mapping[str, Any]) -> Tuple[List[str], List[Any]]:
        clauses: List[str] = []
        params: List[Any] = []
        for key, condition in query.items():
            column, column_params = self._column(key)
            if isinstance(condition, Mapping):
                for operator, value in condition.items():
                    sql_operator = _OPERATORS.get(operator)
                    if sql_operator is None:
                        raise ValidationError(f"Unsupported query operator {operator!r}")
                    clauses.append(f"{column} {sql_operator} ?")
                    params.extend(column_params)
                    params.append(self._to_sql_value(value))
            elif condition is None:
                clauses.append(f"{column} IS NULL")
                params.extend(column_params)
            else:
                clauses.append(f"{column} = ?")
                params.extend(column_params)
                params.append(self._to_sql_value(condition))
        return clauses, params

    def _sort_clause(self, sort: str) -> Tuple[str, List[Any], bool]:
        descending = sort.startswith("-")
        column, params = self._column(sort.lstrip("-+"))
        return column, params, descending

    @staticmethod
    def _column(key: str) -> Tuple[str, List[Any]]:
        if key in ("id", "_id"):
            return "id", []
        if not _PATH_PATTERN.match(key):
            raise ValidationError(f"Invalid field path {key!r}")
        return "json_extract(document, ?)", [f"$.{key}"]

    def _mismatched_paths(self, document: Mapping[str, Any], expected: Mapping[str, Any]) -> List[str]:
        mismatched: List[str] = []
        for key, value in expected.items():
            current: Any = document
            for part in key.split("."):
                current = current.get(part) if isinstance(current, Mapping) else None
            if current != self._to_sql_value(value):
                mismatched.append(key)
        return mismatched

    @staticmethod
    def _to_sql_value(value: Any) -> Any:
        if isinstance(value, Enum):
            value = value.value
        if isinstance(value, datetime):
            return _format_datetime(value)
        if isinstance(value, bool):
            return int(value)
        if isinstance(value, (Mapping, list, tuple)):
            raise ValidationError("Query values must be scalars")
        return value

    # Helpers ----------------------------------------------------------------
    @staticmethod
    def _now() -> str:
        return utcnow().replace(microsecond=0).isoformat()

    @staticmethod
    def _dump(document: Mapping[str, Any]) -> str:
        payload = {key: value for key, value in document.items() if key != "id"}
        return json.dumps(payload, default=_json_default, ensure_ascii=False)

    def _row_to_record(self, row: sqlite3.Row) -> SubscriptionRecord:
        return SubscriptionRecord.from_document(json.loads(row["document"]), record_id=row["id"])


def _format_datetime(value: datetime) -> str:
    return to_datetime(value).isoformat()


def _json_default(value: Any) -> Any:
    if isinstance(value, datetime):
        return _format_datetime(value)
    if isinstance(value, Enum):
        return value.value
    return str(value)
