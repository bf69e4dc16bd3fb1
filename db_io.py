# db_io.py
"""
Document store wrappers, report dataclass and per-sender session state.

Provides:
- Report
- Session variants (ReportLostSession, ReportFoundSession, SearchSession,
  SelectReportSession, VerifyCodeSession, UpdateStatusSession,
  ConfirmStatusUpdateSession)
- DynamoDocumentStore (one table per collection, tables prefixed by TABLE_PREFIX)
- InMemoryDocumentStore (local runs and tests)
- ReportStore (collection: reports, success_stories)
- SessionManager (collection: users)
"""
from __future__ import annotations

import copy
import logging
import threading
import time
import uuid
from dataclasses import asdict, dataclass, field, fields
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, ClassVar, Dict, List, Optional, Tuple, Type, Union

import boto3
from boto3.dynamodb.conditions import Attr

logger = logging.getLogger("db_io")

REPORTS = "reports"
USERS = "users"
SUCCESS_STORIES = "success_stories"

NO_DESCRIPTION = "No description"
STATUS_CLAIMED = "claimed"
STATUS_RECOVERED = "recovered"


def now_ts() -> float:
    return time.time()


def iso_timestamp(ts: Optional[float] = None) -> str:
    value = datetime.fromtimestamp(ts or now_ts(), tz=timezone.utc)
    return value.isoformat()


def new_document_key() -> str:
    # hex nanoseconds first so keys sort by creation time
    return f"{time.time_ns():016x}-{uuid.uuid4().hex[:8]}"


# ---------------------------------------------------------------------------
# Reports
# ---------------------------------------------------------------------------

@dataclass
class Report:
    type: str
    item: str
    location: str
    reporter: str
    timestamp: str
    verification_code: str
    description: str = NO_DESCRIPTION
    contact_phone: Optional[str] = None
    image_url: Optional[str] = None
    claimed: bool = False
    claimed_at: Optional[str] = None
    recovered: bool = False
    recovered_at: Optional[str] = None
    id: Optional[str] = None

    @property
    def status_type(self) -> str:
        return STATUS_CLAIMED if self.type == "found" else STATUS_RECOVERED

    @property
    def is_resolved(self) -> bool:
        return bool(getattr(self, self.status_type))

    @property
    def has_image(self) -> bool:
        return bool(self.image_url)

    def created_at(self) -> Optional[datetime]:
        try:
            value = datetime.fromisoformat(self.timestamp.replace("Z", "+00:00"))
        except (AttributeError, ValueError):
            return None
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return value

    def to_item(self) -> Dict[str, Any]:
        item = {
            "type": self.type,
            "item": self.item,
            "location": self.location,
            "description": self.description,
            "reporter": self.reporter,
            "timestamp": self.timestamp,
            "verification_code": self.verification_code,
        }
        # lost and found records carry different resolution fields
        if self.type == "found":
            item["contact_phone"] = self.contact_phone
            item["claimed"] = self.claimed
            if self.image_url:
                item["image_url"] = self.image_url
            if self.claimed_at:
                item["claimed_at"] = self.claimed_at
        else:
            item["recovered"] = self.recovered
            if self.recovered_at:
                item["recovered_at"] = self.recovered_at
        return {k: v for k, v in item.items() if v is not None}

    @classmethod
    def from_item(cls, key: str, item: Dict[str, Any]) -> "Report":
        return cls(
            id=key,
            type=item.get("type", "lost"),
            item=item.get("item", ""),
            location=item.get("location", ""),
            description=item.get("description") or NO_DESCRIPTION,
            reporter=item.get("reporter", ""),
            timestamp=item.get("timestamp", ""),
            verification_code=item.get("verification_code", ""),
            contact_phone=item.get("contact_phone"),
            image_url=item.get("image_url"),
            claimed=bool(item.get("claimed", False)),
            claimed_at=item.get("claimed_at"),
            recovered=bool(item.get("recovered", False)),
            recovered_at=item.get("recovered_at"),
        )


# ---------------------------------------------------------------------------
# Sessions: one variant per dialog state
# ---------------------------------------------------------------------------

AWAITING_IMAGE = "awaiting_image"
AWAITING_DETAILS = "awaiting_details"


@dataclass
class ReportLostSession:
    action: ClassVar[str] = "report_lost"


@dataclass
class ReportFoundSession:
    action: ClassVar[str] = "report_found"
    step: str = AWAITING_IMAGE
    image_url: Optional[str] = None


@dataclass
class SearchSession:
    action: ClassVar[str] = "search"


@dataclass
class SelectReportSession:
    action: ClassVar[str] = "select_report"
    report_ids: List[str] = field(default_factory=list)


@dataclass
class VerifyCodeSession:
    action: ClassVar[str] = "verify_code"
    report_id: str = ""
    status_type: str = STATUS_CLAIMED


@dataclass
class UpdateStatusSession:
    action: ClassVar[str] = "update_status"


@dataclass
class ConfirmStatusUpdateSession:
    action: ClassVar[str] = "confirm_status_update"
    report_id: str = ""
    status_type: str = STATUS_CLAIMED


Session = Union[
    ReportLostSession,
    ReportFoundSession,
    SearchSession,
    SelectReportSession,
    VerifyCodeSession,
    UpdateStatusSession,
    ConfirmStatusUpdateSession,
]

SESSION_TYPES: Dict[str, Type] = {
    cls.action: cls
    for cls in (
        ReportLostSession,
        ReportFoundSession,
        SearchSession,
        SelectReportSession,
        VerifyCodeSession,
        UpdateStatusSession,
        ConfirmStatusUpdateSession,
    )
}


def serialize_session(session: Session) -> Dict[str, Any]:
    raw = asdict(session)
    raw["action"] = session.action
    return _sanitize_for_store(raw) or {}


def deserialize_session(data: Optional[Dict[str, Any]]) -> Optional[Session]:
    if not data:
        return None
    cls = SESSION_TYPES.get(data.get("action"))
    if cls is None:
        logger.warning("Unknown session action %r, ignoring", data.get("action"))
        return None
    allowed = {f.name for f in fields(cls)}
    try:
        return cls(**{k: v for k, v in data.items() if k in allowed})
    except TypeError:
        logger.warning("Malformed %s session payload, ignoring", cls.action)
        return None


# ---------------------------------------------------------------------------
# Document stores
# ---------------------------------------------------------------------------

class DocumentStore:
    """Key-addressed collections of JSON-like documents."""

    backend = "abstract"

    def get(self, collection: str, key: str) -> Optional[Dict[str, Any]]:
        raise NotImplementedError

    def list(self, collection: str) -> List[Tuple[str, Dict[str, Any]]]:
        raise NotImplementedError

    def query(self, collection: str, field_name: str, value: Any) -> List[Tuple[str, Dict[str, Any]]]:
        raise NotImplementedError

    def push(self, collection: str, document: Dict[str, Any]) -> str:
        raise NotImplementedError

    def put(self, collection: str, key: str, document: Dict[str, Any]) -> None:
        raise NotImplementedError

    def update(self, collection: str, key: str, changes: Dict[str, Any]) -> None:
        raise NotImplementedError

    def delete(self, collection: str, key: str) -> None:
        raise NotImplementedError


class DynamoDocumentStore(DocumentStore):
    """One DynamoDB table per collection (partition key 'id'), e.g. lostfound_reports."""

    backend = "dynamodb"

    def __init__(self, table_prefix: Optional[str], region: str, resource: Any = None):
        self.table_prefix = table_prefix or "lostfound_"
        self.region = region
        self._resource = resource or boto3.resource("dynamodb", region_name=region)
        self._tables: Dict[str, Any] = {}

    def _table(self, collection: str):
        if collection not in self._tables:
            self._tables[collection] = self._resource.Table(f"{self.table_prefix}{collection}")
        return self._tables[collection]

    def get(self, collection: str, key: str) -> Optional[Dict[str, Any]]:
        try:
            response = self._table(collection).get_item(Key={"id": key})
        except Exception:
            logger.exception("Dynamo get failed collection=%s key=%s", collection, key)
            raise
        item = response.get("Item")
        if not item:
            return None
        item = denormalize_decimals(item)
        item.pop("id", None)
        return item

    def _scan(self, collection: str, **kwargs) -> List[Tuple[str, Dict[str, Any]]]:
        table = self._table(collection)
        rows: List[Tuple[str, Dict[str, Any]]] = []
        try:
            response = table.scan(**kwargs)
            while True:
                for item in response.get("Items", []):
                    item = denormalize_decimals(item)
                    rows.append((item.pop("id"), item))
                last_key = response.get("LastEvaluatedKey")
                if not last_key:
                    break
                response = table.scan(ExclusiveStartKey=last_key, **kwargs)
        except Exception:
            logger.exception("Dynamo scan failed collection=%s", collection)
            raise
        rows.sort(key=lambda row: row[0])
        return rows

    def list(self, collection: str) -> List[Tuple[str, Dict[str, Any]]]:
        return self._scan(collection)

    def query(self, collection: str, field_name: str, value: Any) -> List[Tuple[str, Dict[str, Any]]]:
        return self._scan(collection, FilterExpression=Attr(field_name).eq(value))

    def push(self, collection: str, document: Dict[str, Any]) -> str:
        key = new_document_key()
        self.put(collection, key, document)
        return key

    def put(self, collection: str, key: str, document: Dict[str, Any]) -> None:
        item = normalize_decimals(_sanitize_for_store({**document, "id": key}))
        try:
            self._table(collection).put_item(Item=item)
        except Exception:
            logger.exception("Dynamo put failed collection=%s key=%s", collection, key)
            raise

    def update(self, collection: str, key: str, changes: Dict[str, Any]) -> None:
        if not changes:
            return
        names: Dict[str, str] = {}
        values: Dict[str, Any] = {}
        assignments = []
        for idx, (name, value) in enumerate(changes.items()):
            names[f"#f{idx}"] = name
            values[f":v{idx}"] = normalize_decimals(value)
            assignments.append(f"#f{idx} = :v{idx}")
        try:
            self._table(collection).update_item(
                Key={"id": key},
                UpdateExpression="SET " + ", ".join(assignments),
                ExpressionAttributeNames=names,
                ExpressionAttributeValues=values,
            )
        except Exception:
            logger.exception("Dynamo update failed collection=%s key=%s", collection, key)
            raise

    def delete(self, collection: str, key: str) -> None:
        try:
            self._table(collection).delete_item(Key={"id": key})
        except Exception:
            logger.exception("Dynamo delete failed collection=%s key=%s", collection, key)
            raise


class InMemoryDocumentStore(DocumentStore):
    """Process-local store for local runs and tests. Insertion order is creation order.

    Every operation holds one lock, so the session sweeper and request threads
    always see whole documents.
    """

    backend = "memory"

    def __init__(self):
        self._collections: Dict[str, Dict[str, Dict[str, Any]]] = {}
        self._lock = threading.RLock()

    def _collection(self, collection: str) -> Dict[str, Dict[str, Any]]:
        return self._collections.setdefault(collection, {})

    def get(self, collection: str, key: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            document = self._collection(collection).get(key)
            return copy.deepcopy(document) if document is not None else None

    def list(self, collection: str) -> List[Tuple[str, Dict[str, Any]]]:
        with self._lock:
            return [(key, copy.deepcopy(doc)) for key, doc in self._collection(collection).items()]

    def query(self, collection: str, field_name: str, value: Any) -> List[Tuple[str, Dict[str, Any]]]:
        return [(key, doc) for key, doc in self.list(collection) if doc.get(field_name) == value]

    def push(self, collection: str, document: Dict[str, Any]) -> str:
        key = new_document_key()
        self.put(collection, key, document)
        return key

    def put(self, collection: str, key: str, document: Dict[str, Any]) -> None:
        with self._lock:
            self._collection(collection)[key] = copy.deepcopy(document)

    def update(self, collection: str, key: str, changes: Dict[str, Any]) -> None:
        with self._lock:
            self._collection(collection).setdefault(key, {}).update(copy.deepcopy(changes))

    def delete(self, collection: str, key: str) -> None:
        with self._lock:
            self._collection(collection).pop(key, None)

    def clear(self) -> None:
        with self._lock:
            self._collections.clear()


def build_document_store(backend: str, table_prefix: Optional[str], region: str) -> DocumentStore:
    if backend == "memory":
        return InMemoryDocumentStore()
    if backend == "dynamodb":
        return DynamoDocumentStore(table_prefix, region)
    raise ValueError(f"Unknown store backend: {backend}")


# ---------------------------------------------------------------------------
# Report and session stores
# ---------------------------------------------------------------------------

class ReportStore:
    """Reports collection (append-only) plus the public success stories."""

    def __init__(self, store: DocumentStore):
        self.store = store

    def create(self, report: Report) -> Report:
        report.id = self.store.push(REPORTS, report.to_item())
        logger.info("Saved %s report id=%s reporter=%s", report.type, report.id, report.reporter)
        return report

    def get(self, report_id: str) -> Optional[Report]:
        item = self.store.get(REPORTS, report_id)
        return Report.from_item(report_id, item) if item else None

    def all(self) -> List[Report]:
        return [Report.from_item(key, item) for key, item in self.store.list(REPORTS)]

    def by_type(self, report_type: str) -> List[Report]:
        return [Report.from_item(key, item) for key, item in self.store.query(REPORTS, "type", report_type)]

    def by_reporter(self, sender: str) -> List[Report]:
        return [Report.from_item(key, item) for key, item in self.store.query(REPORTS, "reporter", sender)]

    def mark_resolved(self, report: Report, resolved_at: str) -> None:
        status = report.status_type
        self.store.update(REPORTS, report.id, {status: True, f"{status}_at": resolved_at})
        setattr(report, status, True)
        setattr(report, f"{status}_at", resolved_at)
        logger.info("Report id=%s marked %s", report.id, status)

    def add_success_story(self, report: Report, resolved_at: str) -> str:
        story = {
            "report_id": report.id,
            "type": report.type,
            "item": report.item,
            "location": report.location,
            "status_type": report.status_type,
            "timestamp": resolved_at,
        }
        return self.store.push(SUCCESS_STORIES, story)


class SessionManager:
    """Per-sender dialog state in the users collection. Last write wins."""

    def __init__(self, store: DocumentStore, clock=now_ts):
        self.store = store
        self.clock = clock

    def load(self, sender: str) -> Optional[Session]:
        return deserialize_session(self.store.get(USERS, sender))

    def save(self, sender: str, session: Session) -> None:
        document = serialize_session(session)
        document["timestamp"] = self.clock()
        self.store.put(USERS, sender, document)

    def clear(self, sender: str) -> None:
        self.store.delete(USERS, sender)

    def sweep_expired(self, now: float, max_age: float) -> List[str]:
        removed = []
        for sender, document in self.store.list(USERS):
            try:
                written = float(document.get("timestamp"))
            except (TypeError, ValueError):
                written = None
            if written is None or now - written > max_age:
                self.store.delete(USERS, sender)
                removed.append(sender)
        if removed:
            logger.info("Expired %d stale sessions", len(removed))
        return removed


# ---------------------------------------------------------------------------
# Value conversion
# ---------------------------------------------------------------------------

def _sanitize_for_store(value: Any):
    if value is None:
        return None
    if isinstance(value, dict):
        cleaned: Dict[str, Any] = {}
        for key, nested in value.items():
            sanitized = _sanitize_for_store(nested)
            if sanitized is None:
                continue
            cleaned[key] = sanitized
        return cleaned
    if isinstance(value, list):
        return [v for v in (_sanitize_for_store(item) for item in value) if v is not None]
    return value


def normalize_decimals(data):
    if isinstance(data, float):
        return Decimal(str(data))
    elif isinstance(data, dict):
        return {k: normalize_decimals(v) for k, v in data.items()}
    elif isinstance(data, list):
        return [normalize_decimals(v) for v in data]
    return data


def denormalize_decimals(data):
    if isinstance(data, Decimal):
        return int(data) if data == data.to_integral_value() else float(data)
    elif isinstance(data, dict):
        return {k: denormalize_decimals(v) for k, v in data.items()}
    elif isinstance(data, list):
        return [denormalize_decimals(v) for v in data]
    return data
