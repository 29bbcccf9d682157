"""
Data models for the compliance engine.

Defines the label filter expression tree (conditions, queries and the scope
union that links them), the records the reporting pipeline consumes, and the
interval-bucketed report shapes it produces.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple, Union


# Filter expression tree


@dataclass(frozen=True)
class Condition:
    """A single predicate on a record label.

    Attributes:
        label: The label key (e.g., 'env', 'tier', 'app')
        operator: The comparison operator ('=' or '!=')
        value: The value the label is compared against, exactly
    """
    label: str
    operator: str
    value: str


@dataclass(frozen=True)
class Query:
    """A logical combinator over child scopes.

    A query can nest further queries, e.g.:

        <-condition->    <-------subquery------->
        "env=prod    AND (tier=web OR tier=api)"

    Attributes:
        operator: The logical operator ('AND' or 'OR', any case)
        scopes: Child scopes in their original order
    """
    operator: str
    scopes: Tuple['Scope', ...] = ()


@dataclass(frozen=True)
class ConditionScope:
    """Scope variant wrapping a single condition."""
    condition: Condition


@dataclass(frozen=True)
class QueryScope:
    """Scope variant wrapping a nested query."""
    query: Query


@dataclass(frozen=True)
class EmptyScope:
    """Scope variant carrying neither a condition nor a query.

    Produced when a scope document holds neither key; matches everything.
    """


Scope = Union[ConditionScope, QueryScope, EmptyScope]


@dataclass(frozen=True)
class Filter:
    """Root of a label filter. A filter without a scope matches everything."""
    scope: Optional[Scope] = None


def condition(label: str, operator: str, value: str) -> ConditionScope:
    """Shorthand for building a condition scope."""
    return ConditionScope(Condition(label=label, operator=operator, value=value))


def query(operator: str, *scopes: Scope) -> QueryScope:
    """Shorthand for building a query scope from child scopes."""
    return QueryScope(Query(operator=operator, scopes=tuple(scopes)))


# Records


TIMESTAMP_FIELDS = ('collected', 'end', 'timestamp', '@timestamp', 'ts', 'time')
STREAM_FIELDS = ('streamId', 'stream_id', 'uuid')


def parse_timestamp(value: Any) -> datetime:
    """Normalize a timestamp value into a timezone-aware UTC datetime.

    Args:
        value: A datetime, ISO 8601 string, or epoch seconds

    Returns:
        An aware datetime in UTC

    Raises:
        ValueError: If the value cannot be interpreted as a timestamp
    """
    if isinstance(value, datetime):
        timestamp = value
    elif isinstance(value, (int, float)) and not isinstance(value, bool):
        timestamp = datetime.fromtimestamp(value, tz=timezone.utc)
    elif isinstance(value, str):
        timestamp = datetime.fromisoformat(value.replace('Z', '+00:00'))
    else:
        raise ValueError(f"Cannot interpret {value!r} as a timestamp")

    if timestamp.tzinfo is None:
        return timestamp.replace(tzinfo=timezone.utc)
    return timestamp.astimezone(timezone.utc)


@dataclass
class Record:
    """A timestamped, labeled observation belonging to a stream.

    Attributes:
        stream_id: Identity shared by repeated observations of the same subject
        timestamp: When the record became authoritative (aware, UTC)
        status: The compliance state (e.g., 'satisfied', 'not-satisfied')
        title: Human readable title of the record
        labels: Label key/value pairs used for filtering
        id: Optional store-assigned identifier
    """
    stream_id: str
    timestamp: datetime
    status: str
    title: str = ""
    labels: Dict[str, str] = field(default_factory=dict)
    id: Optional[str] = None

    def __post_init__(self):
        self.timestamp = parse_timestamp(self.timestamp)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Record':
        """Build a record from a loosely shaped dictionary.

        Accepts 'streamId', 'stream_id' or 'uuid' for the stream, any of the
        common timestamp keys, and a status given either as a string or as
        an object with a 'state' key.

        Raises:
            ValueError: If the stream identity or timestamp is missing, or the
                labels are malformed
        """
        stream_id = next((data[k] for k in STREAM_FIELDS if data.get(k) is not None), None)
        if stream_id is None:
            raise ValueError("Record has no stream identity")

        raw_timestamp = next((data[k] for k in TIMESTAMP_FIELDS if data.get(k) is not None), None)
        if raw_timestamp is None:
            raise ValueError(f"Record for stream {stream_id} has no timestamp")

        status = data.get('status', '')
        if isinstance(status, dict):
            status = status.get('state', '')

        labels = data.get('labels') or {}
        if isinstance(labels, list):
            # [{"name": ..., "value": ...}] as stored by relational backends
            items = labels
            labels = {}
            for item in items:
                if not isinstance(item, dict) or 'name' not in item or 'value' not in item:
                    raise ValueError(
                        f"Record for stream {stream_id} has a label without name and value: {item!r}"
                    )
                labels[item['name']] = item['value']
        elif not isinstance(labels, dict):
            raise ValueError(f"Record for stream {stream_id} has invalid labels: {labels!r}")

        record_id = data.get('id', data.get('_id'))

        return cls(
            stream_id=str(stream_id),
            timestamp=raw_timestamp,
            status=str(status),
            title=str(data.get('title', '')),
            labels={str(k): str(v) for k, v in labels.items()},
            id=str(record_id) if record_id is not None else None,
        )

    def to_document(self) -> Dict[str, Any]:
        """Convert the record to its document-store shape."""
        return {
            '_id': self.id,
            'streamId': self.stream_id,
            'collected': self.timestamp,
            'status': {'state': self.status},
            'title': self.title,
            'labels': dict(self.labels),
        }

    def to_dict(self) -> Dict[str, Any]:
        """Convert the record to a JSON friendly dictionary."""
        return {
            'id': self.id,
            'streamId': self.stream_id,
            'timestamp': self.timestamp.isoformat(),
            'status': self.status,
            'title': self.title,
            'labels': dict(self.labels),
        }


# Reports


@dataclass(frozen=True)
class IntervalledRecord:
    """The representative record of one (stream, bucket) group."""
    stream_id: str
    interval: datetime
    status: str
    title: str


@dataclass(frozen=True)
class StreamEntry:
    """One bucket of a stream report.

    Attributes:
        interval: The bucket start
        title: Title of the representative record
        status_counts: Count of each status among representative records
        has_records: False for buckets synthesized by gap filling
    """
    interval: datetime
    title: str
    status_counts: Dict[str, int] = field(default_factory=dict, hash=False)
    has_records: bool = True

    def to_dict(self) -> Dict[str, Any]:
        return {
            'interval': self.interval.isoformat(),
            'title': self.title,
            'statusCounts': dict(self.status_counts),
            'hasRecords': self.has_records,
        }


@dataclass(frozen=True)
class StreamReport:
    """Bucketed history of a single stream, ordered by interval."""
    stream_id: str
    records: Tuple[StreamEntry, ...] = ()

    def to_dict(self) -> Dict[str, Any]:
        return {
            '_id': self.stream_id,
            'records': [entry.to_dict() for entry in self.records],
        }


@dataclass(frozen=True)
class StatusCount:
    """Number of representative records carrying a status."""
    status: str
    count: int


@dataclass(frozen=True)
class StatusOverTimeGroup:
    """Status histogram for one bucket across all matched streams."""
    interval: datetime
    statuses: Tuple[StatusCount, ...] = ()

    def to_dict(self) -> Dict[str, Any]:
        return {
            'interval': self.interval.isoformat(),
            'statuses': [
                {'status': s.status, 'count': s.count} for s in self.statuses
            ],
        }


def total_records(reports: List[StreamReport]) -> int:
    """Count the non-synthetic entries across a list of stream reports."""
    return sum(1 for report in reports for entry in report.records if entry.has_records)
