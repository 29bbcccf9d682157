"""
Compliance report engine.

Implements the in-memory half of the reporting pipeline: tagging records
with their interval bucket, collapsing each (stream, bucket) group to its
latest record, regrouping the representatives per stream or per bucket, and
filling gaps so every report has a continuous time axis.
"""

import logging
from collections import Counter
from datetime import datetime, timedelta
from typing import Dict, Iterable, List, Tuple

from .buckets import bucket_of, bucket_range
from .models import (
    IntervalledRecord,
    Record,
    StatusCount,
    StatusOverTimeGroup,
    StreamEntry,
    StreamReport,
)

logger = logging.getLogger(__name__)


class ReportEngine:
    """Builds interval-bucketed compliance reports from matched records."""

    def _sort_by_timestamp(self, records: Iterable[Record]) -> List[Record]:
        """Sort records ascending by timestamp, keeping input order on ties."""
        return sorted(records, key=lambda r: r.timestamp)

    def reduce(
        self,
        records: Iterable[Record],
        interval: timedelta,
        anchor: datetime,
    ) -> List[IntervalledRecord]:
        """Collapse records to one representative per (stream, bucket).

        The representative is the last record of its group once the group
        is sorted ascending by timestamp. Records with equal timestamps keep
        their input order, so the later one in the input wins.

        Args:
            records: Matched records, in any order
            interval: Bucket width
            anchor: Instant the bucket grid is anchored to

        Returns:
            Representatives sorted by stream, then bucket
        """
        groups: Dict[Tuple[str, datetime], Record] = {}

        for record in self._sort_by_timestamp(records):
            key = (record.stream_id, bucket_of(record.timestamp, interval, anchor))
            groups[key] = record

        reduced = [
            IntervalledRecord(
                stream_id=stream_id,
                interval=bucket,
                status=record.status,
                title=record.title,
            )
            for (stream_id, bucket), record in groups.items()
        ]
        reduced.sort(key=lambda r: (r.stream_id, r.interval))
        return reduced

    def build_compliance_report(
        self,
        records: Iterable[Record],
        interval: timedelta,
        now: datetime,
    ) -> List[StreamReport]:
        """Build a gap-filled report per stream.

        Args:
            records: Matched records
            interval: Bucket width
            now: Anchor of the bucket grid, normally the current time

        Returns:
            One StreamReport per stream, ordered by stream identity
        """
        per_stream: Dict[str, List[StreamEntry]] = {}

        for rep in self.reduce(records, interval, now):
            per_stream.setdefault(rep.stream_id, []).append(
                StreamEntry(
                    interval=rep.interval,
                    title=rep.title,
                    status_counts={rep.status: 1},
                    has_records=True,
                )
            )

        reports = [
            fill_gaps(StreamReport(stream_id=stream_id, records=tuple(entries)), interval)
            for stream_id, entries in per_stream.items()
        ]
        logger.debug(f"Built {len(reports)} stream reports with interval {interval}")
        return reports

    def build_status_over_time(
        self,
        records: Iterable[Record],
        interval: timedelta,
        now: datetime,
    ) -> List[StatusOverTimeGroup]:
        """Build a gap-filled status histogram per bucket across all streams.

        Each stream contributes at most one record per bucket, its
        representative, so a stream reassessed many times within a bucket is
        counted once.
        """
        per_bucket: Dict[datetime, Counter] = {}

        for rep in self.reduce(records, interval, now):
            per_bucket.setdefault(rep.interval, Counter())[rep.status] += 1

        groups = [
            StatusOverTimeGroup(
                interval=bucket,
                statuses=tuple(
                    StatusCount(status=status, count=count)
                    for status, count in sorted(counts.items())
                ),
            )
            for bucket, counts in per_bucket.items()
        ]
        return fill_status_gaps(groups, interval)

    def latest_per_stream(self, records: Iterable[Record]) -> List[Record]:
        """Return the most recent record of each stream, ordered by stream."""
        latest: Dict[str, Record] = {}
        for record in self._sort_by_timestamp(records):
            latest[record.stream_id] = record
        return [latest[stream_id] for stream_id in sorted(latest)]


def fill_gaps(report: StreamReport, interval: timedelta) -> StreamReport:
    """Insert empty entries for every missing bucket of a stream report.

    Steps from the earliest to the latest bucket by `interval`. Missing
    buckets get zeroed counts, has_records=False and the title of the
    earliest entry. The result is sorted by interval; applying this twice
    gives the same result as applying it once.
    """
    if not report.records:
        return report

    present = {entry.interval for entry in report.records}
    earliest = min(report.records, key=lambda e: e.interval)
    latest = max(present)

    entries = list(report.records)
    for bucket in bucket_range(earliest.interval, latest, interval):
        if bucket not in present:
            entries.append(
                StreamEntry(
                    interval=bucket,
                    title=earliest.title,
                    status_counts={},
                    has_records=False,
                )
            )

    entries.sort(key=lambda e: e.interval)
    return StreamReport(stream_id=report.stream_id, records=tuple(entries))


def fill_status_gaps(
    groups: List[StatusOverTimeGroup],
    interval: timedelta,
) -> List[StatusOverTimeGroup]:
    """Insert empty histogram groups for missing buckets and sort by interval."""
    if not groups:
        return groups

    present = {group.interval for group in groups}
    filled = list(groups)
    for bucket in bucket_range(min(present), max(present), interval):
        if bucket not in present:
            filled.append(StatusOverTimeGroup(interval=bucket, statuses=()))

    filled.sort(key=lambda g: g.interval)
    return filled


_default_engine = ReportEngine()


def build_compliance_report(
    records: Iterable[Record],
    interval: timedelta,
    now: datetime,
) -> List[StreamReport]:
    """Build gap-filled per-stream reports with the default engine."""
    return _default_engine.build_compliance_report(records, interval, now)


def build_status_over_time(
    records: Iterable[Record],
    interval: timedelta,
    now: datetime,
) -> List[StatusOverTimeGroup]:
    """Build the gap-filled per-bucket status histogram with the default engine."""
    return _default_engine.build_status_over_time(records, interval, now)
