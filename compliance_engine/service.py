"""
Compliance reporting service.

Wires the pipeline together: a label filter is compiled by the injected
record store, the store returns matching records, and the report engine
buckets, reduces and gap-fills them. The clock is injected so report
anchors are deterministic under test.
"""

import logging
from datetime import datetime, timedelta
from typing import Any, List, Optional

from .buckets import EPOCH, Clock, utc_now
from .config import Settings
from .engine import ReportEngine
from .errors import StoreError
from .models import Filter, Record, StatusOverTimeGroup, StreamReport, total_records
from .backends import RecordStore

logger = logging.getLogger(__name__)


class ComplianceService:
    """Answers search and compliance-over-time requests against a record store."""

    def __init__(
        self,
        store: RecordStore,
        settings: Optional[Settings] = None,
        clock: Clock = utc_now,
        engine: Optional[ReportEngine] = None,
        timeout: Optional[float] = None,
    ):
        """Initialize the service.

        Args:
            store: Record store executing compiled queries
            settings: Intervals, collection names and bucket anchoring
            clock: Zero-argument callable returning the current aware datetime
            engine: Report engine, a default one is created when omitted
            timeout: Seconds each store call may block, defaults to the
                store_timeout setting
        """
        self.store = store
        self.settings = settings or Settings()
        self.clock = clock
        self.engine = engine or ReportEngine()
        self.timeout = timeout if timeout is not None else self.settings.store_timeout

    def _anchor(self) -> datetime:
        if self.settings.bucket_anchor == 'epoch':
            return EPOCH
        return self.clock()

    def _fetch(self, query: Any, collection: str, interval: Optional[timedelta]) -> List[Record]:
        try:
            records = self.store.find(query, collection, interval, timeout=self.timeout)
        except StoreError as e:
            logger.error(f"Record store query on '{collection}' failed: {e}")
            raise
        logger.debug(f"Fetched {len(records)} records from '{collection}'")
        return records

    def search(self, label_filter: Filter) -> List[Record]:
        """Return the latest record of every stream matching the filter."""
        query = self.store.compile(label_filter)
        records = self._fetch(query, self.settings.results_collection, None)
        return self.engine.latest_per_stream(records)

    def compliance_by_filter(self, label_filter: Filter) -> List[StreamReport]:
        """Build per-stream compliance history for records matching a filter."""
        query = self.store.compile(label_filter)
        return self._stream_reports(query)

    def compliance_by_stream(self, stream_id: str) -> List[StreamReport]:
        """Build the compliance history of a single stream."""
        return self._stream_reports(self.store.stream_query(stream_id))

    def status_over_time_by_filter(self, label_filter: Filter) -> List[StatusOverTimeGroup]:
        """Build the per-bucket status histogram for findings matching a filter."""
        query = self.store.compile(label_filter)
        return self._status_groups(query)

    def status_over_time_by_stream(self, stream_id: str) -> List[StatusOverTimeGroup]:
        """Build the per-bucket status histogram of a single findings stream."""
        return self._status_groups(self.store.stream_query(stream_id))

    def _stream_reports(self, query: Any) -> List[StreamReport]:
        interval = self.settings.results_timedelta
        records = self._fetch(query, self.settings.results_collection, interval)
        reports = self.engine.build_compliance_report(records, interval, self._anchor())
        logger.info(
            f"Compliance report: {len(reports)} streams, "
            f"{total_records(reports)} populated buckets"
        )
        return reports

    def _status_groups(self, query: Any) -> List[StatusOverTimeGroup]:
        interval = self.settings.findings_timedelta
        records = self._fetch(query, self.settings.findings_collection, interval)
        groups = self.engine.build_status_over_time(records, interval, self._anchor())
        logger.info(f"Status over time: {len(groups)} buckets")
        return groups
