"""
Compliance Engine Package.

Label filter compilation and interval-bucketed compliance reporting over
streams of labeled, timestamped records.
"""

from .backends import MemoryRecordStore, RecordStore, SqliteRecordStore
from .buckets import EPOCH, bucket_of, utc_now
from .compiler import MongoCompiler, SqlCompiler, SqlQuery, compile_filter, compile_sql
from .engine import ReportEngine, build_compliance_report, build_status_over_time, fill_gaps
from .models import (
    Condition,
    ConditionScope,
    EmptyScope,
    Filter,
    Query,
    QueryScope,
    Record,
    StatusCount,
    StatusOverTimeGroup,
    StreamEntry,
    StreamReport,
)
from .parser import parse_filter
from .serializer import decode_filter, dumps_filter, encode_filter, loads_filter
from .service import ComplianceService

__all__ = [
    'EPOCH',
    'ComplianceService',
    'Condition',
    'ConditionScope',
    'EmptyScope',
    'Filter',
    'MemoryRecordStore',
    'MongoCompiler',
    'Query',
    'QueryScope',
    'Record',
    'RecordStore',
    'ReportEngine',
    'SqlCompiler',
    'SqlQuery',
    'SqliteRecordStore',
    'StatusCount',
    'StatusOverTimeGroup',
    'StreamEntry',
    'StreamReport',
    'bucket_of',
    'build_compliance_report',
    'build_status_over_time',
    'compile_filter',
    'compile_sql',
    'decode_filter',
    'dumps_filter',
    'encode_filter',
    'fill_gaps',
    'loads_filter',
    'parse_filter',
    'utc_now',
]
