"""
Unit tests for the compliance reporting pipeline.

Tests bucket planning, latest-per-group reduction, gap filling, the record
stores, the compliance service, configuration, saved filter storage and the
CLI batch workflow.
"""

import argparse
import json
from datetime import datetime, timedelta, timezone

import pytest

from compliance_engine import (
    EPOCH,
    ComplianceService,
    Filter,
    MemoryRecordStore,
    Record,
    ReportEngine,
    SqliteRecordStore,
    StatusCount,
    StatusOverTimeGroup,
    StreamEntry,
    StreamReport,
    bucket_of,
    build_compliance_report,
    build_status_over_time,
    compile_filter,
    fill_gaps,
    parse_filter,
)
from compliance_engine.compiler import SqlQuery
from compliance_engine.config import Settings, load_settings
from compliance_engine.engine import fill_status_gaps
from compliance_engine.errors import (
    FilterDecodeError,
    QueryFailedError,
    StoreUnavailableError,
    UnsupportedOperatorError,
)
from compliance_engine.models import condition, parse_timestamp, query
from compliance_engine.storage import FilterStorage

import run_report

NOW = datetime(2024, 1, 1, 12, 0, 0, tzinfo=timezone.utc)
INTERVAL = timedelta(minutes=5)


def make_record(stream_id, minutes_ago, status="satisfied", title=None, **labels):
    return Record(
        stream_id=stream_id,
        timestamp=NOW - timedelta(minutes=minutes_ago),
        status=status,
        title=title or f"{stream_id} check",
        labels=labels,
    )


@pytest.fixture
def scenario_records():
    """Three streams, only the first of which matches the scenario filter."""
    return [
        make_record("web-prod", 2, env="prod", tier="web"),
        make_record("db-prod", 2, env="prod", tier="db"),
        make_record("web-staging", 2, env="staging", tier="web"),
    ]


@pytest.fixture
def scenario_filter():
    return parse_filter("env=prod AND (tier=web OR tier=api)")


class TestBucketPlanner:
    """Test cases for bucket_of."""

    def test_bucket_floors_past_timestamps(self):
        """Test a timestamp before the anchor floors to the previous boundary."""
        timestamp = NOW - timedelta(minutes=7)
        assert bucket_of(timestamp, INTERVAL, NOW) == NOW - timedelta(minutes=10)

    def test_bucket_on_boundary(self):
        """Test a timestamp on a boundary is its own bucket."""
        timestamp = NOW - timedelta(minutes=15)
        assert bucket_of(timestamp, INTERVAL, NOW) == timestamp
        assert bucket_of(NOW, INTERVAL, NOW) == NOW

    def test_bucket_after_anchor(self):
        """Test timestamps after the anchor also floor."""
        timestamp = NOW + timedelta(minutes=6)
        assert bucket_of(timestamp, INTERVAL, NOW) == NOW + timedelta(minutes=5)

    def test_bucket_never_after_timestamp(self):
        """Test the bucket lies within one interval at or before the timestamp."""
        for seconds in range(0, 3600, 37):
            timestamp = NOW - timedelta(seconds=seconds)
            bucket = bucket_of(timestamp, INTERVAL, NOW)
            assert bucket <= timestamp < bucket + INTERVAL
            assert (NOW - bucket) % INTERVAL == timedelta(0)

    def test_bucket_depends_on_anchor(self):
        """Test now-anchored boundaries move with the anchor."""
        timestamp = NOW - timedelta(minutes=7)
        later = NOW + timedelta(minutes=2)
        assert bucket_of(timestamp, INTERVAL, NOW) != bucket_of(timestamp, INTERVAL, later)

    def test_bucket_epoch_anchor(self):
        """Test epoch anchoring aligns buckets to wall-clock boundaries."""
        timestamp = datetime(2024, 1, 1, 11, 53, 20, tzinfo=timezone.utc)
        assert bucket_of(timestamp, INTERVAL, EPOCH) == datetime(2024, 1, 1, 11, 50, tzinfo=timezone.utc)

    def test_bucket_invalid_interval(self):
        """Test non-positive intervals are rejected."""
        with pytest.raises(ValueError):
            bucket_of(NOW, timedelta(0), NOW)
        with pytest.raises(ValueError):
            bucket_of(NOW, timedelta(minutes=-5), NOW)


class TestReducer:
    """Test cases for the latest-per-group reducer."""

    def test_latest_wins_within_bucket(self):
        """Test the later record of a (stream, bucket) group is the representative."""
        records = [
            make_record("s1", 6, status="satisfied", title="later"),
            make_record("s1", 9, status="not-satisfied", title="earlier"),
        ]

        reduced = ReportEngine().reduce(records, INTERVAL, NOW)

        assert len(reduced) == 1
        assert reduced[0].status == "satisfied"
        assert reduced[0].title == "later"
        assert reduced[0].interval == NOW - timedelta(minutes=10)

    def test_equal_timestamps_keep_input_order(self):
        """Test records with equal timestamps resolve to the later input."""
        records = [
            make_record("s1", 3, status="first"),
            make_record("s1", 3, status="second"),
        ]
        reduced = ReportEngine().reduce(records, INTERVAL, NOW)
        assert [r.status for r in reduced] == ["second"]

    def test_groups_by_stream_and_bucket(self):
        """Test each stream gets one representative per bucket."""
        records = [
            make_record("s2", 1),
            make_record("s1", 1),
            make_record("s1", 2),
            make_record("s1", 7),
        ]

        reduced = ReportEngine().reduce(records, INTERVAL, NOW)

        assert [(r.stream_id, r.interval) for r in reduced] == [
            ("s1", NOW - timedelta(minutes=10)),
            ("s1", NOW - timedelta(minutes=5)),
            ("s2", NOW - timedelta(minutes=5)),
        ]

    def test_latest_per_stream(self):
        """Test search keeps only the most recent record of each stream."""
        records = [
            make_record("s1", 30, status="old"),
            make_record("s2", 10),
            make_record("s1", 1, status="new"),
        ]

        latest = ReportEngine().latest_per_stream(records)

        assert [(r.stream_id, r.status) for r in latest] == [("s1", "new"), ("s2", "satisfied")]


class TestComplianceReport:
    """Test cases for per-stream and per-bucket reports."""

    def test_report_per_stream(self):
        """Test each stream gets its own ordered report."""
        records = [
            make_record("s1", 1, status="satisfied"),
            make_record("s1", 6, status="not-satisfied"),
            make_record("s2", 1, status="not-satisfied"),
        ]

        reports = build_compliance_report(records, INTERVAL, NOW)

        assert [r.stream_id for r in reports] == ["s1", "s2"]
        s1 = reports[0]
        assert [e.interval for e in s1.records] == [
            NOW - timedelta(minutes=10),
            NOW - timedelta(minutes=5),
        ]
        assert s1.records[0].status_counts == {"not-satisfied": 1}
        assert s1.records[1].status_counts == {"satisfied": 1}
        assert all(e.has_records for e in s1.records)

    def test_report_fills_gaps(self):
        """Test records at T and T+3 intervals give four buckets."""
        records = [
            make_record("s1", 19),
            make_record("s1", 4),
        ]

        report = build_compliance_report(records, INTERVAL, NOW)[0]

        start = NOW - timedelta(minutes=20)
        assert [e.interval for e in report.records] == [start + INTERVAL * i for i in range(4)]
        assert [e.has_records for e in report.records] == [True, False, False, True]
        assert report.records[1].status_counts == {}
        assert report.records[2].title == "s1 check"

    def test_empty_records(self):
        """Test no records give an empty report list."""
        assert build_compliance_report([], INTERVAL, NOW) == []
        assert build_status_over_time([], INTERVAL, NOW) == []

    def test_naive_timestamps_are_utc(self):
        """Test records built with naive timestamps report like UTC records."""
        records = [
            Record("s1", datetime(2024, 1, 1, 11, 41), "not-satisfied"),
            Record("s1", datetime(2024, 1, 1, 11, 56), "satisfied"),
        ]

        report = build_compliance_report(records, INTERVAL, NOW)[0]
        groups = build_status_over_time(records, INTERVAL, NOW)

        assert [e.interval for e in report.records] == [
            NOW - timedelta(minutes=20),
            NOW - timedelta(minutes=15),
            NOW - timedelta(minutes=10),
            NOW - timedelta(minutes=5),
        ]
        assert [e.has_records for e in report.records] == [True, False, False, True]
        assert len(groups) == 4

    def test_status_over_time(self):
        """Test representatives of all streams are tallied per bucket."""
        records = [
            make_record("s1", 1, status="satisfied"),
            make_record("s1", 2, status="not-satisfied"),
            make_record("s2", 3, status="satisfied"),
            make_record("s3", 4, status="not-satisfied"),
            make_record("s1", 16, status="satisfied"),
        ]

        groups = build_status_over_time(records, INTERVAL, NOW)

        assert [g.interval for g in groups] == [
            NOW - timedelta(minutes=20),
            NOW - timedelta(minutes=15),
            NOW - timedelta(minutes=10),
            NOW - timedelta(minutes=5),
        ]
        assert groups[0].statuses == (StatusCount("satisfied", 1),)
        assert groups[1].statuses == ()
        assert groups[2].statuses == ()
        assert groups[3].statuses == (
            StatusCount("not-satisfied", 1),
            StatusCount("satisfied", 2),
        )


class TestGapFiller:
    """Test cases for fill_gaps and fill_status_gaps."""

    def _report(self, *offsets):
        start = NOW - timedelta(hours=1)
        return StreamReport(
            stream_id="s1",
            records=tuple(
                StreamEntry(interval=start + INTERVAL * i, title="t", status_counts={"satisfied": 1})
                for i in offsets
            ),
        )

    def test_fill_gaps(self):
        """Test missing buckets between earliest and latest are synthesized."""
        filled = fill_gaps(self._report(3, 0), INTERVAL)

        assert len(filled.records) == 4
        assert [e.has_records for e in filled.records] == [True, False, False, True]
        intervals = [e.interval for e in filled.records]
        assert intervals == sorted(intervals)

    def test_fill_gaps_idempotent(self):
        """Test filling twice equals filling once."""
        once = fill_gaps(self._report(0, 2, 5), INTERVAL)
        twice = fill_gaps(once, INTERVAL)
        assert once == twice

    def test_fill_gaps_empty_and_single(self):
        """Test empty and single-entry reports are unchanged."""
        empty = StreamReport(stream_id="s1")
        assert fill_gaps(empty, INTERVAL) is empty
        single = self._report(0)
        assert fill_gaps(single, INTERVAL) == single

    def test_fill_gaps_does_not_mutate_input(self):
        """Test the input report is left untouched."""
        report = self._report(0, 2)
        fill_gaps(report, INTERVAL)
        assert len(report.records) == 2

    def test_fill_status_gaps(self):
        """Test histogram groups are gap-filled and sorted."""
        start = NOW - timedelta(minutes=30)
        groups = [
            StatusOverTimeGroup(interval=start + INTERVAL * 2, statuses=(StatusCount("satisfied", 1),)),
            StatusOverTimeGroup(interval=start, statuses=(StatusCount("satisfied", 2),)),
        ]

        filled = fill_status_gaps(groups, INTERVAL)

        assert [g.interval for g in filled] == [start, start + INTERVAL, start + INTERVAL * 2]
        assert filled[1].statuses == ()
        assert fill_status_gaps(filled, INTERVAL) == filled


class TestRecordModel:
    """Test cases for building records from loose dictionaries."""

    def test_from_dict_variants(self):
        """Test alternative keys, status objects and label lists."""
        record = Record.from_dict({
            "uuid": "abc",
            "collected": "2024-01-01T11:58:00Z",
            "status": {"state": "not-satisfied"},
            "title": "SSH hardening",
            "labels": [{"name": "env", "value": "prod"}],
        })

        assert record.stream_id == "abc"
        assert record.timestamp == NOW - timedelta(minutes=2)
        assert record.status == "not-satisfied"
        assert record.labels == {"env": "prod"}

    def test_from_dict_naive_timestamp_is_utc(self):
        """Test naive timestamps are taken as UTC."""
        record = Record.from_dict({"streamId": "s", "timestamp": "2024-01-01T12:00:00", "status": "ok"})
        assert record.timestamp == NOW

    def test_from_dict_missing_fields(self):
        """Test records without stream or timestamp are rejected."""
        with pytest.raises(ValueError):
            Record.from_dict({"timestamp": "2024-01-01T12:00:00Z"})
        with pytest.raises(ValueError):
            Record.from_dict({"streamId": "s"})

    def test_constructor_normalizes_timestamp(self):
        """Test the constructor makes timestamps aware UTC."""
        naive = Record("s", datetime(2024, 1, 1, 12, 0), "ok")
        offset = Record("s", "2024-01-01T14:00:00+02:00", "ok")

        assert naive.timestamp == NOW
        assert naive.timestamp.tzinfo is not None
        assert offset.timestamp == NOW

    @pytest.mark.parametrize("labels", [
        [{"value": "prod"}],
        [{"name": "env"}],
        ["env=prod"],
        "env=prod",
    ])
    def test_from_dict_malformed_labels(self, labels):
        """Test malformed label collections raise ValueError."""
        with pytest.raises(ValueError, match="label"):
            Record.from_dict({"streamId": "s", "timestamp": "2024-01-01T12:00:00Z", "labels": labels})

    def test_parse_timestamp_epoch_seconds(self):
        """Test epoch seconds are accepted."""
        assert parse_timestamp(NOW.timestamp()) == NOW


class TestMemoryRecordStore:
    """Test cases for the in-memory document store."""

    def test_scenario(self, scenario_records, scenario_filter):
        """Test the nested scenario matches only the prod web record."""
        store = MemoryRecordStore({"results": scenario_records})

        matched = store.find(store.compile(scenario_filter), "results")

        assert [r.stream_id for r in matched] == ["web-prod"]

    def test_equals_and_not_equals(self, scenario_records):
        """Test '!=' is the complement of '='."""
        store = MemoryRecordStore({"results": scenario_records})
        equal = store.find(compile_filter(Filter(scope=condition("tier", "=", "web"))), "results")
        not_equal = store.find(compile_filter(Filter(scope=condition("tier", "!=", "web"))), "results")

        assert {r.stream_id for r in equal} == {"web-prod", "web-staging"}
        assert {r.stream_id for r in not_equal} == {"db-prod"}

    def test_not_equals_matches_missing_label(self):
        """Test '!=' matches records that lack the label."""
        store = MemoryRecordStore({"results": [make_record("s1", 1, env="prod")]})
        matched = store.find({"labels.tier": {"$ne": "web"}}, "results")
        assert len(matched) == 1

    def test_match_all_and_unknown_collection(self, scenario_records):
        """Test {} matches everything and unknown collections are empty."""
        store = MemoryRecordStore({"results": scenario_records})
        assert len(store.find({}, "results")) == 3
        assert store.find({}, "findings") == []

    def test_stream_query(self, scenario_records):
        """Test stream lookups."""
        store = MemoryRecordStore({"results": scenario_records})
        matched = store.find(store.stream_query("db-prod"), "results")
        assert [r.stream_id for r in matched] == ["db-prod"]

    def test_unsupported_query_operator(self, scenario_records):
        """Test unknown operators in a native query fail the query."""
        store = MemoryRecordStore({"results": scenario_records})
        with pytest.raises(QueryFailedError):
            store.find({"$where": "1"}, "results")
        with pytest.raises(QueryFailedError):
            store.find({"labels.env": {"$regex": "p.*"}}, "results")


class TestSqliteRecordStore:
    """Test cases for the SQLite store."""

    @pytest.fixture
    def store(self, tmp_path, scenario_records):
        store = SqliteRecordStore(tmp_path / "records.db")
        store.insert("results", scenario_records)
        return store

    def test_scenario(self, store, scenario_filter):
        """Test the nested scenario matches only the prod web record."""
        matched = store.find(store.compile(scenario_filter), "results")

        assert len(matched) == 1
        record = matched[0]
        assert record.stream_id == "web-prod"
        assert record.labels == {"env": "prod", "tier": "web"}
        assert record.timestamp == NOW - timedelta(minutes=2)

    def test_not_equals(self, store):
        """Test NOT EXISTS semantics for '!='."""
        matched = store.find(store.compile(parse_filter("env != prod")), "results")
        assert [r.stream_id for r in matched] == ["web-staging"]

    def test_match_all_and_collections(self, store):
        """Test match-all and collection isolation."""
        assert len(store.find(store.compile(Filter()), "results")) == 3
        assert store.find(store.compile(Filter()), "findings") == []

    def test_stream_query(self, store):
        """Test stream lookups."""
        matched = store.find(store.stream_query("db-prod"), "results")
        assert [r.stream_id for r in matched] == ["db-prod"]

    def test_broken_query(self, store):
        """Test SQL errors surface as QueryFailedError."""
        with pytest.raises(QueryFailedError):
            store.find(SqlQuery("no_such_column = ?", [1]), "results")

    def test_find_with_timeout(self, store, scenario_filter):
        """Test a query within its timeout returns normally."""
        matched = store.find(store.compile(scenario_filter), "results", timeout=5.0)
        assert [r.stream_id for r in matched] == ["web-prod"]

    def test_find_exceeding_timeout(self, store):
        """Test a query running past its timeout is interrupted."""
        slow = SqlQuery(
            "(WITH RECURSIVE c(x) AS (SELECT 1 UNION ALL SELECT x + 1 FROM c WHERE x < 50000000) "
            "SELECT count(*) FROM c) > 0"
        )
        with pytest.raises(QueryFailedError, match="timed out"):
            store.find(slow, "results", timeout=0.05)


class TestStoreParity:
    """Test both stores agree on the same filters."""

    @pytest.fixture
    def records(self):
        return [
            make_record("a", 1, **{"app.tier": "web", "env": "prod"}),
            make_record("b", 1, **{"app.tier": "db", "env": "prod"}),
            make_record("c", 1, env="dev"),
        ]

    @pytest.fixture
    def stores(self, tmp_path, records):
        sqlite_store = SqliteRecordStore(tmp_path / "records.db")
        sqlite_store.insert("results", records)
        return [MemoryRecordStore({"results": records}), sqlite_store]

    @pytest.mark.parametrize("expression,expected", [
        ("app.tier=web", ["a"]),
        ("app.tier!=web", ["b", "c"]),
        ("env=prod AND app.tier=db", ["b"]),
        ("app.tier=web OR env=dev", ["a", "c"]),
        ("missing=x", []),
    ])
    def test_same_matches(self, stores, expression, expected):
        """Test dotted label keys and '!=' on missing labels match identically."""
        label_filter = parse_filter(expression)
        for store in stores:
            matched = store.find(store.compile(label_filter), "results")
            assert sorted(r.stream_id for r in matched) == expected, type(store).__name__


class FailingStore(MemoryRecordStore):
    """A store whose backend is down."""

    def find(self, query, collection, interval=None, timeout=None):
        raise StoreUnavailableError("connection refused")


class RecordingStore(MemoryRecordStore):
    """A store that remembers the timeout of each call."""

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.timeouts = []

    def find(self, query, collection, interval=None, timeout=None):
        self.timeouts.append(timeout)
        return super().find(query, collection, interval, timeout)


class TestComplianceService:
    """Test cases for the service wiring."""

    @pytest.fixture
    def service(self, scenario_records):
        store = MemoryRecordStore({
            "results": scenario_records + [make_record("web-prod", 12, env="prod", tier="web")],
            "findings": scenario_records,
        })
        return ComplianceService(store, Settings(), clock=lambda: NOW)

    def test_compliance_by_filter(self, service, scenario_filter):
        """Test the scenario produces one gap-filled stream report."""
        reports = service.compliance_by_filter(scenario_filter)

        assert len(reports) == 1
        assert reports[0].stream_id == "web-prod"
        assert [e.has_records for e in reports[0].records] == [True, False, True]

    def test_compliance_by_stream(self, service):
        """Test the single stream report."""
        reports = service.compliance_by_stream("db-prod")
        assert [r.stream_id for r in reports] == ["db-prod"]

    def test_status_over_time(self, service):
        """Test findings histogram with the findings interval."""
        groups = service.status_over_time_by_filter(parse_filter("env=prod"))

        assert len(groups) == 1
        assert groups[0].interval == NOW - timedelta(minutes=2)
        assert groups[0].statuses == (StatusCount("satisfied", 2),)

    def test_status_over_time_by_stream(self, service):
        """Test findings histogram of one stream."""
        groups = service.status_over_time_by_stream("web-staging")
        assert groups[0].statuses == (StatusCount("satisfied", 1),)

    def test_search(self, service):
        """Test search returns the latest record per matching stream."""
        latest = service.search(parse_filter("tier=web"))
        assert [(r.stream_id, r.timestamp) for r in latest] == [
            ("web-prod", NOW - timedelta(minutes=2)),
            ("web-staging", NOW - timedelta(minutes=2)),
        ]

    def test_no_matches(self, service):
        """Test an empty result is a valid empty report."""
        assert service.compliance_by_filter(parse_filter("env=qa")) == []

    def test_permissive_operator_matches_everything(self, service):
        """Test an unsupported operator returns the unfiltered dataset."""
        label_filter = Filter(scope=condition("env", "~", "prod"))
        reports = service.compliance_by_filter(label_filter)
        assert len(reports) == 3

    def test_strict_operator_raises(self, scenario_records):
        """Test strict stores reject unsupported operators."""
        store = MemoryRecordStore({"results": scenario_records}, strict=True)
        service = ComplianceService(store, Settings(strict_filters=True), clock=lambda: NOW)
        with pytest.raises(UnsupportedOperatorError):
            service.compliance_by_filter(Filter(scope=query("xor", condition("a", "=", "1"))))

    def test_store_failure_propagates(self):
        """Test store errors are raised to the caller, not swallowed."""
        service = ComplianceService(FailingStore(), Settings(), clock=lambda: NOW)
        with pytest.raises(StoreUnavailableError):
            service.compliance_by_filter(Filter())

    def test_timeout_reaches_store(self, scenario_records):
        """Test every store call receives the caller's timeout."""
        store = RecordingStore({"results": scenario_records, "findings": scenario_records})
        service = ComplianceService(store, Settings(store_timeout=2.5), clock=lambda: NOW)

        service.search(Filter())
        service.compliance_by_stream("web-prod")
        service.status_over_time_by_filter(Filter())

        assert store.timeouts == [2.5, 2.5, 2.5]

        ComplianceService(store, Settings(store_timeout=2.5), timeout=0.5).compliance_by_filter(Filter())
        ComplianceService(store, Settings()).compliance_by_filter(Filter())
        assert store.timeouts[-2:] == [0.5, None]

    def test_epoch_anchor(self, scenario_records):
        """Test epoch anchoring ignores the clock."""
        store = MemoryRecordStore({"results": scenario_records})
        service = ComplianceService(
            store,
            Settings(bucket_anchor="epoch"),
            clock=lambda: NOW + timedelta(minutes=1),
        )
        reports = service.compliance_by_stream("web-prod")
        assert reports[0].records[0].interval == NOW - timedelta(minutes=5)


class TestSettings:
    """Test cases for configuration loading."""

    def test_defaults(self):
        """Test default intervals."""
        settings = Settings()
        assert settings.results_timedelta == timedelta(minutes=5)
        assert settings.findings_timedelta == timedelta(minutes=2)
        assert settings.bucket_anchor == "now"

    def test_from_yaml(self, tmp_path):
        """Test loading nested YAML keys."""
        config_file = tmp_path / "config.yaml"
        config_file.write_text(
            "results_interval: 60\n"
            "bucket_anchor: EPOCH\n"
            "strict_filters: true\n"
            "database:\n"
            "  path: /tmp/records.db\n"
            "collections:\n"
            "  findings: observations\n"
            "logging:\n"
            "  level: debug\n"
        )

        settings = Settings.from_yaml(config_file)

        assert settings.results_interval == 60
        assert settings.findings_interval == 120
        assert settings.bucket_anchor == "epoch"
        assert settings.strict_filters is True
        assert settings.database_path == "/tmp/records.db"
        assert settings.findings_collection == "observations"
        assert settings.results_collection == "results"
        assert settings.log_level == "DEBUG"

    def test_invalid_settings(self):
        """Test invalid anchors and intervals are rejected."""
        with pytest.raises(ValueError):
            Settings(bucket_anchor="midnight")
        with pytest.raises(ValueError):
            Settings(results_interval=0)
        with pytest.raises(ValueError):
            Settings(store_timeout=0)

    def test_store_timeout(self):
        """Test the store timeout is read from the database section."""
        assert Settings.from_dict({"database": {"timeout": 1.5}}).store_timeout == 1.5
        assert Settings.from_dict({"database": {"path": "x.db"}}).store_timeout is None

    def test_load_settings_from_env(self, tmp_path, monkeypatch):
        """Test the config path can come from the environment."""
        config_file = tmp_path / "config.yaml"
        config_file.write_text("findings_interval: 30\n")
        monkeypatch.setenv("COMPLIANCE_ENGINE_CONFIG", str(config_file))

        assert load_settings().findings_interval == 30

    def test_load_settings_defaults(self, monkeypatch):
        """Test defaults without any config."""
        monkeypatch.delenv("COMPLIANCE_ENGINE_CONFIG", raising=False)
        assert load_settings() == Settings()


class TestFilterStorage:
    """Test cases for saved filter storage."""

    @pytest.fixture
    def storage(self, tmp_path):
        return FilterStorage(tmp_path / "filters.json")

    def test_crud(self, storage):
        """Test create, read, update and delete."""
        created = storage.create({
            "id": "f1",
            "name": "Prod web",
            "filter": {"scope": {"condition": {"label": "env", "operator": "=", "value": "prod"}}},
        })
        assert created["controls"] == []
        assert created["created_at"] == created["updated_at"]

        assert storage.get_by_id("f1")["name"] == "Prod web"
        assert storage.get_filter("f1") == parse_filter("env=prod")

        updated = storage.update("f1", {"name": "Prod", "controls": ["ac-1"]})
        assert updated["name"] == "Prod"
        assert updated["controls"] == ["ac-1"]

        assert storage.delete("f1")
        assert not storage.delete("f1")
        assert storage.get_all() == []

    def test_missing(self, storage):
        """Test lookups of unknown filters."""
        assert storage.get_by_id("nope") is None
        assert storage.get_filter("nope") is None
        assert storage.update("nope", {"name": "x"}) is None

    def test_invalid_filter_rejected(self, storage):
        """Test malformed filter documents are not stored."""
        bad = {"scope": {"condition": {"label": "a", "operator": "=", "value": "1"},
                         "query": {"operator": "AND", "scopes": []}}}
        with pytest.raises(FilterDecodeError):
            storage.create({"id": "f1", "name": "bad", "filter": bad})
        assert storage.get_all() == []

    def test_unscoped_filter(self, storage):
        """Test a filter without a scope is stored and reads back as match-all."""
        storage.create({"id": "f1", "name": "all", "filter": {"scope": None}})
        assert storage.get_by_id("f1")["filter"] == {"scope": None}
        assert storage.get_filter("f1") == Filter()

    def test_corrupt_file_raises(self, tmp_path):
        """Test a corrupt file is reported rather than overwritten."""
        path = tmp_path / "filters.json"
        path.write_text("{oops")
        storage = FilterStorage(path)
        with pytest.raises(json.JSONDecodeError):
            storage.get_all()


class TestCLI:
    """Test cases for the batch CLI."""

    @pytest.fixture
    def records_file(self, tmp_path):
        path = tmp_path / "records.ndjson"
        lines = [
            {"streamId": "web-prod", "collected": "2024-01-01T11:58:00Z", "status": "satisfied",
             "labels": {"env": "prod", "tier": "web"}},
            {"streamId": "web-prod", "collected": "2024-01-01T11:43:00Z", "status": "not-satisfied",
             "labels": {"env": "prod", "tier": "web"}},
            {"streamId": "db-prod", "collected": "2024-01-01T11:58:00Z", "status": "satisfied",
             "labels": {"env": "prod", "tier": "db"}},
        ]
        path.write_text("\n".join(json.dumps(line) for line in lines))
        return path

    def _args(self, **overrides):
        defaults = dict(
            records=None, mode="compliance", filter_file=None, expression=None,
            stream=None, interval=None, anchor=None, now="2024-01-01T12:00:00Z",
            strict=False, timeout=None, config=None, output=None, verbose=False,
        )
        defaults.update(overrides)
        return argparse.Namespace(**defaults)

    def test_load_records_ndjson(self, records_file):
        """Test loading NDJSON records."""
        records = run_report.load_records(str(records_file))
        assert len(records) == 3
        assert records[0].labels == {"env": "prod", "tier": "web"}

    def test_load_records_json_array(self, tmp_path):
        """Test loading a JSON array of records."""
        path = tmp_path / "records.json"
        path.write_text(json.dumps([{"uuid": "s", "timestamp": "2024-01-01T12:00:00Z", "status": "ok"}]))
        assert [r.stream_id for r in run_report.load_records(str(path))] == ["s"]

    def test_load_records_errors(self, tmp_path):
        """Test invalid input files."""
        with pytest.raises(ValueError):
            run_report.load_records(str(tmp_path / "missing.json"))

        path = tmp_path / "bad.ndjson"
        path.write_text('{"streamId": "s"}\n')
        with pytest.raises(ValueError):
            run_report.load_records(str(path))

    def test_load_records_malformed_label_list(self, tmp_path):
        """Test a label entry without a name is reported with its record index."""
        path = tmp_path / "labels.ndjson"
        path.write_text(
            '{"streamId": "s", "timestamp": "2024-01-01T12:00:00Z", "labels": [{"value": "prod"}]}\n'
        )
        with pytest.raises(ValueError, match="Record 0"):
            run_report.load_records(str(path))

    def test_timeout_option(self, records_file):
        """Test --timeout is accepted alongside a report."""
        output = run_report.run(self._args(records=str(records_file), mode="search", timeout=2.0))
        assert len(output["data"]) == 2

    def test_compliance_mode(self, records_file):
        """Test compliance report output with an expression filter."""
        output = run_report.run(self._args(records=str(records_file), expression="tier=web"))

        assert len(output["data"]) == 1
        report = output["data"][0]
        assert report["_id"] == "web-prod"
        assert [e["hasRecords"] for e in report["records"]] == [True, False, False, True]

    def test_status_mode(self, records_file):
        """Test status histogram output."""
        output = run_report.run(self._args(records=str(records_file), mode="status", interval=300))

        last = output["data"][-1]
        assert last["statuses"] == [{"status": "satisfied", "count": 2}]

    def test_search_mode(self, records_file):
        """Test latest-per-stream output."""
        output = run_report.run(self._args(records=str(records_file), mode="search"))
        assert {r["streamId"]: r["status"] for r in output["data"]} == {
            "db-prod": "satisfied",
            "web-prod": "satisfied",
        }

    def test_compile_mode(self, tmp_path):
        """Test compile mode with a filter document file."""
        filter_file = tmp_path / "filter.json"
        filter_file.write_text(json.dumps({
            "scope": {"condition": {"label": "env", "operator": "!=", "value": "dev"}}
        }))

        output = run_report.run(self._args(mode="compile", filter_file=str(filter_file)))

        assert output["query"] == {"labels.env": {"$ne": "dev"}}
        assert output["sql"]["params"] == ["env", "dev"]

    def test_conflicting_filters(self, tmp_path):
        """Test a filter file and an expression cannot be combined."""
        with pytest.raises(ValueError):
            run_report.run(self._args(mode="compile", filter_file="f.json", expression="a=1"))
