"""Unit tests for the tracer implementations and store span naming."""

from datetime import UTC, datetime, timedelta, timezone

from migrationstate.dialects import SQLiteDialect
from migrationstate.observability import (
    ATTR_DB_SYSTEM,
    MockTracer,
    NullTracer,
    Tracer,
    create_tracer,
)
from migrationstate.stores import BatchStore
from migrationstate.stores._base import as_bool, as_datetime, dump_json, load_json


class TestTracers:
    def test_null_tracer(self):
        tracer = NullTracer()
        with tracer.span("anything", {"a": 1}) as span:
            assert span is None
        assert tracer.enabled is False

    def test_mock_tracer_records(self):
        tracer = MockTracer()
        with tracer.span("first", {"key": "value"}):
            pass
        with tracer.span("second"):
            pass
        assert tracer.spans == [("first", {"key": "value"}), ("second", None)]
        assert tracer.span_names == ["first", "second"]
        tracer.clear()
        assert tracer.spans == []

    def test_disabled_tracing_gives_null_tracer(self):
        assert isinstance(create_tracer(__name__, enable_tracing=False), NullTracer)

    def test_protocol(self):
        assert isinstance(MockTracer(), Tracer)
        assert isinstance(NullTracer(), Tracer)


class TestStoreSpans:
    def test_span_name_and_system_attribute(self):
        """Store spans are named migrationstate.<store>.<operation>."""
        tracer = MockTracer()
        store = BatchStore(object(), SQLiteDialect(), tracer=tracer)  # type: ignore[arg-type]
        with store._span("get_batch", batch_id=3):
            pass
        name, attributes = tracer.spans[0]
        assert name == "migrationstate.batch_store.get_batch"
        assert attributes == {ATTR_DB_SYSTEM: "sqlite", "batch_id": 3}

    def test_repr(self):
        store = BatchStore(object(), SQLiteDialect(), tracer=NullTracer())  # type: ignore[arg-type]
        assert repr(store) == "BatchStore(dialect=sqlite, tracing=disabled)"


class TestColumnConversion:
    def test_sqlite_text_timestamp(self):
        value = as_datetime("2024-03-01 12:30:00.000250")
        assert value == datetime(2024, 3, 1, 12, 30, 0, 250, tzinfo=UTC)

    def test_naive_is_utc(self):
        assert as_datetime(datetime(2024, 3, 1)).tzinfo is UTC

    def test_aware_is_converted(self):
        value = datetime(2024, 3, 1, 14, 0, tzinfo=timezone(timedelta(hours=2)))
        assert as_datetime(value) == datetime(2024, 3, 1, 12, 0, tzinfo=UTC)

    def test_none(self):
        assert as_datetime(None) is None
        assert as_bool(None) is False
        assert dump_json(None) is None
        assert load_json(None) is None
        assert load_json("") is None

    def test_bool_and_json(self):
        assert as_bool(1) is True
        assert as_bool(0) is False
        assert load_json(dump_json({"version": "1.2"})) == {"version": "1.2"}
        assert load_json({"already": "parsed"}) == {"already": "parsed"}
