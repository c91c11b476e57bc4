"""
Tests for structured logging and in-process metrics.
"""

import json
import logging

from src.shared.logging_config import (
    CorrelationContext, CorrelationFilter, JSONFormatter, get_correlation_id, get_logger
)
from src.shared.metrics_collector import Counter, Histogram, get_metrics_collector


class TestLogging:
    """Test logger helpers."""

    def test_correlation_context(self):
        assert get_correlation_id() is None
        with CorrelationContext("corr-1"):
            assert get_correlation_id() == "corr-1"
        assert get_correlation_id() is None

    def test_context_fields_are_stamped_on_records(self):
        record = logging.LogRecord("tests.logging", logging.INFO, __file__, 1, "hi", (), None)

        with CorrelationContext("corr-3", provider="github"):
            with CorrelationContext("corr-4"):
                CorrelationFilter().filter(record)

        assert record.correlation_id == "corr-4"
        assert record.provider == "github"
        assert record.component == "logging"

    def test_json_formatter_includes_fields(self, caplog):
        logger = get_logger("tests.logging", "webhook_emitter")

        with caplog.at_level(logging.INFO, logger="tests.logging"):
            with CorrelationContext("corr-2"):
                # "name" collides with a LogRecord attribute
                logger.info("Delivered", operation="deliver", endpoint="https://a.example.com", name="x")
                record = caplog.records[-1]
                CorrelationFilter().filter(record)

        entry = json.loads(JSONFormatter().format(record))

        assert entry["message"] == "Delivered"
        assert entry["component"] == "webhook_emitter"
        assert entry["operation"] == "deliver"
        assert entry["endpoint"] == "https://a.example.com"
        assert entry["field_name"] == "x"
        assert entry["correlation_id"] == "corr-2"


class TestMetrics:
    """Test counters and histograms."""

    def test_counter_labels(self):
        counter = Counter("deliveries")
        counter.increment(event_type="a", success=True)
        counter.increment(2, event_type="a", success=False)

        assert counter.get_value() == 3
        assert counter.get_value(event_type="a", success=True) == 1
        assert counter.get_value(success=False, event_type="a") == 2

    def test_histogram_summary(self):
        histogram = Histogram("latency", max_samples=3)
        assert histogram.summary() == {"count": 0}

        for value in [10, 20, 30, 40]:
            histogram.observe(value)

        summary = histogram.summary()
        assert summary["count"] == 3
        assert summary["min"] == 20
        assert summary["max"] == 40

    def test_collector_registry(self):
        collector = get_metrics_collector()
        collector.get_counter("webhook_test_total").increment()

        assert collector.get_counter("webhook_test_total") is collector.get_counter("webhook_test_total")
        assert collector.get_all_metrics()["counters"]["webhook_test_total"] == 1
