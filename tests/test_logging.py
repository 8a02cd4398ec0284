"""
Test cases for structured logging helpers.
"""

import logging

import pytest

from util.logging import StructuredLogger


@pytest.fixture
def structured():
    return StructuredLogger("geowraith.test")


def test_log_operation_format(structured, caplog):
    with caplog.at_level(logging.INFO, logger="geowraith.test"):
        structured.log_operation("index_build.lattice", "success", {"vectors": 12})

    assert "Operation: index_build.lattice, Status: success, Details: {'vectors': 12}" in caplog.text


def test_degraded_tier_logs_warning(structured, caplog):
    with caplog.at_level(logging.INFO, logger="geowraith.test"):
        structured.log_embedding_tier("image", "geoclip", "degraded", {"reason": "weights missing"})

    record = caplog.records[-1]
    assert record.levelno == logging.WARNING
    assert "embedding.image" in record.getMessage()
    assert "weights missing" in record.getMessage()


def test_failed_build_logs_error(structured, caplog):
    with caplog.at_level(logging.INFO, logger="geowraith.test"):
        structured.log_index_build("complete", "failed", {"failures": ["geoclip: unavailable"]})

    assert caplog.records[-1].levelno == logging.ERROR


def test_cache_event_truncates_version(structured, caplog):
    with caplog.at_level(logging.INFO, logger="geowraith.test"):
        structured.log_cache_event("hit", "a" * 64, {"count": 3})

    message = caplog.records[-1].getMessage()
    assert "cache.hit" in message
    assert "'version': '" + "a" * 16 + "'" in message
    assert "a" * 17 not in message


def test_anchor_skipped_truncates_source(structured, caplog):
    with caplog.at_level(logging.INFO, logger="geowraith.test"):
        structured.log_anchor_skipped("https://example.com/" + "x" * 500, "HTTP 404")

    record = caplog.records[-1]
    assert record.levelno == logging.WARNING
    assert "x" * 200 not in record.getMessage()


def test_record_rejected_and_prediction(structured, caplog):
    with caplog.at_level(logging.INFO, logger="geowraith.test"):
        structured.log_record_rejected("lat_000001", "lat must be within [-90, 90]")
        structured.log_prediction("req-9", "withheld", {"tier": "low"})

    messages = [r.getMessage() for r in caplog.records]
    assert any("catalog.record_rejected" in m and "lat_000001" in m for m in messages)
    assert any("predict" in m and "req-9" in m and "withheld" in m for m in messages)


if __name__ == "__main__":
    pytest.main([__file__])
