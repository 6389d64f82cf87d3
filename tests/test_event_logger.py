"""
Tests for linkd/event_logger.py - Hash chained audit log

Tests cover:
- Event creation and logging
- Hash chain integrity
- Chain verification and tamper detection
- Event retrieval
- Thread safety
"""

import json
import os
import stat
import threading

import pytest

import sys
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from linkd.event_logger import GENESIS_HASH, EngineEvent, EventLogger, EventType


class TestEngineEvent:
    """Tests for the EngineEvent dataclass."""

    @pytest.mark.unit
    def test_to_dict(self):
        event = EngineEvent(
            event_id="test-123",
            timestamp="2024-01-01T00:00:00Z",
            event_type=EventType.PAIRED,
            details="Paired phone-1",
            metadata={"capabilities": ["file_transfer"]},
            hash_chain=GENESIS_HASH,
            device_id="phone-1",
        )
        d = event.to_dict()
        assert d['event_type'] == "paired"
        assert d['device_id'] == "phone-1"
        assert EngineEvent.from_dict(d) == event

    @pytest.mark.unit
    def test_hash_ignores_chain_link(self):
        kwargs = dict(event_id="e", timestamp="t", event_type=EventType.REVOKED,
                      details="d", metadata={})
        a = EngineEvent(hash_chain="a" * 64, **kwargs)
        b = EngineEvent(hash_chain="b" * 64, **kwargs)
        assert a.compute_hash() == b.compute_hash()
        c = EngineEvent(hash_chain="a" * 64, **{**kwargs, 'details': "other"})
        assert a.compute_hash() != c.compute_hash()


class TestEventLogger:
    """Tests for EventLogger."""

    @pytest.mark.unit
    def test_first_event_links_to_genesis(self, event_logger):
        event = event_logger.log_event(EventType.ENGINE_START, "started")
        assert event.hash_chain == GENESIS_HASH
        assert event_logger.get_last_hash() == event.compute_hash()
        assert event_logger.get_event_count() == 1

    @pytest.mark.unit
    def test_chain_links(self, event_logger):
        first = event_logger.log_event(EventType.ENGINE_START, "started")
        second = event_logger.log_event(EventType.DEVICE_DISCOVERED, "found", device_id="phone-1")
        assert second.hash_chain == first.compute_hash()

    @pytest.mark.unit
    def test_verify_chain(self, populated_event_logger):
        valid, error = populated_event_logger.verify_chain()
        assert valid is True
        assert error is None

    @pytest.mark.unit
    @pytest.mark.security
    def test_tampering_detected(self, populated_event_logger, temp_log_file):
        lines = temp_log_file.read_text().splitlines()
        record = json.loads(lines[1])
        record['details'] = "Discovered someone else"
        lines[1] = json.dumps(record, sort_keys=True)
        temp_log_file.write_text("\n".join(lines) + "\n")

        valid, error = populated_event_logger.verify_chain()
        assert valid is False
        assert "event 2" in error

    @pytest.mark.unit
    @pytest.mark.security
    def test_deletion_detected(self, populated_event_logger, temp_log_file):
        lines = temp_log_file.read_text().splitlines()
        del lines[2]
        temp_log_file.write_text("\n".join(lines) + "\n")
        valid, _ = populated_event_logger.verify_chain()
        assert valid is False

    @pytest.mark.unit
    def test_chain_resumes_after_restart(self, populated_event_logger, temp_log_file):
        reopened = EventLogger(str(temp_log_file))
        assert reopened.get_event_count() == 5
        assert reopened.get_last_hash() == populated_event_logger.get_last_hash()
        reopened.log_event(EventType.ENGINE_STOP, "stopped")
        assert reopened.verify_chain() == (True, None)

    @pytest.mark.unit
    def test_recent_events_newest_first(self, populated_event_logger):
        events = populated_event_logger.get_recent_events(2)
        assert [e.event_type for e in events] == [EventType.DEVICE_DISCOVERED,
                                                  EventType.STATE_TRANSITION]
        assert events[0].device_id == "phone-2"

    @pytest.mark.unit
    def test_events_by_type_and_device(self, populated_event_logger):
        discovered = populated_event_logger.get_events_by_type(EventType.DEVICE_DISCOVERED)
        assert [e.device_id for e in discovered] == ["phone-2", "phone-1"]
        only_one = populated_event_logger.get_events_by_type(
            EventType.DEVICE_DISCOVERED, device_id="phone-1")
        assert len(only_one) == 1
        limited = populated_event_logger.get_events_by_type(EventType.DEVICE_DISCOVERED, limit=1)
        assert len(limited) == 1

    @pytest.mark.unit
    @pytest.mark.security
    def test_log_file_permissions(self, event_logger, temp_log_file):
        event_logger.log_event(EventType.ENGINE_START, "started")
        assert stat.S_IMODE(os.stat(temp_log_file).st_mode) == 0o600

    @pytest.mark.unit
    def test_creates_log_directory(self, temp_dir):
        path = temp_dir / "nested" / "logs" / "events.log"
        EventLogger(str(path)).log_event(EventType.ENGINE_START, "started")
        assert path.exists()

    @pytest.mark.unit
    def test_concurrent_logging(self, event_logger):
        def worker(n):
            for i in range(25):
                event_logger.log_event(EventType.STATE_TRANSITION, f"{n}-{i}", device_id=f"dev-{n}")

        threads = [threading.Thread(target=worker, args=(n,)) for n in range(4)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        assert event_logger.get_event_count() == 100
        assert event_logger.verify_chain() == (True, None)
