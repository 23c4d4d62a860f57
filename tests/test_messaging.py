import threading

import pytest

from tenant_drive.config import MessageBusConfig, ObservabilityConfig
from tenant_drive.messaging import InMemoryBus, MessageEnvelope, build_bus
from tenant_drive.telemetry import TelemetryCollector


def test_failing_handler_does_not_block_others():
    bus = InMemoryBus()
    received = []

    def broken(envelope):
        raise RuntimeError("sink down")

    bus.subscribe("audit.events", broken)
    bus.subscribe("audit.events", received.append)
    delivered = bus.publish(MessageEnvelope(topic="audit.events", payload={"action": "X"}))
    assert delivered == 1
    assert [envelope.payload["action"] for envelope in received] == ["X"]
    assert bus.delivery_failures == 1


def test_unsubscribe_stops_delivery():
    bus = InMemoryBus()
    received = []
    unsubscribe = bus.subscribe("uploads.completed", received.append)
    bus.publish(MessageEnvelope(topic="uploads.completed", payload={}))
    unsubscribe()
    unsubscribe()
    assert bus.publish(MessageEnvelope(topic="uploads.completed", payload={})) == 0
    assert len(received) == 1


def test_configured_bus_rejects_unknown_topics():
    bus = build_bus(MessageBusConfig())
    with pytest.raises(ValueError):
        bus.publish(MessageEnvelope(topic="uploads.started", payload={}))
    with pytest.raises(ValueError):
        bus.subscribe("nope", lambda envelope: None)
    assert bus.publish(MessageEnvelope(topic="shares.transitions", payload={})) == 0


def test_unsupported_backend():
    with pytest.raises(NotImplementedError):
        build_bus(MessageBusConfig(backend="kafka"))


def test_metric_totals_filter_by_label_across_threads():
    telemetry = TelemetryCollector(ObservabilityConfig())

    def emit():
        for _ in range(100):
            telemetry.emit_metric("transfer.part_uploaded", 2, {"job_id": "j1"})

    threads = [threading.Thread(target=emit) for _ in range(4)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()
    telemetry.emit_metric("transfer.part_uploaded", 5, {"job_id": "j2"})
    assert telemetry.metric_total("transfer.part_uploaded", job_id="j1") == 800
    assert telemetry.metric_total("transfer.part_uploaded") == 805
    assert len(telemetry.samples("transfer.part_uploaded")) == 401


def test_samples_are_bounded():
    telemetry = TelemetryCollector(ObservabilityConfig(max_samples=3))
    for index in range(5):
        telemetry.emit_event("tick", {"index": str(index)})
    assert telemetry.count_events("tick") == 3
    assert [event.attributes["index"] for event in telemetry.events] == ["2", "3", "4"]
