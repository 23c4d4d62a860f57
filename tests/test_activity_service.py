from tenant_drive.config import ObservabilityConfig
from tenant_drive.errors import MetadataStoreError
from tenant_drive.messaging import InMemoryBus, MessageEnvelope
from tenant_drive.services.activity_service import ActivityService
from tenant_drive.telemetry import TelemetryCollector


class _BrokenStore:
    def append_audit(self, event):
        raise MetadataStoreError("disk full")


def _audit(bus, action, tenant_id):
    bus.publish(MessageEnvelope(topic="audit.events", payload={"action": action, "resource": "file", "tenant_id": tenant_id}))


def test_recent_events_filter_by_tenant():
    bus = InMemoryBus()
    activity = ActivityService(bus=bus, telemetry=TelemetryCollector(ObservabilityConfig()))
    _audit(bus, "FILE_UPLOAD", "t1")
    _audit(bus, "FILE_DELETE", "t2")
    _audit(bus, "FILE_SHARED", "t1")
    assert [event.action for event in activity.recent(tenant_id="t1")] == ["FILE_SHARED", "FILE_UPLOAD"]
    assert len(activity.recent(limit=2)) == 2
    assert activity.telemetry.count_events("audit_file_upload") == 1


def test_persistence_failure_does_not_reach_publisher():
    bus = InMemoryBus()
    activity = ActivityService(
        bus=bus,
        telemetry=TelemetryCollector(ObservabilityConfig()),
        metadata_service=_BrokenStore(),
    )
    _audit(bus, "FILE_UPLOAD", "t1")
    assert activity.recent()[0].action == "FILE_UPLOAD"


def test_share_transitions_are_recorded():
    bus = InMemoryBus()
    activity = ActivityService(bus=bus, telemetry=TelemetryCollector(ObservabilityConfig()))
    bus.publish(MessageEnvelope(topic="shares.transitions", payload={"share_id": "s1", "status": "EXPIRED"}))
    assert activity.telemetry.count_events("activity_shares.transitions") == 1
