from concurrent.futures import ThreadPoolExecutor

import pytest

from conftest import FakeExecutor, FakeProbe, FakeTopology
from netspeed.cache import ScopedCache
from netspeed.exporter import CSVExporter
from netspeed.remote import CommandResult
from netspeed.speedtests.correlator import PathCorrelator
from netspeed.speedtests.gateway_wan import GatewayWanController
from netspeed.speedtests.lifecycle import RemoteSpeedTestController
from netspeed.speedtests.merger import ResultMerger
from netspeed.speedtests.models import Direction, DirectionMeasurement, SpeedTestResult
from netspeed.speedtests.platform import OsDetector
from netspeed.speedtests.registry import TestRegistry as Registry
from netspeed.speedtests.service import SpeedTestService
from netspeed.web.app import create_web_app


class RecordingQueue:
    def __init__(self):
        self.jobs = []

    def submit(self, record_id, delay=0.0):
        self.jobs.append((record_id, delay))
        return True


@pytest.fixture
def stack(app_config, repository):
    executor = FakeExecutor({"uname -s": CommandResult(True, "Linux"), "nohup": CommandResult(True, "999")})
    registry = Registry()
    correlator = PathCorrelator(FakeTopology())
    controller = RemoteSpeedTestController(
        app_config.iperf3,
        executor,
        registry,
        OsDetector(executor, ScopedCache()),
        FakeProbe(
            DirectionMeasurement(success=True, bits_per_second=200e6),
            DirectionMeasurement(success=True, bits_per_second=100e6),
        ),
        correlator,
        repository,
        sleep=lambda seconds: None,
    )
    pool = ThreadPoolExecutor(max_workers=2)
    service = SpeedTestService(app_config, controller, registry, repository, correlator, pool)
    queue = RecordingQueue()
    gateway = GatewayWanController(app_config.gateway, app_config.gateway_binary_path, executor, repository, queue)
    app = create_web_app(
        config=app_config,
        service=service,
        merger=ResultMerger(repository, queue),
        collector=None,
        gateway=gateway,
        exporter=CSVExporter(app_config, repository),
    )
    app.config["TESTING"] = True
    yield app.test_client(), registry, pool, repository
    pool.shutdown(wait=True)


def stored(repository, host="10.0.0.5", **overrides):
    values = dict(scope_id="default", device_host=host, direction=Direction.DEVICE_INITIATED,
                  download_bps=200e6, upload_bps=100e6, success=True)
    values.update(overrides)
    return repository.save(SpeedTestResult(**values))


def test_run_speedtest_is_queued(stack):
    client, _, pool, repository = stack
    response = client.post("/api/speedtests", json={"host": "10.0.0.5", "duration": 5})
    assert response.status_code == 202
    assert response.get_json() == {"status": "queued", "host": "10.0.0.5"}
    pool.shutdown(wait=True)
    [result] = repository.recent("default")
    assert result.success
    assert result.duration_seconds == 5


def test_run_speedtest_requires_host(stack):
    client, _, _, _ = stack
    assert client.post("/api/speedtests", json={}).status_code == 400


def test_run_speedtest_conflicts_when_already_running(stack):
    client, registry, _, _ = stack
    registry.claim("default", "10.0.0.5")
    response = client.post("/api/speedtests", json={"host": "10.0.0.5"})
    assert response.status_code == 409


def test_results_listing_and_lookup(stack):
    client, _, _, repository = stack
    record = stored(repository)
    listing = client.get("/api/speedtests?scope=default").get_json()
    assert [item["id"] for item in listing] == [record.id]
    assert client.get(f"/api/speedtests/{record.id}").get_json()["device_host"] == "10.0.0.5"
    assert client.get("/api/speedtests/9999").status_code == 404
    assert client.get("/api/speedtests?direction=sideways").status_code == 400


def test_notes_and_delete(stack):
    client, _, _, repository = stack
    record = stored(repository)
    assert client.put(f"/api/speedtests/{record.id}/notes", json={"notes": "after firmware update"}).status_code == 200
    assert repository.get(record.id).notes == "after firmware update"
    assert client.delete(f"/api/speedtests/{record.id}").status_code == 200
    assert client.delete(f"/api/speedtests/{record.id}").status_code == 404


def test_browser_result_is_stored(stack):
    client, _, _, _ = stack
    response = client.post("/api/speedtests/browser", json={"download_mbps": 300, "upload_mbps": 40})
    assert response.status_code == 201
    body = response.get_json()
    assert body["direction"] == Direction.BROWSER_TO_SERVER.value
    assert client.post("/api/speedtests/browser", json={"download_mbps": "fast"}).status_code == 400


def test_gateway_endpoints(stack):
    client, _, _, _ = stack
    assert client.post("/api/gateway/speedtest", json={"interface": "eth0; reboot"}).status_code == 400
    assert client.post("/api/gateway/speedtest/cancel").status_code == 409
    progress = client.get("/api/gateway/speedtest/progress").get_json()
    assert progress["running"] is False
    assert progress["phase"] == "Idle"
    assert client.get("/api/gateway/speedtest/result").get_json() is None


def test_collector_status_when_disabled(stack):
    client, _, _, _ = stack
    assert client.get("/api/collector/status").get_json() == {"state": "disabled"}


def test_csv_export(stack):
    client, _, _, repository = stack
    stored(repository)
    response = client.get("/api/export/csv?start=2000-01-01T00:00:00Z")
    assert response.status_code == 200
    assert response.mimetype == "text/csv"
    lines = response.get_data(as_text=True).strip().splitlines()
    assert lines[0].startswith("timestamp,scope,direction")
    assert len(lines) == 2
