import threading
from datetime import datetime, timedelta

import pytest

from conftest import FakeTopology
from netspeed.speedtests.correlator import CorrelationQueue, PathCorrelator
from netspeed.speedtests.merger import ResultMerger, can_merge, merge_into, standalone_result
from netspeed.speedtests.models import ClientReport, Direction


class RecordingQueue:
    def __init__(self):
        self.jobs = []

    def submit(self, record_id, delay=0.0):
        self.jobs.append((record_id, delay))
        return True


def report(download=0.0, upload=0.0, at=None, peer="192.168.1.50", streams=4, scope="default"):
    return ClientReport(
        peer_address=peer,
        scope_id=scope,
        download_bps=download,
        upload_bps=upload,
        download_bytes=int(download // 8),
        upload_bytes=int(upload // 8),
        upload_retransmits=3 if upload else 0,
        parallel_streams=streams,
        raw='{"end": {}}',
        timestamp=at or datetime.utcnow(),
    )


@pytest.fixture
def merger(repository):
    return ResultMerger(repository, RecordingQueue(), window_seconds=60, background_delay=2.0)


def test_complementary_reports_merge_into_one_record(merger, repository):
    now = datetime.utcnow()
    first = merger.record(report(upload=50e6, at=now))
    second = merger.record(report(download=80e6, at=now + timedelta(seconds=10), streams=8))

    assert second.id == first.id
    stored = repository.get(first.id)
    assert stored.download_mbps == pytest.approx(80)
    assert stored.upload_mbps == pytest.approx(50)
    assert stored.parallel_streams == 8
    assert len(repository.recent("default")) == 1
    assert merger.correlation_queue.jobs == [(first.id, 2.0), (first.id, 0.0)]


def test_same_direction_reports_stay_separate(merger, repository):
    now = datetime.utcnow()
    first = merger.record(report(download=30e6, at=now))
    second = merger.record(report(download=40e6, at=now + timedelta(seconds=5)))

    assert first.id != second.id
    assert repository.get(first.id).download_mbps == pytest.approx(30)
    assert len(repository.recent("default")) == 2


def test_reports_outside_window_do_not_merge(merger, repository):
    now = datetime.utcnow()
    first = merger.record(report(upload=50e6, at=now - timedelta(seconds=90)))
    second = merger.record(report(download=80e6, at=now))
    assert first.id != second.id


def test_other_peers_and_scopes_do_not_merge(merger):
    now = datetime.utcnow()
    first = merger.record(report(upload=50e6, at=now))
    assert merger.record(report(download=80e6, at=now, peer="192.168.1.51")).id != first.id
    assert merger.record(report(download=80e6, at=now, scope="site-2")).id != first.id


def test_can_merge_requires_strict_complement():
    prior = standalone_result(report(upload=50e6))
    assert can_merge(prior, report(download=80e6))
    assert not can_merge(prior, report(download=80e6, upload=10e6))
    assert not can_merge(prior, report(upload=60e6))
    assert not can_merge(standalone_result(report(download=1e6, upload=1e6)), report(download=80e6))


def test_merge_never_overwrites_populated_fields():
    prior = standalone_result(report(upload=50e6, streams=6))
    merged = merge_into(prior, report(download=80e6, upload=99e6, streams=2))
    assert merged.upload_bps == 50e6
    assert merged.upload_retransmits == 3
    assert merged.download_bps == 80e6
    assert merged.parallel_streams == 6


def test_standalone_records_are_client_to_server_successes():
    result = standalone_result(report(download=80e6))
    assert result.direction is Direction.CLIENT_TO_SERVER
    assert result.success
    assert result.error is None
    assert result.raw_download == '{"end": {}}'


def test_browser_result_swaps_directions(merger, repository):
    stored = merger.record_browser("default", "192.168.1.77", download_mbps=300, upload_mbps=40, download_mb=100)
    assert stored.direction is Direction.BROWSER_TO_SERVER
    assert stored.download_mbps == pytest.approx(40)
    assert stored.upload_mbps == pytest.approx(300)
    assert stored.upload_bytes == 100 * 1_048_576
    assert stored.parallel_streams == 6


class HeldTopology(FakeTopology):
    """Blocks path computation until ``release`` is set."""

    def __init__(self):
        super().__init__()
        self.entered = threading.Event()
        self.release = threading.Event()

    def compute_path(self, peer_address, local_address):
        self.entered.set()
        self.release.wait(5)
        return super().compute_path(peer_address, local_address)


def test_merge_during_background_correlation_keeps_both_directions(repository):
    topology = HeldTopology()
    queue = CorrelationQueue(PathCorrelator(topology), repository)
    merger = ResultMerger(repository, queue, window_seconds=60, background_delay=0.0)
    queue.start()
    try:
        now = datetime.utcnow()
        first = merger.record(report(download=80e6, at=now))
        assert topology.entered.wait(5)

        merged = merger.record(report(upload=50e6, at=now + timedelta(seconds=5)))
        assert merged.id == first.id
        assert merged.upload_bps == 50e6

        topology.release.set()
        queue.join()
    finally:
        queue.stop()

    stored = repository.get(first.id)
    assert stored.download_bps == 80e6
    assert stored.upload_bps == 50e6
    assert stored.has_valid_path
    assert stored.path_analysis.upload_efficiency_pct == 5.0
