import threading

import pytest

from netspeed.errors import ConcurrencyRejection
from netspeed.speedtests.registry import TestRegistry as Registry


def test_claim_is_exclusive_per_scope_and_host():
    registry = Registry()
    assert registry.claim("site-a", "10.0.0.5")
    assert not registry.claim("site-a", "10.0.0.5")
    assert registry.claim("site-b", "10.0.0.5")
    assert registry.claim("site-a", "10.0.0.6")


def test_release_frees_the_slot():
    registry = Registry()
    registry.claim("site-a", "10.0.0.5")
    registry.release("site-a", "10.0.0.5")
    assert not registry.is_running("site-a", "10.0.0.5")
    assert registry.claim("site-a", "10.0.0.5")


def test_concurrent_claims_admit_exactly_one():
    registry = Registry()
    barrier = threading.Barrier(16)
    outcomes = []
    lock = threading.Lock()

    def contender():
        barrier.wait()
        won = registry.claim("site-a", "10.0.0.5")
        with lock:
            outcomes.append(won)

    threads = [threading.Thread(target=contender) for _ in range(16)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert outcomes.count(True) == 1
    assert outcomes.count(False) == 15


def test_hold_releases_on_error_and_rejects_duplicates():
    registry = Registry()
    with pytest.raises(RuntimeError):
        with registry.hold("site-a", "10.0.0.5"):
            assert registry.running("site-a") == ["10.0.0.5"]
            with pytest.raises(ConcurrencyRejection) as excinfo:
                with registry.hold("site-a", "10.0.0.5"):
                    pass
            assert str(excinfo.value) == "A speed test is already running for this device"
            raise RuntimeError("probe blew up")
    assert registry.running("site-a") == []
