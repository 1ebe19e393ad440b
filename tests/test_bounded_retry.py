import sys
from pathlib import Path

import pytest

sys.path.append(str(Path(__file__).resolve().parents[1]))
from bounded_retry import ConsistencyTimeoutError, wait_for  # noqa: E402


def scripted(*results):
    remaining = list(results)
    calls = []

    def probe():
        calls.append(len(calls) + 1)
        return remaining.pop(0)

    return probe, calls


def test_returns_first_truthy_result_without_sleeping():
    sleeps = []
    probe, calls = scripted({"id": 1})

    assert wait_for(probe, sleep=sleeps.append) == {"id": 1}
    assert calls == [1]
    assert sleeps == []


def test_retries_until_the_record_appears():
    sleeps = []
    probe, calls = scripted(None, [], {"id": 1})

    assert wait_for(probe, attempts=5, delay=0.1, sleep=sleeps.append) == {"id": 1}
    assert calls == [1, 2, 3]
    assert sleeps == [0.1, 0.1]


def test_gives_up_after_all_attempts():
    sleeps = []
    probe, calls = scripted(*([None] * 4))

    with pytest.raises(ConsistencyTimeoutError) as excinfo:
        wait_for(probe, attempts=4, delay=0.5, description="profile u-1", sleep=sleeps.append)

    assert excinfo.value.attempts == 4
    assert str(excinfo.value) == "profile u-1 not found after 4 attempts"
    assert calls == [1, 2, 3, 4]
    assert sleeps == [0.5, 0.5, 0.5]


def test_backoff_grows_the_delay():
    sleeps = []
    probe, _ = scripted(None, None, None, "ok")

    wait_for(probe, attempts=4, delay=0.1, backoff=2.0, sleep=sleeps.append)

    assert sleeps == pytest.approx([0.1, 0.2, 0.4])


def test_elapsed_cap_stops_early():
    now = [0.0]
    sleeps = []

    def sleep(seconds):
        sleeps.append(seconds)
        now[0] += seconds

    probe, calls = scripted(*([None] * 10))

    with pytest.raises(ConsistencyTimeoutError) as excinfo:
        wait_for(probe, attempts=10, delay=1.0, max_elapsed=2.5, sleep=sleep, clock=lambda: now[0])

    assert calls == [1, 2, 3]
    assert sleeps == [1.0, 1.0]
    assert excinfo.value.attempts == 3


def test_probe_errors_propagate():
    def probe():
        raise RuntimeError("store offline")

    with pytest.raises(RuntimeError, match="store offline"):
        wait_for(probe, sleep=lambda _: None)


def test_attempts_must_be_positive():
    with pytest.raises(ValueError):
        wait_for(lambda: True, attempts=0)
