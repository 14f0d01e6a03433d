from unittest.mock import call, patch

import pytest

from uncflow.affinity import AffinityGuard
from uncflow.errors import AffinityError


def test_negative_cpu_rejected():
    with pytest.raises(AffinityError, match="Invalid CPU ID: -1"):
        AffinityGuard(-1)


@patch("os.sched_setaffinity", create=True)
@patch("os.sched_getaffinity", create=True, return_value={0, 1, 2, 3})
def test_guard_pins_and_restores(get_affinity, set_affinity):
    with AffinityGuard(2) as guard:
        assert guard.cpu == 2
        assert set_affinity.call_args_list == [call(0, {2})]
    assert set_affinity.call_args_list == [call(0, {2}), call(0, {0, 1, 2, 3})]


@patch("os.sched_setaffinity", create=True)
@patch("os.sched_getaffinity", create=True, return_value={0, 1})
def test_guard_restores_after_exception(get_affinity, set_affinity):
    seen = []
    with pytest.raises(RuntimeError) as info:
        with AffinityGuard(1) as guard:
            seen.append(guard.cpu)
            raise RuntimeError("body failed")
    assert seen == [1]
    assert str(info.value) == "body failed"
    assert set_affinity.call_args_list == [call(0, {1}), call(0, {0, 1})]


@patch("os.sched_setaffinity", create=True, side_effect=OSError(22, "Invalid argument"))
@patch("os.sched_getaffinity", create=True, return_value={0})
def test_set_failure_raises(get_affinity, set_affinity):
    with pytest.raises(AffinityError, match="Failed to set affinity to CPU 5"):
        with AffinityGuard(5):
            pass


@patch("os.sched_setaffinity", create=True)
@patch("os.sched_getaffinity", create=True, side_effect=OSError(1, "denied"))
def test_get_failure_raises(get_affinity, set_affinity):
    with pytest.raises(AffinityError, match="Failed to get affinity"):
        with AffinityGuard(0):
            pass
    assert set_affinity.call_count == 0