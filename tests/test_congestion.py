import pytest

from wirelessdap.congestion import (
    RTO_DEF,
    RTO_MAX,
    THRESH_INIT,
    THRESH_MIN,
    CongestionWindow,
    RttEstimator,
    bound,
    timediff,
)


def test_timediff_plain():
    assert timediff(1005, 1000) == 5
    assert timediff(1000, 1005) == -5


def test_timediff_wraps_around():
    assert timediff(0, 0xFFFFFFFF) == 1
    assert timediff(0xFFFFFFFF, 0) == -1


@pytest.mark.parametrize("a,b", [(0, 0), (7, 100000), (0xFFFFFFF0, 16), (12345, 678)])
def test_timediff_antisymmetric(a, b):
    assert timediff(a, b) == -timediff(b, a)


def test_bound_clamps():
    assert bound(10, 5, 20) == 10
    assert bound(10, 50, 20) == 20
    assert bound(10, 15, 20) == 15


def test_rtt_initial_timeout():
    est = RttEstimator()
    assert est.rto == RTO_DEF
    assert est.srtt == 0


def test_rtt_first_sample_sets_srtt():
    est = RttEstimator(minrto=1, interval=10)
    est.update(80)
    assert est.srtt == 80
    assert est.rttval == 40


def test_rtt_timeout_capped_at_maximum():
    est = RttEstimator()
    assert est.update(10_000_000) == RTO_MAX
    assert est.rto == RTO_MAX


def test_rtt_timeout_not_below_minimum():
    est = RttEstimator(minrto=100, interval=0)
    assert est.update(1) == 100


def test_rtt_converges_on_constant_samples():
    est = RttEstimator(minrto=1, interval=10)
    for _ in range(200):
        est.update(50)
    assert est.srtt == 50
    assert est.rttval == 0
    assert est.rto == 60


@pytest.mark.parametrize("samples", [[1, 2, 3], [500, 10, 900, 3], [0, 0, 5]])
def test_rtt_timeout_within_bounds(samples):
    est = RttEstimator(minrto=30, interval=20)
    for rtt in samples:
        rto = est.update(rtt)
        assert 30 <= rto <= RTO_MAX
        assert est.srtt >= 0


def test_window_initial_state():
    win = CongestionWindow(1376)
    assert win.cwnd == 0
    assert win.incr == 0
    assert win.ssthresh == THRESH_INIT


def test_window_rejects_bad_mss():
    with pytest.raises(ValueError):
        CongestionWindow(0)


def test_window_slow_start_steps():
    win = CongestionWindow(100)
    win.on_una_advanced(32)
    assert win.cwnd == 1
    assert win.incr == 100
    win.on_una_advanced(32)
    assert win.cwnd == 2
    assert win.incr == 200


def test_window_unchanged_when_at_remote_window():
    win = CongestionWindow(100)
    win.cwnd = 8
    win.incr = 800
    win.on_una_advanced(8)
    assert (win.cwnd, win.incr) == (8, 800)


def test_window_on_loss():
    win = CongestionWindow(100)
    win.cwnd = 20
    win.on_loss(20)
    assert win.ssthresh == 10
    assert win.cwnd == 1
    assert win.incr == 100


def test_window_on_loss_respects_threshold_minimum():
    win = CongestionWindow(100)
    win.on_loss(3)
    assert win.ssthresh == THRESH_MIN


def test_window_on_fast_resend():
    win = CongestionWindow(100)
    win.on_fast_resend(2, 3)
    assert win.ssthresh == THRESH_MIN
    assert win.cwnd == THRESH_MIN + 3
    assert win.incr == win.cwnd * 100


def test_window_ensure_minimum():
    win = CongestionWindow(100)
    win.ensure_minimum()
    assert win.cwnd == 1
    assert win.incr == 100
    win.cwnd = 5
    win.incr = 500
    win.ensure_minimum()
    assert (win.cwnd, win.incr) == (5, 500)