"""Round-trip estimation and congestion window control for KCP."""

from __future__ import annotations

RTO_NDL = 30
"""Minimum retransmission timeout in no-delay mode, in milliseconds."""
RTO_MIN = 100
"""Minimum retransmission timeout in normal mode, in milliseconds."""
RTO_DEF = 200
"""Initial retransmission timeout, in milliseconds."""
RTO_MAX = 60000
"""Upper bound of the retransmission timeout, in milliseconds."""
THRESH_INIT = 2
"""Initial slow-start threshold, in segments."""
THRESH_MIN = 2
"""Lowest slow-start threshold, in segments."""

_MASK32 = 0xFFFFFFFF


def timediff(later: int, earlier: int) -> int:
    """Signed 32-bit difference ``later - earlier``, robust to wrap-around."""
    diff = (later - earlier) & _MASK32
    return diff - 0x100000000 if diff & 0x80000000 else diff


def bound(lower: int, middle: int, upper: int) -> int:
    """Clamp ``middle`` to at least ``lower`` and then at most ``upper``."""
    return min(max(lower, middle), upper)


class RttEstimator:
    """Smoothed round-trip time and retransmission timeout estimator."""

    def __init__(self, minrto: int = RTO_MIN, interval: int = 100) -> None:
        self.minrto = minrto
        self.interval = interval
        self.srtt = 0
        self.rttval = 0
        self.rto = RTO_DEF

    def update(self, rtt: int) -> int:
        """Fold one round-trip sample in and return the new timeout."""
        if self.srtt == 0:
            self.srtt = rtt
            self.rttval = rtt // 2
        else:
            delta = abs(rtt - self.srtt)
            self.rttval = (3 * self.rttval + delta) // 4
            self.srtt = (7 * self.srtt + rtt) // 8
            if self.srtt < 1:
                self.srtt = 1
        rto = self.srtt + max(self.interval, 4 * self.rttval)
        self.rto = bound(self.minrto, rto, RTO_MAX)
        return self.rto


class CongestionWindow:
    """Congestion window with slow start, avoidance and loss reactions."""

    def __init__(self, mss: int) -> None:
        if mss <= 0:
            raise ValueError("mss must be positive")
        self.mss = mss
        self.cwnd = 0
        self.incr = 0
        self.ssthresh = THRESH_INIT

    def on_una_advanced(self, rmt_wnd: int) -> None:
        """Grow the window after the peer acknowledged new data."""
        if self.cwnd >= rmt_wnd:
            return
        mss = self.mss
        if self.cwnd < self.ssthresh:
            self.cwnd += 1
            self.incr += mss
        else:
            if self.incr < mss:
                self.incr = mss
            self.incr += (mss * mss) // self.incr + mss // 16
            if (self.cwnd + 1) * mss <= self.incr:
                self.cwnd = (self.incr + mss - 1) // (mss if mss > 0 else 1)
        if self.cwnd > rmt_wnd:
            self.cwnd = rmt_wnd
            self.incr = rmt_wnd * mss

    def on_fast_resend(self, inflight: int, resent: int) -> None:
        """Shrink the window after segments were fast-retransmitted."""
        self.ssthresh = max(inflight // 2, THRESH_MIN)
        self.cwnd = (self.ssthresh + resent) & _MASK32
        self.incr = (self.cwnd * self.mss) & _MASK32

    def on_loss(self, cwnd: int) -> None:
        """Collapse the window after a timeout retransmission."""
        self.ssthresh = max(cwnd // 2, THRESH_MIN)
        self.cwnd = 1
        self.incr = self.mss

    def ensure_minimum(self) -> None:
        """Keep the window at one segment or more."""
        if self.cwnd < 1:
            self.cwnd = 1
            self.incr = self.mss