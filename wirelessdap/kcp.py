"""KCP: a fast, reliable ARQ protocol on top of an unreliable datagram transport."""

from __future__ import annotations

from collections import deque
from typing import Callable, Optional

from .congestion import (
    RTO_MIN,
    RTO_NDL,
    CongestionWindow,
    RttEstimator,
    timediff,
)
from .segment import OVERHEAD, Command, Segment, decode_header

WND_SND = 32
"""Default send window, in segments."""
WND_RCV = 128
"""Default and minimum receive window, in segments; also the fragment limit."""
MTU_DEF = 1400
"""Default maximum transmission unit, in bytes."""
INTERVAL = 100
"""Default internal update interval, in milliseconds."""
DEADLINK = 20
"""Transmissions of one segment after which the link counts as dead."""
PROBE_INIT = 7000
"""Initial wait before probing a zero remote window, in milliseconds."""
PROBE_LIMIT = 120000
"""Longest wait between window probes, in milliseconds."""
FASTACK_LIMIT = 5
"""Most transmissions for which fast retransmission is still allowed."""

ASK_SEND = 1
"""Probe flag: a window-size request must be sent."""
ASK_TELL = 2
"""Probe flag: our window size must be told to the peer."""

LOG_OUTPUT = 1
LOG_INPUT = 2
LOG_SEND = 4
LOG_RECV = 8
LOG_IN_DATA = 16
LOG_IN_ACK = 32
LOG_IN_PROBE = 64
LOG_IN_WINS = 128
LOG_OUT_DATA = 256
LOG_OUT_ACK = 512
LOG_OUT_PROBE = 1024
LOG_OUT_WINS = 2048

_MASK32 = 0xFFFFFFFF
_COMMANDS = frozenset(int(command) for command in Command)

OutputFn = Callable[[bytes, object], object]
LogFn = Callable[[str, "KCP", object], object]


class KCPError(Exception):
    """Raised when KCP rejects a packet, a message or a setting."""


class KCP:
    """One end of a KCP conversation.

    ``output(data, user)`` is called with every datagram KCP wants to send.
    """

    def __init__(
        self,
        conv: int,
        output: Optional[OutputFn] = None,
        user: object = None,
    ) -> None:
        self.conv = conv & _MASK32
        self.output = output
        self.user = user
        self.snd_una = 0
        self.snd_nxt = 0
        self.rcv_nxt = 0
        self.ts_probe = 0
        self.probe_wait = 0
        self.snd_wnd = WND_SND
        self.rcv_wnd = WND_RCV
        self.rmt_wnd = WND_RCV
        self.probe = 0
        self.mtu = MTU_DEF
        self.mss = self.mtu - OVERHEAD
        self.stream = False
        self.state = 0
        self.current = 0
        self.ts_flush = INTERVAL
        self.nodelay = 0
        self.updated = False
        self.logmask = 0
        self.fastresend = 0
        self.fastlimit = FASTACK_LIMIT
        self.nocwnd = 0
        self.xmit = 0
        self.dead_link = DEADLINK
        self.writelog: Optional[LogFn] = None
        self._interval = INTERVAL
        self._rtt = RttEstimator(RTO_MIN, INTERVAL)
        self._cw = CongestionWindow(self.mss)
        self._snd_queue: deque[Segment] = deque()
        self._rcv_queue: deque[Segment] = deque()
        self._snd_buf: deque[Segment] = deque()
        self._rcv_buf: deque[Segment] = deque()
        self._acklist: list[tuple[int, int]] = []

    # ------------------------------------------------------------------
    # tunables and state views

    @property
    def interval(self) -> int:
        """Internal flush interval in milliseconds."""
        return self._interval

    @interval.setter
    def interval(self, value: int) -> None:
        self._interval = value
        self._rtt.interval = value

    @property
    def rx_minrto(self) -> int:
        """Lower bound of the retransmission timeout."""
        return self._rtt.minrto

    @rx_minrto.setter
    def rx_minrto(self, value: int) -> None:
        self._rtt.minrto = value

    @property
    def rx_rto(self) -> int:
        """Current retransmission timeout."""
        return self._rtt.rto

    @property
    def rx_srtt(self) -> int:
        """Smoothed round-trip time."""
        return self._rtt.srtt

    @property
    def cwnd(self) -> int:
        """Congestion window, in segments."""
        return self._cw.cwnd

    @property
    def ssthresh(self) -> int:
        """Slow-start threshold, in segments."""
        return self._cw.ssthresh

    # ------------------------------------------------------------------
    # helpers

    def _log(self, mask: int, message: str) -> None:
        if mask & self.logmask and self.writelog is not None:
            self.writelog(message, self, self.user)

    def _output(self, buffer: bytearray) -> None:
        self._log(LOG_OUTPUT, f"[RO] {len(buffer)} bytes")
        if not buffer:
            return
        if self.output is None:
            raise KCPError("no output callback set")
        self.output(bytes(buffer), self.user)

    def _wnd_unused(self) -> int:
        if len(self._rcv_queue) < self.rcv_wnd:
            return self.rcv_wnd - len(self._rcv_queue)
        return 0

    def _move_to_queue(self) -> None:
        while self._rcv_buf:
            seg = self._rcv_buf[0]
            if seg.sn != self.rcv_nxt or len(self._rcv_queue) >= self.rcv_wnd:
                break
            self._rcv_buf.popleft()
            self._rcv_queue.append(seg)
            self.rcv_nxt = (self.rcv_nxt + 1) & _MASK32

    def _shrink_buf(self) -> None:
        self.snd_una = self._snd_buf[0].sn if self._snd_buf else self.snd_nxt

    def _outside_send_window(self, sn: int) -> bool:
        return timediff(sn, self.snd_una) < 0 or timediff(sn, self.snd_nxt) >= 0

    def _parse_ack(self, sn: int) -> None:
        if self._outside_send_window(sn):
            return
        for index, seg in enumerate(self._snd_buf):
            if seg.sn == sn:
                del self._snd_buf[index]
                break
            if timediff(sn, seg.sn) < 0:
                break

    def _parse_una(self, una: int) -> None:
        while self._snd_buf and timediff(una, self._snd_buf[0].sn) > 0:
            self._snd_buf.popleft()

    def _parse_fastack(self, sn: int) -> None:
        if self._outside_send_window(sn):
            return
        for seg in self._snd_buf:
            if timediff(sn, seg.sn) < 0:
                break
            if seg.sn != sn:
                seg.fastack += 1

    def _parse_data(self, newseg: Segment) -> None:
        sn = newseg.sn
        if (
            timediff(sn, self.rcv_nxt + self.rcv_wnd) >= 0
            or timediff(sn, self.rcv_nxt) < 0
        ):
            return
        insert_at = 0
        for index, seg in reversed(list(enumerate(self._rcv_buf))):
            if seg.sn == sn:
                insert_at = None
                break
            if timediff(sn, seg.sn) > 0:
                insert_at = index + 1
                break
        if insert_at is not None:
            self._rcv_buf.insert(insert_at, newseg)
        self._move_to_queue()

    # ------------------------------------------------------------------
    # user level

    def peeksize(self) -> Optional[int]:
        """Size of the next complete message, or None if none is ready."""
        if not self._rcv_queue:
            return None
        first = self._rcv_queue[0]
        if first.frg == 0:
            return first.len
        if len(self._rcv_queue) < first.frg + 1:
            return None
        length = 0
        for seg in self._rcv_queue:
            length += seg.len
            if seg.frg == 0:
                break
        return length

    def recv(self, peek: bool = False) -> Optional[bytes]:
        """Return the next complete message, or None if none is ready.

        With ``peek`` the message stays queued.
        """
        if not self._rcv_queue or self.peeksize() is None:
            return None
        recover = len(self._rcv_queue) >= self.rcv_wnd
        parts = []
        for seg in self._rcv_queue:
            parts.append(seg.data)
            self._log(LOG_RECV, f"recv sn={seg.sn}")
            if seg.frg == 0:
                break
        if not peek:
            for _ in parts:
                self._rcv_queue.popleft()
        self._move_to_queue()
        if len(self._rcv_queue) < self.rcv_wnd and recover:
            self.probe |= ASK_TELL
        return b"".join(parts)

    def send(self, data: bytes) -> None:
        """Queue a message, split into fragments of at most ``mss`` bytes."""
        data = bytes(data)
        if self.stream:
            if self._snd_queue:
                old = self._snd_queue[-1]
                if old.len < self.mss:
                    extend = min(len(data), self.mss - old.len)
                    self._snd_queue[-1] = Segment(data=old.data + data[:extend], frg=0)
                    data = data[extend:]
            if not data:
                return
        mss = self.mss
        count = 1 if len(data) <= mss else (len(data) + mss - 1) // mss
        if count >= WND_RCV:
            raise KCPError("message needs too many fragments")
        for index, offset in enumerate(range(0, count * mss, mss)):
            frg = 0 if self.stream else count - index - 1
            self._snd_queue.append(Segment(data=data[offset:offset + mss], frg=frg))

    def input(self, data: bytes) -> None:
        """Feed one datagram received from the transport."""
        data = bytes(data)
        self._log(LOG_INPUT, f"[RI] {len(data)} bytes")
        if len(data) < OVERHEAD:
            raise KCPError("packet shorter than a segment header")
        prev_una = self.snd_una
        maxack = 0
        have_ack = False
        offset = 0
        while len(data) - offset >= OVERHEAD:
            seg, length = decode_header(data, offset)
            if seg.conv != self.conv:
                raise KCPError("conversation id mismatch")
            offset += OVERHEAD
            if len(data) - offset < length:
                raise KCPError("segment length exceeds the packet")
            if seg.cmd not in _COMMANDS:
                raise KCPError(f"unknown command {seg.cmd}")
            seg.cmd = Command(seg.cmd)
            self.rmt_wnd = seg.wnd
            self._parse_una(seg.una)
            self._shrink_buf()

            if seg.cmd == Command.ACK:
                rtt = timediff(self.current, seg.ts)
                if rtt >= 0:
                    self._rtt.update(rtt)
                self._parse_ack(seg.sn)
                self._shrink_buf()
                if not have_ack:
                    have_ack = True
                    maxack = seg.sn
                elif timediff(seg.sn, maxack) > 0:
                    maxack = seg.sn
                self._log(
                    LOG_IN_ACK,
                    f"input ack: sn={seg.sn} rtt={rtt} rto={self.rx_rto}",
                )
            elif seg.cmd == Command.PUSH:
                self._log(LOG_IN_DATA, f"input psh: sn={seg.sn} ts={seg.ts}")
                if timediff(seg.sn, self.rcv_nxt + self.rcv_wnd) < 0:
                    self._acklist.append((seg.sn, seg.ts))
                    if timediff(seg.sn, self.rcv_nxt) >= 0:
                        seg.data = data[offset:offset + length]
                        self._parse_data(seg)
            elif seg.cmd == Command.WASK:
                self.probe |= ASK_TELL
                self._log(LOG_IN_PROBE, "input probe")
            else:
                self._log(LOG_IN_WINS, f"input wins: {seg.wnd}")
            offset += length

        if have_ack:
            self._parse_fastack(maxack)
        if timediff(self.snd_una, prev_una) > 0:
            self._cw.on_una_advanced(self.rmt_wnd)

    def flush(self) -> None:
        """Send pending acknowledgements, probes and data segments."""
        if not self.updated:
            return
        current = self.current
        buffer = bytearray()

        def place(chunk: bytes) -> None:
            if len(buffer) + len(chunk) > self.mtu:
                self._output(buffer)
                buffer.clear()
            buffer.extend(chunk)

        seg = Segment(
            conv=self.conv,
            cmd=Command.ACK,
            wnd=self._wnd_unused(),
            una=self.rcv_nxt,
        )
        for sn, ts in self._acklist:
            seg.sn, seg.ts = sn, ts
            place(seg.encode_header())
        self._acklist.clear()

        if self.rmt_wnd == 0:
            if self.probe_wait == 0:
                self.probe_wait = PROBE_INIT
                self.ts_probe = (self.current + self.probe_wait) & _MASK32
            elif timediff(self.current, self.ts_probe) >= 0:
                if self.probe_wait < PROBE_INIT:
                    self.probe_wait = PROBE_INIT
                self.probe_wait += self.probe_wait // 2
                if self.probe_wait > PROBE_LIMIT:
                    self.probe_wait = PROBE_LIMIT
                self.ts_probe = (self.current + self.probe_wait) & _MASK32
                self.probe |= ASK_SEND
        else:
            self.ts_probe = 0
            self.probe_wait = 0

        if self.probe & ASK_SEND:
            seg.cmd = Command.WASK
            place(seg.encode_header())
        if self.probe & ASK_TELL:
            seg.cmd = Command.WINS
            place(seg.encode_header())
        self.probe = 0

        cwnd = min(self.snd_wnd, self.rmt_wnd)
        if not self.nocwnd:
            cwnd = min(self._cw.cwnd, cwnd)

        while timediff(self.snd_nxt, self.snd_una + cwnd) < 0 and self._snd_queue:
            newseg = self._snd_queue.popleft()
            self._snd_buf.append(newseg)
            newseg.conv = self.conv
            newseg.cmd = Command.PUSH
            newseg.wnd = seg.wnd
            newseg.ts = current
            newseg.sn = self.snd_nxt
            self.snd_nxt = (self.snd_nxt + 1) & _MASK32
            newseg.una = self.rcv_nxt
            newseg.resendts = current
            newseg.rto = self.rx_rto
            newseg.fastack = 0
            newseg.xmit = 0

        resent = self.fastresend if self.fastresend > 0 else _MASK32
        rtomin = (self.rx_rto >> 3) if self.nodelay == 0 else 0
        change = 0
        lost = False

        for segment in self._snd_buf:
            needsend = False
            if segment.xmit == 0:
                needsend = True
                segment.xmit += 1
                segment.rto = self.rx_rto
                segment.resendts = (current + segment.rto + rtomin) & _MASK32
            elif timediff(current, segment.resendts) >= 0:
                needsend = True
                segment.xmit += 1
                self.xmit += 1
                if self.nodelay == 0:
                    segment.rto += max(segment.rto, self.rx_rto)
                else:
                    step = segment.rto if self.nodelay < 2 else self.rx_rto
                    segment.rto += step // 2
                segment.resendts = (current + segment.rto) & _MASK32
                lost = True
            elif segment.fastack >= resent:
                if segment.xmit <= self.fastlimit or self.fastlimit <= 0:
                    needsend = True
                    segment.xmit += 1
                    segment.fastack = 0
                    segment.resendts = (current + segment.rto) & _MASK32
                    change += 1

            if needsend:
                segment.ts = current
                segment.wnd = seg.wnd
                segment.una = self.rcv_nxt
                place(segment.encode())
                if segment.xmit >= self.dead_link:
                    self.state = _MASK32

        if buffer:
            self._output(buffer)

        if change:
            inflight = (self.snd_nxt - self.snd_una) & _MASK32
            self._cw.on_fast_resend(inflight, resent)
        if lost:
            self._cw.on_loss(cwnd)
        self._cw.ensure_minimum()

    def update(self, current: int) -> None:
        """Advance the clock to ``current`` milliseconds and flush when due."""
        self.current = current & _MASK32
        if not self.updated:
            self.updated = True
            self.ts_flush = self.current
        slap = timediff(self.current, self.ts_flush)
        if slap >= 10000 or slap < -10000:
            self.ts_flush = self.current
            slap = 0
        if slap >= 0:
            self.ts_flush = (self.ts_flush + self.interval) & _MASK32
            if timediff(self.current, self.ts_flush) >= 0:
                self.ts_flush = (self.current + self.interval) & _MASK32
            self.flush()

    def check(self, current: int) -> int:
        """Return the time at which ``update`` should next be called."""
        current &= _MASK32
        if not self.updated:
            return current
        ts_flush = self.ts_flush
        if abs_out_of_range(timediff(current, ts_flush)):
            ts_flush = current
        if timediff(current, ts_flush) >= 0:
            return current
        tm_flush = timediff(ts_flush, current)
        tm_packet = 0x7FFFFFFF
        for seg in self._snd_buf:
            diff = timediff(seg.resendts, current)
            if diff <= 0:
                return current
            tm_packet = min(tm_packet, diff)
        minimal = min(tm_packet, tm_flush)
        if minimal >= self.interval:
            minimal = self.interval
        return (current + minimal) & _MASK32

    def set_mtu(self, mtu: int) -> None:
        """Change the maximum transmission unit."""
        if mtu < 50 or mtu < OVERHEAD:
            raise KCPError("mtu too small")
        self.mtu = mtu
        self.mss = mtu - OVERHEAD
        self._cw.mss = self.mss

    def set_interval(self, interval: int) -> None:
        """Set the flush interval, clamped to 10..5000 milliseconds."""
        self.interval = min(max(interval, 10), 5000)

    def set_nodelay(self, nodelay: int, interval: int, resend: int, nc: int) -> None:
        """Tune latency settings; a negative argument leaves its setting alone."""
        if nodelay >= 0:
            self.nodelay = nodelay
            self.rx_minrto = RTO_NDL if nodelay else RTO_MIN
        if interval >= 0:
            self.set_interval(interval)
        if resend >= 0:
            self.fastresend = resend
        if nc >= 0:
            self.nocwnd = nc

    def set_wndsize(self, sndwnd: int, rcvwnd: int) -> None:
        """Set the send and receive windows; non-positive values are ignored."""
        if sndwnd > 0:
            self.snd_wnd = sndwnd
        if rcvwnd > 0:
            self.rcv_wnd = max(rcvwnd, WND_RCV)

    def waitsnd(self) -> int:
        """Number of segments queued or in flight."""
        return len(self._snd_buf) + len(self._snd_queue)


def abs_out_of_range(diff: int) -> bool:
    """True when a clock difference is too large to be trusted."""
    return diff >= 10000 or diff < -10000