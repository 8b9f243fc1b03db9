# wirelessdap

A pure-Python implementation of the KCP ARQ protocol, the reliable transport
that a wireless debug probe runs over UDP.

- `wirelessdap.kcp`: `KCP`, one end of a KCP conversation. It splits messages
  into segments, retransmits them, reorders what arrives and hands back whole
  messages. `KCPError` is raised when a packet, a message or a setting is
  rejected.
- `wirelessdap.segment`: the 24-byte segment header: `Segment`, the `Command`
  codes, `decode_header` and `get_conv`.
- `wirelessdap.congestion`: round-trip estimation (`RttEstimator`), the
  congestion window (`CongestionWindow`) and the wrap-around helpers
  `timediff` and `bound`.
- `wirelessdap.clock`: millisecond clocks, `iclock64` and `iclock` (the latter
  truncated to 32 bits).

## Installing

```
pip install .
```

## Using KCP

`KCP(conv, output, user)` calls `output(packet, user)` with every datagram it
wants to send. Feed datagrams that arrive with `input`, drive the timers with
`update`, and read whole messages with `recv`, which returns `None` when no
message is complete yet.

```python
from wirelessdap.kcp import KCP

wire = []
a = KCP(1, lambda packet, user: wire.append(packet), None)
b = KCP(1, lambda packet, user: None, None)
a.set_nodelay(1, 10, 2, 1)   # fast mode, no congestion window

a.send(b"hello")
a.update(0)                  # flushes the queued segment into `wire`
for packet in wire:
    b.input(packet)
print(b.recv())              # b'hello'
```

Other tuning calls: `set_mtu`, `set_interval`, `set_wndsize`; `check` tells
when `update` is next due, and `waitsnd` counts segments not yet acknowledged.
`peeksize` gives the size of the next complete message, and `recv(peek=True)`
reads it without removing it.

## What the package does not do

It has no network server and no command-line program. It opens no sockets:
you own the UDP socket, pass what it receives to `KCP.input`, send what the
`output` callback gives you, and call `KCP.update` regularly (for example with
`iclock()`). It does not process CMSIS-DAP commands and has no serial-port
bridge.

## Tests

```
pip install .[test]
pytest
```