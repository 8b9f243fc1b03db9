"""KCP segment header layout and encoding."""

from __future__ import annotations

import struct
from dataclasses import dataclass
from enum import IntEnum

OVERHEAD = 24
"""Size in bytes of an encoded segment header."""

_HEADER = struct.Struct("<IBBHIIII")


class Command(IntEnum):
    """Segment command codes carried in the header."""

    PUSH = 81
    ACK = 82
    WASK = 83
    WINS = 84


@dataclass
class Segment:
    """One KCP segment: header fields, payload and retransmission state."""

    conv: int = 0
    cmd: int = Command.PUSH
    frg: int = 0
    wnd: int = 0
    ts: int = 0
    sn: int = 0
    una: int = 0
    data: bytes = b""
    resendts: int = 0
    rto: int = 0
    fastack: int = 0
    xmit: int = 0

    @property
    def len(self) -> int:
        """Payload length in bytes."""
        return len(self.data)

    def encode_header(self) -> bytes:
        """Return the 24-byte little-endian header for this segment."""
        return _HEADER.pack(
            self.conv & 0xFFFFFFFF,
            int(self.cmd) & 0xFF,
            self.frg & 0xFF,
            self.wnd & 0xFFFF,
            self.ts & 0xFFFFFFFF,
            self.sn & 0xFFFFFFFF,
            self.una & 0xFFFFFFFF,
            len(self.data) & 0xFFFFFFFF,
        )

    def encode(self) -> bytes:
        """Return the header followed by the payload."""
        return self.encode_header() + bytes(self.data)


def decode_header(data: bytes, offset: int = 0) -> tuple[Segment, int]:
    """Decode a header at ``offset``.

    Returns the segment (with an empty payload) and the payload length the
    header announces. Raises ValueError if fewer than 24 bytes are available.
    """
    if offset < 0 or len(data) - offset < OVERHEAD:
        raise ValueError("not enough data for a segment header")
    conv, cmd, frg, wnd, ts, sn, una, length = _HEADER.unpack_from(data, offset)
    segment = Segment(conv=conv, cmd=cmd, frg=frg, wnd=wnd, ts=ts, sn=sn, una=una)
    return segment, length


def get_conv(data: bytes) -> int:
    """Read the conversation id from the start of an encoded packet."""
    if len(data) < 4:
        raise ValueError("not enough data for a conversation id")
    return int.from_bytes(bytes(data[:4]), "little")