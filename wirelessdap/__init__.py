"""KCP reliable transport: segments, congestion control, clocks and the protocol engine."""

__version__ = "0.1.0"