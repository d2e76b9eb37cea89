"""latencyprobe: HTTP latency comparison across DNS resolution strategies."""

__version__ = "0.1.0"
