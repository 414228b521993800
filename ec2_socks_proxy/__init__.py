"""On-demand EC2 SOCKS5 proxy: launch, tunnel, supervise, terminate."""

__version__ = "0.1.0"
