"""SocketCAN utilities: CAN frame lengths, bit timing, bus load, full-duplex testing and a BCM server."""

__version__ = "0.1.0"