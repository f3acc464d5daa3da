"""Tools for ISO-TP transfers, protocol dumps and J1939 address claiming on SocketCAN."""

__version__ = "0.1.0"