"""Latchkey: passwordless authentication with magic links and QR keys."""

__version__ = "0.1.0"
