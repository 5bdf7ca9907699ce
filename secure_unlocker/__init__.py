"""Secure unlocker: signed remote unlock and mount of encrypted volumes."""

__version__ = "1.0.0"
