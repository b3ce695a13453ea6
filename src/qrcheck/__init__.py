"""qrcheck: redirect resolution and risk scoring for QR-code links."""

__version__ = "0.1.0"
