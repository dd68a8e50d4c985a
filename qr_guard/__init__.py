"""QR polling guard: ownership and throttling for QR-code polling."""
__version__ = "1.0.0"
