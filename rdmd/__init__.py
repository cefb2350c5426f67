"""rdmd - a Reticulum direct-message relay daemon."""

__version__ = "0.1.0"
