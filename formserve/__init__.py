"""Typed form binding, HTTP-aware errors and per-request working directories for multipart/form-data requests."""

__version__ = "0.1.0"
__all__ = ["context", "errors", "formdata"]