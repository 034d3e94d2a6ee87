"""Delivery of envelopes to the concentrator."""

from .base import Transport, TransportResult
from .https import HttpsTransport, build_ssl_context

__all__ = ["Transport", "TransportResult", "HttpsTransport", "build_ssl_context"]
