from .base import Forwarder
from .http import HttpSinkForwarder

__all__ = [
    "Forwarder",
    "HttpSinkForwarder",
]
