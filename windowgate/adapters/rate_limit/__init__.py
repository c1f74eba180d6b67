"""Rate limit rule adapters.

This package provides a small abstraction layer so the coordinator depends on
the rule interface only; the in-memory sliding window is the one shipped
implementation.
"""

from windowgate.adapters.rate_limit.base import AbstractRule, AdmitResult
from windowgate.adapters.rate_limit.in_memory import SlidingWindowRule

__all__ = ["AbstractRule", "AdmitResult", "SlidingWindowRule"]
