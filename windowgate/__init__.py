"""Top-level package for windowgate.

Gates an action behind one or more sliding-window rate limits. The main entry
point is `RateLimitCoordinator`; `build_coordinator` wires one from settings.
"""

from windowgate.adapters.rate_limit import AbstractRule, AdmitResult, SlidingWindowRule
from windowgate.core.clock import Clock, MonotonicClock
from windowgate.core.errors import AdmissionCancelledError, AppError, ConfigurationError
from windowgate.core.rate_limit import build_coordinator, build_rules, parse_rule_spec
from windowgate.services.coordinator import AdmissionState, RateLimitCoordinator

__all__ = [
    "AbstractRule",
    "AdmissionCancelledError",
    "AdmissionState",
    "AdmitResult",
    "AppError",
    "Clock",
    "ConfigurationError",
    "MonotonicClock",
    "RateLimitCoordinator",
    "SlidingWindowRule",
    "__version__",
    "build_coordinator",
    "build_rules",
    "parse_rule_spec",
]

__version__ = "0.1.0"
