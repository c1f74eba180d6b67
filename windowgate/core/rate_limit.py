"""Build rules and coordinators from configuration.

This module wires the rule adapter and the coordinator to settings.

Design goals:
- Minimal coupling: callers pass an action and get a ready coordinator.
- Swap-friendly: everything is built behind the ``AbstractRule`` interface.
- Fail fast: malformed rule specs raise ConfigurationError at build time.

Rule spec format: ``<limit>/<window>`` where the window is a number with an
optional unit (``ms``, ``s``, ``m``, ``h``; seconds when omitted), e.g.
``"3/5s"`` or ``"10/1m"``. Several specs are joined with commas.
"""

from __future__ import annotations

import logging
import re
from typing import Any, Callable

from windowgate.adapters.rate_limit.in_memory import SlidingWindowRule
from windowgate.core.clock import Clock
from windowgate.core.config import LimiterSettings, settings
from windowgate.core.errors import ConfigurationError
from windowgate.services.coordinator import RateLimitCoordinator

logger = logging.getLogger(__name__)

_UNIT_SECONDS = {
    "": 1.0,
    "ms": 0.001,
    "s": 1.0,
    "m": 60.0,
    "h": 3600.0,
}

_RULE_SPEC_RE = re.compile(
    r"^\s*(?P<limit>\d+)\s*/\s*(?P<amount>\d+(?:\.\d+)?)\s*(?P<unit>ms|s|m|h)?\s*$",
    re.IGNORECASE,
)


def parse_rule_spec(spec: str) -> tuple[int, float]:
    """Parse a single ``<limit>/<window>`` spec.

    Args:
        spec: Rule spec such as ``"3/5s"``.

    Returns:
        Tuple of (limit, window_seconds).

    Raises:
        ConfigurationError: If the spec is malformed.
    """

    match = _RULE_SPEC_RE.match(spec or "")
    if match is None:
        raise ConfigurationError(
            code="invalid_rule_spec",
            message=f"rule spec must look like '<limit>/<window>[ms|s|m|h]', got {spec!r}",
            details={"field": "rules", "actual_value": spec},
        )

    unit = (match.group("unit") or "").lower()
    return int(match.group("limit")), float(match.group("amount")) * _UNIT_SECONDS[unit]


def build_rules(specs: str, *, clock: Clock | None = None) -> list[SlidingWindowRule]:
    """Build one sliding-window rule per comma-separated spec.

    Raises:
        ConfigurationError: If the string holds no specs or any spec is invalid.
    """

    parts = [part for part in (specs or "").split(",") if part.strip()]
    if not parts:
        raise ConfigurationError(
            code="invalid_rules",
            message="at least one rate limit rule is required",
            details={"field": "rules", "actual_value": specs},
        )

    rules = []
    for part in parts:
        limit, window_seconds = parse_rule_spec(part)
        rules.append(
            SlidingWindowRule(limit, window_seconds, clock=clock, name=part.strip())
        )
    return rules


def build_coordinator(
    action: Callable[[Any], Any],
    limiter_settings: LimiterSettings | None = None,
    *,
    clock: Clock | None = None,
) -> RateLimitCoordinator:
    """Create a coordinator for ``action`` from limiter settings.

    Args:
        action: Callable to gate.
        limiter_settings: Optional settings; defaults to global settings if omitted.
        clock: Clock shared by every rule and the coordinator.

    Returns:
        RateLimitCoordinator: Configured coordinator instance.
    """

    cfg = limiter_settings or settings.limiter
    rules = build_rules(cfg.rules, clock=clock)

    logger.info(
        "coordinator.configured",
        extra={
            "rules": [rule.name for rule in rules],
            "min_yield_s": cfg.min_yield_seconds,
        },
    )
    return RateLimitCoordinator(
        action,
        rules,
        clock=clock,
        min_yield_seconds=cfg.min_yield_seconds,
    )
