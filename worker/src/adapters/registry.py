from __future__ import annotations

import structlog

from worker.src.adapters.demo import DemoAdapter
from worker.src.adapters.generic import GenericAdapter
from worker.src.contracts.interfaces import Adapter
from worker.src.contracts.models import normalize_domain

logger = structlog.get_logger(__name__)


class AdapterRegistry:
    """Resolve the parser for a domain.

    Lookup order: exact domain, then the longest matching ``*.suffix``
    wildcard, then the generic fallback. ``*.example.com`` matches
    ``shop.example.com`` but not ``example.com`` itself; register both when
    both are wanted.
    """

    def __init__(self, fallback: Adapter | None = None) -> None:
        self._exact: dict[str, Adapter] = {}
        self._wildcards: dict[str, Adapter] = {}
        self._fallback: Adapter = fallback if fallback is not None else GenericAdapter()

    @classmethod
    def with_defaults(cls) -> AdapterRegistry:
        registry = cls()
        demo = DemoAdapter()
        registry.register("example.com", demo)
        registry.register("*.example.com", demo)
        return registry

    @property
    def fallback(self) -> Adapter:
        return self._fallback

    def register(self, pattern: str, adapter: Adapter) -> None:
        pattern = pattern.strip().lower()
        if pattern.startswith("*."):
            suffix = normalize_domain(pattern[2:])
            if not suffix:
                raise ValueError(f"Invalid wildcard pattern: {pattern!r}")
            self._wildcards["." + suffix] = adapter
        else:
            domain = normalize_domain(pattern)
            if not domain:
                raise ValueError(f"Invalid domain pattern: {pattern!r}")
            self._exact[domain] = adapter

    def resolve(self, domain: str) -> Adapter:
        domain = normalize_domain(domain)
        adapter = self._exact.get(domain)
        if adapter is not None:
            return adapter

        matches = [suffix for suffix in self._wildcards if domain.endswith(suffix)]
        if matches:
            return self._wildcards[max(matches, key=len)]

        logger.debug("adapter_fallback", domain=domain)
        return self._fallback
