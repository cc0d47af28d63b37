# coding=utf-8
from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, Dict, Mapping, Optional

from voxrelay.errors import ConfigurationError

logger = logging.getLogger(__name__)

KNOWN_SERVICES = ("deepgram", "openai", "anthropic", "google")


def normalize_service(raw: Any) -> str:
    service = str(raw or "").strip().lower()
    if service not in KNOWN_SERVICES:
        raise ConfigurationError(f"unknown service: {raw}")
    return service


@dataclass(frozen=True)
class ServiceCredentials:
    """
    Immutable credential snapshot. Streams and provider calls keep the
    snapshot they were created with.
    """

    keys: Mapping[str, str] = field(default_factory=dict)
    version: int = 0

    def __post_init__(self) -> None:
        cleaned = {str(k): str(v).strip() for k, v in dict(self.keys or {}).items() if str(v or "").strip()}
        object.__setattr__(self, "keys", MappingProxyType(cleaned))

    def get(self, service: str) -> str:
        return str(self.keys.get(service, "") or "")

    def has(self, service: str) -> bool:
        return bool(self.get(service))

    def require(self, service: str) -> str:
        key = self.get(service)
        if not key:
            raise ConfigurationError(f"{service} API key is not configured")
        return key

    def configured(self) -> Dict[str, bool]:
        return {name: self.has(name) for name in KNOWN_SERVICES}


class ServiceRegistry:
    """
    Process-wide holder of the current credential snapshot.

    Updates replace the snapshot atomically; sessions read it when they open a
    stream or dispatch a provider call.
    """

    def __init__(self, keys: Optional[Mapping[str, str]] = None) -> None:
        self._lock = threading.Lock()
        self._current = ServiceCredentials(keys=dict(keys or {}), version=1)

    def snapshot(self) -> ServiceCredentials:
        with self._lock:
            return self._current

    def update(self, changes: Mapping[str, Optional[str]]) -> ServiceCredentials:
        normalized = {normalize_service(name): str(value or "").strip() for name, value in dict(changes or {}).items()}
        with self._lock:
            merged = dict(self._current.keys)
            for name, value in normalized.items():
                if value:
                    merged[name] = value
                else:
                    merged.pop(name, None)
            self._current = ServiceCredentials(keys=merged, version=self._current.version + 1)
            current = self._current
        logger.info(
            "credentials updated version=%d services=%s",
            current.version,
            ",".join(sorted(normalized)),
        )
        return current
