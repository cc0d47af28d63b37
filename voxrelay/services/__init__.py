# coding=utf-8

from .registry import KNOWN_SERVICES, ServiceCredentials, ServiceRegistry, normalize_service

__all__ = [
    "KNOWN_SERVICES",
    "ServiceCredentials",
    "ServiceRegistry",
    "normalize_service",
]
