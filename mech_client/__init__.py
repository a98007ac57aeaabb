"""Request submission and delivery monitoring for the Mech Marketplace."""

from __future__ import annotations

from importlib import import_module
from types import ModuleType
from typing import Dict

_MODULES = [
    "abis",
    "chain",
    "cid",
    "config",
    "delivery",
    "errors",
    "ipfs",
    "marketplace",
    "metrics",
    "payments",
    "safe",
    "submitter",
    "types",
]
__all__ = list(_MODULES)

_CACHE: Dict[str, ModuleType] = {}


def __getattr__(name: str) -> ModuleType:
    if name not in _MODULES:
        raise AttributeError(name)
    if name not in _CACHE:
        _CACHE[name] = import_module(f".{name}", __name__)
    return _CACHE[name]


def __dir__() -> list[str]:
    return sorted(set(__all__ + list(globals().keys())))
