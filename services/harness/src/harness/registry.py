"""
ASR backend registry for ASR Bench Lab.

Maintains a registry of available ASR backend implementations, enabling
lookup by identifier string. Names containing ``:`` are treated as
``module:Class`` import paths, so out-of-tree backends can be used
without registering them first.
"""

from __future__ import annotations

import importlib

import structlog

from harness.backend import ASRBackend

logger = structlog.get_logger()

# Global mapping of backend name → backend class.
_REGISTRY: dict[str, type[ASRBackend]] = {}


class BackendNotFoundError(KeyError):
    """No backend is registered (or importable) under the given name."""


def register_backend(name: str, cls: type[ASRBackend]) -> None:
    """Register an ASR backend class under *name*.

    Args:
        name: Unique identifier (e.g. ``"synthetic"``).
        cls: A concrete :class:`ASRBackend` subclass.

    Raises:
        TypeError: If *cls* is not a subclass of :class:`ASRBackend`.
    """
    if not (isinstance(cls, type) and issubclass(cls, ASRBackend)):
        raise TypeError(f"{cls!r} is not a subclass of ASRBackend")
    _REGISTRY[name] = cls
    logger.info("asr_backend_registered", backend=name)


def _import_backend(path: str) -> type[ASRBackend]:
    module_name, _, attr = path.partition(":")
    try:
        module = importlib.import_module(module_name)
        cls = getattr(module, attr)
    except (ImportError, AttributeError) as exc:
        raise BackendNotFoundError(f"Cannot import ASR backend '{path}': {exc}") from exc
    if not (isinstance(cls, type) and issubclass(cls, ASRBackend)):
        raise TypeError(f"{cls!r} is not a subclass of ASRBackend")
    return cls


def get_backend_class(name: str) -> type[ASRBackend]:
    """Look up a backend class by registry *name* or ``module:Class`` path.

    Raises:
        BackendNotFoundError: If *name* is neither registered nor importable.
    """
    if name in _REGISTRY:
        return _REGISTRY[name]
    if ":" in name:
        return _import_backend(name)
    available = list(_REGISTRY.keys())
    raise BackendNotFoundError(f"Unknown ASR backend '{name}'. Available: {available}")


def list_backends() -> list[str]:
    """Return the names of all registered backends."""
    return list(_REGISTRY.keys())


def clear_registry() -> None:
    """Remove all registered backends (useful in tests)."""
    _REGISTRY.clear()


def register_builtin_backends() -> None:
    """Register the backends shipped with the harness."""
    from harness.synthetic import SyntheticBackend

    register_backend(SyntheticBackend.backend_name, SyntheticBackend)
