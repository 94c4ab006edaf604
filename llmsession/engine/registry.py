"""Backend registry.

Maps model family names to their backend classes.
"""

from typing import Any, Type

from .backends.base import BaseBackend
from .backends.transformers import TransformersBackend

# Registry mapping model family names to backend classes
_BACKEND_REGISTRY: dict[str, Type[BaseBackend]] = {
    "transformers": TransformersBackend,
}


def get_backend(model_family: str, **kwargs: Any) -> BaseBackend:
    """
    Get a backend instance for the given model family.

    Args:
        model_family: Name of the model family (e.g., "transformers").
        **kwargs: Passed to the backend constructor.

    Returns:
        A backend instance for the model family.

    Raises:
        ValueError: If the model family is not registered.
    """
    if model_family not in _BACKEND_REGISTRY:
        available = ", ".join(_BACKEND_REGISTRY.keys())
        raise ValueError(
            f"Unknown model family: {model_family!r}. Available: {available}"
        )
    return _BACKEND_REGISTRY[model_family](**kwargs)


def register_backend(model_family: str, backend_cls: Type[BaseBackend]) -> None:
    """
    Register a new backend for a model family.

    Args:
        model_family: Name of the model family.
        backend_cls: Backend class (must inherit from BaseBackend).
    """
    if not (isinstance(backend_cls, type) and issubclass(backend_cls, BaseBackend)):
        raise TypeError(f"{backend_cls!r} is not a BaseBackend subclass.")
    _BACKEND_REGISTRY[model_family] = backend_cls


def list_backend_families() -> list[str]:
    """Return list of registered model family names."""
    return list(_BACKEND_REGISTRY.keys())
