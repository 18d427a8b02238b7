"""Engine adapter registry.

Maps backend names to their corresponding adapter classes.
"""

from typing import Any, Type

from .adapters.base import BaseAdapter
from .adapters.llamacpp import LlamaCppAdapter
from .adapters.transformers import TransformersAdapter

# Registry mapping backend names to adapter classes
_ADAPTER_REGISTRY: dict[str, Type[BaseAdapter]] = {
    "llamacpp": LlamaCppAdapter,
    "transformers": TransformersAdapter,
}


def get_adapter(backend: str, **kwargs: Any) -> BaseAdapter:
    """
    Get an adapter instance for the given backend.

    Args:
        backend: Name of the backend (e.g., "llamacpp").
        **kwargs: Constructor options for the adapter class.

    Returns:
        An adapter instance for the backend.

    Raises:
        ValueError: If the backend is not registered.
    """
    if backend not in _ADAPTER_REGISTRY:
        available = ", ".join(_ADAPTER_REGISTRY.keys())
        raise ValueError(
            f"Unknown backend: {backend!r}. Available: {available}"
        )
    return _ADAPTER_REGISTRY[backend](**kwargs)


def register_adapter(backend: str, adapter_cls: Type[BaseAdapter]) -> None:
    """
    Register a new adapter for a backend.

    Args:
        backend: Name of the backend.
        adapter_cls: Adapter class (must inherit from BaseAdapter).
    """
    _ADAPTER_REGISTRY[backend] = adapter_cls


def list_backends() -> list[str]:
    """Return list of registered backend names."""
    return list(_ADAPTER_REGISTRY.keys())
