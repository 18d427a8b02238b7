# Engine adapters
#
# Each adapter implements a common interface for:
#   - Loading a model (with progress reporting)
#   - Running chat completions (streaming and non-streaming)
#   - Releasing the engine handle
#
# The session layer uses adapters to stay engine-agnostic.

from .base import BaseAdapter
from .llamacpp import LlamaCppAdapter
from .transformers import TransformersAdapter

__all__ = ["BaseAdapter", "LlamaCppAdapter", "TransformersAdapter"]
