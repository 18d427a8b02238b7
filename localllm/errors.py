"""Exception hierarchy for the inference session layer."""


class LocalLLMError(Exception):
    """Base class for all localllm errors."""


class NotLoadedError(LocalLLMError):
    """An operation needing a loaded model was attempted before `load()` succeeded."""

    def __init__(self, message: str = "Model not loaded. Call load() first.") -> None:
        super().__init__(message)


class LoadFailedError(LocalLLMError):
    """The engine rejected model initialization. The adapter stays not-ready."""

    def __init__(self, model_id: str, reason: str) -> None:
        super().__init__(f"Failed to load model {model_id!r}: {reason}")
        self.model_id = model_id
        self.reason = reason


class GenerationError(LocalLLMError):
    """The engine failed while producing a chat/stream response."""
