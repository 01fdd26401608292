from typing import Optional


class ContextEngineError(Exception):
    """Base class for context engine failures"""


class BuilderDegradedError(ContextEngineError):
    """A layer builder failed or timed out; the layer falls back to inactive"""

    def __init__(self, layer_id: int, reason: str):
        self.layer_id = layer_id
        self.reason = reason
        super().__init__(f"Layer {layer_id} degraded: {reason}")


class ExternalProviderError(ContextEngineError):
    """An embedding or generation backend failed"""

    def __init__(self, provider: str, message: str):
        self.provider = provider
        super().__init__(f"{provider}: {message}")


class InvalidEmbeddingError(ExternalProviderError):
    """A provider returned a malformed vector"""


class GenerationUnavailableError(ExternalProviderError):
    """The generation backend could not produce a reply; retry later"""


class UnsupportedModelError(ContextEngineError):
    """No configured backend serves the requested model family"""

    def __init__(self, model: str):
        self.model = model
        super().__init__(f"Unsupported model: {model}")


class BudgetInfeasibleError(ContextEngineError):
    """Mandatory layers cannot be made to fit the token budget"""

    def __init__(self, budget: int, required: int, detail: Optional[str] = None):
        self.budget = budget
        self.required = required
        message = f"Token budget {budget} is too small; mandatory layers need at least {required}"
        if detail:
            message = f"{message} ({detail})"
        super().__init__(message)
