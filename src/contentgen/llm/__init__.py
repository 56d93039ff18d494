from .client import LLMAttempt, LLMClient, LLMResponse

__all__ = ["LLMAttempt", "LLMClient", "LLMResponse"]
