from sepal_server.providers.base import (
    FragmentStream,
    ProviderClient,
    ProviderError,
    ProviderInvalidResponseError,
    ProviderMissingChoicesError,
    ProviderStatusError,
    ProviderUnavailableError,
)
from sepal_server.providers.chat_completions import ChatCompletionsClient

__all__ = [
    "ChatCompletionsClient",
    "FragmentStream",
    "ProviderClient",
    "ProviderError",
    "ProviderInvalidResponseError",
    "ProviderMissingChoicesError",
    "ProviderStatusError",
    "ProviderUnavailableError",
]
