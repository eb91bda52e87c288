from typing import Any, AsyncGenerator, Dict, Protocol

from sepal_server.runs.accumulator import Fragment

FragmentStream = AsyncGenerator[Fragment, None]


class ProviderError(Exception):
    pass


class ProviderUnavailableError(ProviderError):
    pass


class ProviderStatusError(ProviderError):
    def __init__(self, status_code: int, text: str) -> None:
        super().__init__(f"Upstream returned HTTP {status_code}")
        self.status_code = status_code
        self.text = text


class ProviderInvalidResponseError(ProviderError):
    pass


class ProviderMissingChoicesError(ProviderInvalidResponseError):
    pass


class ProviderClient(Protocol):
    async def create(self, request: Dict[str, Any]) -> FragmentStream:
        """Send a chat completion request.

        Request errors are raised here. The returned stream yields fragments and
        may raise ``ProviderError`` while it is being iterated.
        """
        ...
