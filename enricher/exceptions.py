"""
Exceptions raised inside the enrichment pipeline.

Public analysis entry points convert these into AnalysisResult errors, so
they rarely reach callers directly.
"""


class EnricherError(Exception):
    """Base class for all enricher errors."""


class ConfigurationError(EnricherError):
    """A precondition for the request is not met (missing client, bad settings)."""


class TokenBudgetExceeded(ConfigurationError):
    """The assembled prompt leaves no room for document content."""

    def __init__(self, prompt_tokens: int, reserved_tokens: int, token_limit: int):
        self.prompt_tokens = prompt_tokens
        self.reserved_tokens = reserved_tokens
        self.token_limit = token_limit
        super().__init__(
            f"Token limit exceeded: prompt too large for available token limit "
            f"(reserved {reserved_tokens} of {token_limit})"
        )


class ProviderError(EnricherError):
    """The AI provider returned an error payload or could not be reached."""


class ResponseFormatError(EnricherError):
    """The provider reply could not be turned into a valid document."""
