"""
Token usage tracking.

Holds the token counts a provider reports at the end of a streamed response.
"""

from dataclasses import dataclass


@dataclass(frozen=True)
class UsageTally:
    """Token counts reported by the provider for one request.

    All counts stay at zero until the terminal stream chunk supplies them.
    Negative counts are rejected.
    """
    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0

    def __post_init__(self):
        """Validate token counts are non-negative integers."""
        for name in ("prompt_tokens", "completion_tokens", "total_tokens"):
            value = getattr(self, name)
            if not isinstance(value, int) or isinstance(value, bool):
                raise ValueError(f"{name} must be an integer, got {value!r}")
            if value < 0:
                raise ValueError(f"{name} must be >= 0")

    @property
    def is_empty(self) -> bool:
        """True when the provider never reported usage."""
        return self.total_tokens == 0
