"""
Token counting and usage tracking.

Holds the four token counts reported per assistant message.
"""

from dataclasses import dataclass


@dataclass(frozen=True)
class TokenUsage:
    """Token usage data for cost calculation.

    Contains exact token counts as reported in the transcript usage block.
    """
    input_tokens: int = 0
    output_tokens: int = 0
    cache_creation_tokens: int = 0
    cache_read_tokens: int = 0

    @property
    def total_tokens(self) -> int:
        """Total tokens used across all four categories."""
        return (
            self.input_tokens
            + self.output_tokens
            + self.cache_creation_tokens
            + self.cache_read_tokens
        )

    @property
    def noncache_tokens(self) -> int:
        """Input plus output tokens (what burn rate is measured in)."""
        return self.input_tokens + self.output_tokens

    @property
    def total_input_tokens(self) -> int:
        """All tokens billed on the input side, cached or not."""
        return self.input_tokens + self.cache_creation_tokens + self.cache_read_tokens

    def __add__(self, other: "TokenUsage") -> "TokenUsage":
        return TokenUsage(
            input_tokens=self.input_tokens + other.input_tokens,
            output_tokens=self.output_tokens + other.output_tokens,
            cache_creation_tokens=self.cache_creation_tokens + other.cache_creation_tokens,
            cache_read_tokens=self.cache_read_tokens + other.cache_read_tokens,
        )

    def maximum(self, other: "TokenUsage") -> "TokenUsage":
        """Per-field maximum of two usages."""
        return TokenUsage(
            input_tokens=max(self.input_tokens, other.input_tokens),
            output_tokens=max(self.output_tokens, other.output_tokens),
            cache_creation_tokens=max(self.cache_creation_tokens, other.cache_creation_tokens),
            cache_read_tokens=max(self.cache_read_tokens, other.cache_read_tokens),
        )

    def any_below(self, other: "TokenUsage") -> bool:
        """True if any count is smaller than the same count in ``other``."""
        return (
            self.input_tokens < other.input_tokens
            or self.output_tokens < other.output_tokens
            or self.cache_creation_tokens < other.cache_creation_tokens
            or self.cache_read_tokens < other.cache_read_tokens
        )

    def to_dict(self) -> dict:
        return {
            "input_tokens": self.input_tokens,
            "output_tokens": self.output_tokens,
            "cache_creation_tokens": self.cache_creation_tokens,
            "cache_read_tokens": self.cache_read_tokens,
            "total_tokens": self.total_tokens,
        }
