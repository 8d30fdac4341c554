"""Token estimation helpers used for batch planning.

Estimates are heuristic; actual usage is taken from the API response
metadata and recorded by the cost tracker.
"""

import math

# Average characters per token for Gemini models on mixed menu text
CHARS_PER_TOKEN = 4.0

# Flat estimate for an image or image-only PDF payload
IMAGE_TOKEN_ESTIMATE = 1000


def estimate_text_tokens(text: str) -> int:
    """Estimate tokens in text.

    Args:
        text: Text to estimate

    Returns:
        int: Estimated token count (0 for empty text)
    """
    if not text:
        return 0
    return math.ceil(len(text) / CHARS_PER_TOKEN)


def estimate_image_tokens() -> int:
    return IMAGE_TOKEN_ESTIMATE


def can_fit_in_limit(text: str, limit: int) -> bool:
    """Check if text fits within a token limit."""
    return estimate_text_tokens(text) <= limit
