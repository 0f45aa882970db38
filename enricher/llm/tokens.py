"""
Token Accounting

Counts and truncates text in provider tokens. Models with a known tiktoken
encoding are counted exactly; everything else (Llama, Mistral, Claude,
custom deployments) is estimated at four characters per token.

None of these functions raise: a tokenizer failure degrades to the
character estimate so that counting is never the reason a document fails.
"""

import re
import math
import logging
from typing import Iterable, Optional

import tiktoken

from enricher.llm.models import NATIVE, resolve_capabilities

logger = logging.getLogger(__name__)

CHARS_PER_TOKEN = 4
MESSAGE_OVERHEAD_TOKENS = 4
# A word-boundary cut may not discard more than 20% of the character budget
WORD_BOUNDARY_RATIO = 0.8

_LAST_WHITESPACE = re.compile(r'\s\S*$')


def estimate_tokens(text: str) -> int:
    """Character-based token estimate: ceil(len / 4)."""
    return math.ceil(len(text) / CHARS_PER_TOKEN)


def _get_encoding(model_id: Optional[str]):
    """Return a tiktoken encoding for the model, or None to use estimation."""
    profile = resolve_capabilities(model_id)
    if profile.tokenizer_family != NATIVE or not profile.encoding:
        return None
    return tiktoken.get_encoding(profile.encoding)


def count_tokens(text: str, model_id: Optional[str] = None) -> int:
    """
    Count tokens in text for a model.

    Args:
        text: Text to count
        model_id: Model name used to choose the tokenizer

    Returns:
        Token count (exact for native models, estimated otherwise)
    """
    if not text:
        return 0

    try:
        encoding = _get_encoding(model_id)
        if encoding is None:
            return estimate_tokens(text)
        return len(encoding.encode(text, disallowed_special=()))
    except Exception as e:
        logger.warning(f"Tokenizer failed for model {model_id}, falling back to character estimation: {e}")
        return estimate_tokens(text)


def count_prompt_tokens(instructions: str,
                        extra_segments: Iterable[Optional[str]] = (),
                        model_id: Optional[str] = None) -> int:
    """
    Count tokens for a full prompt including message framing.

    The instructions always form one message; every non-empty extra segment
    adds another. Each message costs MESSAGE_OVERHEAD_TOKENS on top of its text.

    Args:
        instructions: System instructions
        extra_segments: Additional prompt segments (empty ones are ignored)
        model_id: Model name used to choose the tokenizer

    Returns:
        Total prompt token count
    """
    segments = [segment for segment in extra_segments if segment]

    total = count_tokens(instructions, model_id)
    for segment in segments:
        total += count_tokens(segment, model_id)

    message_count = 1 + len(segments)
    return total + message_count * MESSAGE_OVERHEAD_TOKENS


def _truncate_by_characters(text: str, max_tokens: int) -> str:
    """Truncate to max_tokens * 4 characters, preferring a whitespace boundary."""
    if estimate_tokens(text) <= max_tokens:
        return text

    max_chars = max_tokens * CHARS_PER_TOKEN
    truncated = text[:max_chars]

    boundary = _LAST_WHITESPACE.search(truncated)
    if boundary and boundary.start() > max_chars * WORD_BOUNDARY_RATIO:
        return truncated[:boundary.start()]

    return truncated


def truncate_to_token_limit(text: str, max_tokens: int, model_id: Optional[str] = None) -> str:
    """
    Truncate text so it fits in max_tokens.

    Text that already fits is returned unchanged.

    Args:
        text: Text to truncate
        max_tokens: Token budget
        model_id: Model name used to choose the tokenizer

    Returns:
        Text whose token count does not exceed max_tokens
    """
    if not text:
        return text or ''
    if max_tokens <= 0:
        return ''

    try:
        encoding = _get_encoding(model_id)
        if encoding is None:
            return _truncate_by_characters(text, max_tokens)

        tokens = encoding.encode(text, disallowed_special=())
        if len(tokens) <= max_tokens:
            return text

        # Re-encoding a decoded prefix can merge differently; shrink until it fits
        keep = max_tokens
        truncated = encoding.decode(tokens[:keep])
        while keep > 0 and len(encoding.encode(truncated, disallowed_special=())) > max_tokens:
            keep -= 1
            truncated = encoding.decode(tokens[:keep])
        return truncated

    except Exception as e:
        logger.warning(f"Token truncation failed for model {model_id}, falling back to character estimation: {e}")
        return _truncate_by_characters(text, max_tokens)
