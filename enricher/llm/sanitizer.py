"""
External Data Sanitizer

The only path by which data from the external enrichment API reaches a
prompt. Output is always bounded in tokens; failures drop the data.
"""

import json
import logging
from typing import Any, Optional

from enricher.llm.tokens import count_tokens, truncate_to_token_limit

logger = logging.getLogger(__name__)

DEFAULT_MAX_TOKENS = 500


def _serialize(data: Any) -> str:
    if isinstance(data, (dict, list, tuple)):
        return json.dumps(data, indent=2, ensure_ascii=False, default=str)
    if isinstance(data, bytes):
        return data.decode('utf-8', errors='replace')
    return str(data)


def sanitize_for_prompt(data: Any,
                        max_tokens: int = DEFAULT_MAX_TOKENS,
                        model_id: Optional[str] = None) -> Optional[str]:
    """
    Validate and bound external API data before prompt injection.

    Args:
        data: Object, list or string from the external API (or None)
        max_tokens: Token cap for the serialized data
        model_id: Model name used for token counting

    Returns:
        Serialized (and possibly truncated) text, or None when there is no
        usable data
    """
    if data is None:
        return None

    try:
        text = _serialize(data).strip()
        if not text:
            return None

        data_tokens = count_tokens(text, model_id)
        if data_tokens <= max_tokens:
            logger.debug(f"External API data validated: {data_tokens} tokens")
            return text

        logger.warning(f"External API data ({data_tokens} tokens) exceeds limit ({max_tokens}), truncating")
        truncated = truncate_to_token_limit(text, max_tokens, model_id)

        # Guard the cap even if the tokenizer and the estimate disagree
        while truncated and count_tokens(truncated, model_id) > max_tokens:
            truncated = truncated[:-max(1, len(truncated) // 20)]

        return truncated or None

    except Exception as e:
        logger.warning(f"External API data validation failed, ignoring it: {e}")
        return None
