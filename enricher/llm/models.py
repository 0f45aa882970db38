"""
Model Capabilities

Maps a model identifier to its context window, output cap, tokenizer and
whether it accepts a sampling temperature.
"""

import re
import logging
from dataclasses import dataclass
from functools import lru_cache
from typing import Dict, Optional, Tuple

logger = logging.getLogger(__name__)

NATIVE = 'native'
ESTIMATED = 'estimated'

DEFAULT_MODEL = 'gpt-5-nano'


@dataclass(frozen=True)
class ProviderProfile:
    """Resolved capabilities of a single model."""
    model_id: str
    context_window: int
    max_output_tokens: int
    supports_temperature: bool
    tokenizer_family: str  # 'native' or 'estimated'
    encoding: Optional[str] = None  # tiktoken encoding name for native models


# Ordered (pattern, context_window, max_output_tokens, supports_temperature, encoding).
# First match wins, so more specific fragments come before their prefixes.
# encoding=None means token counts are estimated from character length.
MODEL_FAMILIES: Tuple[Tuple[str, int, int, bool, Optional[str]], ...] = (
    # GPT-5 family
    (r'^gpt-5$', 1_000_000, 16_384, False, 'o200k_base'),
    (r'gpt-5-standard', 1_000_000, 16_384, False, 'o200k_base'),
    (r'gpt-5-(nano|mini)', 200_000, 8_192, False, 'o200k_base'),
    (r'chatgpt-5o-latest', 200_000, 8_192, False, 'o200k_base'),
    (r'gpt-5-audio-preview', 200_000, 8_192, False, 'o200k_base'),
    (r'gpt-5', 200_000, 8_192, False, 'o200k_base'),

    # o-series reasoning models
    (r'^o1-mini', 128_000, 8_192, False, 'o200k_base'),
    (r'^o[134](-|$)', 200_000, 8_192, False, 'o200k_base'),

    # GPT-4.x
    (r'gpt-4\.5', 128_000, 8_192, True, 'o200k_base'),
    (r'gpt-4\.1', 128_000, 8_192, True, 'o200k_base'),
    (r'gpt-4o', 128_000, 16_384, True, 'o200k_base'),
    (r'gpt-4-turbo', 128_000, 4_096, True, 'cl100k_base'),
    (r'gpt-4-(1106|0125)', 128_000, 4_096, True, 'cl100k_base'),
    (r'gpt-4-32k', 32_768, 4_096, True, 'cl100k_base'),
    (r'^gpt-4(-\d{4})?$', 8_192, 4_096, True, 'cl100k_base'),

    # GPT-3.5
    (r'gpt-3\.5-turbo', 16_385, 4_096, True, 'cl100k_base'),
)

# Used when no model is configured: the limits of the default model.
DEFAULT_PROFILE = ProviderProfile(
    model_id='',
    context_window=200_000,
    max_output_tokens=8_192,
    supports_temperature=True,
    tokenizer_family=NATIVE,
    encoding='o200k_base',
)

# Used for models we know nothing about (Llama, Mistral, Claude, custom deployments).
UNKNOWN_PROFILE = ProviderProfile(
    model_id='',
    context_window=128_000,
    max_output_tokens=4_096,
    supports_temperature=True,
    tokenizer_family=ESTIMATED,
    encoding=None,
)

_COMPILED = tuple(
    (re.compile(pattern, re.IGNORECASE), context, output, temperature, encoding)
    for pattern, context, output, temperature, encoding in MODEL_FAMILIES
)


@lru_cache(maxsize=128)
def resolve_capabilities(model_id: Optional[str]) -> ProviderProfile:
    """
    Resolve the capabilities of a model.

    Args:
        model_id: Model name as configured (case-insensitive)

    Returns:
        ProviderProfile for the first matching family, DEFAULT_PROFILE when
        no model is given, UNKNOWN_PROFILE when nothing matches
    """
    if not model_id or not model_id.strip():
        return DEFAULT_PROFILE

    name = model_id.strip()
    for pattern, context, output, temperature, encoding in _COMPILED:
        if pattern.search(name):
            return ProviderProfile(
                model_id=model_id,
                context_window=context,
                max_output_tokens=output,
                supports_temperature=temperature,
                tokenizer_family=NATIVE if encoding else ESTIMATED,
                encoding=encoding,
            )

    logger.debug(f"No capability entry for model '{model_id}', using conservative defaults")
    return ProviderProfile(
        model_id=model_id,
        context_window=UNKNOWN_PROFILE.context_window,
        max_output_tokens=UNKNOWN_PROFILE.max_output_tokens,
        supports_temperature=UNKNOWN_PROFILE.supports_temperature,
        tokenizer_family=UNKNOWN_PROFILE.tokenizer_family,
        encoding=UNKNOWN_PROFILE.encoding,
    )


def supports_temperature_sampling(model_id: Optional[str]) -> bool:
    """Return False for model families that reject a temperature parameter."""
    return resolve_capabilities(model_id).supports_temperature


def default_model_for_provider(provider: str, env: Dict[str, str]) -> str:
    """
    Pick the configured model for an AI provider.

    Args:
        provider: 'openai', 'ollama', 'custom', 'azure' or 'anthropic'
        env: Environment mapping to read model settings from

    Returns:
        Model name, or '' when the provider is unknown or has no model set
    """
    provider = (provider or '').lower()
    if provider == 'openai':
        return env.get('OPENAI_MODEL') or DEFAULT_MODEL
    if provider == 'ollama':
        return env.get('OLLAMA_MODEL') or 'llama3.2'
    if provider == 'custom':
        return env.get('CUSTOM_MODEL') or ''
    if provider == 'azure':
        return env.get('AZURE_DEPLOYMENT_NAME') or ''
    if provider == 'anthropic':
        return env.get('ANTHROPIC_MODEL') or 'claude-sonnet-4-5-20250929'
    return ''
