"""Model capability resolution."""

import pytest

from enricher.llm.models import (
    ESTIMATED,
    NATIVE,
    default_model_for_provider,
    resolve_capabilities,
    supports_temperature_sampling,
)


@pytest.mark.parametrize('model, context_window, max_output', [
    ('gpt-5', 1_000_000, 16_384),
    ('gpt-5-standard', 1_000_000, 16_384),
    ('gpt-5-nano', 200_000, 8_192),
    ('gpt-5-mini', 200_000, 8_192),
    ('chatgpt-5o-latest', 200_000, 8_192),
    ('o1', 200_000, 8_192),
    ('o1-2024-12-17', 200_000, 8_192),
    ('o1-preview', 200_000, 8_192),
    ('o1-mini', 128_000, 8_192),
    ('o3-mini', 200_000, 8_192),
    ('o3', 200_000, 8_192),
    ('gpt-4.5', 128_000, 8_192),
    ('gpt-4.1', 128_000, 8_192),
    ('gpt-4-turbo', 128_000, 4_096),
    ('gpt-4-1106-preview', 128_000, 4_096),
    ('gpt-4-32k', 32_768, 4_096),
    ('gpt-4', 8_192, 4_096),
    ('gpt-3.5-turbo', 16_385, 4_096),
    ('gpt-3.5-turbo-16k', 16_385, 4_096),
])
def test_known_model_limits(model, context_window, max_output):
    profile = resolve_capabilities(model)
    assert profile.context_window == context_window
    assert profile.max_output_tokens == max_output
    assert profile.tokenizer_family == NATIVE


@pytest.mark.parametrize('model', ['mistral-large', 'totally-unknown-model-xyz'])
def test_unknown_model_uses_conservative_limits(model):
    profile = resolve_capabilities(model)
    assert profile.context_window == 128_000
    assert profile.max_output_tokens == 4_096
    assert profile.tokenizer_family == ESTIMATED
    assert profile.supports_temperature


@pytest.mark.parametrize('model', [None, '', '   '])
def test_missing_model_uses_default_limits(model):
    profile = resolve_capabilities(model)
    assert profile.context_window == 200_000
    assert profile.max_output_tokens == 8_192


def test_matching_is_case_insensitive():
    assert resolve_capabilities('GPT-4-Turbo').context_window == 128_000


@pytest.mark.parametrize('model', ['gpt-5', 'gpt-5-nano', 'o1', 'o1-mini', 'o3-mini', 'o4-mini'])
def test_models_without_temperature(model):
    assert not supports_temperature_sampling(model)


@pytest.mark.parametrize('model', ['gpt-4.1', 'gpt-4o', 'gpt-4', 'gpt-3.5-turbo', 'llama3.2', None])
def test_models_with_temperature(model):
    assert supports_temperature_sampling(model)


def test_resolution_is_deterministic():
    assert resolve_capabilities('gpt-4o-mini') == resolve_capabilities('gpt-4o-mini')


def test_default_model_per_provider():
    assert default_model_for_provider('openai', {}) == 'gpt-5-nano'
    assert default_model_for_provider('openai', {'OPENAI_MODEL': 'gpt-4o'}) == 'gpt-4o'
    assert default_model_for_provider('ollama', {}) == 'llama3.2'
    assert default_model_for_provider('custom', {'CUSTOM_MODEL': 'my-model'}) == 'my-model'
    assert default_model_for_provider('azure', {'AZURE_DEPLOYMENT_NAME': 'prod'}) == 'prod'
    assert default_model_for_provider('unknown', {}) == ''
