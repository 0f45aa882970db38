"""
Configuration

Loads settings from environment variables (optionally from data/.env) into
a plain dict, and derives the read-only prompt settings from it.
"""

import os
import json
import logging
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional

from dotenv import load_dotenv

from enricher.llm.models import default_model_for_provider, resolve_capabilities
from enricher.llm.prompts import (
    DEFAULT_SYSTEM_PROMPT,
    MAX_RESPONSE_TOKENS,
    MUST_HAVE_PROMPT,
    PREDEFINED_TAGS_PROMPT,
    PromptSettings,
)

logger = logging.getLogger(__name__)


def parse_env_boolean(value: Optional[str], default: bool = False) -> bool:
    """Interpret yes/true/1 (any case) as True; unset falls back to default."""
    if value is None or value.strip() == '':
        return default
    return value.strip().lower() in ('yes', 'true', '1')


def parse_custom_fields(raw: Optional[str]) -> List[str]:
    """
    Parse the CUSTOM_FIELDS JSON into a list of field names.

    Accepts {"custom_fields": [{"value": "Name", ...}, ...]} as well as a bare list.
    Invalid JSON yields an empty list.
    """
    if not raw:
        return []

    try:
        data = json.loads(raw)
    except ValueError as e:
        logger.error(f"Failed to parse CUSTOM_FIELDS: {e}")
        return []

    fields = data.get('custom_fields', []) if isinstance(data, dict) else data
    names = []
    for field in fields or []:
        if isinstance(field, dict):
            name = field.get('value') or field.get('name')
        else:
            name = field
        if name:
            names.append(str(name))
    return names


def parse_tag_list(raw: Optional[str]) -> List[str]:
    """Split a comma separated tag list, dropping blanks."""
    return [tag.strip() for tag in (raw or '').split(',') if tag.strip()]


def load_system_prompt(prompt_path: Path, env: Mapping[str, str]) -> str:
    """
    Load the system prompt from a file, falling back to SYSTEM_PROMPT.

    Args:
        prompt_path: Path to system-prompt.md
        env: Environment mapping

    Returns:
        The prompt text (the built-in default when neither source is set)
    """
    try:
        text = prompt_path.read_text(encoding='utf-8').strip()
        if text:
            logger.info(f"Loaded system prompt from {prompt_path}")
            return text
    except OSError:
        pass

    text = (env.get('SYSTEM_PROMPT') or '').strip()
    if text:
        logger.info("Loaded system prompt from SYSTEM_PROMPT environment variable")
        return text

    logger.warning("No system prompt found in file or environment variable, using built-in prompt")
    return DEFAULT_SYSTEM_PROMPT


def _int(env: Mapping[str, str], key: str, default: int) -> int:
    value = env.get(key)
    if value is None or value.strip() == '':
        return default
    try:
        return int(value)
    except ValueError:
        logger.warning(f"Invalid integer for {key}: {value!r}, using {default}")
        return default


def load_config(env: Optional[Mapping[str, str]] = None, dotenv_path: Optional[str] = None) -> Dict[str, Any]:
    """
    Load configuration from environment variables.

    Args:
        env: Environment mapping (defaults to os.environ after loading data/.env)
        dotenv_path: Path of the .env file to load first

    Returns:
        Configuration dictionary
    """
    if env is None:
        dotenv_file = Path(dotenv_path or os.path.join(os.getcwd(), 'data', '.env'))
        if dotenv_file.exists():
            load_dotenv(dotenv_file)
            logger.info(f"Loaded .env from {dotenv_file}")
        env = os.environ

    provider = (env.get('AI_PROVIDER') or 'openai').lower()
    model = default_model_for_provider(provider, env)
    profile = resolve_capabilities(model)

    data_dir = env.get('DATA_DIR', 'data')
    prompt_file = env.get('SYSTEM_PROMPT_FILE', 'system-prompt.md')

    config = {
        'paperless_api_base_url': env.get('PAPERLESS_API_URL', 'http://paperless-web:8000').rstrip('/'),
        'paperless_api_token': env.get('PAPERLESS_API_TOKEN', ''),
        'paperless_public_url': env.get('PAPERLESS_PUBLIC_URL', ''),

        'ai_provider': provider,
        'model': model,
        'openai_api_key': env.get('OPENAI_API_KEY'),
        'ollama_api_url': env.get('OLLAMA_API_URL', 'http://localhost:11434'),
        'custom_base_url': env.get('CUSTOM_BASE_URL', ''),
        'custom_api_key': env.get('CUSTOM_API_KEY', ''),
        'azure_api_key': env.get('AZURE_API_KEY', ''),
        'azure_endpoint': env.get('AZURE_ENDPOINT', ''),
        'azure_api_version': env.get('AZURE_API_VERSION', '2023-05-15'),
        'anthropic_api_key': env.get('ANTHROPIC_API_KEY'),

        'token_limit': _int(env, 'TOKEN_LIMIT', profile.context_window),
        'response_tokens': _int(env, 'RESPONSE_TOKENS', min(profile.max_output_tokens, MAX_RESPONSE_TOKENS)),

        'system_prompt': load_system_prompt(Path(prompt_file), env),
        'use_existing_data': parse_env_boolean(env.get('USE_EXISTING_DATA'), False),
        'restrict_to_existing_tags': parse_env_boolean(env.get('RESTRICT_TO_EXISTING_TAGS'), False),
        'restrict_to_existing_correspondents': parse_env_boolean(env.get('RESTRICT_TO_EXISTING_CORRESPONDENTS'), False),
        'restrict_to_existing_document_types': parse_env_boolean(env.get('RESTRICT_TO_EXISTING_DOCUMENT_TYPES'), False),
        'use_prompt_tags': parse_env_boolean(env.get('USE_PROMPT_TAGS'), False),
        'prompt_tags': parse_tag_list(env.get('PROMPT_TAGS')),
        'custom_fields': parse_custom_fields(env.get('CUSTOM_FIELDS')),

        'activate_tagging': parse_env_boolean(env.get('ACTIVATE_TAGGING'), True),
        'activate_correspondents': parse_env_boolean(env.get('ACTIVATE_CORRESPONDENTS'), True),
        'activate_document_type': parse_env_boolean(env.get('ACTIVATE_DOCUMENT_TYPE'), True),
        'activate_title': parse_env_boolean(env.get('ACTIVATE_TITLE'), True),
        'activate_custom_fields': parse_env_boolean(env.get('ACTIVATE_CUSTOM_FIELDS'), True),
        'add_ai_processed_tag': parse_env_boolean(env.get('ADD_AI_PROCESSED_TAG'), False),
        'ai_processed_tag_name': env.get('AI_PROCESSED_TAG_NAME', 'ai-processed'),

        'external_api_enabled': parse_env_boolean(env.get('EXTERNAL_API_ENABLED'), False),
        'external_api_url': env.get('EXTERNAL_API_URL', ''),
        'external_api_method': (env.get('EXTERNAL_API_METHOD') or 'GET').upper(),
        'external_api_headers': env.get('EXTERNAL_API_HEADERS', '{}'),
        'external_api_body': env.get('EXTERNAL_API_BODY', '{}'),
        'external_api_timeout': _int(env, 'EXTERNAL_API_TIMEOUT', 5000),
        'external_api_transform': env.get('EXTERNAL_API_TRANSFORM', ''),
        'external_api_allow_private_ips': parse_env_boolean(env.get('EXTERNAL_API_ALLOW_PRIVATE_IPS'), False),
        'external_api_max_tokens': _int(env, 'EXTERNAL_API_MAX_TOKENS', 500),

        'poll_interval_seconds': _int(env, 'POLL_INTERVAL_SECONDS', 1800),
        'min_content_length': _int(env, 'MIN_CONTENT_LENGTH', 10),
        'max_retries': _int(env, 'MAX_RETRIES', 3),
        'data_dir': data_dir,
        'log_dir': env.get('LOG_DIR', 'logs'),
        'thumbnail_dir': env.get('THUMBNAIL_DIR', os.path.join('public', 'images')),
        'log_level': (env.get('LOG_LEVEL') or 'INFO').upper(),
        'web_ui_enabled': parse_env_boolean(env.get('WEB_UI_ENABLED'), True),
        'web_host': env.get('WEB_HOST', '0.0.0.0'),
        'web_port': _int(env, 'WEB_PORT', 3000),
    }

    logger.info(f"Loaded configuration: provider={provider}, model={model or '(none)'}, "
                f"token_limit={config['token_limit']}, response_tokens={config['response_tokens']}, "
                f"external_api={'enabled' if config['external_api_enabled'] else 'disabled'}")
    return config


def prompt_settings_from_config(config: Mapping[str, Any]) -> PromptSettings:
    """Build immutable prompt settings from a configuration dict."""
    return PromptSettings(
        system_prompt=config.get('system_prompt') or DEFAULT_SYSTEM_PROMPT,
        must_have_template=config.get('must_have_template') or MUST_HAVE_PROMPT,
        predefined_template=config.get('predefined_template') or PREDEFINED_TAGS_PROMPT,
        use_existing_data=bool(config.get('use_existing_data')),
        restrict_to_existing_tags=bool(config.get('restrict_to_existing_tags')),
        restrict_to_existing_correspondents=bool(config.get('restrict_to_existing_correspondents')),
        restrict_to_existing_document_types=bool(config.get('restrict_to_existing_document_types')),
        use_prompt_tags=bool(config.get('use_prompt_tags')),
        prompt_tags=tuple(config.get('prompt_tags') or ()),
        custom_fields=tuple(config.get('custom_fields') or ()),
        token_limit=config.get('token_limit'),
        response_tokens=config.get('response_tokens'),
    )


def llm_client_kwargs(config: Mapping[str, Any]) -> Dict[str, Any]:
    """Provider-specific LLMClient arguments for the configured provider."""
    provider = config.get('ai_provider', 'openai')
    kwargs = {'provider': provider, 'model': config.get('model') or None}

    if provider == 'openai':
        kwargs['api_key'] = config.get('openai_api_key')
    elif provider == 'ollama':
        kwargs['base_url'] = config.get('ollama_api_url')
    elif provider == 'custom':
        kwargs['base_url'] = config.get('custom_base_url')
        kwargs['api_key'] = config.get('custom_api_key')
    elif provider == 'azure':
        kwargs['base_url'] = config.get('azure_endpoint')
        kwargs['api_key'] = config.get('azure_api_key')
        kwargs['api_version'] = config.get('azure_api_version')
    elif provider == 'anthropic':
        kwargs['api_key'] = config.get('anthropic_api_key')

    return kwargs
