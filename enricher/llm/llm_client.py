"""
LLM Client

Sends documents to the configured AI provider (OpenAI, Ollama, Azure OpenAI,
a custom OpenAI-compatible endpoint, or Anthropic) and returns the extracted
metadata as an AnalysisResult.
"""

import json
import logging
from datetime import datetime
from typing import Any, Dict, Optional, Sequence, Tuple

import anthropic
import openai

from enricher.exceptions import ConfigurationError, ProviderError
from enricher.llm import audit
from enricher.llm.models import default_model_for_provider, supports_temperature_sampling
from enricher.llm.prompts import (
    PLAYGROUND_MUST_HAVE_PROMPT,
    PromptAssembler,
    PromptBundle,
    PromptSettings,
    document_analysis_schema,
)
from enricher.llm.responses import (
    AnalysisResult,
    ProviderReply,
    RawText,
    ResponseExtractor,
    StructuredOutput,
    failure_result,
)
from enricher.llm.sanitizer import DEFAULT_MAX_TOKENS, sanitize_for_prompt

logger = logging.getLogger(__name__)

OPENAI_COMPATIBLE = ('openai', 'ollama', 'custom', 'azure')
PROVIDERS = OPENAI_COMPATIBLE + ('anthropic',)


class LLMClient:
    """Client for AI-assisted document classification."""

    def __init__(self,
                 provider: str = 'openai',
                 api_key: Optional[str] = None,
                 model: Optional[str] = None,
                 base_url: Optional[str] = None,
                 api_version: Optional[str] = None,
                 settings: Optional[PromptSettings] = None,
                 extractor: Optional[ResponseExtractor] = None,
                 temperature: float = 0.3,
                 structured_output: bool = True,
                 external_data_max_tokens: int = DEFAULT_MAX_TOKENS,
                 client: Any = None):
        """
        Initialize LLM client.

        Args:
            provider: 'openai', 'ollama', 'custom', 'azure' or 'anthropic'
            api_key: API key for the provider
            model: Model name (or Azure deployment name)
            base_url: Ollama URL, custom endpoint or Azure endpoint
            api_version: Azure API version
            settings: Prompt configuration
            extractor: Response extractor (defaults to the standard one)
            temperature: Sampling temperature for models that accept one
            structured_output: Request a JSON schema from OpenAI-compatible providers
            external_data_max_tokens: Token cap for external API context
            client: Pre-built SDK client (skips initialization)
        """
        self.provider = (provider or 'openai').lower()
        self.api_key = api_key
        self.base_url = base_url
        self.api_version = api_version
        self.model = model or self._get_default_model()
        self.temperature = temperature
        self.structured_output = structured_output and self.provider in OPENAI_COMPATIBLE
        self.external_data_max_tokens = external_data_max_tokens
        self.assembler = PromptAssembler(settings)
        self.extractor = extractor or ResponseExtractor()
        self.client = client

        if self.client is None:
            self._initialize_client()

    def _get_default_model(self) -> str:
        """Get default model for provider."""
        return default_model_for_provider(self.provider, {})

    def _initialize_client(self) -> None:
        """Initialize the provider SDK client."""
        try:
            if self.provider == 'openai':
                if not self.api_key:
                    logger.warning("No OpenAI API key provided, AI analysis disabled")
                    return
                self.client = openai.OpenAI(api_key=self.api_key)

            elif self.provider == 'ollama':
                base_url = (self.base_url or 'http://localhost:11434').rstrip('/')
                self.client = openai.OpenAI(base_url=f'{base_url}/v1', api_key='ollama')

            elif self.provider == 'custom':
                if not self.base_url:
                    logger.warning("No custom base URL provided, AI analysis disabled")
                    return
                self.client = openai.OpenAI(base_url=self.base_url, api_key=self.api_key or 'none')

            elif self.provider == 'azure':
                if not self.api_key or not self.base_url:
                    logger.warning("Azure OpenAI needs an API key and endpoint, AI analysis disabled")
                    return
                self.client = openai.AzureOpenAI(
                    api_key=self.api_key,
                    azure_endpoint=self.base_url,
                    api_version=self.api_version or '2023-05-15'
                )

            elif self.provider == 'anthropic':
                if not self.api_key:
                    logger.warning("No Anthropic API key provided, AI analysis disabled")
                    return
                self.client = anthropic.Anthropic(api_key=self.api_key)

            else:
                logger.error(f"Unknown LLM provider: {self.provider}")

        except Exception as e:
            logger.error(f"Failed to initialize LLM client: {e}")
            self.client = None

    def _require_client(self) -> None:
        if not self.client:
            raise ConfigurationError(f'{self.provider} client not initialized')

    @staticmethod
    def _map_usage(usage: Any) -> Optional[Dict[str, int]]:
        """Normalize provider token usage to prompt/completion/total counts."""
        if usage is None:
            return None

        prompt_tokens = getattr(usage, 'prompt_tokens', None)
        if prompt_tokens is None:
            prompt_tokens = getattr(usage, 'input_tokens', 0)
        completion_tokens = getattr(usage, 'completion_tokens', None)
        if completion_tokens is None:
            completion_tokens = getattr(usage, 'output_tokens', 0)
        total_tokens = getattr(usage, 'total_tokens', None)
        if total_tokens is None:
            total_tokens = (prompt_tokens or 0) + (completion_tokens or 0)

        return {
            'prompt_tokens': prompt_tokens or 0,
            'completion_tokens': completion_tokens or 0,
            'total_tokens': total_tokens or 0,
        }

    def _dispatch(self, bundle: PromptBundle, schema: Dict[str, Any],
                  schema_name: str) -> Tuple[ProviderReply, Optional[Dict[str, int]]]:
        """
        Send a bundle to the provider.

        Returns:
            (reply, metrics) where reply is StructuredOutput when the provider
            answered with a JSON object under the requested schema, RawText otherwise
        """
        if self.provider == 'anthropic':
            return self._dispatch_anthropic(bundle)

        params = {
            'model': self.model,
            'messages': [
                {'role': 'system', 'content': bundle.instructions},
                {'role': 'user', 'content': bundle.content},
            ],
        }
        if self.structured_output:
            params['response_format'] = {
                'type': 'json_schema',
                'json_schema': {
                    'name': schema_name,
                    'strict': False,
                    'schema': schema,
                }
            }
        if supports_temperature_sampling(self.model):
            params['temperature'] = self.temperature

        response = self.client.chat.completions.create(**params)

        error = getattr(response, 'error', None)
        if error:
            message = error.get('message') if isinstance(error, dict) else getattr(error, 'message', None)
            raise ProviderError(f"API error: {message or 'Unknown error'}")

        if not getattr(response, 'choices', None):
            raise ProviderError('Invalid API response structure')

        choice = response.choices[0]
        if getattr(choice, 'finish_reason', None) == 'length':
            logger.warning("Response incomplete: output token limit reached")

        metrics = self._map_usage(getattr(response, 'usage', None))
        if metrics:
            logger.debug(f"[{datetime.now():%Y-%m-%d %H:%M}] Total tokens: {metrics['total_tokens']}")

        refusal = getattr(choice.message, 'refusal', None)
        if refusal:
            return RawText(refusal), metrics

        text = choice.message.content or ''
        if self.structured_output:
            try:
                parsed = json.loads(text)
            except ValueError:
                parsed = None
            if isinstance(parsed, dict):
                return StructuredOutput(parsed), metrics

        return RawText(text), metrics

    def _dispatch_anthropic(self, bundle: PromptBundle) -> Tuple[ProviderReply, Optional[Dict[str, int]]]:
        _, response_tokens = self.assembler.budget(self.model)
        params = {
            'model': self.model,
            'max_tokens': response_tokens,
            'system': bundle.instructions,
            'messages': [{'role': 'user', 'content': bundle.content}],
        }
        if supports_temperature_sampling(self.model):
            params['temperature'] = self.temperature

        response = self.client.messages.create(**params)
        text = ''.join(
            getattr(block, 'text', '') for block in (response.content or [])
            if getattr(block, 'type', 'text') == 'text'
        )
        return RawText(text), self._map_usage(getattr(response, 'usage', None))

    def analyze_document(self,
                         content: str,
                         existing_tags: Sequence[str] = (),
                         existing_correspondents: Sequence[str] = (),
                         existing_document_types: Sequence[str] = (),
                         document_id: Any = None,
                         custom_prompt: Optional[str] = None,
                         external_data: Any = None) -> AnalysisResult:
        """
        Classify a document.

        Args:
            content: Document text
            existing_tags: Tag names already in Paperless
            existing_correspondents: Correspondent names already in Paperless
            existing_document_types: Document type names already in Paperless
            document_id: Paperless document ID
            custom_prompt: Optional override prompt (e.g. from a webhook)
            external_data: Optional data from the external API

        Returns:
            AnalysisResult; failures are reported in its error field
        """
        try:
            self._require_client()

            external_context = None
            if external_data is not None:
                external_context = sanitize_for_prompt(
                    external_data, self.external_data_max_tokens, self.model
                )

            bundle = self.assembler.build(
                content,
                self.model,
                existing_tags=tuple(existing_tags or ()),
                existing_correspondents=tuple(existing_correspondents or ()),
                existing_document_types=tuple(existing_document_types or ()),
                custom_prompt=custom_prompt,
                external_context=external_context,
            )
            logger.debug(f"External API data: {'included' if external_context else 'none'}")
            audit.log_prompt(bundle.instructions, bundle.content, document_id)

            schema = document_analysis_schema(self.assembler.settings.custom_fields)
            reply, metrics = self._dispatch(bundle, schema, 'document_analysis')
            logger.info(f"{self.provider} request sent for document {document_id}")

            return self.extractor.extract(reply, document_id, metrics, bundle.truncated)

        except Exception as e:
            logger.error(f"Failed to analyze document {document_id}: {e}", exc_info=True)
            return failure_result(str(e))

    def analyze_playground(self, content: str, prompt: str) -> AnalysisResult:
        """
        Try out a prompt against a document without custom fields.

        Args:
            content: Document text
            prompt: Prompt under test

        Returns:
            AnalysisResult; failures are reported in its error field
        """
        try:
            self._require_client()

            bundle = self.assembler.fit(prompt + PLAYGROUND_MUST_HAVE_PROMPT, content, self.model)
            audit.log_prompt(bundle.instructions, bundle.content)

            reply, metrics = self._dispatch(bundle, document_analysis_schema(), 'playground_analysis')
            return self.extractor.extract(reply, None, metrics, bundle.truncated)

        except Exception as e:
            logger.error(f"Playground analysis failed: {e}", exc_info=True)
            return failure_result(str(e))

    def generate_text(self, prompt: str) -> str:
        """
        Generate free text for a prompt.

        Raises:
            ConfigurationError: If no client is initialized
            ProviderError: If the provider returns no text
        """
        self._require_client()

        if self.provider == 'anthropic':
            params = {
                'model': self.model,
                'max_tokens': 1024,
                'messages': [{'role': 'user', 'content': prompt}],
            }
            if supports_temperature_sampling(self.model):
                params['temperature'] = 0.7
            response = self.client.messages.create(**params)
            text = ''.join(getattr(block, 'text', '') for block in (response.content or []))
        else:
            params = {
                'model': self.model,
                'messages': [{'role': 'user', 'content': prompt}],
            }
            if supports_temperature_sampling(self.model):
                params['temperature'] = 0.7
            response = self.client.chat.completions.create(**params)
            choices = getattr(response, 'choices', None)
            text = choices[0].message.content if choices else None

        if not text:
            raise ProviderError('Invalid API response structure')
        return text

    def check_status(self) -> Dict[str, Any]:
        """Send a test request and report whether the provider answers."""
        try:
            self.generate_text('Test')
            return {'status': 'ok', 'model': self.model}
        except Exception as e:
            logger.error(f"Error checking {self.provider} status: {e}")
            return {'status': 'error', 'error': str(e)}
