"""
LLM pipeline: token accounting, model capabilities, prompt assembly and
response extraction.
"""

from enricher.llm.llm_client import LLMClient
from enricher.llm.models import ProviderProfile, resolve_capabilities, supports_temperature_sampling
from enricher.llm.prompts import PromptAssembler, PromptBundle, PromptSettings
from enricher.llm.responses import AnalysisResult, RawText, ResponseExtractor, StructuredOutput

__all__ = [
    'LLMClient',
    'ProviderProfile',
    'resolve_capabilities',
    'supports_temperature_sampling',
    'PromptAssembler',
    'PromptBundle',
    'PromptSettings',
    'AnalysisResult',
    'RawText',
    'ResponseExtractor',
    'StructuredOutput',
]
