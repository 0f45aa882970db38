"""
Prompt Assembler

Builds the instruction text sent to the AI provider from the configured
system prompt, the required JSON shape, optional taxonomy listings and
restrictions, predefined-tag mode, external context and webhook overrides,
then checks the result against the model's token budget.
"""

import re
import json
import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Sequence, Tuple

from enricher.exceptions import TokenBudgetExceeded
from enricher.llm.models import resolve_capabilities
from enricher.llm.tokens import count_prompt_tokens, truncate_to_token_limit

logger = logging.getLogger(__name__)

MAX_RESPONSE_TOKENS = 4096

DEFAULT_SYSTEM_PROMPT = """You are a document metadata extractor for Paperless-ngx.
Analyze the document text and determine a short, meaningful title, the correspondent
(the sender or issuing institution, not the receiver, in its shortest recognizable form),
one to four thematic tags, the document type, the document date and the language.
Only use information present in the document. Do not ask for additional information.
%RESTRICTED_TAGS%
%RESTRICTED_CORRESPONDENTS%
%RESTRICTED_DOCUMENT_TYPES%"""

MUST_HAVE_PROMPT = """  Return the result EXCLUSIVELY as a JSON object. The Tags, Title and Document_Type MUST be in the language that is used in the document.:
  IMPORTANT: The custom_fields are optional and can be left out if not needed, only try to fill out the values if you find a matching information in the document.
  Do not change the value of field_name, only fill out the values. If the field is about money only add the number without currency and always use a . for decimal places.
  {
    "title": "xxxxx",
    "correspondent": "xxxxxxxx",
    "tags": ["Tag1", "Tag2", "Tag3", "Tag4"],
    "document_type": "Invoice/Contract/...",
    "document_date": "YYYY-MM-DD",
    "language": "en/de/es/...",
    %CUSTOMFIELDS%
  }"""

PREDEFINED_TAGS_DIRECTIVE = "Take these tags and try to match one or more to the document content."

PREDEFINED_TAGS_PROMPT = """You are a document analysis AI. You will analyze the document.
  You take the main information to associate tags with the document.
  You will also find the correspondent of the document (Sender not receiver). Also you find a meaningful and short title for the document.
  You are given a list of tags: %PREDEFINED_TAGS%
  Only use the tags from the list and try to find the best fitting tags.
  You do not ask for additional information, you only use the information given in the document.

  Return the result EXCLUSIVELY as a JSON object. The Tags and Title MUST be in the language that is used in the document.:
  {
    "title": "xxxxx",
    "correspondent": "xxxxxxxx",
    "tags": ["Tag1", "Tag2", "Tag3", "Tag4"],
    "document_date": "YYYY-MM-DD",
    "language": "en/de/es/..."
  }"""

PLAYGROUND_MUST_HAVE_PROMPT = """
    Return the result EXCLUSIVELY as a JSON object. The Tags and Title MUST be in the language that is used in the document.:
        {
          "title": "xxxxx",
          "correspondent": "xxxxxxxx",
          "tags": ["Tag1", "Tag2", "Tag3", "Tag4"],
          "document_date": "YYYY-MM-DD",
          "language": "en/de/es/..."
        }"""

EXISTING_DATA_PROMPT = """Pre-existing tags: %EXISTING_TAGS%

Pre-existing correspondents: %EXISTING_CORRESPONDENTS%

Pre-existing document types: %EXISTING_DOCUMENT_TYPES%

"""

EXTERNAL_CONTEXT_HEADING = "Additional context from external API:"

RESTRICTION_CLAUSES = {
    'RESTRICTED_TAGS': (
        "IMPORTANT: You MUST only choose tags from this list of existing tags: {values}. "
        "Do not invent new tags."
    ),
    'RESTRICTED_CORRESPONDENTS': (
        "IMPORTANT: You MUST only choose the correspondent from this list of existing correspondents: {values}. "
        "Do not invent a new correspondent."
    ),
    'RESTRICTED_DOCUMENT_TYPES': (
        "IMPORTANT: You MUST only choose the document type from this list of existing document types: {values}. "
        "Do not invent a new document type."
    ),
}

_SLOT = re.compile(r'%([A-Z][A-Z_]*)%')


class PromptTemplate:
    """
    Prompt text with named %SLOT% placeholders.

    All slots are filled in a single pass, so a substituted value that happens
    to contain a placeholder is never expanded again. Slots without a value
    are left untouched.
    """

    def __init__(self, text: str):
        self.text = text or ''

    @property
    def slots(self) -> set:
        return set(_SLOT.findall(self.text))

    def render(self, **values: str) -> str:
        def _fill(match):
            name = match.group(1)
            if name in values:
                return values[name]
            return match.group(0)

        return _SLOT.sub(_fill, self.text)

    def __add__(self, other: 'PromptTemplate') -> 'PromptTemplate':
        return PromptTemplate(self.text + other.text)


def format_custom_fields(field_names: Sequence[str]) -> str:
    """
    Build the custom_fields fragment of the required JSON shape.

    Args:
        field_names: Names of the Paperless custom fields to fill

    Returns:
        '"custom_fields": {...}' with one entry per field, indented for the template
    """
    template = {
        str(index): {
            'field_name': name,
            'value': 'Fill in the value based on your analysis'
        }
        for index, name in enumerate(field_names)
    }
    body = json.dumps(template, indent=2, ensure_ascii=False)
    return '"custom_fields": ' + '\n'.join('    ' + line for line in body.split('\n'))


def render_must_have_template(template: str, custom_fields_str: str) -> str:
    """Return the must-have template with its custom-fields slot filled."""
    return PromptTemplate(template).render(CUSTOMFIELDS=custom_fields_str)


def build_restriction_clauses(existing_tags: Sequence[str],
                              existing_correspondents: Sequence[str],
                              existing_document_types: Sequence[str],
                              restrict_tags: bool = False,
                              restrict_correspondents: bool = False,
                              restrict_document_types: bool = False) -> Dict[str, str]:
    """
    Build slot values for the restriction placeholders.

    A restriction only produces a clause when its flag is set and there is
    something to choose from; otherwise its placeholder is removed.

    Returns:
        Mapping of slot name to clause text
    """
    sources = {
        'RESTRICTED_TAGS': (restrict_tags, existing_tags),
        'RESTRICTED_CORRESPONDENTS': (restrict_correspondents, existing_correspondents),
        'RESTRICTED_DOCUMENT_TYPES': (restrict_document_types, existing_document_types),
    }

    clauses = {}
    for slot, (enabled, names) in sources.items():
        names = [name for name in (names or []) if name]
        if enabled and names:
            clauses[slot] = RESTRICTION_CLAUSES[slot].format(values=', '.join(names))
        else:
            clauses[slot] = ''
    return clauses


def document_analysis_schema(custom_fields: Sequence[str] = ()) -> Dict[str, Any]:
    """
    JSON schema for the document analysis response.

    Args:
        custom_fields: Configured custom field names; adds a custom_fields object when present

    Returns:
        JSON schema dict
    """
    schema = {
        'type': 'object',
        'properties': {
            'title': {
                'type': 'string',
                'description': 'Concise, meaningful title for the document'
            },
            'correspondent': {
                'type': 'string',
                'description': 'Sender or institution (shortest form of company name)'
            },
            'tags': {
                'type': 'array',
                'items': {'type': 'string'},
                'minItems': 1,
                'maxItems': 4,
                'description': 'Relevant thematic tags (1-4 tags)'
            },
            'document_type': {
                'type': 'string',
                'description': 'Type of document (e.g., Invoice, Contract, Receipt)'
            },
            'document_date': {
                'type': 'string',
                'pattern': r'^\d{4}-\d{2}-\d{2}$',
                'description': 'Document date in YYYY-MM-DD format'
            },
            'language': {
                'type': 'string',
                'minLength': 2,
                'maxLength': 3,
                'description': 'Document language code (e.g., en, de, es)'
            }
        },
        'required': ['title', 'correspondent', 'tags', 'document_date', 'language'],
        'additionalProperties': False
    }

    if custom_fields:
        schema['properties']['custom_fields'] = {
            'type': 'object',
            'description': 'Custom field values extracted from document',
            'additionalProperties': True
        }
        schema['required'].append('custom_fields')

    return schema


@dataclass(frozen=True)
class PromptSettings:
    """Read-only prompt configuration shared by all requests."""
    system_prompt: str = DEFAULT_SYSTEM_PROMPT
    must_have_template: str = MUST_HAVE_PROMPT
    predefined_template: str = PREDEFINED_TAGS_PROMPT
    use_existing_data: bool = False
    restrict_to_existing_tags: bool = False
    restrict_to_existing_correspondents: bool = False
    restrict_to_existing_document_types: bool = False
    use_prompt_tags: bool = False
    prompt_tags: Tuple[str, ...] = ()
    custom_fields: Tuple[str, ...] = ()
    token_limit: Optional[int] = None  # None: the model's context window
    response_tokens: Optional[int] = None  # None: the model's output cap, at most 4096

    @property
    def any_restriction(self) -> bool:
        return (self.restrict_to_existing_tags or
                self.restrict_to_existing_correspondents or
                self.restrict_to_existing_document_types)


@dataclass(frozen=True)
class PromptBundle:
    """Instructions and content that fit the model's token budget."""
    instructions: str
    content: str
    prompt_tokens: int
    reserved_tokens: int
    available_tokens: int
    original_length: int

    @property
    def truncated(self) -> bool:
        return len(self.content) < self.original_length


class PromptAssembler:
    """Builds provider instructions and enforces the token budget."""

    def __init__(self, settings: Optional[PromptSettings] = None):
        self.settings = settings or PromptSettings()

    def render_must_have(self) -> str:
        return render_must_have_template(
            self.settings.must_have_template,
            format_custom_fields(self.settings.custom_fields)
        )

    def assemble_instructions(self,
                              existing_tags: Sequence[str] = (),
                              existing_correspondents: Sequence[str] = (),
                              existing_document_types: Sequence[str] = (),
                              custom_prompt: Optional[str] = None,
                              external_context: Optional[str] = None) -> str:
        """
        Compose the instruction text.

        Precedence: existing-data listing or plain base prompt, then the
        restriction clauses, then predefined-tag mode which replaces the
        instructions, then external context. A custom prompt (e.g. from a
        webhook) replaces everything before the external context but keeps
        the required JSON shape.

        Args:
            existing_tags: Tag names already in Paperless
            existing_correspondents: Correspondent names already in Paperless
            existing_document_types: Document type names already in Paperless
            custom_prompt: Optional override prompt
            external_context: Sanitized external API data

        Returns:
            Instruction text
        """
        settings = self.settings

        if custom_prompt:
            logger.debug("Replacing system prompt with custom prompt")
            instructions = custom_prompt + '\n\n' + self.render_must_have()

        elif settings.use_prompt_tags:
            template = PromptTemplate(PREDEFINED_TAGS_DIRECTIVE + '\n\n' + settings.predefined_template)
            instructions = template.render(PREDEFINED_TAGS=', '.join(settings.prompt_tags))

        else:
            base = PromptTemplate(settings.system_prompt + '\n\n' + settings.must_have_template)
            values = build_restriction_clauses(
                existing_tags,
                existing_correspondents,
                existing_document_types,
                settings.restrict_to_existing_tags,
                settings.restrict_to_existing_correspondents,
                settings.restrict_to_existing_document_types,
            )
            values['CUSTOMFIELDS'] = format_custom_fields(settings.custom_fields)

            if settings.use_existing_data and not settings.any_restriction:
                base = PromptTemplate(EXISTING_DATA_PROMPT) + base
                values['EXISTING_TAGS'] = ', '.join(existing_tags)
                values['EXISTING_CORRESPONDENTS'] = ', '.join(existing_correspondents)
                values['EXISTING_DOCUMENT_TYPES'] = ', '.join(existing_document_types)

            instructions = base.render(**values)

        if external_context:
            instructions += f"\n\n{EXTERNAL_CONTEXT_HEADING}\n{external_context}"

        return instructions

    def side_prompts(self) -> List[str]:
        """Prompt segments sent alongside the instructions."""
        if self.settings.use_prompt_tags:
            return [', '.join(self.settings.prompt_tags)]
        return []

    def budget(self, model_id: Optional[str]) -> Tuple[int, int]:
        """Return (token_limit, response_tokens) for a model."""
        profile = resolve_capabilities(model_id)
        token_limit = self.settings.token_limit or profile.context_window
        response_tokens = self.settings.response_tokens
        if response_tokens is None:
            response_tokens = min(profile.max_output_tokens, MAX_RESPONSE_TOKENS)
        return int(token_limit), int(response_tokens)

    def fit(self, instructions: str, content: str, model_id: Optional[str],
            side_prompts: Sequence[str] = ()) -> PromptBundle:
        """
        Check instructions against the budget and truncate content to fit.

        Raises:
            TokenBudgetExceeded: If no tokens remain for the content
        """
        token_limit, response_tokens = self.budget(model_id)
        prompt_tokens = count_prompt_tokens(instructions, side_prompts, model_id)
        reserved_tokens = prompt_tokens + response_tokens
        available_tokens = token_limit - reserved_tokens

        if available_tokens <= 0:
            logger.warning(f"No available tokens for content. Reserved: {reserved_tokens}, Max: {token_limit}")
            raise TokenBudgetExceeded(prompt_tokens, reserved_tokens, token_limit)

        logger.debug(f"Token calculation - Prompt: {prompt_tokens}, Reserved: {reserved_tokens}, "
                     f"Available: {available_tokens}")

        content = content or ''
        return PromptBundle(
            instructions=instructions,
            content=truncate_to_token_limit(content, available_tokens, model_id),
            prompt_tokens=prompt_tokens,
            reserved_tokens=reserved_tokens,
            available_tokens=available_tokens,
            original_length=len(content),
        )

    def build(self,
              content: str,
              model_id: Optional[str],
              existing_tags: Sequence[str] = (),
              existing_correspondents: Sequence[str] = (),
              existing_document_types: Sequence[str] = (),
              custom_prompt: Optional[str] = None,
              external_context: Optional[str] = None) -> PromptBundle:
        """
        Assemble instructions for a document and fit the content to the budget.

        Args:
            content: Document text
            model_id: Target model
            existing_tags: Tag names already in Paperless
            existing_correspondents: Correspondent names already in Paperless
            existing_document_types: Document type names already in Paperless
            custom_prompt: Optional override prompt
            external_context: Sanitized external API data

        Returns:
            PromptBundle ready for dispatch

        Raises:
            TokenBudgetExceeded: If the prompt leaves no room for content
        """
        instructions = self.assemble_instructions(
            existing_tags=existing_tags,
            existing_correspondents=existing_correspondents,
            existing_document_types=existing_document_types,
            custom_prompt=custom_prompt,
            external_context=external_context,
        )
        return self.fit(instructions, content, model_id, self.side_prompts())
