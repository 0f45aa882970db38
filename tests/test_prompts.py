"""Prompt assembly and token budget."""

import pytest

from enricher.exceptions import TokenBudgetExceeded
from enricher.llm.prompts import (
    EXTERNAL_CONTEXT_HEADING,
    MUST_HAVE_PROMPT,
    PREDEFINED_TAGS_DIRECTIVE,
    PromptAssembler,
    PromptSettings,
    PromptTemplate,
    build_restriction_clauses,
    document_analysis_schema,
    format_custom_fields,
    render_must_have_template,
)

ESTIMATED_MODEL = 'llama3.2'
TAGS = ['Invoice', 'Tax']
CORRESPONDENTS = ['City Power', 'ACME']
TYPES = ['Invoice', 'Contract']


def assemble(settings=None, **kwargs):
    kwargs.setdefault('existing_tags', TAGS)
    kwargs.setdefault('existing_correspondents', CORRESPONDENTS)
    kwargs.setdefault('existing_document_types', TYPES)
    return PromptAssembler(settings).assemble_instructions(**kwargs)


def test_template_renders_in_one_pass():
    rendered = PromptTemplate('%FIRST% and %SECOND%').render(FIRST='%SECOND%', SECOND='value')
    assert rendered == '%SECOND% and value'


def test_template_leaves_unknown_slots():
    assert PromptTemplate('keep %OTHER%').render(NAME='x') == 'keep %OTHER%'


def test_format_custom_fields():
    fragment = format_custom_fields(['Amount', 'Invoice number'])
    assert fragment.startswith('"custom_fields": ')
    assert '"field_name": "Amount"' in fragment
    assert '"1"' in fragment


def test_render_must_have_template_is_pure():
    first = render_must_have_template(MUST_HAVE_PROMPT, format_custom_fields(['Amount']))
    second = render_must_have_template(MUST_HAVE_PROMPT, format_custom_fields(['Amount']))
    assert first == second
    assert '%CUSTOMFIELDS%' in MUST_HAVE_PROMPT
    assert '%CUSTOMFIELDS%' not in first


def test_default_instructions_have_no_placeholders():
    instructions = assemble()
    assert PromptTemplate(instructions).slots == set()
    assert '"correspondent"' in instructions


def test_restriction_clause_included_when_enabled():
    instructions = assemble(PromptSettings(restrict_to_existing_tags=True))
    assert 'only choose tags from this list of existing tags: Invoice, Tax' in instructions
    assert 'existing correspondents' not in instructions


def test_restriction_with_empty_list_is_removed():
    instructions = assemble(PromptSettings(restrict_to_existing_tags=True), existing_tags=[])
    assert 'only choose tags' not in instructions
    assert '%RESTRICTED_TAGS%' not in instructions


def test_build_restriction_clauses_covers_every_slot():
    clauses = build_restriction_clauses(TAGS, CORRESPONDENTS, TYPES, restrict_correspondents=True)
    assert set(clauses) == {'RESTRICTED_TAGS', 'RESTRICTED_CORRESPONDENTS', 'RESTRICTED_DOCUMENT_TYPES'}
    assert clauses['RESTRICTED_TAGS'] == ''
    assert 'City Power, ACME' in clauses['RESTRICTED_CORRESPONDENTS']


def test_existing_data_listing_without_restrictions():
    instructions = assemble(PromptSettings(use_existing_data=True))
    assert instructions.startswith('Pre-existing tags: Invoice, Tax')
    assert 'Pre-existing correspondents: City Power, ACME' in instructions


def test_restriction_suppresses_existing_data_listing():
    settings = PromptSettings(use_existing_data=True, restrict_to_existing_document_types=True)
    instructions = assemble(settings)
    assert 'Pre-existing tags' not in instructions
    assert 'existing document types: Invoice, Contract' in instructions


def test_existing_names_are_not_expanded_as_placeholders():
    instructions = assemble(PromptSettings(use_existing_data=True), existing_tags=['%CUSTOMFIELDS%'])
    assert 'Pre-existing tags: %CUSTOMFIELDS%' in instructions


def test_predefined_tag_mode():
    assembler = PromptAssembler(PromptSettings(use_prompt_tags=True, prompt_tags=('Bills', 'Health'),
                                               use_existing_data=True, custom_fields=('Amount',)))
    instructions = assembler.assemble_instructions(TAGS, CORRESPONDENTS, TYPES)

    assert instructions.startswith(PREDEFINED_TAGS_DIRECTIVE)
    assert 'You are given a list of tags: Bills, Health' in instructions
    assert assembler.side_prompts() == ['Bills, Health']
    assert '"custom_fields"' not in instructions
    assert 'field_name' not in instructions
    assert '%CUSTOMFIELDS%' not in instructions
    assert 'Pre-existing tags' not in instructions


def test_restricted_names_are_not_expanded_as_placeholders():
    instructions = assemble(PromptSettings(restrict_to_existing_tags=True, custom_fields=('Amount',)),
                            existing_tags=['%CUSTOMFIELDS%'])
    assert 'existing tags: %CUSTOMFIELDS%' in instructions
    assert instructions.count('"field_name": "Amount"') == 1


def test_custom_prompt_is_used_literally():
    instructions = assemble(PromptSettings(custom_fields=('Amount',)),
                            custom_prompt='Classify this letter. %EXISTING_TAGS%')

    assert instructions.startswith('Classify this letter. %EXISTING_TAGS%')
    assert '"field_name": "Amount"' in instructions
    assert 'Pre-existing tags' not in instructions


@pytest.mark.parametrize('settings, custom_prompt', [
    (PromptSettings(), None),
    (PromptSettings(use_prompt_tags=True, prompt_tags=('Bills',)), None),
    (PromptSettings(), 'Override prompt'),
])
def test_external_context_is_appended_last(settings, custom_prompt):
    instructions = assemble(settings, custom_prompt=custom_prompt, external_context='{"customer": "ACME"}')
    assert instructions.endswith(f'{EXTERNAL_CONTEXT_HEADING}\n{{"customer": "ACME"}}')


def test_budget_defaults_from_model_profile():
    assert PromptAssembler().budget('gpt-4') == (8_192, 4_096)
    assert PromptAssembler().budget(ESTIMATED_MODEL) == (128_000, 4_096)


def test_budget_overrides_from_settings():
    assembler = PromptAssembler(PromptSettings(token_limit=1000, response_tokens=100))
    assert assembler.budget('gpt-4') == (1000, 100)


def test_fit_accounting_invariant():
    assembler = PromptAssembler(PromptSettings(token_limit=1000, response_tokens=100))
    bundle = assembler.fit('a' * 400, 'content', ESTIMATED_MODEL)

    assert bundle.prompt_tokens == 104
    assert bundle.reserved_tokens == 204
    assert bundle.available_tokens == 1000 - (bundle.prompt_tokens + 100)
    assert bundle.content == 'content'
    assert not bundle.truncated


def test_fit_fails_when_no_room_is_left():
    assembler = PromptAssembler(PromptSettings(token_limit=100, response_tokens=50))
    with pytest.raises(TokenBudgetExceeded) as excinfo:
        assembler.fit('a' * 184, 'content', ESTIMATED_MODEL)

    assert excinfo.value.reserved_tokens == 100
    assert 'Token limit exceeded' in str(excinfo.value)


def test_fit_truncates_content_to_available_tokens():
    assembler = PromptAssembler(PromptSettings(token_limit=100, response_tokens=50))
    bundle = assembler.fit('a' * 180, 'abcdefgh ijkl', ESTIMATED_MODEL)

    assert bundle.available_tokens == 1
    assert bundle.content == 'abcd'
    assert bundle.truncated


def test_build_counts_side_prompts():
    settings = PromptSettings(use_prompt_tags=True, prompt_tags=('Bills',), token_limit=100_000, response_tokens=10)
    plain = PromptAssembler(PromptSettings(token_limit=100_000, response_tokens=10))
    bundle = PromptAssembler(settings).build('text', ESTIMATED_MODEL)
    instructions_only = plain.fit(bundle.instructions, 'text', ESTIMATED_MODEL)

    assert bundle.prompt_tokens == instructions_only.prompt_tokens + 2 + 4


def test_schema_custom_fields_are_optional():
    assert 'custom_fields' not in document_analysis_schema()['properties']
    schema = document_analysis_schema(['Amount'])
    assert 'custom_fields' in schema['required']
    assert 'document_type' not in schema['required']
