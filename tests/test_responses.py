"""Response extraction."""

import json
from datetime import date

import pytest

from enricher.exceptions import ResponseFormatError
from enricher.llm.responses import (
    INSUFFICIENT_CONTENT_ERROR,
    AnalysisResult,
    InsufficientContentClassifier,
    RawText,
    ResponseExtractor,
    StructuredOutput,
    failure_result,
    strip_code_fences,
)


@pytest.fixture
def extractor():
    return ResponseExtractor(today=lambda: date(2024, 5, 17))


def test_structured_output_is_returned_unchanged(extractor, valid_document):
    metrics = {'prompt_tokens': 1, 'completion_tokens': 2, 'total_tokens': 3}
    result = extractor.extract(StructuredOutput(valid_document), 7, metrics, truncated=True)

    assert result.ok
    assert result.document == valid_document
    assert result.metrics == metrics
    assert result.truncated


def test_structured_output_with_wrong_shape(extractor):
    with pytest.raises(ResponseFormatError):
        extractor.extract(StructuredOutput({'title': 'x', 'correspondent': 'y'}))


def test_raw_text_is_parsed(extractor, valid_document):
    result = extractor.extract(RawText(json.dumps(valid_document)), 7)
    assert result.document == valid_document


def test_raw_text_code_fences_are_stripped(extractor, valid_document):
    text = f"```json\n{json.dumps(valid_document)}\n```"
    assert extractor.extract(RawText(text)).document == valid_document


def test_strip_code_fences_without_language():
    assert strip_code_fences('```\n{"a": 1}\n```') == '{"a": 1}'


def test_raw_text_with_null_correspondent_is_rejected(extractor):
    with pytest.raises(ResponseFormatError):
        extractor.extract(RawText('{"tags": [], "correspondent": null}'))


def test_refusal_becomes_degraded_result(extractor):
    result = extractor.extract(RawText("I'm sorry, but the document text is too short."), 42)

    assert result.insufficient_content
    assert result.error == INSUFFICIENT_CONTENT_ERROR
    assert result.document == {
        'tags': [],
        'correspondent': 'Unknown',
        'title': 'Document 42',
        'document_date': '2024-05-17',
        'document_type': 'Document',
        'language': 'und',
    }


def test_unparseable_text_without_refusal_is_an_error(extractor):
    with pytest.raises(ResponseFormatError):
        extractor.extract(RawText('Here is what I found: a utility bill'))


def test_classifier_is_configurable():
    extractor = ResponseExtractor(classifier=InsufficientContentClassifier(['no text found']))

    with pytest.raises(ResponseFormatError):
        extractor.extract(RawText("I'm sorry, I cannot help"))
    assert extractor.extract(RawText('No text found in this scan')).insufficient_content


def test_default_classifier_is_case_insensitive():
    classifier = InsufficientContentClassifier()
    assert classifier('INSUFFICIENT information')
    assert not classifier('{"title": ')


def test_failure_result_keeps_document_present():
    result = failure_result('boom')
    assert result.document == {'tags': [], 'correspondent': None}
    assert result.metrics is None
    assert not result.truncated
    assert not result.ok


def test_to_dict_omits_missing_error():
    assert 'error' not in AnalysisResult().to_dict()
    assert failure_result('boom').to_dict()['error'] == 'boom'
