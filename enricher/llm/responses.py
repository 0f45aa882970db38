"""
Response Extractor

Turns a provider reply into an AnalysisResult. Structured replies are
accepted after a shape check; raw text is un-fenced and parsed; refusals
become a non-retryable degraded result instead of a hard error.
"""

import re
import json
import logging
from dataclasses import dataclass, field
from datetime import date
from typing import Any, Callable, Dict, Iterable, Optional, Union

from enricher.exceptions import ResponseFormatError
from enricher.llm import audit

logger = logging.getLogger(__name__)

INSUFFICIENT_CONTENT_ERROR = 'Insufficient content for AI analysis'
DEFAULT_REFUSAL_MARKERS = ("i'm sorry", "i cannot", "insufficient")

_CODE_FENCE = re.compile(r'```(?:json)?\s*\n?', re.IGNORECASE)


@dataclass(frozen=True)
class StructuredOutput:
    """Reply already parsed by the provider under a JSON schema."""
    document: Dict[str, Any]


@dataclass(frozen=True)
class RawText:
    """Free-text reply that still needs parsing."""
    text: str


ProviderReply = Union[StructuredOutput, RawText]


@dataclass
class AnalysisResult:
    """Outcome of analyzing one document."""
    document: Dict[str, Any] = field(default_factory=lambda: {'tags': [], 'correspondent': None})
    metrics: Optional[Dict[str, int]] = None
    truncated: bool = False
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.error is None

    @property
    def insufficient_content(self) -> bool:
        return self.error == INSUFFICIENT_CONTENT_ERROR

    def to_dict(self) -> Dict[str, Any]:
        result = {
            'document': self.document,
            'metrics': self.metrics,
            'truncated': self.truncated,
        }
        if self.error is not None:
            result['error'] = self.error
        return result


def failure_result(error: str) -> AnalysisResult:
    """Placeholder result for a document that could not be analyzed."""
    return AnalysisResult(
        document={'tags': [], 'correspondent': None},
        metrics=None,
        truncated=False,
        error=error,
    )


class InsufficientContentClassifier:
    """
    Decides whether unparseable reply text is a refusal.

    Matching is a case-insensitive substring test, which can misfire on
    legitimate prose; the markers are configurable for that reason.
    """

    def __init__(self, markers: Iterable[str] = DEFAULT_REFUSAL_MARKERS):
        self.markers = tuple(marker.lower() for marker in markers if marker)

    def __call__(self, text: str) -> bool:
        lowered = (text or '').lower()
        return any(marker in lowered for marker in self.markers)


def strip_code_fences(text: str) -> str:
    """Remove markdown code fences around a JSON reply."""
    return _CODE_FENCE.sub('', text or '').replace('```', '').strip()


def has_valid_shape(document: Any) -> bool:
    """True when the document has a tags list and a textual correspondent."""
    return (isinstance(document, dict) and
            isinstance(document.get('tags'), list) and
            isinstance(document.get('correspondent'), str))


class ResponseExtractor:
    """Extracts a validated document from a provider reply."""

    def __init__(self,
                 classifier: Optional[Callable[[str], bool]] = None,
                 today: Optional[Callable[[], date]] = None):
        """
        Args:
            classifier: Refusal detector for unparseable text
            today: Date provider for placeholder documents
        """
        self.classifier = classifier or InsufficientContentClassifier()
        self.today = today or date.today

    def insufficient_content_result(self, document_id: Any,
                                    metrics: Optional[Dict[str, int]] = None) -> AnalysisResult:
        """Degraded result for a document the provider refused to analyze."""
        title = f"Document {document_id}" if document_id is not None else "Document"
        return AnalysisResult(
            document={
                'tags': [],
                'correspondent': 'Unknown',
                'title': title,
                'document_date': self.today().isoformat(),
                'document_type': 'Document',
                'language': 'und',
            },
            metrics=metrics,
            truncated=False,
            error=INSUFFICIENT_CONTENT_ERROR,
        )

    def extract(self,
                reply: ProviderReply,
                document_id: Any = None,
                metrics: Optional[Dict[str, int]] = None,
                truncated: bool = False) -> AnalysisResult:
        """
        Extract the document from a provider reply.

        Args:
            reply: StructuredOutput or RawText from the transport
            document_id: Paperless document ID (used for placeholder titles)
            metrics: Token usage reported by the provider
            truncated: Whether the document content was truncated

        Returns:
            AnalysisResult (degraded when the provider refused)

        Raises:
            ResponseFormatError: If the reply is not valid JSON or has the wrong shape
        """
        if isinstance(reply, StructuredOutput):
            document = reply.document
            if not has_valid_shape(document):
                raise ResponseFormatError(
                    'Invalid response structure: missing tags array or correspondent string'
                )
            audit.log_response(document, document_id)
            return AnalysisResult(document=document, metrics=metrics, truncated=truncated)

        if not isinstance(reply, RawText):
            raise ResponseFormatError(f"Unsupported reply type: {type(reply).__name__}")

        logger.warning("Structured output missing, falling back to output text")
        cleaned = strip_code_fences(reply.text)

        try:
            document = json.loads(cleaned)
        except (json.JSONDecodeError, TypeError) as e:
            logger.error(f"Failed to parse JSON response: {e}")
            if self.classifier(reply.text):
                logger.warning(f"Document {document_id} has insufficient content for analysis")
                return self.insufficient_content_result(document_id, metrics)
            raise ResponseFormatError('Invalid JSON response from provider')

        if not has_valid_shape(document):
            raise ResponseFormatError(
                'Invalid response structure: missing tags array or correspondent string'
            )

        audit.log_response(document, document_id)
        return AnalysisResult(document=document, metrics=metrics, truncated=truncated)
