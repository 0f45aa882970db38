"""Shared fixtures: fake provider SDK clients (no network)."""

import json
from types import SimpleNamespace

import pytest


def chat_response(content=None, refusal=None, finish_reason='stop', usage=(10, 5, 15)):
    """Build an object shaped like an OpenAI chat completion."""
    message = SimpleNamespace(content=content, refusal=refusal)
    return SimpleNamespace(
        choices=[SimpleNamespace(message=message, finish_reason=finish_reason)],
        usage=SimpleNamespace(prompt_tokens=usage[0], completion_tokens=usage[1], total_tokens=usage[2]),
    )


class FakeChatClient:
    """Records chat.completions.create calls and replays queued responses."""

    def __init__(self, *responses):
        self.calls = []
        self.responses = list(responses)
        self.chat = SimpleNamespace(completions=SimpleNamespace(create=self._create))

    def _create(self, **kwargs):
        self.calls.append(kwargs)
        response = self.responses.pop(0) if len(self.responses) > 1 else self.responses[0]
        if isinstance(response, Exception):
            raise response
        return response


@pytest.fixture
def valid_document():
    return {
        'title': 'Electricity bill March',
        'correspondent': 'City Power',
        'tags': ['Utilities', 'Invoice'],
        'document_type': 'Invoice',
        'document_date': '2024-03-01',
        'language': 'en',
    }


@pytest.fixture
def fake_chat(valid_document):
    return FakeChatClient(chat_response(json.dumps(valid_document)))
