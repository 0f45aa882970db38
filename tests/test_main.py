"""Document enricher orchestration with a mocked Paperless instance."""

import json
import threading
import time
from unittest.mock import MagicMock

import pytest

from enricher.history import HistoryStore
from enricher.llm.llm_client import LLMClient
from enricher.main import DocumentEnricher
from enricher.state import StateManager

from conftest import FakeChatClient, chat_response

CONTENT = 'Invoice from City Power for electricity used in March, total 42.50 EUR.'


@pytest.fixture
def paperless():
    client = MagicMock()
    client.get_tags.return_value = [{'id': 1, 'name': 'Utilities'}, {'id': 2, 'name': 'Inbox'}]
    client.get_correspondents.return_value = [{'id': 5, 'name': 'City Power'}]
    client.get_document_types.return_value = [{'id': 9, 'name': 'Invoice'}]
    client.get_custom_fields.return_value = [{'id': 3, 'name': 'Amount'}]
    client.get_or_create_tag.side_effect = lambda name: {'Invoice': 100, 'ai-processed': 200}[name]
    client.get_or_create_correspondent.return_value = 50
    client.get_or_create_document_type.return_value = 90
    client.get_thumbnail.return_value = b'\x89PNG'
    return client


@pytest.fixture
def document():
    return {'id': 7, 'title': 'scan_0001', 'content': CONTENT, 'tags': [2], 'custom_fields': []}


def make_enricher(tmp_path, paperless, fake, **overrides):
    config = {
        'thumbnail_dir': str(tmp_path / 'images'),
        'min_content_length': 10,
        'max_retries': 3,
    }
    config.update(overrides)
    external_api = MagicMock()
    external_api.fetch_data.return_value = None
    return DocumentEnricher(
        config,
        paperless=paperless,
        llm_client=LLMClient(provider='ollama', model='llama3.2', client=fake),
        history=HistoryStore(db_path=str(tmp_path / 'documents.db')),
        state_manager=StateManager(state_dir=str(tmp_path)),
        external_api=external_api,
    )


def test_process_document_writes_metadata(tmp_path, paperless, document, fake_chat):
    enricher = make_enricher(tmp_path, paperless, fake_chat)
    result = enricher.process_document(document)

    assert result.ok
    paperless.update_document.assert_called_once_with(7, {
        'tags': [2, 1, 100],
        'title': 'Electricity bill March',
        'correspondent': 5,
        'document_type': 9,
        'created': '2024-03-01',
    })
    assert (tmp_path / 'images' / '7.png').read_bytes() == b'\x89PNG'

    rows, _, _ = enricher.history.query()
    assert rows[0]['tags'] == [{'id': 2, 'name': 'Inbox'}, {'id': 1, 'name': 'Utilities'},
                               {'id': 100, 'name': 'Invoice'}]
    assert enricher.state_manager.get_stats()['total_documents_processed'] == 1


def test_short_content_is_skipped(tmp_path, paperless, document, fake_chat):
    document['content'] = 'tiny'
    enricher = make_enricher(tmp_path, paperless, fake_chat)

    assert enricher.process_document(document) is None
    assert fake_chat.calls == []
    paperless.update_document.assert_not_called()


def test_missing_content_is_fetched(tmp_path, paperless, document, fake_chat):
    paperless.get_document.return_value = document
    enricher = make_enricher(tmp_path, paperless, fake_chat)

    assert enricher.process_document({'id': 7}).ok
    paperless.get_document.assert_called_once_with(7)


def test_restricted_tags_are_not_created(tmp_path, paperless, document, fake_chat):
    enricher = make_enricher(tmp_path, paperless, fake_chat, restrict_to_existing_tags=True)
    enricher.process_document(document)

    paperless.get_or_create_tag.assert_not_called()
    assert paperless.update_document.call_args[0][1]['tags'] == [2, 1]


def test_activation_flags_limit_updates(tmp_path, paperless, document, fake_chat):
    enricher = make_enricher(tmp_path, paperless, fake_chat, activate_tagging=False, activate_title=False,
                             activate_document_type=False)
    enricher.process_document(document)

    updates = paperless.update_document.call_args[0][1]
    assert set(updates) == {'correspondent', 'created'}


def test_ai_processed_tag(tmp_path, paperless, document, fake_chat):
    enricher = make_enricher(tmp_path, paperless, fake_chat, activate_tagging=False, add_ai_processed_tag=True,
                             ai_processed_tag_name='ai-processed')
    enricher.process_document(document)

    assert paperless.update_document.call_args[0][1]['tags'] == [2, 200]


def test_custom_fields_are_mapped_by_name(tmp_path, paperless, fake_chat):
    enricher = make_enricher(tmp_path, paperless, fake_chat)
    enricher.refresh_taxonomy()
    document = {'id': 7, 'tags': [], 'custom_fields': [{'field': 4, 'value': 'keep'}]}
    analysis = {
        'tags': [],
        'correspondent': '',
        'custom_fields': {
            '0': {'field_name': 'amount', 'value': '42.50'},
            '1': {'field_name': 'Unknown field', 'value': 'x'},
            '2': {'field_name': 'Amount', 'value': ''},
        },
    }

    updates = enricher.build_updates(document, analysis)
    assert updates == {'custom_fields': [{'field': 4, 'value': 'keep'}, {'field': 3, 'value': '42.50'}]}


def test_invalid_date_is_not_written(tmp_path, paperless, fake_chat):
    enricher = make_enricher(tmp_path, paperless, fake_chat)
    updates = enricher.build_updates({'id': 7, 'tags': []}, {'tags': [], 'document_date': 'March 2024'})
    assert 'created' not in updates


def test_failures_are_retried_up_to_limit(tmp_path, paperless, document):
    fake = FakeChatClient(RuntimeError('provider down'))
    enricher = make_enricher(tmp_path, paperless, fake)

    for _ in range(3):
        assert enricher.process_document(document).error == 'provider down'
    assert enricher.process_document(document) is None
    assert len(fake.calls) == 3
    assert not enricher.history.is_processed(7)


def test_success_resets_retry_count(tmp_path, paperless, document, valid_document):
    fake = FakeChatClient(RuntimeError('timeout'), chat_response(json.dumps(valid_document)))
    enricher = make_enricher(tmp_path, paperless, fake)

    enricher.process_document(document)
    assert enricher.retry_tracker.get_attempts(7) == 1
    assert enricher.process_document(document).ok
    assert enricher.retry_tracker.get_attempts(7) == 0


def test_insufficient_content_is_recorded_without_placeholder_metadata(tmp_path, paperless, document):
    fake = FakeChatClient(chat_response(refusal="I'm sorry, there is insufficient text."))
    enricher = make_enricher(tmp_path, paperless, fake, add_ai_processed_tag=True)

    result = enricher.process_document(document)
    assert result.insufficient_content
    paperless.update_document.assert_called_once_with(7, {'tags': [2, 200]})
    assert enricher.history.is_processed(7)


def test_dry_run_writes_nothing(tmp_path, paperless, document, fake_chat):
    enricher = make_enricher(tmp_path, paperless, fake_chat)

    assert enricher.process_document(document, dry_run=True).ok
    paperless.update_document.assert_not_called()
    assert not enricher.history.is_processed(7)


def test_update_failure_counts_as_retry(tmp_path, paperless, document, fake_chat):
    paperless.update_document.side_effect = RuntimeError('500 Server Error')
    enricher = make_enricher(tmp_path, paperless, fake_chat)

    result = enricher.process_document(document)
    assert result.error == '500 Server Error'
    assert enricher.retry_tracker.get_attempts(7) == 1
    assert not enricher.history.is_processed(7)


def test_poll_processes_only_new_documents(tmp_path, paperless, document, fake_chat):
    enricher = make_enricher(tmp_path, paperless, fake_chat)
    enricher.history.record(8, 'Old', [], 'City Power')
    paperless.iter_documents.return_value = iter([document, {'id': 8, 'title': 'Old', 'content': CONTENT}])

    assert enricher.poll_and_process() == 1
    assert len(fake_chat.calls) == 1
    assert enricher.history.get_document_ids() == [7, 8]
    assert enricher.state_manager.get_stats()['last_poll'] is not None


def test_reset_document_is_processed_again(tmp_path, paperless, document, fake_chat):
    enricher = make_enricher(tmp_path, paperless, fake_chat)
    paperless.iter_documents.side_effect = lambda: iter([document])

    assert enricher.poll_and_process() == 1
    assert enricher.poll_and_process() == 0
    enricher.history.reset_documents([7])
    assert enricher.poll_and_process() == 1


def test_process_single_document(tmp_path, paperless, document, fake_chat):
    paperless.get_document.return_value = document
    enricher = make_enricher(tmp_path, paperless, fake_chat)

    result = enricher.process_single_document(7, dry_run=True)
    assert result.ok
    paperless.update_document.assert_not_called()


def test_taxonomy_readers_survive_concurrent_tag_creation(tmp_path, paperless, fake_chat):
    paperless.get_or_create_tag.side_effect = lambda name: 1000 + int(name.split('-')[1])
    enricher = make_enricher(tmp_path, paperless, fake_chat)
    enricher.refresh_taxonomy()
    errors = []
    done = threading.Event()

    def read_taxonomy():
        while not done.is_set():
            try:
                enricher.taxonomy.find(enricher.taxonomy.tags, 'not-there')
                list(enricher.taxonomy.tags)
            except RuntimeError as e:
                errors.append(str(e))

    reader = threading.Thread(target=read_taxonomy)
    reader.start()
    try:
        for i in range(300):
            enricher.build_updates({'tags': []}, {'tags': [f'new-{i}']})
    finally:
        done.set()
        reader.join()

    assert errors == []
    assert len(enricher.taxonomy.tags) == 302


def test_concurrent_requests_create_a_new_tag_once(tmp_path, paperless, fake_chat):
    def slow_create(name):
        time.sleep(0.05)
        return 300

    paperless.get_or_create_tag.side_effect = slow_create
    enricher = make_enricher(tmp_path, paperless, fake_chat)
    enricher.refresh_taxonomy()

    threads = [threading.Thread(target=enricher.build_updates, args=({'tags': []}, {'tags': ['Receipts']}))
               for _ in range(4)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert paperless.get_or_create_tag.call_count == 1
    assert enricher.taxonomy.tags['Receipts'] == 300
