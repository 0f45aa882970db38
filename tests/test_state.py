"""State manager and retry tracker."""

import json

from enricher.state import RetryTracker, StateManager


def test_state_starts_fresh(tmp_path):
    stats = StateManager(state_dir=str(tmp_path)).get_stats()
    assert stats['total_documents_processed'] == 0
    assert stats['last_run'] is None


def test_state_persists(tmp_path):
    manager = StateManager(state_dir=str(tmp_path))
    manager.mark_processed(12)
    manager.mark_failed()
    manager.mark_poll()

    reloaded = StateManager(state_dir=str(tmp_path)).get_stats()
    assert reloaded['total_documents_processed'] == 1
    assert reloaded['total_failures'] == 1
    assert reloaded['last_document_id'] == 12
    assert reloaded['last_poll'] is not None


def test_corrupt_state_file_starts_fresh(tmp_path):
    (tmp_path / 'state.json').write_text('{not json')
    assert StateManager(state_dir=str(tmp_path)).get_stats()['total_documents_processed'] == 0


def test_unknown_state_keys_are_ignored(tmp_path):
    (tmp_path / 'state.json').write_text(json.dumps({'total_documents_processed': 4, 'legacy': True}))
    assert StateManager(state_dir=str(tmp_path)).get_stats()['total_documents_processed'] == 4


def test_retry_tracker_caps_attempts():
    tracker = RetryTracker(max_retries=3)

    for expected in (1, 2, 3):
        assert tracker.should_retry(7)
        assert tracker.record_failure(7) == expected

    assert not tracker.should_retry(7)
    assert tracker.should_retry(8)


def test_retry_tracker_resets_on_success():
    tracker = RetryTracker(max_retries=2)
    tracker.record_failure(7)
    tracker.record_failure(7)
    tracker.clear(7)

    assert tracker.get_attempts(7) == 0
    assert tracker.should_retry(7)
