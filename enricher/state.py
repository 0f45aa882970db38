"""
State Management

Tracks enricher run statistics and how often a failing document has been
retried.
"""

import json
import logging
from pathlib import Path
from datetime import datetime, timezone
from typing import Any, Dict, Optional
from dataclasses import dataclass, asdict
from threading import Lock

logger = logging.getLogger(__name__)


@dataclass
class EnricherState:
    """Persistent run statistics."""
    total_documents_processed: int = 0
    total_failures: int = 0
    last_document_id: Optional[int] = None
    last_run: Optional[str] = None  # ISO datetime of the last processed document
    last_poll: Optional[str] = None  # ISO datetime


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


class StateManager:
    """Manages persistent state for the enricher."""

    def __init__(self, state_dir: str = 'data'):
        """
        Args:
            state_dir: Directory for the state file
        """
        self.state_dir = Path(state_dir)
        self.state_dir.mkdir(parents=True, exist_ok=True)
        self.state_path = self.state_dir / 'state.json'

        self.lock = Lock()
        self.state = self._load_state()

    def _load_state(self) -> EnricherState:
        """Load state from disk."""
        if not self.state_path.exists():
            logger.info("No existing state file, starting fresh")
            return EnricherState()

        try:
            with open(self.state_path, 'r') as f:
                data = json.load(f)

            known = EnricherState.__dataclass_fields__
            state = EnricherState(**{key: value for key, value in data.items() if key in known})
            logger.info(f"Loaded state: processed={state.total_documents_processed}, last_run={state.last_run}")
            return state

        except (OSError, ValueError, TypeError) as e:
            logger.error(f"Failed to load state: {e}, starting fresh")
            return EnricherState()

    def _save_state(self) -> None:
        """Save state to disk."""
        try:
            with open(self.state_path, 'w') as f:
                json.dump(asdict(self.state), f, indent=2)

            logger.debug(f"Saved state to {self.state_path}")

        except OSError as e:
            logger.error(f"Failed to save state: {e}")

    def mark_processed(self, document_id: int) -> None:
        """Count one successfully enriched document."""
        with self.lock:
            self.state.total_documents_processed += 1
            self.state.last_document_id = document_id
            self.state.last_run = _now()
            self._save_state()

    def mark_failed(self) -> None:
        with self.lock:
            self.state.total_failures += 1
            self._save_state()

    def mark_poll(self) -> None:
        with self.lock:
            self.state.last_poll = _now()
            self._save_state()

    def get_stats(self) -> Dict[str, Any]:
        """Get current state statistics."""
        with self.lock:
            return asdict(self.state)


class RetryTracker:
    """Counts failed attempts per document; cleared when a document succeeds."""

    def __init__(self, max_retries: int = 3):
        self.max_retries = max_retries
        self.attempts: Dict[int, int] = {}
        self.lock = Lock()

    def should_retry(self, document_id: int) -> bool:
        with self.lock:
            return self.attempts.get(document_id, 0) < self.max_retries

    def record_failure(self, document_id: int) -> int:
        """Count a failed attempt and return the total so far."""
        with self.lock:
            self.attempts[document_id] = self.attempts.get(document_id, 0) + 1
            count = self.attempts[document_id]

        if count >= self.max_retries:
            logger.warning(f"Document {document_id} failed {count} times, giving up")
        return count

    def clear(self, document_id: int) -> None:
        with self.lock:
            self.attempts.pop(document_id, None)

    def get_attempts(self, document_id: int) -> int:
        with self.lock:
            return self.attempts.get(document_id, 0)
