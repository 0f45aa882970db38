"""
Paperless AI Enricher - Main Entry Point

Orchestrates the document enrichment pipeline: fetch from Paperless, analyze
with the configured AI provider, write metadata back.
"""

import re
import sys
import time
import logging
import argparse
import threading
from pathlib import Path
from typing import Any, Dict, List, Optional

from enricher.config import llm_client_kwargs, load_config, prompt_settings_from_config
from enricher.external_api import ExternalApiFetcher
from enricher.history import HistoryStore
from enricher.llm import audit
from enricher.llm.llm_client import LLMClient
from enricher.llm.responses import AnalysisResult
from enricher.paperless_client import PaperlessClient
from enricher.state import RetryTracker, StateManager
from enricher.web_ui import start_web_server_thread, update_ui_stats

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
    handlers=[
        logging.StreamHandler(sys.stdout)
    ]
)
logger = logging.getLogger(__name__)

DATE_PATTERN = re.compile(r'^\d{4}-\d{2}-\d{2}$')


class Taxonomy:
    """Name to ID lookups for tags, correspondents, document types and custom fields."""

    def __init__(self, tags=None, correspondents=None, document_types=None, custom_fields=None):
        self.tags: Dict[str, int] = tags or {}
        self.correspondents: Dict[str, int] = correspondents or {}
        self.document_types: Dict[str, int] = document_types or {}
        self.custom_fields: Dict[str, int] = custom_fields or {}

    @classmethod
    def load(cls, paperless: PaperlessClient) -> 'Taxonomy':
        def _index(items):
            return {item['name']: item['id'] for item in items if item.get('name')}

        return cls(
            tags=_index(paperless.get_tags()),
            correspondents=_index(paperless.get_correspondents()),
            document_types=_index(paperless.get_document_types()),
            custom_fields=_index(paperless.get_custom_fields()),
        )

    @staticmethod
    def find(index: Dict[str, int], name: str) -> Optional[int]:
        """Case-insensitive lookup."""
        if name in index:
            return index[name]
        lowered = name.lower()
        for key, value in index.items():
            if key.lower() == lowered:
                return value
        return None

    def add(self, kind: str, name: str, object_id: int) -> None:
        """Insert by swapping in a new index, so readers iterating the old one are unaffected."""
        setattr(self, kind, {**getattr(self, kind), name: object_id})


class DocumentEnricher:
    """Main enricher orchestrator."""

    CREATORS = {
        'tags': 'get_or_create_tag',
        'correspondents': 'get_or_create_correspondent',
        'document_types': 'get_or_create_document_type',
    }

    def __init__(self, config: Dict[str, Any],
                 paperless: Optional[PaperlessClient] = None,
                 llm_client: Optional[LLMClient] = None,
                 history: Optional[HistoryStore] = None,
                 state_manager: Optional[StateManager] = None,
                 external_api: Optional[ExternalApiFetcher] = None):
        """
        Initialize the enricher.

        Args:
            config: Configuration dictionary (see enricher.config.load_config)
            paperless: Paperless client (built from config when omitted)
            llm_client: LLM client (built from config when omitted)
            history: History store (built from config when omitted)
            state_manager: State manager (built from config when omitted)
            external_api: External API fetcher (built from config when omitted)
        """
        self.config = config
        data_dir = config.get('data_dir', 'data')

        self.paperless = paperless or PaperlessClient(
            base_url=config['paperless_api_base_url'],
            api_token=config['paperless_api_token']
        )
        self.history = history or HistoryStore(db_path=str(Path(data_dir) / 'documents.db'))
        self.state_manager = state_manager or StateManager(state_dir=data_dir)
        self.retry_tracker = RetryTracker(max_retries=config.get('max_retries', 3))
        self.external_api = external_api or ExternalApiFetcher.from_config(config)

        self.llm_client = llm_client or LLMClient(
            settings=prompt_settings_from_config(config),
            external_data_max_tokens=config.get('external_api_max_tokens', 500),
            **llm_client_kwargs(config)
        )

        self.taxonomy = Taxonomy()
        # Polls and per-document requests share the taxonomy; get-or-create runs one at a time
        self.taxonomy_lock = threading.RLock()
        self.poll_lock = threading.Lock()

    def refresh_taxonomy(self) -> Taxonomy:
        taxonomy = Taxonomy.load(self.paperless)
        with self.taxonomy_lock:
            self.taxonomy = taxonomy
        logger.debug(f"Loaded {len(taxonomy.tags)} tags, {len(taxonomy.correspondents)} correspondents, "
                     f"{len(taxonomy.document_types)} document types")
        return taxonomy

    def cache_thumbnail(self, document_id: int) -> Optional[Path]:
        """Store the document thumbnail for the dashboard unless already cached."""
        thumbnail_dir = Path(self.config.get('thumbnail_dir', 'public/images'))
        path = thumbnail_dir / f'{document_id}.png'
        if path.exists():
            return path

        try:
            data = self.paperless.get_thumbnail(document_id)
            thumbnail_dir.mkdir(parents=True, exist_ok=True)
            path.write_bytes(data)
            return path
        except Exception as e:
            logger.warning(f"Could not cache thumbnail for document {document_id}: {e}")
            return None

    def _resolve(self, kind: str, name: str, restricted: bool) -> Optional[int]:
        """
        Look up an existing object, or create it unless restricted to existing ones.

        Args:
            kind: 'tags', 'correspondents' or 'document_types'
            name: Object name proposed by the model
            restricted: Only accept objects that already exist

        Returns:
            Object ID, or None when the name was rejected
        """
        with self.taxonomy_lock:
            taxonomy = self.taxonomy
            object_id = Taxonomy.find(getattr(taxonomy, kind), name)
            if object_id is not None:
                return object_id

            if restricted:
                logger.info(f"Ignoring new {kind[:-1].replace('_', ' ')} '{name}' (restricted to existing)")
                return None

            object_id = getattr(self.paperless, self.CREATORS[kind])(name)
            taxonomy.add(kind, name, object_id)
            return object_id

    def _custom_field_updates(self, document: Dict[str, Any], values: Any) -> List[Dict[str, Any]]:
        """Merge AI custom field values into the document's existing custom fields."""
        if isinstance(values, dict):
            entries = list(values.values())
        elif isinstance(values, list):
            entries = values
        else:
            return []

        merged = {item['field']: item.get('value') for item in document.get('custom_fields') or []
                  if isinstance(item, dict) and 'field' in item}
        field_index = self.taxonomy.custom_fields
        changed = False

        for entry in entries:
            if not isinstance(entry, dict):
                continue
            name = entry.get('field_name')
            value = entry.get('value')
            if not name or value is None or str(value).strip() == '':
                continue
            field_id = Taxonomy.find(field_index, str(name))
            if field_id is None:
                logger.debug(f"Unknown custom field '{name}', skipping")
                continue
            merged[field_id] = value
            changed = True

        if not changed:
            return []
        return [{'field': field_id, 'value': value} for field_id, value in merged.items()]

    def build_updates(self, document: Dict[str, Any], analysis: Dict[str, Any]) -> Dict[str, Any]:
        """
        Turn an analysis document into a Paperless PATCH payload.

        Args:
            document: Current Paperless document
            analysis: Extracted metadata (title, tags, correspondent, ...)

        Returns:
            Fields to update, honoring the activation flags
        """
        config = self.config
        updates: Dict[str, Any] = {}
        existing_tags = list(document.get('tags') or [])
        tag_ids = list(existing_tags)

        if config.get('activate_tagging', True):
            for name in analysis.get('tags') or []:
                if not isinstance(name, str) or not name.strip():
                    continue
                tag_id = self._resolve('tags', name.strip(), config.get('restrict_to_existing_tags', False))
                if tag_id is not None and tag_id not in tag_ids:
                    tag_ids.append(tag_id)

        if config.get('add_ai_processed_tag'):
            tag_name = config.get('ai_processed_tag_name', 'ai-processed')
            tag_id = self._resolve('tags', tag_name, False)
            if tag_id not in tag_ids:
                tag_ids.append(tag_id)

        if tag_ids != existing_tags:
            updates['tags'] = tag_ids

        title = analysis.get('title')
        if config.get('activate_title', True) and isinstance(title, str) and title.strip():
            updates['title'] = title.strip()[:128]

        correspondent = analysis.get('correspondent')
        if config.get('activate_correspondents', True) and isinstance(correspondent, str) and correspondent.strip():
            correspondent_id = self._resolve('correspondents', correspondent.strip(),
                                             config.get('restrict_to_existing_correspondents', False))
            if correspondent_id is not None:
                updates['correspondent'] = correspondent_id

        document_type = analysis.get('document_type')
        if config.get('activate_document_type', True) and isinstance(document_type, str) and document_type.strip():
            type_id = self._resolve('document_types', document_type.strip(),
                                    config.get('restrict_to_existing_document_types', False))
            if type_id is not None:
                updates['document_type'] = type_id

        document_date = analysis.get('document_date')
        if isinstance(document_date, str) and DATE_PATTERN.match(document_date):
            updates['created'] = document_date

        if config.get('activate_custom_fields', True) and analysis.get('custom_fields'):
            custom_fields = self._custom_field_updates(document, analysis['custom_fields'])
            if custom_fields:
                updates['custom_fields'] = custom_fields

        return updates

    def _history_tags(self, tag_ids: List[int]) -> List[Dict[str, Any]]:
        names = {tag_id: name for name, tag_id in self.taxonomy.tags.items()}
        return [{'id': tag_id, 'name': names.get(tag_id, str(tag_id))} for tag_id in tag_ids]

    def process_document(self, document: Dict[str, Any], dry_run: bool = False,
                         custom_prompt: Optional[str] = None) -> Optional[AnalysisResult]:
        """
        Enrich one document.

        Args:
            document: Paperless document (full details are fetched if content is missing)
            dry_run: Analyze but do not write anything back
            custom_prompt: Optional override prompt

        Returns:
            AnalysisResult, or None when the document was skipped
        """
        doc_id = document['id']

        if not self.retry_tracker.should_retry(doc_id):
            logger.debug(f"Skipping document {doc_id} (retry limit reached)")
            return None

        if 'content' not in document:
            document = self.paperless.get_document(doc_id)

        content = (document.get('content') or '').strip()
        min_length = self.config.get('min_content_length', 10)
        if len(content) < min_length:
            logger.info(f"Skipping document {doc_id}: content too short ({len(content)} < {min_length} chars)")
            return None

        self.cache_thumbnail(doc_id)

        if not self.taxonomy.tags and not self.taxonomy.correspondents:
            self.refresh_taxonomy()

        external_data = self.external_api.fetch_data()
        taxonomy = self.taxonomy

        result = self.llm_client.analyze_document(
            content,
            existing_tags=list(taxonomy.tags),
            existing_correspondents=list(taxonomy.correspondents),
            existing_document_types=list(taxonomy.document_types),
            document_id=doc_id,
            custom_prompt=custom_prompt,
            external_data=external_data,
        )

        if not result.ok and not result.insufficient_content:
            attempts = self.retry_tracker.record_failure(doc_id)
            self.state_manager.mark_failed()
            logger.error(f"Analysis of document {doc_id} failed (attempt {attempts}): {result.error}")
            return result

        if result.truncated:
            logger.info(f"Document {doc_id} content was truncated to fit the token limit")

        if result.insufficient_content:
            # Placeholder metadata is not written; only mark the document as handled
            updates = self.build_updates(document, {})
        else:
            updates = self.build_updates(document, result.document)

        if dry_run:
            logger.info(f"Dry run mode - not updating document {doc_id}: {updates}")
            return result

        try:
            if updates:
                self.paperless.update_document(doc_id, updates)
        except Exception as e:
            attempts = self.retry_tracker.record_failure(doc_id)
            self.state_manager.mark_failed()
            logger.error(f"Failed to update document {doc_id} (attempt {attempts}): {e}", exc_info=True)
            result.error = str(e)
            return result

        tag_ids = updates.get('tags', document.get('tags') or [])
        self.history.record(
            doc_id,
            title=updates.get('title', document.get('title')),
            tags=self._history_tags(tag_ids),
            correspondent=None if result.insufficient_content else result.document.get('correspondent'),
            document_type=None if result.insufficient_content else result.document.get('document_type'),
            metrics=result.metrics,
            truncated=result.truncated,
            error=result.error,
        )
        self.retry_tracker.clear(doc_id)
        self.state_manager.mark_processed(doc_id)
        update_ui_stats({
            'document_id': doc_id,
            'title': updates.get('title', document.get('title')),
            'metrics': result.metrics,
            'truncated': result.truncated,
            'insufficient_content': result.insufficient_content,
            'error': result.error,
        })

        logger.info(f"Enriched document {doc_id}")
        return result

    def poll_and_process(self) -> int:
        """
        Process every document that is not in the history yet.

        Returns:
            Number of documents processed
        """
        if not self.poll_lock.acquire(blocking=False):
            logger.info("Poll already running, skipping")
            return 0

        try:
            logger.info("Polling for new documents...")
            self.refresh_taxonomy()
            processed_ids = set(self.history.get_document_ids())

            processed = 0
            for doc in self.paperless.iter_documents():
                if doc['id'] in processed_ids:
                    continue

                logger.info(f"Processing document {doc['id']}: {doc.get('title')}")
                try:
                    result = self.process_document(doc)
                except Exception as e:
                    self.retry_tracker.record_failure(doc['id'])
                    logger.error(f"Error processing document {doc['id']}: {e}", exc_info=True)
                    continue

                if result is not None and (result.ok or result.insufficient_content):
                    processed += 1

            self.state_manager.mark_poll()
            if processed:
                logger.info(f"Processed {processed} new documents")
            else:
                logger.info("No new documents to process")
            return processed

        finally:
            self.poll_lock.release()

    def trigger_poll(self) -> threading.Thread:
        """Run one poll in the background."""
        thread = threading.Thread(target=self._safe_poll, daemon=True)
        thread.start()
        return thread

    def _safe_poll(self) -> None:
        try:
            self.poll_and_process()
        except Exception as e:
            logger.error(f"Failed to poll documents: {e}", exc_info=True)

    def run_polling_loop(self) -> None:
        """Main polling loop."""
        poll_interval = self.config.get('poll_interval_seconds', 1800)
        logger.info(f"Starting polling loop (interval={poll_interval}s)")

        if self.config.get('web_ui_enabled', True):
            start_web_server_thread(
                self,
                host=self.config.get('web_host', '0.0.0.0'),
                port=self.config.get('web_port', 3000)
            )

        if not self.paperless.health_check():
            logger.error("Paperless API health check failed, exiting")
            sys.exit(1)

        while True:
            try:
                self.poll_and_process()
            except KeyboardInterrupt:
                logger.info("Shutting down...")
                break
            except Exception as e:
                logger.error(f"Error in polling loop: {e}", exc_info=True)

            time.sleep(poll_interval)

    def process_single_document(self, doc_id: int, dry_run: bool = False) -> Optional[AnalysisResult]:
        """
        Enrich a single document by ID (for testing/debugging).

        Args:
            doc_id: Document ID
            dry_run: If True, don't write metadata back
        """
        logger.info(f"Processing document {doc_id} (dry_run={dry_run})")

        self.refresh_taxonomy()
        document = self.paperless.get_document(doc_id)
        result = self.process_document(document, dry_run=dry_run)

        if result is not None:
            logger.info(f"Result for document {doc_id}: {result.to_dict()}")
        return result


def main():
    """Main entry point."""
    parser = argparse.ArgumentParser(description='Paperless AI Enricher')
    parser.add_argument('--dry-run', action='store_true', help='Dry run mode (no metadata writes)')
    parser.add_argument('--doc-id', type=int, help='Process single document by ID')
    args = parser.parse_args()

    config = load_config()
    logging.getLogger().setLevel(config.get('log_level', 'INFO'))

    if not config['paperless_api_token']:
        logger.error("PAPERLESS_API_TOKEN not set")
        sys.exit(1)

    audit.configure_audit_log(config.get('log_dir', 'logs'))
    enricher = DocumentEnricher(config)

    if args.doc_id:
        enricher.process_single_document(args.doc_id, dry_run=args.dry_run)
    else:
        enricher.run_polling_loop()


if __name__ == '__main__':
    main()
