"""
Paperless API Client

Handles all interactions with the Paperless-ngx API.
"""

import logging
import requests
from typing import List, Dict, Any, Iterator, Optional
from tenacity import retry, stop_after_attempt, wait_exponential

from enricher.external_api import validate_url_against_base

logger = logging.getLogger(__name__)


class PaperlessClient:
    """Client for interacting with Paperless-ngx API."""

    def __init__(self, base_url: str, api_token: str, session: Optional[requests.Session] = None):
        """
        Initialize the Paperless API client.

        Args:
            base_url: Base URL of Paperless API (e.g., http://paperless-web:8000)
            api_token: API authentication token
            session: Optional pre-configured session
        """
        self.base_url = base_url.rstrip('/')
        self.api_token = api_token
        self.session = session or requests.Session()
        self.session.headers.update({
            'Authorization': f'Token {api_token}',
            'Content-Type': 'application/json'
        })

    @retry(stop=stop_after_attempt(3), wait=wait_exponential(min=1, max=10))
    def _get(self, path: str, params: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        response = self.session.get(f'{self.base_url}{path}', params=params)
        response.raise_for_status()
        return response.json()

    def _iterate(self, path: str, params: Optional[Dict[str, Any]] = None) -> Iterator[Dict[str, Any]]:
        """
        Yield every result of a paginated endpoint.

        Pagination links are only followed when they point back at the
        configured Paperless instance.
        """
        page = self._get(path, params)
        while True:
            for item in page.get('results', []):
                yield item

            next_url = page.get('next')
            if not next_url:
                return

            validation = validate_url_against_base(next_url, self.base_url)
            if not validation.valid:
                logger.error(f"Refusing to follow pagination link {next_url}: {validation.error}")
                return
            page = self._get(validation.relative_path)

    def iter_documents(self, ordering: str = 'modified', page_size: int = 100) -> Iterator[Dict[str, Any]]:
        """Yield all documents across pages."""
        return self._iterate('/api/documents/', {'ordering': ordering, 'page_size': page_size})

    def get_all_document_ids(self) -> List[int]:
        """IDs of every document currently in Paperless."""
        data = self._get('/api/documents/', {'page_size': 1, 'fields': 'id'})
        if 'all' in data:
            return list(data['all'])
        return [doc['id'] for doc in self._iterate('/api/documents/', {'page_size': 100, 'fields': 'id'})]

    @retry(stop=stop_after_attempt(3), wait=wait_exponential(min=1, max=10))
    def get_document(self, document_id: int) -> Dict[str, Any]:
        """
        Fetch a single document by ID.

        Args:
            document_id: Document ID

        Returns:
            Document details including content, tags, custom fields
        """
        url = f'{self.base_url}/api/documents/{document_id}/'
        logger.debug(f"Fetching document {document_id}")

        response = self.session.get(url)
        response.raise_for_status()

        return response.json()

    @retry(stop=stop_after_attempt(3), wait=wait_exponential(min=1, max=10))
    def get_thumbnail(self, document_id: int) -> bytes:
        """
        Download the document thumbnail.

        Args:
            document_id: Document ID

        Returns:
            Image content as bytes
        """
        url = f'{self.base_url}/api/documents/{document_id}/thumb/'
        logger.debug(f"Downloading thumbnail for document {document_id}")
        response = self.session.get(url)
        response.raise_for_status()

        return response.content

    def get_tags(self) -> List[Dict[str, Any]]:
        return list(self._iterate('/api/tags/', {'page_size': 100}))

    def get_correspondents(self) -> List[Dict[str, Any]]:
        return list(self._iterate('/api/correspondents/', {'page_size': 100}))

    def get_document_types(self) -> List[Dict[str, Any]]:
        return list(self._iterate('/api/document_types/', {'page_size': 100}))

    def get_custom_fields(self) -> List[Dict[str, Any]]:
        return list(self._iterate('/api/custom_fields/', {'page_size': 100}))

    @retry(stop=stop_after_attempt(3), wait=wait_exponential(min=1, max=10))
    def _get_or_create(self, endpoint: str, name: str) -> int:
        """
        Get an object ID by exact name, or create the object.

        Args:
            endpoint: 'tags', 'correspondents' or 'document_types'
            name: Object name

        Returns:
            Object ID
        """
        url = f'{self.base_url}/api/{endpoint}/'
        response = self.session.get(url, params={'name__iexact': name})
        response.raise_for_status()
        results = response.json()

        if results.get('count', 0) > 0:
            object_id = results['results'][0]['id']
            logger.debug(f"Found existing {endpoint} entry '{name}' with ID {object_id}")
            return object_id

        response = self.session.post(url, json={'name': name, 'matching_algorithm': 0})
        response.raise_for_status()
        object_id = response.json()['id']

        logger.info(f"Created new {endpoint} entry '{name}' with ID {object_id}")
        return object_id

    def get_or_create_tag(self, tag_name: str) -> int:
        return self._get_or_create('tags', tag_name)

    def get_or_create_correspondent(self, name: str) -> int:
        return self._get_or_create('correspondents', name)

    def get_or_create_document_type(self, name: str) -> int:
        return self._get_or_create('document_types', name)

    @retry(stop=stop_after_attempt(3), wait=wait_exponential(min=1, max=10))
    def update_document(self, document_id: int, updates: Dict[str, Any]) -> Dict[str, Any]:
        """
        Patch document metadata.

        Args:
            document_id: Document ID
            updates: Fields to change (title, tags, correspondent, document_type,
                created, custom_fields)

        Returns:
            Updated document
        """
        if not updates:
            logger.debug(f"No updates for document {document_id}")
            return {}

        url = f'{self.base_url}/api/documents/{document_id}/'
        logger.info(f"Updating document {document_id}: {sorted(updates.keys())}")
        response = self.session.patch(url, json=updates)
        response.raise_for_status()

        return response.json()

    def health_check(self) -> bool:
        """
        Check if Paperless API is accessible.

        Returns:
            True if healthy, False otherwise
        """
        try:
            url = f'{self.base_url}/api/documents/'
            response = self.session.get(url, params={'page_size': 1})
            response.raise_for_status()
            return True
        except Exception as e:
            logger.error(f"Health check failed: {e}")
            return False
