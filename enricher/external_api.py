"""
External API Fetcher

Fetches optional enrichment data from a configured HTTP endpoint, with URL
checks against server-side request forgery and a restricted path-only
transform for picking part of the response.
"""

import re
import json
import logging
import ipaddress
from typing import Any, Dict, NamedTuple, Optional, Sequence
from urllib.parse import urlsplit

import requests

logger = logging.getLogger(__name__)

MAX_TRANSFORM_DEPTH = 10
SAFE_TRANSFORM_PATTERN = re.compile(r'^[a-zA-Z_][a-zA-Z0-9_]*(\.[a-zA-Z_][a-zA-Z0-9_]*|\[\d+\])*$')
METADATA_HOSTS = ('169.254.169.254', 'metadata.google.internal', 'metadata.goog')


class UrlValidation(NamedTuple):
    valid: bool
    error: Optional[str] = None
    relative_path: Optional[str] = None


def _is_private_host(hostname: str) -> Optional[str]:
    """Return an error message when the host is local, private or a metadata endpoint."""
    if hostname in ('localhost', '127.0.0.1', '::1'):
        return 'Localhost addresses are not allowed'

    if any(hostname == host or hostname.endswith('.' + host) for host in METADATA_HOSTS):
        return 'Cloud metadata endpoints are not allowed'

    try:
        address = ipaddress.ip_address(hostname)
    except ValueError:
        return None

    if address.is_loopback or address.is_link_local or address.is_private or address.is_unspecified:
        if address.version == 6:
            return 'Private IPv6 addresses are not allowed'
        return 'Private IP addresses are not allowed'
    return None


def validate_url(url: Any,
                 allow_private_ips: bool = False,
                 allowed_schemes: Sequence[str] = ('http', 'https')) -> UrlValidation:
    """
    Validate a URL before making a request to it.

    Args:
        url: URL to check
        allow_private_ips: Permit localhost, private ranges and metadata hosts
        allowed_schemes: Accepted URL schemes

    Returns:
        UrlValidation with valid=False and an error message on rejection
    """
    if not url or not isinstance(url, str):
        return UrlValidation(False, 'URL must be a non-empty string')

    try:
        parts = urlsplit(url)
        hostname = (parts.hostname or '').lower()
    except ValueError:
        return UrlValidation(False, 'Invalid URL format')

    if not parts.scheme or not hostname:
        return UrlValidation(False, 'Invalid URL format')

    if parts.scheme.lower() not in allowed_schemes:
        return UrlValidation(False, f'Protocol {parts.scheme}: is not allowed')

    if not allow_private_ips:
        error = _is_private_host(hostname)
        if error:
            return UrlValidation(False, error)

    return UrlValidation(True)


def validate_api_url(url: Any, allow_private_ips: bool = False) -> UrlValidation:
    """Validate a URL for an outbound API call (http or https only)."""
    return validate_url(url, allow_private_ips=allow_private_ips, allowed_schemes=('http', 'https'))


def validate_url_against_base(url: Any, base_url: Any) -> UrlValidation:
    """
    Check that a URL (e.g. a pagination link from an API response) points at
    the configured base.

    Returns:
        UrlValidation whose relative_path holds the path and query below the base
    """
    if not url or not isinstance(url, str):
        return UrlValidation(False, 'URL must be a non-empty string')
    if not base_url or not isinstance(base_url, str):
        return UrlValidation(False, 'Base URL must be a non-empty string')

    try:
        parts = urlsplit(url)
        base = urlsplit(base_url)
        origin = (parts.scheme.lower(), parts.hostname, parts.port)
        base_origin = (base.scheme.lower(), base.hostname, base.port)
    except ValueError:
        return UrlValidation(False, 'Invalid URL format')

    if not parts.scheme or not parts.hostname or not base.scheme or not base.hostname:
        return UrlValidation(False, 'Invalid URL format')

    if origin != base_origin:
        return UrlValidation(False, 'URL origin does not match expected base URL')

    relative_path = parts.path
    base_path = base.path.rstrip('/')
    if base_path and relative_path.startswith(base_path):
        relative_path = relative_path[len(base_path):]
    if not relative_path.startswith('/'):
        relative_path = '/' + relative_path
    if parts.query:
        relative_path += '?' + parts.query

    return UrlValidation(True, relative_path=relative_path)


def safe_transform(data: Any, transform: Optional[str]) -> Any:
    """
    Pick part of a response by a dotted path like "data.items[0].name".

    Only plain attribute names and numeric indexes are accepted; a leading
    "return " and trailing ";" are tolerated. Any path that is unsafe, too
    deep or does not resolve leaves the data unchanged.
    """
    if not transform or not isinstance(transform, str):
        return data

    path = transform.strip()
    if path.startswith('return '):
        path = path[len('return '):].strip()
    if path.endswith(';'):
        path = path[:-1].strip()

    if not SAFE_TRANSFORM_PATTERN.match(path):
        logger.warning("Transform pattern contains unsafe characters, returning original data")
        return data

    parts = [part for part in re.split(r'\.|\[|\]', path) if part]
    if len(parts) > MAX_TRANSFORM_DEPTH:
        logger.warning(f"Transform path exceeds maximum depth of {MAX_TRANSFORM_DEPTH}, returning original data")
        return data

    result = data
    for part in parts:
        if result is None:
            return data
        if isinstance(result, dict):
            if part not in result:
                return data
            result = result[part]
        elif isinstance(result, list) and part.isdigit():
            index = int(part)
            if index >= len(result):
                return data
            result = result[index]
        else:
            return data

    # An explicit null at the path is a value, not a miss
    return result


def _parse_json_option(value: Any, name: str) -> Dict[str, Any]:
    if isinstance(value, dict):
        return value
    if not value:
        return {}
    try:
        parsed = json.loads(value)
    except ValueError as e:
        logger.error(f"Failed to parse external API {name}: {e}")
        return {}
    return parsed if isinstance(parsed, dict) else {}


class ExternalApiFetcher:
    """Fetches enrichment data from the configured external API."""

    def __init__(self,
                 url: str,
                 enabled: bool = True,
                 method: str = 'GET',
                 headers: Any = None,
                 body: Any = None,
                 timeout_ms: int = 5000,
                 transform: Optional[str] = None,
                 allow_private_ips: bool = False,
                 session: Optional[requests.Session] = None):
        """
        Args:
            url: Endpoint URL
            enabled: Whether fetching is enabled at all
            method: HTTP method (body is only sent for POST and PUT)
            headers: Dict or JSON string of request headers
            body: Dict or JSON string of the request body
            timeout_ms: Request timeout in milliseconds
            transform: Optional dotted path applied to the JSON response
            allow_private_ips: Permit internal endpoints
            session: Optional requests session
        """
        self.url = url
        self.enabled = enabled
        self.method = (method or 'GET').upper()
        self.headers = _parse_json_option(headers, 'headers')
        self.body = _parse_json_option(body, 'body') if self.method in ('POST', 'PUT') else {}
        self.timeout_ms = timeout_ms or 5000
        self.transform = transform
        self.allow_private_ips = allow_private_ips
        self.session = session or requests.Session()

    @classmethod
    def from_config(cls, config: Dict[str, Any]) -> 'ExternalApiFetcher':
        return cls(
            url=config.get('external_api_url', ''),
            enabled=bool(config.get('external_api_enabled')),
            method=config.get('external_api_method', 'GET'),
            headers=config.get('external_api_headers'),
            body=config.get('external_api_body'),
            timeout_ms=config.get('external_api_timeout', 5000),
            transform=config.get('external_api_transform'),
            allow_private_ips=bool(config.get('external_api_allow_private_ips')),
        )

    def fetch_data(self) -> Any:
        """
        Fetch enrichment data.

        Returns:
            Parsed JSON (or text) after the transform, or None when disabled,
            misconfigured or the request fails
        """
        if not self.enabled:
            logger.debug("External API integration is disabled")
            return None

        if not self.url:
            logger.error("External API URL not configured")
            return None

        validation = validate_api_url(self.url, allow_private_ips=self.allow_private_ips)
        if not validation.valid:
            logger.error(f"External API URL validation failed: {validation.error}")
            return None

        logger.debug(f"Fetching data from external API: {self.url}")

        kwargs = {'headers': self.headers, 'timeout': self.timeout_ms / 1000.0}
        if self.method in ('POST', 'PUT'):
            kwargs['json'] = self.body

        try:
            response = self.session.request(self.method, self.url, **kwargs)
            response.raise_for_status()
        except requests.RequestException as e:
            logger.error(f"Failed to fetch data from external API: {e}")
            if getattr(e, 'response', None) is not None:
                logger.error(f"API Response: {e.response.status_code} {e.response.text[:500]}")
            return None

        try:
            data = response.json()
        except ValueError:
            data = response.text

        if self.transform:
            data = safe_transform(data, self.transform)
            logger.debug("Applied transform to external API data")

        return data
