"""
Prompt and response audit log.

Every assembled prompt and every parsed response can be written to its own
size-capped file for debugging. Nothing is written until configure_audit_log()
is called.
"""

import json
import logging
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any, Optional

prompt_logger = logging.getLogger('enricher.audit.prompt')
response_logger = logging.getLogger('enricher.audit.response')

for _audit_logger in (prompt_logger, response_logger):
    _audit_logger.propagate = False
    _audit_logger.setLevel(logging.INFO)

DEFAULT_MAX_BYTES = 10 * 1024 * 1024


def configure_audit_log(log_dir: str, max_bytes: int = DEFAULT_MAX_BYTES, backup_count: int = 1) -> None:
    """
    Attach rotating file handlers for prompt.txt and response.txt.

    Args:
        log_dir: Directory for the audit files (created if missing)
        max_bytes: Size at which a file is rotated
        backup_count: Number of rotated files to keep
    """
    directory = Path(log_dir)
    directory.mkdir(parents=True, exist_ok=True)

    for audit_logger, filename in ((prompt_logger, 'prompt.txt'), (response_logger, 'response.txt')):
        for handler in list(audit_logger.handlers):
            audit_logger.removeHandler(handler)
            handler.close()

        handler = RotatingFileHandler(
            directory / filename,
            maxBytes=max_bytes,
            backupCount=backup_count,
            encoding='utf-8'
        )
        handler.setFormatter(logging.Formatter('\n=== %(asctime)s ===\n%(message)s'))
        audit_logger.addHandler(handler)


def log_prompt(instructions: str, content: str, document_id: Optional[Any] = None) -> None:
    """Record the instructions and (truncated) content sent to the provider."""
    prompt_logger.info(
        f"DOCUMENT: {document_id}\nSYSTEM PROMPT:\n{instructions}\n\nUSER CONTENT:\n{content}\n"
    )


def log_response(document: Any, document_id: Optional[Any] = None) -> None:
    """Record a parsed provider response."""
    try:
        body = json.dumps(document, indent=2, ensure_ascii=False, default=str)
    except (TypeError, ValueError):
        body = repr(document)
    response_logger.info(f"DOCUMENT: {document_id}\n{body}")
