"""
Web UI for Paperless AI Enricher

Flask JSON API for monitoring, the processing history and manual control.
"""

import json
import logging
from datetime import datetime, timezone
from threading import Lock, Thread
from collections import deque
from typing import Any, Dict, Iterator

from flask import Flask, Response, jsonify, request, stream_with_context

logger = logging.getLogger(__name__)

# In-memory log buffer
log_buffer = deque(maxlen=200)  # Keep last 200 log lines


class LogBufferHandler(logging.Handler):
    """Custom log handler that stores logs in memory."""

    def emit(self, record):
        try:
            msg = self.format(record)
            log_buffer.append(msg)
        except Exception:
            self.handleError(record)


# Global state
ui_state = {
    'recent_results': [],
    'stats': {
        'total_processed': 0,
        'total_tokens': 0,
        'truncated_count': 0,
        'insufficient_content_count': 0
    },
    'last_update': None,
    'started_at': datetime.now(timezone.utc),
    'lock': Lock()
}

app = Flask(__name__)
app.enricher = None

HISTORY_COLUMNS = ('select', 'document_id', 'title', 'tags', 'correspondent', 'created_at', 'actions')


def create_app(enricher):
    """
    Create and configure Flask app.

    Args:
        enricher: DocumentEnricher instance

    Returns:
        Flask app
    """
    app.enricher = enricher
    return app


def _sse(payload: Dict[str, Any]) -> str:
    return f"data: {json.dumps(payload)}\n\n"


def _percentage(current: int, total: int) -> int:
    return int(current * 100 / total) if total else 100


def _document_link(document_id: int) -> str:
    enricher = app.enricher
    base = enricher.config.get('paperless_public_url') or enricher.config.get('paperless_api_base_url', '')
    return f"{base.rstrip('/')}/documents/{document_id}/details"


@app.route('/api/status')
def api_status():
    """Get current enricher status."""
    enricher = app.enricher
    with ui_state['lock']:
        stats = dict(ui_state['stats'])
        last_update = ui_state['last_update']
        uptime = (datetime.now(timezone.utc) - ui_state['started_at']).total_seconds()

    return jsonify({
        'status': 'running',
        'uptime_seconds': int(uptime),
        'provider': enricher.llm_client.provider,
        'model': enricher.llm_client.model,
        'state': enricher.state_manager.get_stats(),
        'usage': enricher.history.get_usage_stats(),
        'stats': stats,
        'last_update': last_update
    })


@app.route('/api/recent')
def api_recent():
    """Get recent processing results."""
    with ui_state['lock']:
        return jsonify({
            'results': ui_state['recent_results'][-50:]
        })


@app.route('/api/logs')
def api_logs():
    """Get recent log lines."""
    return jsonify({'logs': list(log_buffer)})


@app.route('/api/ai-status')
def api_ai_status():
    """Check that the AI provider answers."""
    result = app.enricher.llm_client.check_status()
    return jsonify(result), (200 if result.get('status') == 'ok' else 503)


@app.route('/api/history')
def api_history():
    """Server-side paging for the history table."""
    args = request.args
    try:
        draw = int(args.get('draw', 1))
        start = int(args.get('start', 0))
        length = int(args.get('length', 10))
        order_index = int(args.get('order[0][column]', 5))
    except ValueError:
        return jsonify({'error': 'Invalid paging parameters'}), 400

    order_column = args.get(f'columns[{order_index}][data]')
    if not order_column and 0 <= order_index < len(HISTORY_COLUMNS):
        order_column = HISTORY_COLUMNS[order_index]

    tag = args.get('tag') or None
    try:
        tag_id = int(tag) if tag is not None else None
    except ValueError:
        return jsonify({'error': 'Invalid tag filter'}), 400

    rows, total, filtered = app.enricher.history.query(
        start=start,
        length=length,
        search=args.get('search[value]', ''),
        tag_id=tag_id,
        correspondent=args.get('correspondent') or None,
        order_column=order_column or 'created_at',
        order_dir=args.get('order[0][dir]', 'desc'),
    )
    for row in rows:
        row['link'] = _document_link(row['document_id'])

    return jsonify({
        'draw': draw,
        'recordsTotal': total,
        'recordsFiltered': filtered,
        'data': rows
    })


@app.route('/api/history/filters')
def api_history_filters():
    """Tags and correspondents available as history filters."""
    return jsonify(app.enricher.history.get_filter_options())


@app.route('/api/history/load-progress')
def api_history_load_progress():
    """Refresh the Paperless lookups behind the history table, streaming progress."""
    enricher = app.enricher

    def generate() -> Iterator[str]:
        try:
            yield _sse({'type': 'progress', 'percentage': 10, 'message': 'Loading tags and correspondents...'})
            taxonomy = enricher.refresh_taxonomy()

            yield _sse({'type': 'progress', 'percentage': 60,
                        'message': f'Loaded {len(taxonomy.tags)} tags and '
                                   f'{len(taxonomy.correspondents)} correspondents'})
            _, total, _ = enricher.history.query(length=0)

            yield _sse({'type': 'progress', 'percentage': 90, 'message': f'Found {total} history entries'})
            yield _sse({'type': 'complete', 'percentage': 100, 'message': 'Complete'})
        except Exception as e:
            logger.error(f"Failed to load history data: {e}", exc_info=True)
            yield _sse({'type': 'error', 'message': str(e)})

    return Response(stream_with_context(generate()), mimetype='text/event-stream',
                    headers={'Cache-Control': 'no-cache'})


@app.route('/api/history/validate')
def api_history_validate():
    """Find history entries whose document no longer exists in Paperless."""
    enricher = app.enricher

    def generate() -> Iterator[str]:
        try:
            rows, total, _ = enricher.history.query(length=-1, order_column='document_id', order_dir='asc')
            existing = set(enricher.paperless.get_all_document_ids())

            missing = []
            for current, row in enumerate(rows, start=1):
                if row['document_id'] not in existing:
                    missing.append({
                        'document_id': row['document_id'],
                        'title': row['title'],
                        'correspondent': row['correspondent']
                    })
                yield _sse({
                    'type': 'progress',
                    'current': current,
                    'total': total,
                    'missing': len(missing),
                    'percentage': _percentage(current, total)
                })

            yield _sse({'type': 'complete', 'missing': missing})
        except Exception as e:
            logger.error(f"History validation failed: {e}", exc_info=True)
            yield _sse({'type': 'error', 'message': str(e)})

    return Response(stream_with_context(generate()), mimetype='text/event-stream',
                    headers={'Cache-Control': 'no-cache'})


@app.route('/api/reset-documents', methods=['POST'])
def api_reset_documents():
    """Remove documents from history so they are processed again."""
    data = request.get_json(silent=True) or {}
    ids = data.get('ids')
    if not isinstance(ids, list) or not ids:
        return jsonify({'error': 'ids must be a non-empty list'}), 400

    try:
        count = app.enricher.history.reset_documents(ids)
    except (TypeError, ValueError):
        return jsonify({'error': 'ids must be document IDs'}), 400

    return jsonify({'success': True, 'reset': count})


@app.route('/api/reset-all-documents', methods=['POST'])
def api_reset_all_documents():
    """Clear the whole history so every document is processed again."""
    count = app.enricher.history.reset_all()
    return jsonify({'success': True, 'reset': count})


@app.route('/api/trigger', methods=['POST'])
def api_trigger():
    """Start a poll now."""
    app.enricher.trigger_poll()
    return jsonify({'success': True, 'message': 'Poll started'})


@app.route('/api/documents/<int:doc_id>/process', methods=['POST'])
def api_process_document(doc_id):
    """Process one document now, optionally with an override prompt."""
    data = request.get_json(silent=True) or {}
    enricher = app.enricher

    try:
        document = enricher.paperless.get_document(doc_id)
        result = enricher.process_document(
            document,
            dry_run=bool(data.get('dry_run')),
            custom_prompt=data.get('prompt') or None
        )
    except Exception as e:
        logger.error(f"Processing document {doc_id} failed: {e}", exc_info=True)
        return jsonify({'error': str(e)}), 500

    if result is None:
        return jsonify({'skipped': True, 'document_id': doc_id})
    return jsonify(result.to_dict()), (200 if result.ok or result.insufficient_content else 502)


@app.route('/api/playground', methods=['POST'])
def api_playground():
    """Try a prompt against document text without writing anything."""
    data = request.get_json(silent=True) or {}
    prompt = data.get('prompt')
    content = data.get('content')

    if not prompt:
        return jsonify({'error': 'prompt is required'}), 400

    if content is None and data.get('document_id') is not None:
        try:
            content = app.enricher.paperless.get_document(int(data['document_id'])).get('content', '')
        except Exception as e:
            logger.error(f"Playground could not load document: {e}")
            return jsonify({'error': str(e)}), 502

    if not content:
        return jsonify({'error': 'content or document_id is required'}), 400

    result = app.enricher.llm_client.analyze_playground(content, prompt)
    return jsonify(result.to_dict()), (200 if result.ok or result.insufficient_content else 502)


def update_ui_stats(result: Dict[str, Any]) -> None:
    """
    Update UI statistics with a processing result.

    Args:
        result: Summary of one processed document
    """
    with ui_state['lock']:
        ui_state['recent_results'].append(result)

        if len(ui_state['recent_results']) > 100:
            ui_state['recent_results'] = ui_state['recent_results'][-100:]

        ui_state['stats']['total_processed'] += 1
        ui_state['stats']['total_tokens'] += (result.get('metrics') or {}).get('total_tokens', 0)
        if result.get('truncated'):
            ui_state['stats']['truncated_count'] += 1
        if result.get('insufficient_content'):
            ui_state['stats']['insufficient_content_count'] += 1

        ui_state['last_update'] = datetime.now(timezone.utc).isoformat()


def run_web_server(enricher, host='0.0.0.0', port=3000):
    """
    Run the Flask web server using Waitress.

    Args:
        enricher: DocumentEnricher instance
        host: Host to bind to
        port: Port to bind to
    """
    create_app(enricher)

    logger.info(f"Starting web UI on {host}:{port}")

    from waitress import serve
    serve(app, host=host, port=port, threads=4, channel_timeout=300)


def start_web_server_thread(enricher, host='0.0.0.0', port=3000):
    """
    Start web server in background thread.

    Args:
        enricher: DocumentEnricher instance
        host: Host to bind to
        port: Port to bind to
    """
    root_logger = logging.getLogger()
    buffer_handler = LogBufferHandler()
    buffer_handler.setFormatter(logging.Formatter(
        '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    ))
    root_logger.addHandler(buffer_handler)
    logger.info("Log buffer handler registered - live logs enabled")

    thread = Thread(target=run_web_server, args=(enricher, host, port), daemon=True)
    thread.start()
    logger.info(f"Web UI thread started on {host}:{port}")
    return thread
