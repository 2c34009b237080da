#!/usr/bin/env python3
"""
Flask API for Territory Resolution
Run with: python api.py
"""

import os

from flask import Flask, request, jsonify
from flask_cors import CORS
from flask_limiter import Limiter
from flask_limiter.util import get_remote_address

from logging_config import get_logger
from resolution import EngineConfig, ResolveOptions, TerritoryResolutionEngine

logger = get_logger("api")

app = Flask(__name__)
CORS(app)

limiter = Limiter(
    get_remote_address,
    app=app,
    default_limits=[],
    storage_uri="memory://",
    strategy="fixed-window",
    enabled=os.getenv("RATE_LIMIT_ENABLED", "true").lower() != "false",
)

# HTTP status per /api/resolve failure code. CANCELLED only appears on bulk items.
ERROR_STATUS = {
    "INVALID_ZIP_FORMAT": 400,
    "NOT_IN_REGION": 400,
    "NOT_FOUND": 404,
    "ROUTING_ERROR": 500,
}

CACHE_HIT_HEADERS = {"Cache-Control": "public, max-age=3600", "X-Resolution-Cache": "HIT"}
CACHE_MISS_HEADERS = {"Cache-Control": "public, max-age=300", "X-Resolution-Cache": "MISS"}
NOT_FOUND_HEADERS = {"Cache-Control": "public, max-age=300"}
NO_STORE_HEADERS = {"Cache-Control": "no-store"}

_engine = None


def get_engine() -> TerritoryResolutionEngine:
    """Engine shared by all requests, built from the environment on first use."""
    global _engine
    if _engine is None:
        _engine = TerritoryResolutionEngine(EngineConfig.from_env())
    return _engine


def set_engine(engine: TerritoryResolutionEngine):
    """Install an engine (tests and embedding callers)."""
    global _engine
    _engine = engine


def _parse_force_refresh(data) -> bool:
    value = data.get('forceRefresh', False)
    if isinstance(value, str):
        return value.lower() in ('1', 'true', 'yes')
    return bool(value)


@app.errorhandler(429)
def ratelimit_handler(e):
    return jsonify({
        'success': False,
        'error': {
            'code': 'RATE_LIMITED',
            'message': 'Rate limit exceeded. Please slow down.',
            'retryAfter': e.description,
        }
    }), 429, NO_STORE_HEADERS


@app.route('/api/resolve', methods=['POST'])
@limiter.limit("120 per minute")
def resolve():
    """
    Resolve one ZIP code to its service territory.

    Request body:
    {
        "zipCode": "75201",
        "forceRefresh": false   // optional
    }

    Response (200):
    {
        "success": true, "zipCode": "75201", "citySlug": "dallas",
        "cityDisplayName": "Dallas", "utilityId": "oncor",
        "utilityName": "Oncor Electric Delivery", "marketType": "deregulated",
        "confidence": 95, "dataSource": "oncor", "conflicts": [],
        "redirectPath": "/electricity-plans/dallas/", "cached": false,
        "processingTimeMs": 412
    }
    """
    data = request.get_json(silent=True)
    if not isinstance(data, dict):
        return jsonify({
            'success': False,
            'error': {'code': 'INVALID_ZIP_FORMAT', 'message': 'JSON body with zipCode is required'},
        }), 400, NO_STORE_HEADERS

    outcome = get_engine().resolve(
        data.get('zipCode'),
        ResolveOptions(force_refresh=_parse_force_refresh(data)),
    )

    if outcome.ok:
        headers = CACHE_HIT_HEADERS if outcome.cached else CACHE_MISS_HEADERS
        return jsonify(outcome.to_dict()), 200, headers

    status = ERROR_STATUS.get(outcome.error_code, 500)
    if status == 404:
        headers = NOT_FOUND_HEADERS
    else:
        headers = NO_STORE_HEADERS
    return jsonify(outcome.to_dict()), status, headers


@app.route('/api/resolve/bulk', methods=['POST'])
@limiter.limit("10 per minute")
def resolve_bulk():
    """
    Resolve many ZIP codes in batches.

    Request body:
    {
        "zipCodes": ["75201", "77002", ...],
        "forceRefresh": false   // optional
    }

    Response:
    {
        "results": [{...}, ...],   // one per input, in order
        "summary": {"totalRequested": 2, "successCount": 2, "failureCount": 0,
                    "averageConfidence": 93.5, "totalProcessingTimeMs": 1830},
        "cancelled": false
    }
    """
    engine = get_engine()
    data = request.get_json(silent=True)
    if not isinstance(data, dict):
        return jsonify({'success': False, 'error': {'code': 'INVALID_REQUEST', 'message': 'Request body required'}}), 400, NO_STORE_HEADERS

    zip_codes = data.get('zipCodes')
    if not isinstance(zip_codes, list) or not zip_codes:
        return jsonify({'success': False, 'error': {'code': 'INVALID_REQUEST', 'message': 'zipCodes array required'}}), 400, NO_STORE_HEADERS

    max_items = engine.config.bulk_max_items
    if len(zip_codes) > max_items:
        return jsonify({
            'success': False,
            'error': {
                'code': 'INVALID_REQUEST',
                'message': f'Maximum {max_items} ZIP codes per request. You provided {len(zip_codes)}.',
            },
        }), 400, NO_STORE_HEADERS

    logger.info(f"Bulk request for {len(zip_codes)} ZIP codes")
    bulk = engine.resolve_bulk(zip_codes, ResolveOptions(force_refresh=_parse_force_refresh(data)))
    response = bulk.to_dict()
    response['success'] = True
    return jsonify(response), 200, NO_STORE_HEADERS


@app.route('/api/metrics', methods=['GET'])
@limiter.exempt
def metrics():
    """Rolling-window service metrics."""
    return jsonify(get_engine().get_metrics().to_dict()), 200, NO_STORE_HEADERS


@app.route('/api/health', methods=['GET'])
@limiter.exempt
def health():
    """Health check endpoint: engine, store and provider circuit status."""
    report = get_engine().health()
    status = 503 if report['status'] == 'unhealthy' else 200
    return jsonify(report), status, NO_STORE_HEADERS


if __name__ == '__main__':
    port = int(os.getenv('PORT', '5001'))
    app.run(host='0.0.0.0', port=port, debug=os.getenv('FLASK_DEBUG') == '1')
