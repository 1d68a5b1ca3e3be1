"""HTTP boundary for the auto-tester.

Endpoints (all JSON):
    GET  /health                                - liveness
    GET  /api/autotester/config                 - singleton configuration
    PUT  /api/autotester/config                 - replace configuration, reconcile workers
    POST /api/autotester/run/<key>              - on-demand test
    POST /api/autotester/calibrate/<key>        - on-demand calibration
    GET  /api/autotester/status                 - raw device status + workers + bus lock stats
    GET  /api/autotester/results/<key>          - readings as [{"ts": ..., "value": ...}]
    GET  /api/autotester/log                    - recent warnings/errors
"""
from __future__ import annotations

import logging
import threading
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Optional, Tuple

from flask import Flask, jsonify, request
from flask_cors import CORS
from werkzeug.serving import make_server

from ..errors import AutotesterError, ConfigError, StoreError, UnknownKey
from ..protocol import KIND_CALIBRATION, KIND_TEST

if TYPE_CHECKING:
    from ..service.controller import AutotesterController

logger = logging.getLogger(__name__)

API_PREFIX = '/api/autotester'


def _error(message: str, status: int):
    return jsonify({'error': message}), status


def create_app(controller: AutotesterController) -> Flask:
    """Build the Flask application bound to *controller*."""

    app = Flask(__name__)
    CORS(app)

    @app.errorhandler(UnknownKey)
    def _unknown_key(exc: UnknownKey):
        return _error(str(exc), 404)

    @app.errorhandler(ConfigError)
    def _invalid_config(exc: ConfigError):
        return _error(str(exc), 400)

    @app.errorhandler(StoreError)
    def _store_failure(exc: StoreError):
        logger.error("store failure while serving %s: %s", request.path, exc)
        return _error(str(exc), 500)

    @app.errorhandler(AutotesterError)
    def _device_failure(exc: AutotesterError):
        return _error(f"{type(exc).__name__}: {exc}", 503)

    @app.route('/health', methods=['GET'])
    def health_check():
        return jsonify({
            'status': 'ok',
            'service': 'autotester',
            'timestamp': datetime.now(timezone.utc).isoformat(),
            'scheduler_running': controller.supervisor.running,
            'database': str(controller.database.path),
        })

    @app.route(f'{API_PREFIX}/config', methods=['GET'])
    def get_config():
        return jsonify(controller.get_config().to_dict())

    @app.route(f'{API_PREFIX}/config', methods=['PUT'])
    def update_config():
        payload = request.get_json(silent=True)
        if payload is None:
            return _error('request body must be a JSON object', 400)
        controller.update_config(payload)
        return '', 204

    @app.route(f'{API_PREFIX}/run/<key>', methods=['POST'])
    def run_test(key: str):
        controller.run_test(key)
        return jsonify({'key': key.lower(), 'kind': KIND_TEST}), 202

    @app.route(f'{API_PREFIX}/calibrate/<key>', methods=['POST'])
    def calibrate(key: str):
        controller.calibrate(key)
        return jsonify({'key': key.lower(), 'kind': KIND_CALIBRATION}), 202

    @app.route(f'{API_PREFIX}/status', methods=['GET'])
    def device_status():
        payload = controller.device_status()
        return jsonify(payload), (503 if payload.get('error') else 200)

    @app.route(f'{API_PREFIX}/results/<key>', methods=['GET'])
    def results(key: str):
        return jsonify(controller.list_results(key))

    @app.route(f'{API_PREFIX}/log', methods=['GET'])
    def recent_log():
        limit = request.args.get('limit', 20, type=int)
        since_id = request.args.get('since_id', None, type=int)
        events = controller.recent_events(limit=limit, since_id=since_id)
        return jsonify({'events': events})

    return app


class ApiServer:
    """Threaded HTTP server publishing the auto-tester API."""

    def __init__(
        self,
        controller: AutotesterController,
        host: str = '127.0.0.1',
        port: int = 0,
    ) -> None:
        self._server = make_server(host, port, create_app(controller), threaded=True)
        self._thread: Optional[threading.Thread] = None

    @property
    def address(self) -> Tuple[str, int]:
        return self._server.server_address[:2]  # type: ignore[return-value]

    def start(self) -> None:
        if self._thread and self._thread.is_alive():
            return
        self._thread = threading.Thread(target=self._server.serve_forever, name='autotester-api', daemon=True)
        self._thread.start()

    def stop(self) -> None:
        self._server.shutdown()
        if self._thread and self._thread.is_alive():
            self._thread.join(timeout=2.0)
        self._server.server_close()
