"""
TradeBuilder - Backend API Server
Stores logics, validates them and runs them against live Upbit market data
"""

import atexit
import logging

from flask import Flask, jsonify, request
from flask_cors import CORS

from tradebuilder import config
from tradebuilder.integrations.upbit_fetch import UpbitClient, UpbitMarketDataProvider
from tradebuilder.utils.log_center import LogCenter, setup_logger
from tradebuilder.workflows.errors import CompileError
from tradebuilder.workflows.graph_compiler import describe_tree, validate_logic
from tradebuilder.workflows.logic_runner import LogicRunnerManager
from tradebuilder.workflows.logic_store import LogicNotFoundError, get_store

app = Flask(__name__)
CORS(app, origins=config.CORS_ORIGINS)

logger = setup_logger('tradebuilder.backend')
logging.getLogger('werkzeug').setLevel(logging.WARNING)

# Shared services
log_center = LogCenter()
store = get_store()
_client = UpbitClient()
provider = UpbitMarketDataProvider(_client)
# without credentials orders are logged as dry runs
logic_runner = LogicRunnerManager(provider, order_sink=provider if _client.has_credentials else None)


@atexit.register
def _stop_running_logics():
    logic_runner.shutdown()


def _json_body():
    return request.get_json(silent=True) or {}


def _not_found(logic_id):
    return jsonify({'error': f'Logic not found: {logic_id}'}), 404


@app.route('/health', methods=['GET'])
def health():
    """Health check endpoint"""
    return jsonify({
        'status': 'ok',
        'message': 'TradeBuilder backend is running',
        'running': len(logic_runner.get_all_running_logics()),
    })


# ============================================
# Logic CRUD
# ============================================

@app.route('/api/logics', methods=['GET'])
def list_logics():
    try:
        logics = store.list_logics()
        for entry in logics:
            entry['isRunning'] = logic_runner.is_running(entry.get('id'))
        return jsonify(logics)
    except Exception as e:
        logger.exception('Failed to list logics')
        return jsonify({'error': str(e)}), 500


@app.route('/api/logics', methods=['POST'])
def create_logic():
    try:
        data = _json_body()
        logic = store.create_logic(data.get('name'), data.get('stock', ''), data.get('data') or {})
        return jsonify({'success': True, 'logic': logic}), 201
    except Exception as e:
        logger.exception('Failed to create logic')
        return jsonify({'error': str(e)}), 500


@app.route('/api/logics/reorder', methods=['POST'])
def reorder_logics():
    data = _json_body()
    ordered_ids = data.get('order')
    if not isinstance(ordered_ids, list):
        return jsonify({'error': "'order' must be a list of logic ids"}), 400
    try:
        return jsonify({'success': True, 'logics': store.reorder_logics(ordered_ids)})
    except Exception as e:
        return jsonify({'error': str(e)}), 500


@app.route('/api/logics/running', methods=['GET'])
def running_logics():
    return jsonify([r.to_dict() for r in logic_runner.get_all_running_logics()])


@app.route('/api/logics/stop-all', methods=['POST'])
def stop_all_logics():
    count = len(logic_runner.get_all_running_logics())
    logic_runner.stop_all_logics()
    return jsonify({'success': True, 'stopped': count})


@app.route('/api/logics/<logic_id>', methods=['GET'])
def get_logic(logic_id):
    try:
        logic = store.load_logic(logic_id)
    except (LogicNotFoundError, ValueError):
        return _not_found(logic_id)
    logic['isRunning'] = logic_runner.is_running(logic_id)
    return jsonify(logic)


@app.route('/api/logics/<logic_id>', methods=['PUT'])
def update_logic(logic_id):
    data = _json_body()
    try:
        logic = store.save_logic(logic_id, name=data.get('name'), stock=data.get('stock'),
                                 data=data.get('data'))
    except (LogicNotFoundError, ValueError):
        return _not_found(logic_id)
    except Exception as e:
        logger.exception('Failed to save logic %s', logic_id)
        return jsonify({'error': str(e)}), 500
    return jsonify({'success': True, 'logic': logic})


@app.route('/api/logics/<logic_id>', methods=['DELETE'])
def delete_logic(logic_id):
    # a deleted logic must not keep trading
    logic_runner.stop_logic(logic_id)
    try:
        deleted = store.delete_logic(logic_id)
    except ValueError:
        return _not_found(logic_id)
    if not deleted:
        return _not_found(logic_id)
    log_center.clear(logic_id)
    return jsonify({'success': True})


# ============================================
# Validation / execution
# ============================================

def _logic_payload(logic_id):
    """Saved logic, with graph data and stock optionally overridden by the request body."""
    body = _json_body()
    logic = store.load_logic(logic_id)
    logic_data = body.get('data') or logic.get('data') or {}
    stock = body.get('stock') or logic.get('stock') or ''
    return logic, logic_data, stock, body


@app.route('/api/logics/<logic_id>/validate', methods=['POST'])
def validate(logic_id):
    try:
        _, logic_data, stock, _ = _logic_payload(logic_id)
    except (LogicNotFoundError, ValueError):
        return _not_found(logic_id)
    try:
        compiled = validate_logic(logic_data, stock)
    except CompileError as e:
        return jsonify({'valid': False, 'reason': e.reason, 'error': str(e), 'nodeId': e.node_id})
    return jsonify({
        'valid': True,
        'buy': describe_tree(compiled.buy_root),
        'sell': describe_tree(compiled.sell_root),
        'buyOrder': compiled.buy_order.to_dict(),
        'sellOrder': compiled.sell_order.to_dict(),
    })


@app.route('/api/logics/<logic_id>/start', methods=['POST'])
def start_logic(logic_id):
    try:
        _, logic_data, stock, body = _logic_payload(logic_id)
    except (LogicNotFoundError, ValueError):
        return _not_found(logic_id)
    if not stock:
        return jsonify({'error': 'A stock (market code) is required'}), 400
    if logic_runner.is_running(logic_id):
        return jsonify({'error': f'Logic "{logic_id}" is already running'}), 409

    try:
        validate_logic(logic_data, stock)
    except CompileError as e:
        return jsonify({'error': str(e), 'reason': e.reason}), 400

    try:
        interval = float(body.get('interval', config.DEFAULT_RUN_INTERVAL))
    except (TypeError, ValueError):
        return jsonify({'error': "'interval' must be a number of seconds"}), 400

    started = logic_runner.start_logic(
        logic_id, stock, logic_data, log_center.sink_for(logic_id),
        log_details=bool(body.get('logDetails')), interval=interval,
    )
    if not started:
        return jsonify({'error': 'Logic could not be started', 'logs': log_center.get_logs(logic_id, 5)}), 409
    running = logic_runner.get_running_logic(logic_id)
    return jsonify({'success': True, 'running': running.to_dict() if running else None})


@app.route('/api/logics/<logic_id>/stop', methods=['POST'])
def stop_logic(logic_id):
    if not logic_runner.stop_logic(logic_id):
        return jsonify({'success': False, 'error': f'Logic "{logic_id}" is not running'}), 404
    return jsonify({'success': True})


@app.route('/api/logics/<logic_id>/run-once', methods=['POST'])
def run_once(logic_id):
    try:
        _, logic_data, stock, body = _logic_payload(logic_id)
    except (LogicNotFoundError, ValueError):
        return _not_found(logic_id)
    if not stock:
        return jsonify({'error': 'A stock (market code) is required'}), 400

    result = logic_runner.run_once(stock, logic_data, log_center.sink_for(logic_id),
                                   log_details=bool(body.get('logDetails')))
    if result is None:
        return jsonify({'success': False, 'logs': log_center.get_logs(logic_id, 20)}), 422
    return jsonify({'success': True, 'result': result, 'logs': log_center.get_logs(logic_id, 20)})


@app.route('/api/logics/<logic_id>/logs', methods=['GET'])
def get_logs(logic_id):
    limit = request.args.get('limit', type=int)
    return jsonify(log_center.get_logs(logic_id, limit))
