from flask import jsonify, request

from controllers.credit_controller import CreditController
from database import db
from routes import billing_bp
from utils.auth_middleware import token_required


def _controller():
    return CreditController.from_session(db.session)


def _int_arg(name, default):
    """Parse an integer query arg; returns (value, error_response)."""
    raw = request.args.get(name)
    if raw is None or raw == '':
        return default, None
    try:
        return int(raw), None
    except ValueError:
        return None, (jsonify({"error": f"'{name}' must be an integer"}), 400)


@billing_bp.route('/me/credits', methods=['GET'])
@token_required
def get_my_credits(user_id):
    success, payload, status = _controller().refresh_balance(user_id)
    return jsonify(payload), status


@billing_bp.route('/me/credits/check', methods=['GET'])
@token_required
def check_my_credits(user_id):
    required, error = _int_arg('required', 1)
    if error:
        return error
    success, payload, status = _controller().has_sufficient_credits(user_id, required)
    return jsonify(payload), status


# POST /me/credits/spend - Debit credits for a billable AI interaction
@billing_bp.route('/me/credits/spend', methods=['POST'])
@token_required
def spend_my_credits(user_id):
    data = request.get_json(silent=True) or {}
    if 'amount' not in data:
        return jsonify({"error": "amount is required"}), 400
    success, payload, status = _controller().spend(
        user_id,
        data.get('amount'),
        source_type=data.get('source_type') or 'usage',
        source_id=data.get('source_id'),
        description=data.get('description'),
    )
    return jsonify(payload), status


@billing_bp.route('/me/credits/history', methods=['GET'])
@token_required
def get_my_credit_history(user_id):
    limit, error = _int_arg('limit', 50)
    if error:
        return error
    offset, error = _int_arg('offset', 0)
    if error:
        return error
    success, payload, status = _controller().list_transactions(user_id, limit, offset)
    return jsonify(payload), status


@billing_bp.route('/me/credits/usage', methods=['GET'])
@token_required
def get_my_usage(user_id):
    days, error = _int_arg('days', None)
    if error:
        return error
    success, payload, status = _controller().get_usage_stats(user_id, days)
    return jsonify(payload), status


@billing_bp.route('/me/credits/recommendation', methods=['GET'])
@token_required
def get_my_recommendation(user_id):
    success, payload, status = _controller().get_recommendation(user_id)
    return jsonify(payload), status


# POST /me/credits/message-costs - AI pipeline reports token usage for a message
@billing_bp.route('/me/credits/message-costs', methods=['POST'])
@token_required
def record_my_message_cost(user_id):
    data = request.get_json(silent=True) or {}
    allowed = {
        'message_id', 'conversation_id', 'avatar_id', 'input_tokens', 'output_tokens',
        'credits_charged', 'api_cost_cents', 'provider', 'model_name',
    }
    unknown = sorted(set(data) - allowed)
    if unknown:
        return jsonify({"error": f"Unknown fields: {', '.join(unknown)}"}), 400
    if not data.get('message_id') or not data.get('avatar_id'):
        return jsonify({"error": "message_id and avatar_id are required"}), 400
    success, payload, status = _controller().record_message_cost(user_id, **data)
    return jsonify(payload), status


@billing_bp.route('/credits/tiers', methods=['GET'])
def list_tiers():
    success, payload, status = _controller().list_tiers()
    return jsonify(payload), status


@billing_bp.route('/credits/packages', methods=['GET'])
def list_packages():
    success, payload, status = _controller().list_packages()
    return jsonify(payload), status
