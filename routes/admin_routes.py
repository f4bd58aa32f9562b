from flask import request, jsonify

from controllers.credit_controller import CreditController
from database import db
from routes import admin_bp
from utils.auth_middleware import api_key_required


def _controller():
    return CreditController.from_session(db.session)


def _json_body():
    if not request.is_json:
        return None, (jsonify({"error": "Request must be JSON"}), 400)
    return request.get_json(silent=True) or {}, None


# POST /admin/credits/grant - Grant credits (promotions, refunds, earned rewards)
@admin_bp.route('/credits/grant', methods=['POST'])
@api_key_required
def grant_credits():
    data, error = _json_body()
    if error:
        return error
    if not data.get('user_id') or 'amount' not in data:
        return jsonify({"error": "user_id and amount are required"}), 400
    success, payload, status = _controller().grant(
        data['user_id'],
        data['amount'],
        transaction_type=data.get('transaction_type') or 'granted',
        source_type=data.get('source_type') or 'promotion',
        source_id=data.get('source_id'),
        description=data.get('description'),
    )
    return jsonify(payload), status


# POST /admin/credits/purchases - Fulfil a verified credit package purchase
@admin_bp.route('/credits/purchases', methods=['POST'])
@api_key_required
def fulfil_purchase():
    data, error = _json_body()
    if error:
        return error
    missing = [k for k in ('user_id', 'package_id', 'transaction_id') if not data.get(k)]
    if missing:
        return jsonify({"error": f"Missing fields: {', '.join(missing)}"}), 400
    success, payload, status = _controller().process_purchase(
        data['user_id'], data['package_id'], data['transaction_id']
    )
    return jsonify(payload), status


# POST /admin/credits/monthly-grant/<user_id> - Run the monthly grant for one user
@admin_bp.route('/credits/monthly-grant/<user_id>', methods=['POST'])
@api_key_required
def run_monthly_grant(user_id):
    success, payload, status = _controller().apply_monthly_grant(user_id)
    return jsonify(payload), status


# PUT /admin/credits/<user_id>/tier - Change the tier association only
@admin_bp.route('/credits/<user_id>/tier', methods=['PUT'])
@api_key_required
def set_user_tier(user_id):
    data, error = _json_body()
    if error:
        return error
    if 'tier_id' not in data:
        return jsonify({"error": "tier_id is required"}), 400
    success, payload, status = _controller().update_tier(user_id, data['tier_id'])
    return jsonify(payload), status


# POST /admin/subscriptions - Start a subscription after payment verification
@admin_bp.route('/subscriptions', methods=['POST'])
@api_key_required
def create_subscription():
    data, error = _json_body()
    if error:
        return error
    missing = [k for k in ('user_id', 'tier_id', 'transaction_id') if not data.get(k)]
    if missing:
        return jsonify({"error": f"Missing fields: {', '.join(missing)}"}), 400
    success, payload, status = _controller().create_subscription(
        data['user_id'], data['tier_id'], data['transaction_id']
    )
    return jsonify(payload), status


# DELETE /admin/subscriptions/<user_id> - Cancel the active subscription
@admin_bp.route('/subscriptions/<user_id>', methods=['DELETE'])
@api_key_required
def cancel_subscription(user_id):
    success, payload, status = _controller().cancel_subscription(user_id)
    return jsonify(payload), status
