from functools import wraps
import os

import jwt
from flask import request, jsonify, current_app


def _bearer_token():
    auth_header = request.headers.get('Authorization')
    if auth_header:
        parts = auth_header.split()
        if len(parts) == 2 and parts[0].lower() == 'bearer':
            return parts[1]
    return None


def token_required(f):
    """
    Decorator for routes that require a valid JWT access token.

    Tokens are issued by the auth service; this service only verifies them
    and passes the subject (the user id) to the route.

    Usage:
        @billing_bp.route('/me/credits')
        @token_required
        def get_my_credits(user_id):
            ...
    """
    @wraps(f)
    def decorated(*args, **kwargs):
        token = _bearer_token()
        if not token:
            return jsonify({"error": "Authentication token is missing"}), 401

        try:
            payload = jwt.decode(
                token,
                current_app.config['SECRET_KEY'],
                algorithms=['HS256']
            )
        except jwt.ExpiredSignatureError:
            return jsonify({"error": "Token has expired"}), 401
        except jwt.InvalidTokenError:
            return jsonify({"error": "Invalid token"}), 401

        # Verify it's an access token
        if payload.get('type') != 'access':
            return jsonify({"error": "Invalid token type"}), 401

        user_id = payload.get('sub')
        if user_id is None or str(user_id).strip() == '':
            return jsonify({"error": "Token has no subject"}), 401

        return f(str(user_id), *args, **kwargs)

    return decorated


def api_key_required(f):
    """
    Decorator for server-to-server routes (purchase verification, scheduler hooks).

    Usage:
        @admin_bp.route('/credits/grant', methods=['POST'])
        @api_key_required
        def grant_credits():
            ...
    """
    @wraps(f)
    def decorated(*args, **kwargs):
        api_key = request.headers.get('X-API-Key')

        if not api_key:
            # Also check Authorization header for API key format
            auth_header = request.headers.get('Authorization')
            if auth_header and auth_header.startswith('ApiKey '):
                api_key = auth_header[7:]

        if not api_key:
            return jsonify({"error": "API key is required"}), 401

        # Keys are read from the environment at request time
        admin_keys_str = os.getenv('ADMIN_API_KEYS', '')
        valid_api_keys = [key.strip() for key in admin_keys_str.split(',') if key.strip()] if admin_keys_str else []

        if not valid_api_keys or api_key not in valid_api_keys:
            return jsonify({"error": "Invalid API key"}), 401

        return f(*args, **kwargs)

    return decorated
