from flask import Flask, jsonify

import pytest

from conftest import make_token
from utils.auth_middleware import api_key_required, token_required


@pytest.fixture
def protected_app(monkeypatch):
    monkeypatch.setenv("ADMIN_API_KEYS", "key-one, key-two")
    app = Flask(__name__)
    app.config['SECRET_KEY'] = "test-secret-key"

    @app.route('/user')
    @token_required
    def user_route(user_id):
        return jsonify({"user_id": user_id})

    @app.route('/server')
    @api_key_required
    def server_route():
        return jsonify({"ok": True})

    return app.test_client()


def _bearer(token):
    return {"Authorization": f"Bearer {token}"}


def test_token_required_passes_subject(protected_app):
    response = protected_app.get('/user', headers=_bearer(make_token("42")))
    assert response.status_code == 200
    assert response.get_json() == {"user_id": "42"}


@pytest.mark.parametrize("headers, message", [
    ({}, "Authentication token is missing"),
    ({"Authorization": "Token abc"}, "Authentication token is missing"),
    (_bearer("not-a-jwt"), "Invalid token"),
    (_bearer(make_token("u", secret="other-secret")), "Invalid token"),
    (_bearer(make_token("u", expires_in=-60)), "Token has expired"),
    (_bearer(make_token("u", token_type="refresh")), "Invalid token type"),
])
def test_token_required_rejects(protected_app, headers, message):
    response = protected_app.get('/user', headers=headers)
    assert response.status_code == 401
    assert response.get_json()["error"] == message


@pytest.mark.parametrize("headers, status", [
    ({"X-API-Key": "key-one"}, 200),
    ({"X-API-Key": "key-two"}, 200),
    ({"Authorization": "ApiKey key-two"}, 200),
    ({"X-API-Key": "key-three"}, 401),
    ({}, 401),
])
def test_api_key_required(protected_app, headers, status):
    assert protected_app.get('/server', headers=headers).status_code == status


def test_api_key_required_without_configured_keys(protected_app, monkeypatch):
    monkeypatch.setenv("ADMIN_API_KEYS", "")
    assert protected_app.get('/server', headers={"X-API-Key": "key-one"}).status_code == 401
