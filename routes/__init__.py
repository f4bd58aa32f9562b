from flask import Blueprint

billing_bp = Blueprint('billing_api', __name__)  # User-facing credits API
admin_bp = Blueprint('admin_api', __name__, url_prefix='/admin')  # Server-to-server operations

# Import routes to register with blueprints
# These imports MUST be after the blueprint definitions
from routes import billing_routes, admin_routes


def register_blueprints(app):
    """Register all blueprints with the Flask app"""
    app.register_blueprint(billing_bp)
    app.register_blueprint(admin_bp)
