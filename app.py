# app.py
import logging
import os

import sentry_sdk
from flask import Flask, jsonify
from flask_cors import CORS
from sentry_sdk.integrations.flask import FlaskIntegration

from config import Config
from database import init_db
from routes import register_blueprints
from tasks import init_app

if Config.SENTRY_DSN:
    sentry_sdk.init(
        dsn=Config.SENTRY_DSN,
        send_default_pii=False,
        traces_sample_rate=float(os.getenv('SENTRY_TRACES_SAMPLE_RATE', '0.2') or 0),
        integrations=[FlaskIntegration()],
    )
    logging.info("Sentry SDK initialized successfully")
else:
    logging.warning("SENTRY_DSN not found in environment variables. Sentry monitoring is disabled.")

logger = logging.getLogger(__name__)

is_development = os.getenv('FLASK_ENV', 'production').lower() == 'development' or \
                 os.getenv('FLASK_DEBUG', 'False').lower() == 'true'


def _celery_settings():
    """Celery keys carried on the Flask config and copied over by tasks.init_app."""
    try:
        lock_timeout = int(os.getenv('REDBEAT_LOCK_TIMEOUT', '120'))
    except ValueError:
        lock_timeout = 120
    return {
        'broker_url': Config.REDIS_URL,
        'result_backend': Config.REDIS_URL,
        # Beat state lives in Redis so restarts do not re-run the monthly sweep
        'beat_scheduler': os.getenv('CELERY_BEAT_SCHEDULER', 'redbeat.RedBeatScheduler'),
        'redbeat_redis_url': Config.REDIS_URL,
        'redbeat_lock_timeout': lock_timeout,
    }


def _configure_cors(app):
    if is_development:
        CORS(app)
        logger.info("CORS configured for development: allowing all origins")
        return
    allowed_origins = [o.strip() for o in os.getenv('CORS_ALLOWED_ORIGINS', '').split(',') if o.strip()]
    CORS(app, origins=allowed_origins)
    logger.info("CORS configured for production with allowed origins: %s", allowed_origins)


def create_app(testing=False, config_overrides=None):
    """Create and configure the credit ledger application"""
    app = Flask(__name__)
    app.secret_key = Config.SECRET_KEY
    app.config.update(
        SECRET_KEY=Config.SECRET_KEY,
        SQLALCHEMY_DATABASE_URI=Config.SQLALCHEMY_DATABASE_URI,
        SQLALCHEMY_TRACK_MODIFICATIONS=Config.SQLALCHEMY_TRACK_MODIFICATIONS,
        SQLALCHEMY_ENGINE_OPTIONS=Config.SQLALCHEMY_ENGINE_OPTIONS,
        TESTING=testing,
    )
    app.config.update(_celery_settings())
    if config_overrides:
        app.config.update(config_overrides)

    if not testing:
        try:
            Config.validate()
            logger.info("Configuration validated successfully")
        except Exception as e:
            logger.critical("Configuration validation failed: %s", e)
            raise

    uri = app.config['SQLALCHEMY_DATABASE_URI']
    try:
        init_db(app, create_tables=testing or uri.startswith('sqlite'))
    except Exception as e:
        logger.critical("Failed to initialize the ledger store: %s", e)
        raise

    _configure_cors(app)
    register_blueprints(app)

    @app.route('/health', methods=['GET'])
    def health():
        return jsonify({"status": "ok"}), 200

    return app


def create_celery_app(app=None):
    """Bind the Celery app to a Flask app so tasks run inside its context"""
    return init_app(app or create_app())


if __name__ == '__main__':
    application = create_app()
    create_celery_app(application)
    application.run(
        host=os.getenv('HOST', '0.0.0.0'),
        port=int(os.getenv('PORT', 8000)),
        debug=os.getenv('FLASK_DEBUG', 'False').lower() == 'true'
    )
