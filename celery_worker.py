#!/usr/bin/env python
"""
Celery worker entrypoint for the credit ledger's scheduled jobs.

Usage:
    celery -A celery_worker.celery_app worker -Q billing --loglevel=info
    celery -A celery_worker.celery_app beat --loglevel=info
"""

import logging
import sentry_sdk
from sentry_sdk.integrations.celery import CeleryIntegration
from app import create_app, create_celery_app
from config import Config

# Initialize Sentry SDK for Celery worker
if Config.SENTRY_DSN:
    sentry_sdk.init(
        dsn=Config.SENTRY_DSN,
        send_default_pii=False,
        traces_sample_rate=0.2,
        integrations=[CeleryIntegration()],
    )
    logging.info("Sentry SDK initialized successfully for Celery worker")
else:
    logging.warning("SENTRY_DSN not found in environment variables. Sentry monitoring is disabled for Celery worker.")

flask_app = create_app()
celery_app = create_celery_app(flask_app)

if __name__ == '__main__':
    # Normally run via the celery command line shown above
    celery_app.start()
