import logging

from celery import Celery

from config import Config

logger = logging.getLogger('celery_tasks')

celery_app = Celery('credits', broker=Config.REDIS_URL, backend=Config.REDIS_URL)

celery_app.conf.update(
    task_serializer='json',
    accept_content=['json'],
    result_serializer='json',
    enable_utc=True,
    timezone='UTC',
    # The monthly sweep walks every subscribed user
    task_time_limit=1800,
    task_soft_time_limit=1500,
    worker_prefetch_multiplier=1,
    task_acks_late=True,
    task_routes={'billing.*': {'queue': 'billing'}},
)

# Set by init_app
flask_app = None

_CELERY_KEY_PREFIXES = ('broker_', 'result_', 'beat_', 'redbeat_')


def init_app(app):
    """Bind the Celery app to a Flask app so every task runs in its app context."""
    global flask_app
    flask_app = app

    celery_app.conf.update({
        key: value for key, value in app.config.items()
        if key.startswith(_CELERY_KEY_PREFIXES) or key in ('accept_content', 'enable_utc')
    })

    class ContextTask(celery_app.Task):
        def __call__(self, *args, **kwargs):
            with app.app_context():
                return self.run(*args, **kwargs)

    celery_app.Task = ContextTask
    logger.info("Celery bound to Flask app %s", app.name)
    return celery_app


# Registers the billing tasks; must stay below the celery_app definition
from tasks import billing_tasks  # noqa: E402,F401
