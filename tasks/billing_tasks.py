import logging
from datetime import timedelta
from typing import Optional

from celery.schedules import crontab

from tasks import celery_app
from database import db
from config import Config
from controllers.ledger_controller import CreditLedger
from models.credit_model import CreditError
from utils.credits import utcnow

logger = logging.getLogger('billing_tasks')


@celery_app.task(name='billing.grant_monthly_credits', ignore_result=True)
def grant_monthly_credits(limit: Optional[int] = None):
    """Daily scheduler task that applies the monthly tier grant to due users.

    - A user is due when their tier grants credits and their last grant is at
      least one cycle (Config.MONTHLY_GRANT_CYCLE_DAYS) old, or never happened.
    - Each user is granted in their own database transaction; one failure
      does not stop the sweep.
    - Rollover: balance above the tier's cap is forfeited before the grant.
    """
    now = utcnow()
    cutoff = now - timedelta(days=Config.MONTHLY_GRANT_CYCLE_DAYS)
    ledger = CreditLedger.from_session(db.session)

    with ledger.store.reading():
        user_ids = ledger.store.users_due_for_monthly_grant(cutoff)
    if limit:
        user_ids = user_ids[:limit]

    granted = 0
    skipped = 0
    failed = 0
    for user_id in user_ids:
        try:
            tx = ledger.apply_monthly_grant(user_id, now=now)
        except CreditError as e:
            failed += 1
            logger.error('Failed granting monthly credits to user %s: %s', user_id, e)
            continue
        if tx is None:
            skipped += 1
        else:
            granted += 1
    logger.info(
        'Monthly credit grant complete. Users granted: %s, skipped: %s, failed: %s',
        granted, skipped, failed,
    )
    return {'granted': granted, 'skipped': skipped, 'failed': failed}


# Register Celery beat schedule (runs daily at 03:00 UTC)
celery_app.conf.beat_schedule = getattr(celery_app.conf, 'beat_schedule', {}) | {
    'monthly-credits-daily-check': {
        'task': 'billing.grant_monthly_credits',
        'schedule': crontab(minute=0, hour=3),
    }
}
