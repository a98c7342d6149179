import logging
from flask import current_app
from extensions import scheduler
from allocation import reconcile_pending
from feature_store import FeatureStoreError, get_feature_store
from ledger import DonationLedger
from utils import announce_need_update

logger = logging.getLogger(__name__)


def init_scheduler(app):
    """ Starts the background clock, after one catch-up pass for what the last run left pending """
    # Note: We do NOT create a new APScheduler() here.
    # The one from extensions.py was already attached in create_app().
    with app.app_context():
        try:
            settled = reconcile_pending_donations()
        except FeatureStoreError as e:
            logger.warning(f"Startup reconciliation skipped: {e}")
            settled = 0

    if not scheduler.running:
        scheduler.start()
    logger.info(f"Scheduler started ({settled} donation(s) reconciled at startup): watching for unreconciled donations...")
    return settled


def reconcile_pending_donations():
    """
    Retries remaining-need updates that failed while a batch was processed.
    Must run inside an app context.
    """
    store = get_feature_store()
    ledger = DonationLedger(store)
    return reconcile_pending(
        store,
        ledger,
        limit=current_app.config.get('RECONCILE_BATCH_SIZE', 50),
        max_attempts=current_app.config.get('RECONCILE_MAX_ATTEMPTS'),
        on_need_updated=announce_need_update,
    )

# ==========================================
#  TASK: RECONCILE REMAINING NEED
# ==========================================
# Runs every 15 minutes
@scheduler.task('interval', id='reconcile_needs', minutes=15)
def reconcile_needs_job():
    # We must use scheduler.app.app_context() because this runs in the background
    with scheduler.app.app_context():
        try:
            reconcile_pending_donations()
        except Exception as e:
            logger.error(f"Reconciler run failed: {e}")
