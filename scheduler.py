from apscheduler.schedulers.background import BackgroundScheduler
from flask import current_app

from utils.fee_rates import expire_stale_rates


def expire_rates_job(app):
    with app.app_context():
        try:
            expired = expire_stale_rates()
            if expired:
                current_app.logger.info("Fee rate sweep expired %s pending proposal(s)", expired)
        except Exception:
            current_app.logger.exception("Fee rate expiry sweep failed")


def start_scheduler(app):
    """Start background jobs; returns None when nothing needs scheduling."""
    if not app.config.get('FEE_RATE_PENDING_TTL_DAYS'):
        return None
    minutes = int(app.config.get('FEE_RATE_EXPIRY_SWEEP_MINUTES', 60) or 60)
    scheduler = BackgroundScheduler()
    scheduler.add_job(lambda: expire_rates_job(app), 'interval', minutes=minutes, id='fee_rate_expiry', replace_existing=True)
    scheduler.start()
    app.logger.info("Fee rate expiry sweep scheduled every %s minute(s)", minutes)
    return scheduler
