"""
Budget Alert Service
Compares the last hour of sales against each merchant's target window
"""

import logging
from datetime import datetime, timedelta
from apscheduler.schedulers.background import BackgroundScheduler
from app.models import db, Sale, BudgetAlert, BudgetAlertSetting

logger = logging.getLogger(__name__)

HOURLY = 'Hourly'
CHECK_WINDOW_MINUTES = 5

DEFAULT_MIN_TARGET = 0.01
DEFAULT_MAX_TARGET = 100

BASIS_FIELDS = {
    'By Tax': 'vat_amount',
    'By SalesExc': 'total',
    'By SalesInc': 'total_inc',
}


def calculate_total(sales, basis):
    """
    Sum sales on the configured calculation basis

    Unknown bases sum the VAT-exclusive total.
    """
    field = BASIS_FIELDS.get(basis, 'total')
    return sum(float(getattr(sale, field) or 0) for sale in sales)


def resolve_targets(setting):
    """
    Minimum and maximum targets for a setting

    Explicit targets win; otherwise the legacy hourly target is widened
    by 20% either way; otherwise the defaults apply.

    Returns:
        tuple: (min_target, max_target)
    """
    if setting.target_min is not None:
        min_target = setting.target_min
    elif setting.hourly_target is not None:
        min_target = setting.hourly_target * 0.8
    else:
        min_target = DEFAULT_MIN_TARGET

    if setting.target_max is not None:
        max_target = setting.target_max
    elif setting.hourly_target is not None:
        max_target = setting.hourly_target * 1.2
    else:
        max_target = DEFAULT_MAX_TARGET

    return min_target, max_target


def hour_checkpoint(now):
    return now.strftime('%H:00:00')


class BudgetAlertService:
    """Service for checking sales against merchant budget targets"""

    def __init__(self, app):
        self.app = app
        self.scheduler = None

    def process_hourly_alert(self, setting, now=None):
        """
        Evaluate one merchant's hourly target

        Runs in the first minutes of an hour, at most once per hour
        checkpoint, and only when there were sales in the last hour.

        Args:
            setting: BudgetAlertSetting object
            now: evaluation time (defaults to now)

        Returns:
            BudgetAlert or None
        """
        now = now or datetime.now()
        checkpoint = hour_checkpoint(now)

        if setting.last_processed_hour == checkpoint:
            return None
        if now.minute > CHECK_WINDOW_MINUTES:
            return None

        sales = Sale.query.filter(
            Sale.merchant_id == setting.merchant_id,
            Sale.timestamp >= now - timedelta(hours=1),
            Sale.timestamp <= now
        ).all()

        if not sales:
            return None

        basis = setting.calculation_basis or 'By Tax'
        total = calculate_total(sales, basis)
        min_target, max_target = resolve_targets(setting)

        alert = None
        if total < min_target:
            alert = BudgetAlert(
                merchant_id=setting.merchant_id,
                alert_type='below_minimum',
                message=f"Hourly sales {basis} ({total:.2f}) below minimum target of {min_target:.2f}",
            )
        elif total > max_target:
            alert = BudgetAlert(
                merchant_id=setting.merchant_id,
                alert_type='above_maximum',
                message=f"Hourly sales {basis} ({total:.2f}) above maximum target of {max_target:.2f}",
            )

        if alert:
            alert.total_amount = total
            alert.target_min = min_target
            alert.target_max = max_target
            db.session.add(alert)
            logger.warning(f"Budget alert for merchant {setting.merchant_id}: {alert.message}")

        setting.last_processed_hour = checkpoint
        setting.last_check_time = now
        db.session.commit()
        return alert

    def check_all(self, now=None):
        """Run the hourly check for every enabled setting"""
        with self.app.app_context():
            settings = BudgetAlertSetting.query.filter_by(enabled=True).all()
            triggered = []

            for setting in settings:
                if setting.target_period and setting.target_period != HOURLY:
                    continue
                try:
                    alert = self.process_hourly_alert(setting, now)
                    if alert:
                        triggered.append(alert)
                except Exception as e:
                    db.session.rollback()
                    logger.error(f"Error checking budget for merchant {setting.merchant_id}: {e}")

            if triggered:
                logger.info(f"Budget check raised {len(triggered)} alert(s)")
            return triggered

    def start_scheduler(self):
        """Start background scheduler for budget checks"""
        if self.scheduler:
            logger.warning("Budget alert scheduler already running")
            return

        if not self.app.config.get('BUDGET_ALERTS_ENABLED'):
            logger.info("Budget alerts are disabled, not starting scheduler")
            return

        self.scheduler = BackgroundScheduler()

        interval = self.app.config.get('BUDGET_ALERT_INTERVAL_SECONDS', 60)

        self.scheduler.add_job(
            func=self.check_all,
            trigger='interval',
            seconds=interval,
            id='budget_alerts'
        )

        self.scheduler.start()
        logger.info(f"Budget alert scheduler started. Checking every {interval} seconds")

    def stop_scheduler(self):
        """Stop the scheduler"""
        if self.scheduler:
            self.scheduler.shutdown()
            self.scheduler = None
            logger.info("Budget alert scheduler stopped")
