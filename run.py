"""
Application Entry Point
Initializes and runs the Flask application with background services
"""

import os
import logging
import click
from app import create_app, db
from app.services.budget_alert_service import BudgetAlertService
from app.services.fiscal_receipt_service import FiscalReceiptService
from app.services.webhook_queue_service import WebhookQueueService
from app.services.zimra_client import FiscalDayStatus, get_zimra_client

# Determine configuration environment
config_name = os.environ.get('FLASK_ENV', 'development')
app = create_app(config_name)

# Setup logging
if not os.path.exists(app.config['LOG_FOLDER']):
    os.makedirs(app.config['LOG_FOLDER'])

logging.basicConfig(
    level=getattr(logging, app.config['LOG_LEVEL']),
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
    handlers=[
        logging.FileHandler(os.path.join(app.config['LOG_FOLDER'], 'app.log')),
        logging.StreamHandler()
    ]
)

logger = logging.getLogger(__name__)


@app.shell_context_processor
def make_shell_context():
    """Make database and models available in Flask shell"""
    from app import models
    return {
        'db': db,
        'Merchant': models.Merchant,
        'Sale': models.Sale,
        'FiscalDay': models.FiscalDay,
        'ZimraCredentials': models.ZimraCredentials,
        'WebhookQueue': models.WebhookQueue
    }


@app.cli.command()
def init_db():
    """Initialize the database tables"""
    logger.info("Initializing database...")
    db.create_all()
    logger.info("Database initialized successfully!")


@app.cli.command()
@click.argument('merchant_id')
@click.argument('loyverse_token')
@click.option('--name', default=None, help='Merchant display name')
def create_merchant(merchant_id, loyverse_token, name):
    """Create a merchant that can log in with its Loyverse token"""
    from app.models import Merchant

    if Merchant.query.filter_by(merchant_id=merchant_id).first():
        logger.warning(f"Merchant {merchant_id} already exists")
        return

    db.session.add(Merchant(merchant_id=merchant_id, loyverse_token=loyverse_token, merchant_name=name))
    db.session.commit()
    logger.info(f"Merchant {merchant_id} created")


@app.cli.command()
def process_webhooks():
    """Manually process the Loyverse webhook queue"""
    logger.info("Processing webhook queue...")
    result = WebhookQueueService(app).process_queue()
    logger.info(f"Webhook queue processed: {result}")


@app.cli.command()
def check_budget_alerts():
    """Manually run the hourly budget check"""
    alerts = BudgetAlertService(app).check_all()
    logger.info(f"Budget check complete, {len(alerts)} alert(s) raised")


@app.cli.command()
def ping_devices():
    """Ping the fiscal devices of every active merchant"""
    from app.models import Merchant

    for merchant in Merchant.query.filter_by(is_active=True).all():
        device = merchant.devices.filter_by(active=True).first()
        result = get_zimra_client(app.config, merchant, device).ping_all_devices(merchant.merchant_id)
        logger.info(f"{merchant.merchant_id}: {result}")


@app.cli.command()
def resubmit_pending():
    """Resubmit failed receipts for every merchant with an open fiscal day"""
    from app.models import Merchant

    for merchant in Merchant.query.filter_by(is_active=True).all():
        device = merchant.devices.filter_by(active=True).first()
        client = get_zimra_client(app.config, merchant, device)
        if client.fiscal_day_status != FiscalDayStatus.OPEN:
            logger.info(f"{merchant.merchant_id}: fiscal day not open, skipping")
            continue
        successful, failed = FiscalReceiptService(client, merchant, device).resubmit_pending()
        logger.info(f"{merchant.merchant_id}: {len(successful)} resubmitted, {len(failed)} failed")


def start_background_services():
    """Start background services for the webhook queue and budget alerts"""
    logger.info("Starting background services...")

    webhook_service = WebhookQueueService(app)
    budget_service = BudgetAlertService(app)

    if app.config['WEBHOOK_QUEUE_ENABLED']:
        webhook_service.start_scheduler()
        logger.info("Webhook queue service started")

    if app.config['BUDGET_ALERTS_ENABLED']:
        budget_service.start_scheduler()
        logger.info("Budget alert service started")


if __name__ == '__main__':
    # Check if running in development mode
    is_dev = os.environ.get('FLASK_ENV', 'development') == 'development'
    use_reloader = os.environ.get('FLASK_USE_RELOADER', 'true').lower() == 'true'

    with app.app_context():
        # Create tables if they don't exist
        db.create_all()
        logger.info("Database tables created")

        # Start background services (only if not using reloader to avoid duplicate services)
        if not use_reloader or os.environ.get('WERKZEUG_RUN_MAIN') == 'true':
            start_background_services()

    logger.info("Starting fiscal POS service...")
    logger.info(f"Debug mode: {is_dev}, Auto-reload: {use_reloader}")

    app.run(
        host='0.0.0.0',
        port=int(os.environ.get('PORT', 5001)),
        debug=is_dev,
        use_reloader=use_reloader
    )
