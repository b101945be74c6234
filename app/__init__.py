"""
Flask Application Factory
Initializes and configures the Flask application
"""

import os
from flask import Flask, jsonify, request
from flask_login import LoginManager, current_user, logout_user
from flask_migrate import Migrate
from flask_wtf.csrf import CSRFProtect, CSRFError
from flask_limiter import Limiter
from flask_limiter.util import get_remote_address
from werkzeug.exceptions import HTTPException
from config import config
from app.models import db, Merchant
from app.services.zimra_client import ZimraApiError, FiscalDayError, ZimraValidationError
from app.utils.error_logger import log_error
from app.utils.helpers import is_after_cutoff_time

# Initialize extensions
login_manager = LoginManager()
migrate = Migrate()
csrf = CSRFProtect()
limiter = Limiter(key_func=get_remote_address, default_limits=["2000 per day", "500 per hour"])


def create_app(config_name='default'):
    """
    Application factory pattern
    Creates and configures Flask application
    """
    app = Flask(__name__)

    # Load configuration
    app.config.from_object(config[config_name])

    # Validate secret key in production
    if config_name == 'production':
        if not app.config.get('SECRET_KEY') or app.config['SECRET_KEY'] == 'dev-secret-key-change-in-production':
            raise ValueError("Production requires a secure SECRET_KEY. Set it via environment variable.")
        if len(app.config['SECRET_KEY']) < 32:
            raise ValueError("SECRET_KEY must be at least 32 characters for production.")

    # Initialize extensions
    db.init_app(app)
    login_manager.init_app(app)
    migrate.init_app(app, db)
    csrf.init_app(app)
    limiter.init_app(app)

    # Initialize Sentry if configured
    if app.config.get('SENTRY_DSN'):
        import sentry_sdk
        from sentry_sdk.integrations.flask import FlaskIntegration
        sentry_sdk.init(
            dsn=app.config['SENTRY_DSN'],
            integrations=[FlaskIntegration()],
            traces_sample_rate=0.1,
            environment=config_name
        )
        app.logger.info("Sentry error tracking initialized")

    @login_manager.user_loader
    def load_user(merchant_pk):
        """Load merchant by primary key for Flask-Login"""
        return db.session.get(Merchant, int(merchant_pk))

    @login_manager.unauthorized_handler
    def unauthorized():
        return jsonify({'error': 'Authentication required'}), 401

    os.makedirs(app.config['LOG_FOLDER'], exist_ok=True)

    # Register blueprints
    from app.routes.auth import bp as auth_bp
    app.register_blueprint(auth_bp, url_prefix='/api/auth')

    from app.routes.zimra import bp as zimra_bp
    app.register_blueprint(zimra_bp, url_prefix='/api/zimra')

    from app.routes.receipts import bp as receipts_bp
    app.register_blueprint(receipts_bp, url_prefix='/api/receipts')

    from app.routes.settings import bp as settings_bp
    app.register_blueprint(settings_bp, url_prefix='/api/settings')

    # Loyverse posts without a session, so no CSRF token
    from app.routes.webhooks import bp as webhooks_bp
    csrf.exempt(webhooks_bp)
    app.register_blueprint(webhooks_bp, url_prefix='/webhooks')

    @app.route('/health')
    def health():
        return jsonify({'status': 'ok'})

    # Error handlers
    @app.errorhandler(ZimraValidationError)
    def handle_validation_error(error):
        return jsonify({'success': False, 'error': str(error)}), 400

    @app.errorhandler(FiscalDayError)
    def handle_fiscal_day_error(error):
        return jsonify({'success': False, 'error': str(error)}), 409

    @app.errorhandler(ZimraApiError)
    def handle_zimra_error(error):
        log_error(error, status_code=502)
        return jsonify({
            'success': False,
            'error': str(error),
            'status_code': error.status_code,
            'details': error.response_data,
        }), 502

    @app.errorhandler(CSRFError)
    def handle_csrf_error(error):
        return jsonify({
            'error': 'CSRF token missing or invalid',
            'message': 'Please refresh the page and try again'
        }), 400

    @app.errorhandler(HTTPException)
    def handle_http_error(error):
        return jsonify({'error': error.name, 'message': error.description}), error.code

    @app.errorhandler(Exception)
    def internal_error(error):
        db.session.rollback()
        app.logger.exception(f"Unhandled error on {request.path}")
        log_error(error, status_code=500)
        return jsonify({'error': 'Internal server error'}), 500

    # Request hooks
    @app.before_request
    def before_request():
        """Log merchants out once the trading day has passed the cutoff"""
        from flask import session
        session.permanent = True

        if not app.config.get('ENFORCE_CUTOFF') or not current_user.is_authenticated:
            return None

        if is_after_cutoff_time(cutoff_hour=app.config['CUTOFF_HOUR'],
                                testing_mode=app.config['CUTOFF_TESTING_MODE']):
            app.logger.info(f"Cutoff reached, logging out merchant {current_user.merchant_id}")
            logout_user()
            return jsonify({
                'error': 'Session closed',
                'message': f"Sessions close at {app.config['CUTOFF_HOUR']:02d}:00"
            }), 401
        return None

    @app.after_request
    def add_security_headers(response):
        """Add security headers to all responses"""
        response.headers['Content-Security-Policy'] = "default-src 'none'; frame-ancestors 'none'"

        # Prevent clickjacking
        response.headers['X-Frame-Options'] = 'DENY'

        # Prevent MIME type sniffing
        response.headers['X-Content-Type-Options'] = 'nosniff'

        # Referrer policy
        response.headers['Referrer-Policy'] = 'strict-origin-when-cross-origin'

        return response

    return app
