"""
Loyalty points core
Flask application factory
"""
import os
import logging
from flask import Flask

from .extensions import db, migrate
from .config import get_config, validate_config
from .utils.logging_config import setup_logging

logger = logging.getLogger(__name__)


def create_app(config_name: str = None) -> Flask:
    """
    Application factory for creating Flask app instances.

    Args:
        config_name: Configuration environment (development, production, testing)

    Returns:
        Configured Flask application
    """
    if config_name is None:
        config_name = os.getenv('FLASK_ENV', 'development')

    # Setup logging before anything else
    setup_logging()

    app = Flask(__name__)
    app.config.from_object(get_config(config_name))
    validate_config(config_name)

    # Initialize extensions
    db.init_app(app)
    migrate.init_app(app, db)

    # Build and validate the tier table once
    from .services.tier_service import TierService
    app.extensions['loyalty_tiers'] = TierService.from_config(app.config)

    # Register CLI commands
    from .commands import init_app as init_commands
    init_commands(app)

    # Background scheduler (expiry sweep, streak reset)
    from .utils.scheduler import init_scheduler
    init_scheduler(app)

    # Health check endpoint
    @app.route('/health')
    def health_check():
        from .utils.scheduler import get_next_run_times
        return {
            'status': 'healthy',
            'service': 'loyalty',
            'scheduled_jobs': get_next_run_times(),
        }

    logger.debug(f'Loyalty app created ({config_name})')
    return app
