"""Web interface for the backfill engine: Flask app factory."""

import logging
import os

from flask import Flask, jsonify
from flask_cors import CORS
from flask_limiter import Limiter
from flask_limiter.util import get_remote_address

from config.settings import settings
from src.routes.backfill import backfill_bp
from src.utils.database import init_database

logger = logging.getLogger(__name__)


def configure_logging(level: str = None):
    logging.basicConfig(
        level=getattr(logging, (level or settings.agent.log_level).upper(), logging.INFO),
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
    )


def create_app(service=None, run_recovery=None, config_overrides=None):
    """
    Build the Flask app.

    Args:
        service: BackfillService to expose; built from settings if omitted
        run_recovery: Run startup recovery; defaults to BACKFILL_AUTO_RECOVER
        config_overrides: Extra Flask config (e.g. for tests)
    """
    app = Flask(__name__)
    app.config['ADMIN_API_KEY'] = settings.web.admin_api_key
    app.config['RATELIMIT_STORAGE_URI'] = os.getenv('REDIS_URL') or 'memory://'
    if config_overrides:
        app.config.update(config_overrides)

    cors_origins = [o.strip() for o in os.getenv('CORS_ORIGINS', '').split(',') if o.strip()]
    if cors_origins:
        CORS(app, origins=cors_origins,
             allow_headers=['Content-Type', 'X-Admin-Key'],
             methods=['GET', 'POST', 'OPTIONS'])
        logger.info(f"CORS enabled for: {cors_origins}")

    if service is None:
        from src.services.backfill_service import build_backfill_service

        init_database()
        service = build_backfill_service()
    app.extensions['backfill_service'] = service

    app.register_blueprint(backfill_bp)

    # Starting jobs is the expensive operation; reads use the default limits
    limiter = Limiter(
        key_func=get_remote_address,
        app=app,
        default_limits=["1000 per hour"],
        storage_uri=app.config['RATELIMIT_STORAGE_URI'],
        strategy="moving-window",
        headers_enabled=True,
    )
    limiter.limit("30 per hour")(app.view_functions['backfill.start_job'])

    @app.route('/health')
    def health():
        return jsonify({"status": "ok"})

    if run_recovery is None:
        run_recovery = settings.backfill.auto_recover
    if run_recovery:
        try:
            service.recover()
        except Exception as e:
            # The API stays up; /api/backfill/recovery-status reports the failure
            logger.error(f"❌ Startup recovery failed: {e}", exc_info=True)

    logger.info("✅ Backfill web interface initialized")
    return app


if __name__ == '__main__':
    configure_logging()
    create_app().run(debug=settings.web.debug, host=settings.web.host, port=settings.web.port)
