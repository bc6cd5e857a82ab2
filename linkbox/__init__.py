import os
import atexit

from flask import Flask

from linkbox.logging_config import configure_logging, get_logger
from linkbox.models import db

logger = get_logger(__name__)


def _run_outbox(app):
    from linkbox.outbox.dispatcher import get_dispatcher

    with app.app_context():
        try:
            get_dispatcher().run_until_idle(
                budget_seconds=app.config.get("OUTBOX_RUN_BUDGET_SECONDS", 50),
                trigger="scheduler",
            )
        except Exception as e:
            logger.error("Scheduled outbox run failed", error=str(e), exc_info=True)
        finally:
            db.session.remove()


def _purge_nonces(app):
    from linkbox.tokens.replay_guard import ReplayGuard

    with app.app_context():
        try:
            ReplayGuard.purge_expired()
        except Exception as e:
            logger.error("Nonce purge failed", error=str(e), exc_info=True)
        finally:
            db.session.remove()


def init_scheduler(app):
    """Poll the outbox and garbage-collect consumed nonces in the background."""
    from apscheduler.schedulers.background import BackgroundScheduler
    from apscheduler.executors.pool import ThreadPoolExecutor

    if not app.config.get("OUTBOX_SCHEDULER_ENABLED"):
        logger.info("Outbox scheduler disabled by configuration")
        return None

    # --- Prevent scheduler duplication in multi-worker environments ---
    # Only run the scheduler on one instance
    if os.environ.get("WERKZEUG_RUN_MAIN") != "true" and not os.environ.get("IS_SCHEDULER"):
        logger.info("Skipping scheduler startup on this worker")
        return None

    executors = {"default": ThreadPoolExecutor(2)}
    scheduler = BackgroundScheduler(executors=executors)

    scheduler.add_job(
        func=_run_outbox,
        args=[app],
        trigger="interval",
        seconds=app.config.get("OUTBOX_POLL_INTERVAL_SECONDS", 60),
        id="outbox_dispatch",
        max_instances=1,
        coalesce=True,
        replace_existing=True,
    )
    scheduler.add_job(
        func=_purge_nonces,
        args=[app],
        trigger="interval",
        hours=1,
        id="purge_consumed_nonces",
        replace_existing=True,
    )

    scheduler.start()
    atexit.register(lambda: scheduler.shutdown(wait=False))

    logger.info("Scheduler started", poll_interval=app.config.get("OUTBOX_POLL_INTERVAL_SECONDS"))
    return scheduler


def create_app(environment=None, config_overrides=None, email_sender=None, accounting_client=None):
    """
    Application factory.

    Args:
        environment: 'local', 'sandbox', 'production' or 'testing'; defaults to FLASK_ENV/ENVIRONMENT
        config_overrides: dict applied after the config class (tests use this for the database URI)
        email_sender / accounting_client: collaborators for the built-in job handlers
    """
    from linkbox.config import get_config
    from linkbox.db_config import configure_database
    from linkbox.outbox.handlers import register_default_handlers
    from linkbox.outbox.registry import HandlerRegistry
    from linkbox.api import api_bp

    config_class = get_config(environment)

    app = Flask(__name__)
    app.config.from_object(config_class)
    configure_database(app, config_class.ENV)
    if config_overrides:
        app.config.update(config_overrides)

    log_file = app.config.get("LOG_FILE")
    if log_file:
        os.makedirs(os.path.dirname(os.path.abspath(log_file)), exist_ok=True)
    configure_logging(log_level=app.config.get("LOG_LEVEL", "INFO"), log_file=log_file)

    if not app.config.get("TOKEN_SECRET"):
        raise RuntimeError(f"TOKEN_SECRET must be set for the {config_class.ENV} environment")

    logger.info(f"Starting application in {config_class.ENV} environment")
    logger.info(f"Database: {app.config.get('SQLALCHEMY_DATABASE_URI', 'Not set').split('@')[-1][:50]}")

    db.init_app(app)

    # Local SQLite gets its tables on startup; other databases use migrations/create_outbox_tables.py
    if config_class.ENV == "local":
        with app.app_context():
            db.create_all()

    registry = HandlerRegistry()
    register_default_handlers(
        registry, app.config, email_sender=email_sender, accounting_client=accounting_client
    )
    app.extensions["linkbox.registry"] = registry

    app.register_blueprint(api_bp)

    init_scheduler(app)

    return app
