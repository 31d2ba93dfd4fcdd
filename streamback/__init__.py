import os
import time
import logging
from logging.handlers import RotatingFileHandler
from flask import Flask
from flask_cors import CORS

from streamback.log_buffer import LogBuffer, LogBufferHandler


def configure_logging(app):
    """Configure application logging"""

    # Set log level based on environment
    log_level = logging.DEBUG if app.config.get('DEBUG', False) else logging.INFO

    package_logger = logging.getLogger('streamback')
    package_logger.setLevel(log_level)

    # Drop handlers from a previous create_app() in the same process
    for handler in list(package_logger.handlers):
        package_logger.removeHandler(handler)
        handler.close()

    # Console handler
    console_handler = logging.StreamHandler()
    console_handler.setLevel(log_level)
    console_formatter = logging.Formatter(
        '[%(asctime)s] %(levelname)s in %(module)s: %(message)s'
    )
    console_handler.setFormatter(console_formatter)
    package_logger.addHandler(console_handler)

    # File handler, only when a log directory is configured
    log_dir = app.config.get('LOG_DIR')
    if log_dir:
        os.makedirs(log_dir, exist_ok=True)
        file_handler = RotatingFileHandler(
            os.path.join(log_dir, 'streamback.log'),
            maxBytes=10485760,  # 10MB
            backupCount=10
        )
        file_handler.setLevel(log_level)
        file_formatter = logging.Formatter(
            '[%(asctime)s] %(levelname)s [%(name)s.%(funcName)s:%(lineno)d] %(message)s'
        )
        file_handler.setFormatter(file_formatter)
        package_logger.addHandler(file_handler)
        app.logger.addHandler(file_handler)

    # Rolling in-memory buffer served by /api/logs
    log_buffer = LogBuffer(app.config.get('LOG_BUFFER_SIZE', 100))
    package_logger.addHandler(LogBufferHandler(log_buffer))
    app.extensions['log_buffer'] = log_buffer

    app.logger.setLevel(log_level)
    app.logger.info(f"Logging configured (level: {logging.getLevelName(log_level)})")

    return log_buffer


def create_app(config_name=None, test_config=None):
    """
    Flask application factory

    Args:
        config_name: Key into streamback.config.config (defaults to FLASK_ENV)
        test_config: Optional mapping applied on top of the loaded config
    """
    app = Flask(__name__)

    # Load configuration
    if config_name is None:
        config_name = os.environ.get('FLASK_ENV', 'production')

    from streamback.config import config, validate_config
    app.config.from_object(config[config_name])
    if test_config:
        app.config.update(test_config)

    # Configure logging
    configure_logging(app)
    logger = logging.getLogger('streamback')

    # Missing or malformed settings stop startup here, not mid-run
    validate_config(app.config)

    CORS(app, resources={r"/api/*": {"origins": "*"}}, send_wildcard=True)

    from streamback.state import RunState
    from streamback.backup.executor import BackupExecutor
    executor = BackupExecutor.from_config(app.config, RunState())
    app.extensions['backup_executor'] = executor
    app.extensions['started_at'] = time.monotonic()

    from streamback.routes import control_routes
    app.register_blueprint(control_routes.bp)

    # Liveness check, independent of run state
    @app.route('/health')
    def health():
        return 'OK', 200

    from streamback.scheduler import init_scheduler, start_scheduler, stop_scheduler
    import atexit

    if app.config.get('SCHEDULER_ENABLED'):
        init_scheduler(executor, app.config['BACKUP_INTERVAL_MINUTES'])
        start_scheduler()

        # Register cleanup function to stop scheduler on app shutdown
        atexit.register(stop_scheduler)
        logger.info(f"Scheduler started: backup every {app.config['BACKUP_INTERVAL_MINUTES']} minutes")
    else:
        logger.info("Scheduler disabled (SCHEDULER_ENABLED=false)")

    logger.info(f"Backing up {len(executor.folders)} folder(s) via {app.config['SOURCE_TYPE']} "
                f"to {app.config['STORAGE_TYPE']} storage (zero-disk streaming)")

    return app
