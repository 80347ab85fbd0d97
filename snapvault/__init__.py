import os
import sys
import logging
from logging.handlers import RotatingFileHandler
from flask import Flask
from flask_sqlalchemy import SQLAlchemy


# Initialize extensions
db = SQLAlchemy()


CONSOLE_HANDLER = 'snapvault.console'
FILE_HANDLER = 'snapvault.file'


def _find_handler(logger, name):
    return next((h for h in logger.handlers if h.get_name() == name), None)


def configure_logging(app):
    """
    Configure logging for one CLI invocation.

    Handlers are attached once to the root logger, which the snapvault.*
    module loggers and app.logger propagate to. Building another app in the
    same process only updates levels, or swaps the file handler when
    LOG_DIR moved.
    """

    log_dir = app.config['LOG_DIR']
    os.makedirs(log_dir, exist_ok=True)
    log_file = os.path.abspath(os.path.join(log_dir, 'snapvault.log'))

    # Set log level based on environment
    log_level = logging.DEBUG if app.config.get('DEBUG', False) else logging.INFO

    root = logging.getLogger()
    root.setLevel(log_level)

    # Console handler (stderr, so command output on stdout stays clean)
    console_handler = _find_handler(root, CONSOLE_HANDLER)
    if console_handler is None:
        console_handler = logging.StreamHandler()
        console_handler.set_name(CONSOLE_HANDLER)
        console_handler.setFormatter(logging.Formatter(
            '[%(asctime)s] %(levelname)s in %(module)s: %(message)s'
        ))
        root.addHandler(console_handler)
    elif console_handler.stream is not sys.stderr:
        # stderr was replaced since the handler was made (click runner, capture)
        console_handler.stream = sys.stderr
    console_handler.setLevel(log_level)

    # File handler
    file_handler = _find_handler(root, FILE_HANDLER)
    if file_handler is not None and file_handler.baseFilename != log_file:
        root.removeHandler(file_handler)
        file_handler.close()
        file_handler = None
    if file_handler is None:
        file_handler = RotatingFileHandler(
            log_file,
            maxBytes=10485760,  # 10MB
            backupCount=10
        )
        file_handler.set_name(FILE_HANDLER)
        file_handler.setFormatter(logging.Formatter(
            '[%(asctime)s] %(levelname)s [%(name)s.%(funcName)s:%(lineno)d] %(message)s'
        ))
        root.addHandler(file_handler)
    file_handler.setLevel(log_level)

    # Flask app logger propagates to root; no handlers of its own
    app.logger.setLevel(log_level)

    app.logger.debug(f"Logging configured (level: {logging.getLevelName(log_level)}, file: {log_file})")


def create_app(config_name=None):
    """
    Application factory.

    The app is the container for the database (mount ledger and run history),
    logging, and the read-only status routes. The CLI builds one per
    invocation and runs the backup cycle inside its app context.
    """
    app = Flask(__name__)

    # Load configuration
    if config_name is None:
        config_name = os.environ.get('SNAPVAULT_ENV', 'production')

    from snapvault.config import config
    app.config.from_object(config[config_name])

    # Configure logging
    configure_logging(app)

    # Ensure the sqlite directory exists
    db_uri = app.config['SQLALCHEMY_DATABASE_URI']
    if db_uri.startswith('sqlite:///') and ':memory:' not in db_uri:
        os.makedirs(os.path.dirname(db_uri.replace('sqlite:///', '')), exist_ok=True)

    db.init_app(app)

    from snapvault.routes import status_routes
    app.register_blueprint(status_routes.bp)

    # Create tables if they don't exist
    from snapvault import models
    with app.app_context():
        db.create_all()

    return app
