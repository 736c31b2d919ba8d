# backend/pos_engine/__init__.py
import logging
from pathlib import Path

from flask import Flask

from .config import Config
from .extensions import db, migrate


MIGRATIONS_DIR = Path(__file__).resolve().parent.parent / "migrations"


def _configure_logging(app: Flask) -> None:
    level = getattr(logging, str(app.config.get("POS_LOG_LEVEL", "INFO")).upper(), logging.INFO)
    logger = logging.getLogger("pos_engine")
    logger.setLevel(level)
    if not logger.handlers:
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter(
            "%(asctime)s %(levelname)s [%(name)s] %(message)s"
        ))
        logger.addHandler(handler)
    app.logger.setLevel(level)


def create_app(config_overrides: dict | None = None) -> Flask:
    app = Flask(__name__, instance_relative_config=True)
    app.config.from_object(Config)
    if config_overrides:
        app.config.update(config_overrides)

    _configure_logging(app)

    # Initialize extensions
    db.init_app(app)
    migrate.init_app(app, db, directory=str(MIGRATIONS_DIR))

    # Import models so Alembic can discover metadata reliably
    from . import models  # noqa: F401

    # Register CLI commands
    from .cli import register_commands
    register_commands(app)

    return app
