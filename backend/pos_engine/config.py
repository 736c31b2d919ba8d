# backend/pos_engine/config.py
from __future__ import annotations
import os


class Config:
    # Optional "SECRET_KEY", with default dev key
    SECRET_KEY = os.environ.get("SECRET_KEY", "dev-secret-key-change-me")

    # SQLite DB stored in backend/instance/pos_engine.sqlite3
    SQLALCHEMY_DATABASE_URI = os.environ.get(
        "DATABASE_URL", #optional alternative location
        "sqlite:///pos_engine.sqlite3", #default local location
    )
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    # Invoice numbering: INV-001, INV-002, ... INV-1000
    POS_INVOICE_PREFIX = os.environ.get("POS_INVOICE_PREFIX", "INV")
    POS_INVOICE_PAD = int(os.environ.get("POS_INVOICE_PAD", "3"))

    # Retries for lock/deadlock failures inside a store transaction
    POS_RETRY_ATTEMPTS = int(os.environ.get("POS_RETRY_ATTEMPTS", "3"))

    POS_LOG_LEVEL = os.environ.get("POS_LOG_LEVEL", "INFO")
