"""Root pytest configuration.

The application package resides in the nested ``itemize/`` directory.
Test defaults are set here, before any ``itemize`` module is imported,
so the engine, broker and storage are built for an isolated run.
"""

from __future__ import annotations

import os
import tempfile

os.environ.setdefault("ENVIRONMENT", "test")
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("DRAMATIQ_BROKER_URL", "stub")
os.environ.setdefault("STORAGE_BACKEND", "filesystem")
os.environ.setdefault("STORAGE_DIRECTORY", tempfile.mkdtemp(prefix="itemize-test-storage-"))
os.environ.setdefault("INTERNAL_API_SECRET", "test-internal-secret")
os.environ.setdefault("SECRET_KEY", "test-secret-key")
os.environ.setdefault("DEV_AUTH_BYPASS", "false")
