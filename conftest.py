"""
Pytest configuration.

Settings are read at import time by shared.db, so the environment is set
here before any test module imports application code.
"""
import os

os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("AUTH_SESSION_SECRET", "test-session-secret")
os.environ.pop("AZURE_STORAGE_CONNECTION_STRING", None)
