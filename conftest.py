# conftest.py

import os
import tempfile
import uuid

import pytest

# Set testing environment BEFORE importing the app factory so TestingConfig is selected
os.environ["FLASK_ENV"] = "testing"

from hub_app import create_app  # noqa: E402
from hub_app.models import db  # noqa: E402


@pytest.fixture(scope="function")
def app(tmp_path):
    """Create and configure a test Flask application on an isolated SQLite file"""
    db_fd, temp_db = tempfile.mkstemp(suffix=f"_{uuid.uuid4().hex[:8]}.db")

    try:
        flask_app = create_app(
            overrides={
                "TESTING": True,
                "SQLALCHEMY_DATABASE_URI": f"sqlite:///{temp_db}",
                "SECRET_KEY": "test-secret-key-for-testing-only",
                "ENABLE_FILE_LOGGING": False,
                "ENABLE_CONSOLE_LOGGING": False,
                "INTEGRATIONS_WORKER_ENABLED": False,
                "INTEGRATIONS_UPLOAD_DIR": str(tmp_path / "uploads"),
                "CELERY_SQLITE_PATH": str(tmp_path / "celery.sqlite"),
                "CELERY_CONFIG": {"task_always_eager": True, "task_eager_propagates": True},
            }
        )

        with flask_app.app_context():
            db.drop_all()
            db.create_all()
            yield flask_app
            db.session.remove()
            db.drop_all()
    finally:
        # Always close and remove the temporary database file, even on error
        try:
            os.close(db_fd)
        except OSError:
            pass
        for suffix in ("", "-wal", "-shm"):
            try:
                if os.path.exists(temp_db + suffix):
                    os.unlink(temp_db + suffix)
            except OSError:
                pass


@pytest.fixture(autouse=True)
def app_context(app):
    """Automatically provide app context for all tests"""
    with app.app_context():
        yield


@pytest.fixture
def client(app):
    """Create a test client for the Flask application"""
    return app.test_client()


@pytest.fixture
def runner(app):
    """Create a test CLI runner for the Flask application"""
    return app.test_cli_runner()


# Pytest configuration
def pytest_configure(config):
    """Configure pytest with custom markers and ensure testing environment"""
    os.environ["FLASK_ENV"] = "testing"

    config.addinivalue_line("markers", "slow: marks tests as slow (deselect with '-m \"not slow\"')")
    config.addinivalue_line("markers", "integration: marks tests as integration tests")
    config.addinivalue_line("markers", "unit: marks tests as unit tests")
