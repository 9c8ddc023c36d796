# conftest.py

import os
import tempfile

import pytest
from flask_login import FlaskLoginClient

# Set testing environment BEFORE importing app so app.py picks TestingConfig.
# Flask-SQLAlchemy builds the engine when the app is imported, so the test
# database location has to be known up front; tables are recreated per test.
os.environ["FLASK_ENV"] = "testing"
_db_fd, _TEST_DB_PATH = tempfile.mkstemp(prefix="school_registry_test_", suffix=".db")
os.close(_db_fd)
os.environ["TEST_DATABASE_URL"] = f"sqlite:///{_TEST_DB_PATH}"
# Mount the importer blueprint at import time; individual tests toggle the flag.
os.environ["IMPORTER_ENABLED"] = "true"

# Now import app and other modules after environment is set
from app import app as flask_app  # noqa: E402
from registry_app.models import User, UserRole, db  # noqa: E402
from registry_app.utils.logging_config import setup_logging  # noqa: E402


def pytest_configure(config):
    config.addinivalue_line("markers", "slow: exercises the full processing pipeline end to end")


def pytest_sessionfinish(session, exitstatus):
    for suffix in ("", "-wal", "-shm"):
        try:
            os.unlink(_TEST_DB_PATH + suffix)
        except OSError:
            pass


@pytest.fixture(scope="function")
def app(tmp_path):
    """Create and configure a test Flask application"""
    flask_app.config.update(
        {
            "TESTING": True,
            "SECRET_KEY": "test-secret-key-for-testing-only",
            "MONITORING_ENABLED": False,
            "ENABLE_FILE_LOGGING": False,
            "ENABLE_CONSOLE_LOGGING": False,
            "LOG_LEVEL": "DEBUG",
            "IMPORTER_ENABLED": False,
            "IMPORTER_WORKER_ENABLED": False,
            "IMPORTER_UPLOAD_DIR": str(tmp_path / "uploads"),
            "IMPORTER_LOCK_WAIT_SECONDS": 1.0,
        }
    )

    # Allows app.test_client(user=...) to start a logged-in session
    flask_app.test_client_class = FlaskLoginClient

    # Re-initialize logging with updated config to pick up LOG_LEVEL=DEBUG
    setup_logging(flask_app)

    with flask_app.app_context():
        # Drop any existing tables to ensure clean state
        db.drop_all()
        db.create_all()
        yield flask_app
        # Clean up: remove all data and drop tables
        db.session.remove()
        db.drop_all()


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


def _make_user(username, role, *, is_active=True):
    user = User(
        username=username,
        email=f"{username}@example.com",
        first_name=username.title(),
        last_name="User",
        role=role,
        is_active=is_active,
    )
    db.session.add(user)
    db.session.commit()
    return user


@pytest.fixture
def admin_user(app):
    return _make_user("admin", UserRole.ADMIN)


@pytest.fixture
def data_manager(app):
    return _make_user("manager", UserRole.DATA_MANAGER)


@pytest.fixture
def viewer_user(app):
    return _make_user("viewer", UserRole.VIEWER)


@pytest.fixture
def inactive_user(app):
    return _make_user("inactive", UserRole.ADMIN, is_active=False)
