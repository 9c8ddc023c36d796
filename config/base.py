# config/base.py
import os
from datetime import timedelta


def _coerce_bool(value, default=False):
    """Convert environment-style truthy/falsey values to bool."""
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    value_str = str(value).strip().lower()
    if value_str in {"1", "true", "yes", "on"}:
        return True
    if value_str in {"0", "false", "no", "off"}:
        return False
    return default


def _parse_format_list(value):
    """
    Parse a comma-separated format list while keeping order and removing duplicates.

    Returns:
        tuple[str, ...]: Normalized format identifiers.
    """
    if not value:
        return ()

    seen = set()
    formats = []
    for raw_item in value.split(","):
        item = raw_item.strip().lower().lstrip(".")
        if not item or item in seen:
            continue
        seen.add(item)
        formats.append(item)
    return tuple(formats)


def _env_int(name, default, *, minimum=None):
    try:
        value = int(os.environ.get(name, str(default)))
    except ValueError:
        return default
    if minimum is not None:
        value = max(minimum, value)
    return value


def _env_float(name, default, *, minimum=None, maximum=None):
    try:
        value = float(os.environ.get(name, str(default)))
    except ValueError:
        return default
    if minimum is not None:
        value = max(minimum, value)
    if maximum is not None:
        value = min(maximum, value)
    return value


class Config:
    # SECRET_KEY must be set via environment variable in production.
    # Generate with: python -c "import secrets; print(secrets.token_hex(32))"
    _flask_env = os.environ.get("FLASK_ENV", "development")
    _is_testing = _flask_env == "testing"
    _is_production = _flask_env == "production"

    SECRET_KEY = os.environ.get("SECRET_KEY")

    if not SECRET_KEY and _is_production:
        raise ValueError(
            "SECRET_KEY environment variable is required in production. "
            'Generate with: python -c "import secrets; print(secrets.token_hex(32))"'
        )

    if not SECRET_KEY and not _is_testing:
        import warnings

        warnings.warn(
            "SECRET_KEY not set. Using default for development only. "
            "Set SECRET_KEY before deploying.",
            UserWarning,
        )
        SECRET_KEY = "dev-secret-key-change-in-production"

    # Set a default for testing (will be overridden by TestingConfig)
    if not SECRET_KEY:
        SECRET_KEY = "test-secret-key-placeholder"

    SQLALCHEMY_TRACK_MODIFICATIONS = False
    SQLALCHEMY_ENGINE_OPTIONS = {}

    # School import pipeline
    IMPORTER_ENABLED = _coerce_bool(os.environ.get("IMPORTER_ENABLED"), default=False)
    IMPORTER_FORMATS = _parse_format_list(os.environ.get("IMPORTER_FORMATS", "csv,xlsx,xls"))

    if IMPORTER_ENABLED and not IMPORTER_FORMATS:
        raise ValueError("IMPORTER_ENABLED is true but IMPORTER_FORMATS is empty. Provide at least one format.")

    IMPORTER_WORKER_ENABLED = _coerce_bool(os.environ.get("IMPORTER_WORKER_ENABLED"), default=False)
    CELERY_BROKER_URL = os.environ.get("CELERY_BROKER_URL")
    CELERY_RESULT_BACKEND = os.environ.get("CELERY_RESULT_BACKEND")
    CELERY_SQLITE_PATH = os.environ.get("CELERY_SQLITE_PATH")
    CELERY_CONFIG = os.environ.get("CELERY_CONFIG")
    CELERY_TASK_ALWAYS_EAGER = _coerce_bool(os.environ.get("CELERY_TASK_ALWAYS_EAGER"), default=False)

    IMPORTER_UPLOAD_DIR = os.environ.get("IMPORTER_UPLOAD_DIR")
    IMPORTER_MAX_UPLOAD_MB = _env_int("IMPORTER_MAX_UPLOAD_MB", 50, minimum=1)

    IMPORTER_WORKER_POOL_SIZE = _env_int("IMPORTER_WORKER_POOL_SIZE", 4, minimum=1)
    IMPORTER_BATCH_SIZE = _env_int("IMPORTER_BATCH_SIZE", 500, minimum=1)
    IMPORTER_FUZZY_THRESHOLD = _env_float("IMPORTER_FUZZY_THRESHOLD", 0.85, minimum=0.0, maximum=1.0)
    IMPORTER_FUZZY_TIE_MARGIN = _env_float("IMPORTER_FUZZY_TIE_MARGIN", 0.01, minimum=0.0, maximum=1.0)
    # "min_lat,max_lat,min_lon,max_lon"; coordinates outside only raise a warning flag
    IMPORTER_GEO_BOUNDS = os.environ.get("IMPORTER_GEO_BOUNDS", "6.8,10.1,-13.5,-10.2")

    IMPORTER_PROCESSING_TIMEOUT_SECONDS = _env_int("IMPORTER_PROCESSING_TIMEOUT_SECONDS", 600, minimum=1)
    IMPORTER_COMMIT_TIMEOUT_SECONDS = _env_int("IMPORTER_COMMIT_TIMEOUT_SECONDS", 300, minimum=1)
    IMPORTER_LOCK_TTL_SECONDS = _env_int("IMPORTER_LOCK_TTL_SECONDS", 900, minimum=1)
    IMPORTER_LOCK_WAIT_SECONDS = _env_float("IMPORTER_LOCK_WAIT_SECONDS", 5.0, minimum=0.0)

    IMPORTER_ROWS_PAGE_SIZE_DEFAULT = min(_env_int("IMPORTER_ROWS_PAGE_SIZE_DEFAULT", 50, minimum=1), 200)

    # Session configuration
    PERMANENT_SESSION_LIFETIME = timedelta(days=7)
    SESSION_COOKIE_SECURE = False  # Set to True in production with HTTPS
    SESSION_COOKIE_HTTPONLY = True
    SESSION_COOKIE_SAMESITE = "Lax"


class DevelopmentConfig(Config):
    DEBUG = True
    # Keep the development database in the instance folder at the project root
    _config_dir = os.path.dirname(os.path.abspath(__file__))
    _project_root = os.path.dirname(_config_dir)
    instance_path = os.path.join(_project_root, "instance")

    if not os.path.exists(instance_path):
        os.makedirs(instance_path, exist_ok=True)

    # SQLite URIs need forward slashes, even on Windows
    db_path = os.path.join(instance_path, "school_registry_dev.db")
    db_path_normalized = db_path.replace("\\", "/")
    db_uri = f"sqlite:///{db_path_normalized}"

    SQLALCHEMY_DATABASE_URI = os.environ.get("DATABASE_URL", db_uri)
    SQLALCHEMY_ECHO = _coerce_bool(os.environ.get("SQLALCHEMY_ECHO"), default=False)
    if SQLALCHEMY_DATABASE_URI.startswith("sqlite"):
        SQLALCHEMY_ENGINE_OPTIONS = {
            "connect_args": {
                "check_same_thread": False,
                "timeout": 5,
            }
        }
    else:
        SQLALCHEMY_ENGINE_OPTIONS = {}


class TestingConfig(Config):
    TESTING = True
    SECRET_KEY = os.environ.get("SECRET_KEY", "test-secret-key-for-testing-only")
    SQLALCHEMY_DATABASE_URI = os.environ.get("TEST_DATABASE_URL", "sqlite:///:memory:")
    SQLALCHEMY_ECHO = False
    SQLALCHEMY_ENGINE_OPTIONS = {
        "connect_args": {
            "check_same_thread": False,
            "timeout": 5,
        }
    }
    IMPORTER_WORKER_POOL_SIZE = 2
    CELERY_TASK_ALWAYS_EAGER = True


class ProductionConfig(Config):
    DEBUG = False
    uri = os.environ.get("DATABASE_URL")
    if uri and uri.startswith("postgres://"):
        uri = uri.replace("postgres://", "postgresql://", 1)
    SQLALCHEMY_DATABASE_URI = uri
    SQLALCHEMY_ECHO = False
    SESSION_COOKIE_SECURE = True
