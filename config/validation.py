# config/validation.py

"""
Environment variable validation for the school registry application.
Validates required environment variables at startup.
"""

import os
import sys
from typing import List, Tuple

KNOWN_FORMATS = ("csv", "xlsx", "xls")


def _check_float(name: str, errors: List[str], *, minimum: float, maximum: float) -> None:
    raw = os.environ.get(name)
    if raw is None:
        return
    try:
        value = float(raw)
    except ValueError:
        errors.append(f"{name} must be a number, got '{raw}'.")
        return
    if not minimum <= value <= maximum:
        errors.append(f"{name} must be between {minimum} and {maximum}, got {value}.")


def _check_geo_bounds(errors: List[str]) -> None:
    raw = os.environ.get("IMPORTER_GEO_BOUNDS")
    if not raw:
        return
    parts = raw.split(",")
    try:
        min_lat, max_lat, min_lon, max_lon = (float(part) for part in parts)
    except ValueError:
        errors.append("IMPORTER_GEO_BOUNDS must be 'min_lat,max_lat,min_lon,max_lon' with four numbers.")
        return
    if not (-90 <= min_lat < max_lat <= 90 and -180 <= min_lon < max_lon <= 180):
        errors.append("IMPORTER_GEO_BOUNDS describes an empty or out-of-range bounding box.")


def validate_environment(flask_env: str = None) -> Tuple[bool, List[str]]:
    """
    Validate required environment variables.

    Args:
        flask_env: Flask environment (development, production, testing)
                  If None, reads from FLASK_ENV environment variable

    Returns:
        Tuple of (is_valid, list_of_errors)
    """
    if flask_env is None:
        flask_env = os.environ.get("FLASK_ENV", "development")

    errors = []

    # Only validate in production
    if flask_env != "production":
        return True, []

    secret_key = os.environ.get("SECRET_KEY", "")
    if not secret_key or secret_key in ("your-secret-key", "your_secret_key"):
        errors.append(
            "SECRET_KEY is required in production and must not be the default value. "
            'Generate a secure key: python -c "import secrets; print(secrets.token_hex(32))"'
        )

    if not os.environ.get("DATABASE_URL"):
        errors.append("DATABASE_URL is required in production. Set it to your database connection string.")

    if os.environ.get("IMPORTER_ENABLED", "false").lower() == "true":
        configured = [
            item.strip().lower().lstrip(".")
            for item in os.environ.get("IMPORTER_FORMATS", "csv,xlsx,xls").split(",")
            if item.strip()
        ]
        unknown = sorted(set(configured) - set(KNOWN_FORMATS))
        if unknown:
            errors.append(f"IMPORTER_FORMATS contains unknown formats: {', '.join(unknown)}")

        _check_float("IMPORTER_FUZZY_THRESHOLD", errors, minimum=0.0, maximum=1.0)
        _check_float("IMPORTER_FUZZY_TIE_MARGIN", errors, minimum=0.0, maximum=1.0)
        _check_geo_bounds(errors)

    if os.environ.get("IMPORTER_WORKER_ENABLED", "false").lower() == "true":
        if not os.environ.get("CELERY_BROKER_URL"):
            errors.append("CELERY_BROKER_URL is required when IMPORTER_WORKER_ENABLED=true in production")

    is_valid = len(errors) == 0
    return is_valid, errors


def validate_and_exit(flask_env: str = None) -> None:
    """
    Validate environment variables and exit with error if validation fails.
    Intended to be called at application startup.
    """
    is_valid, errors = validate_environment(flask_env)

    if not is_valid:
        print("=" * 80, file=sys.stderr)
        print("ENVIRONMENT VALIDATION FAILED", file=sys.stderr)
        print("=" * 80, file=sys.stderr)
        print("\nThe following environment variables are missing or invalid:\n", file=sys.stderr)

        for i, error in enumerate(errors, 1):
            print(f"{i}. {error}", file=sys.stderr)

        print("\n" + "=" * 80, file=sys.stderr)
        print("Please check your .env file or environment variables.", file=sys.stderr)
        print("=" * 80, file=sys.stderr)

        sys.exit(1)
