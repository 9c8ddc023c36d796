# config/monitoring.py

import os

from prometheus_client import Counter, Histogram

LATENCY_BUCKETS = (0.01, 0.05, 0.1, 0.25, 0.5, 1, 2, 5)
LONG_RUNNING_BUCKETS = (0.1, 0.5, 1, 2, 5, 10, 30, 60, 120, 300, 600)


class MonitoringConfig:
    """Monitoring and logging configuration"""

    MONITORING_ENABLED = os.environ.get("MONITORING_ENABLED", "false").lower() == "true"

    # Logging Configuration
    LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO")
    LOG_FORMAT = os.environ.get("LOG_FORMAT", "json")  # 'json' or 'text'
    LOG_DIR = os.environ.get("LOG_DIR", "logs")
    LOG_FILE_MAX_BYTES = int(os.environ.get("LOG_FILE_MAX_BYTES", 10485760))  # 10MB
    LOG_FILE_BACKUP_COUNT = int(os.environ.get("LOG_FILE_BACKUP_COUNT", 10))

    # Console and File Logging
    ENABLE_FILE_LOGGING = os.environ.get("ENABLE_FILE_LOGGING", "true").lower() == "true"
    ENABLE_CONSOLE_LOGGING = os.environ.get("ENABLE_CONSOLE_LOGGING", "true").lower() == "true"

    # Application Info
    APP_NAME = os.environ.get("APP_NAME", "School Registry")
    APP_VERSION = os.environ.get("APP_VERSION", "1.0.0")


class DevelopmentMonitoringConfig(MonitoringConfig):
    """Development-specific monitoring configuration"""

    LOG_LEVEL = "DEBUG"
    LOG_FORMAT = "text"  # More readable in development
    ENABLE_FILE_LOGGING = True
    ENABLE_CONSOLE_LOGGING = True


class ProductionMonitoringConfig(MonitoringConfig):
    """Production-specific monitoring configuration"""

    LOG_LEVEL = "INFO"
    LOG_FORMAT = "json"  # Structured logging for production
    ENABLE_FILE_LOGGING = True
    ENABLE_CONSOLE_LOGGING = False  # Usually handled by container orchestration


class TestingMonitoringConfig(MonitoringConfig):
    """Testing-specific monitoring configuration"""

    MONITORING_ENABLED = False
    LOG_LEVEL = "WARNING"
    LOG_FORMAT = "text"
    ENABLE_FILE_LOGGING = False
    ENABLE_CONSOLE_LOGGING = False


def _label(value):
    if value is None:
        return "none"
    return str(getattr(value, "value", value)).lower()


class ImporterMonitoring:
    """Prometheus metric helpers for the school import pipeline and its API."""

    API_REQUEST_COUNTER = Counter(
        "school_import_api_requests_total",
        "Total school import API requests.",
        labelnames=("endpoint", "status"),
    )
    API_REQUEST_LATENCY = Histogram(
        "school_import_api_request_seconds",
        "Latency histogram for school import API endpoints.",
        labelnames=("endpoint",),
        buckets=LATENCY_BUCKETS,
    )

    RUN_TRANSITIONS = Counter(
        "school_import_run_transitions_total",
        "Import run state transitions.",
        labelnames=("from_status", "to_status"),
    )
    LOCK_CONTENTION = Counter(
        "school_import_run_lock_contention_total",
        "Requests rejected or delayed because another operation held the run lock.",
        labelnames=("scope",),
    )

    PROCESSING_COUNTER = Counter(
        "school_import_processing_total",
        "Processing attempts by outcome.",
        labelnames=("status",),
    )
    PROCESSING_LATENCY = Histogram(
        "school_import_processing_seconds",
        "Wall-clock duration of import run processing.",
        labelnames=("status",),
        buckets=LONG_RUNNING_BUCKETS,
    )
    ROWS_VALIDATED = Counter(
        "school_import_rows_validated_total",
        "Staging rows evaluated, by resulting validation status.",
        labelnames=("validation_status",),
    )
    ROWS_MATCHED = Counter(
        "school_import_rows_matched_total",
        "Council match outcomes for staging rows.",
        labelnames=("match_type",),
    )

    COMMIT_COUNTER = Counter(
        "school_import_commits_total",
        "Commit attempts by outcome.",
        labelnames=("status",),
    )
    COMMIT_LATENCY = Histogram(
        "school_import_commit_seconds",
        "Duration of commit attempts.",
        labelnames=("status",),
        buckets=LONG_RUNNING_BUCKETS,
    )
    ROLLBACK_COUNTER = Counter(
        "school_import_rollbacks_total",
        "Rollback attempts by outcome.",
        labelnames=("status",),
    )
    ROLLBACK_LATENCY = Histogram(
        "school_import_rollback_seconds",
        "Duration of rollback attempts.",
        labelnames=("status",),
        buckets=LONG_RUNNING_BUCKETS,
    )

    @classmethod
    def record_api_request(cls, *, endpoint: str, status: str, duration_seconds: float):
        cls.API_REQUEST_COUNTER.labels(endpoint=endpoint, status=status).inc()
        cls.API_REQUEST_LATENCY.labels(endpoint=endpoint).observe(max(duration_seconds, 0.0))

    @classmethod
    def record_transition(cls, from_status, to_status):
        cls.RUN_TRANSITIONS.labels(from_status=_label(from_status), to_status=_label(to_status)).inc()

    @classmethod
    def record_lock_contention(cls, *, scope: str):
        cls.LOCK_CONTENTION.labels(scope=scope).inc()

    @classmethod
    def record_processing(cls, *, status: str, duration_seconds: float):
        cls.PROCESSING_COUNTER.labels(status=status).inc()
        cls.PROCESSING_LATENCY.labels(status=status).observe(max(duration_seconds, 0.0))

    @classmethod
    def record_rows(cls, outcomes):
        for outcome in outcomes:
            cls.ROWS_VALIDATED.labels(validation_status=_label(outcome.status)).inc()
            cls.ROWS_MATCHED.labels(match_type=_label(outcome.match.match_type)).inc()

    @classmethod
    def record_commit(cls, *, status: str, duration_seconds: float):
        cls.COMMIT_COUNTER.labels(status=status).inc()
        cls.COMMIT_LATENCY.labels(status=status).observe(max(duration_seconds, 0.0))

    @classmethod
    def record_rollback(cls, *, status: str, duration_seconds: float):
        cls.ROLLBACK_COUNTER.labels(status=status).inc()
        cls.ROLLBACK_LATENCY.labels(status=status).observe(max(duration_seconds, 0.0))
