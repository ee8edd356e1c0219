# config.py
import os

DEFAULT_ADAPTERS = ("servicenow", "asana", "sap", "jira", "manual", "csv")


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


def _parse_adapter_list(value):
    """
    Parse a comma-separated adapter list while keeping order and removing duplicates.

    Returns:
        tuple[str, ...]: Normalized adapter identifiers.
    """
    if not value:
        return ()

    seen = set()
    adapters = []
    for raw_item in value.split(","):
        item = raw_item.strip().lower()
        if not item or item in seen:
            continue
        seen.add(item)
        adapters.append(item)
    return tuple(adapters)


def _parse_int_list(value, *, minimum=1, maximum=100):
    """
    Parse a comma-separated list of integers with optional bounds.
    """

    if not value:
        return []

    parsed: list[int] = []
    for raw_item in value.split(","):
        item = raw_item.strip()
        if not item:
            continue
        try:
            number = int(item)
        except ValueError:
            continue
        if number < minimum or number > maximum:
            continue
        if number not in parsed:
            parsed.append(number)
    return parsed


def _parse_int(value, default, *, minimum=None):
    try:
        number = int(value) if value not in (None, "") else default
    except ValueError:
        number = default
    if minimum is not None:
        number = max(minimum, number)
    return number


class Config:
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

    if not SECRET_KEY:
        SECRET_KEY = "test-secret-key-placeholder"

    SQLALCHEMY_TRACK_MODIFICATIONS = False
    SQLALCHEMY_ENGINE_OPTIONS = {}

    # Integration hub configuration
    _raw_adapters = os.environ.get("INTEGRATIONS_ADAPTERS")
    INTEGRATIONS_ADAPTERS = _parse_adapter_list(_raw_adapters) if _raw_adapters is not None else DEFAULT_ADAPTERS

    INTEGRATIONS_WORKER_ENABLED = _coerce_bool(os.environ.get("INTEGRATIONS_WORKER_ENABLED"), default=False)
    CELERY_BROKER_URL = os.environ.get("CELERY_BROKER_URL")
    CELERY_RESULT_BACKEND = os.environ.get("CELERY_RESULT_BACKEND")
    CELERY_SQLITE_PATH = os.environ.get("CELERY_SQLITE_PATH")
    CELERY_CONFIG = os.environ.get("CELERY_CONFIG")
    INTEGRATIONS_TASK_TIME_LIMIT = _parse_int(os.environ.get("INTEGRATIONS_TASK_TIME_LIMIT"), 30 * 60, minimum=60)
    INTEGRATIONS_TASK_SOFT_TIME_LIMIT = _parse_int(
        os.environ.get("INTEGRATIONS_TASK_SOFT_TIME_LIMIT"), 25 * 60, minimum=30
    )

    INTEGRATIONS_UPLOAD_DIR = os.environ.get("INTEGRATIONS_UPLOAD_DIR")
    INTEGRATIONS_MAX_UPLOAD_MB = _parse_int(os.environ.get("INTEGRATIONS_MAX_UPLOAD_MB"), 25, minimum=1)
    MAX_CONTENT_LENGTH = INTEGRATIONS_MAX_UPLOAD_MB * 1024 * 1024

    INTEGRATIONS_PAGE_SIZE = _parse_int(os.environ.get("INTEGRATIONS_PAGE_SIZE"), 100, minimum=1)
    INTEGRATIONS_HTTP_TIMEOUT = _parse_int(os.environ.get("INTEGRATIONS_HTTP_TIMEOUT"), 30, minimum=1)
    INTEGRATIONS_RECENT_SYNCS_LIMIT = _parse_int(os.environ.get("INTEGRATIONS_RECENT_SYNCS_LIMIT"), 10, minimum=1)

    _raw_history_page_sizes = os.environ.get("INTEGRATIONS_HISTORY_PAGE_SIZES", "20,50,100")
    INTEGRATIONS_HISTORY_PAGE_SIZES = tuple(
        _parse_int_list(_raw_history_page_sizes, minimum=5, maximum=500) or [20, 50, 100]
    )

    # Environment variable names holding API tokens, keyed by system type.
    INTEGRATIONS_TOKEN_ENV = {
        "servicenow": os.environ.get("INTEGRATIONS_SERVICENOW_TOKEN_ENV", "SERVICENOW_API_TOKEN"),
        "asana": os.environ.get("INTEGRATIONS_ASANA_TOKEN_ENV", "ASANA_ACCESS_TOKEN"),
        "sap": os.environ.get("INTEGRATIONS_SAP_TOKEN_ENV", "SAP_API_TOKEN"),
        "jira": os.environ.get("INTEGRATIONS_JIRA_TOKEN_ENV", "JIRA_API_TOKEN"),
    }

    INTEGRATIONS_MAPPINGS_DIR = os.environ.get(
        "INTEGRATIONS_MAPPINGS_DIR",
        os.path.join(os.path.dirname(__file__), "mappings"),
    )


class DevelopmentConfig(Config):
    DEBUG = True
    _config_dir = os.path.dirname(os.path.abspath(__file__))
    _project_root = os.path.dirname(_config_dir)
    instance_path = os.path.join(_project_root, "instance")

    if not os.path.exists(instance_path):
        os.makedirs(instance_path, exist_ok=True)

    db_path = os.path.join(instance_path, "integration_hub_dev.db")
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
    SQLALCHEMY_DATABASE_URI = "sqlite:///:memory:"
    SQLALCHEMY_ECHO = False
    SQLALCHEMY_ENGINE_OPTIONS = {
        "connect_args": {
            "check_same_thread": False,
            "timeout": 5,
        }
    }
    INTEGRATIONS_WORKER_ENABLED = False


class ProductionConfig(Config):
    DEBUG = False
    uri = os.environ.get("DATABASE_URL")
    if uri and uri.startswith("postgres://"):
        uri = uri.replace("postgres://", "postgresql://", 1)
    SQLALCHEMY_DATABASE_URI = uri
    SQLALCHEMY_ECHO = False
