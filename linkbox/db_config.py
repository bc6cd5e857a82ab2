"""Database configuration and setup for different environments."""
import os


def normalize_database_url(url):
    """SQLAlchemy expects postgresql://, some hosts still hand out postgres://."""
    if url and url.startswith("postgres://"):
        return url.replace("postgres://", "postgresql://", 1)
    return url


def get_database_engine_options():
    """Get database engine options for PostgreSQL connections."""
    from sqlalchemy.pool import QueuePool

    return {
        "pool_pre_ping": True,        # Detect and refresh dead connections before use
        "pool_recycle": 280,          # Recycle connections before the host's idle timeout
        "pool_size": 5,
        "max_overflow": 10,           # Allow bursts while the dispatcher and web workers share the pool
        "pool_timeout": 30,
        "pool_reset_on_return": "commit",
        "poolclass": QueuePool,
        "connect_args": {
            "sslmode": "require",
            "connect_timeout": 10,
            "application_name": "linkbox",
            "options": "-c statement_timeout=30000"  # 30s max per SQL statement
        },
    }


def get_local_database_config():
    """Get database configuration for local development.

    Returns:
        tuple: (database_uri, engine_options)
    """
    database_uri = normalize_database_url(os.environ.get("LOCAL_DATABASE_URL")) or "sqlite:///linkbox.sqlite"
    engine_options = None  # SQLite doesn't need engine options
    return database_uri, engine_options


def get_testing_database_config():
    """In-memory SQLite unless TEST_DATABASE_URL points somewhere else."""
    database_uri = os.environ.get("TEST_DATABASE_URL") or "sqlite:///:memory:"
    return database_uri, None


def get_sandbox_database_config():
    """Get database configuration for sandbox/staging environment.

    Returns:
        tuple: (database_uri, engine_options)

    Raises:
        ValueError: If database URL is not configured
    """
    database_url = normalize_database_url(os.environ.get("SANDBOX_DATABASE_URL"))
    if not database_url:
        raise ValueError("SANDBOX_DATABASE_URL must be set for sandbox environment")

    engine_options = get_database_engine_options()
    return database_url, engine_options


def get_production_database_config():
    """Get database configuration for production environment.

    Returns:
        tuple: (database_uri, engine_options)

    Raises:
        ValueError: If database URL is not configured
    """
    database_url = normalize_database_url(
        os.environ.get("PRODUCTION_DATABASE_URL") or os.environ.get("DATABASE_URL")
    )
    if not database_url:
        raise ValueError("PRODUCTION_DATABASE_URL or DATABASE_URL must be set for production environment")

    engine_options = get_database_engine_options()
    return database_url, engine_options


def get_database_config(environment=None):
    """Get database configuration based on environment.

    Args:
        environment: Environment name ('local', 'sandbox', 'production', 'testing')
                    If None, will be determined from ENVIRONMENT or FLASK_ENV env vars.

    Returns:
        tuple: (database_uri, engine_options)
    """
    if environment is None:
        environment = os.environ.get("FLASK_ENV") or os.environ.get("ENVIRONMENT", "local")
    environment = environment.lower()

    if environment in ["local", "development", "dev"]:
        return get_local_database_config()
    elif environment in ["sandbox", "staging", "stage"]:
        return get_sandbox_database_config()
    elif environment in ["production", "prod"]:
        return get_production_database_config()
    elif environment in ["testing", "test"]:
        return get_testing_database_config()
    else:
        # Default to local for safety
        return get_local_database_config()


def configure_database(app, environment=None):
    """Configure database settings for the Flask app.

    This function sets SQLALCHEMY_DATABASE_URI and SQLALCHEMY_ENGINE_OPTIONS
    on the app config based on the current environment.

    Args:
        app: Flask application instance
        environment: Optional environment override
    """
    database_uri, engine_options = get_database_config(environment)

    app.config["SQLALCHEMY_DATABASE_URI"] = database_uri
    app.config["SQLALCHEMY_TRACK_MODIFICATIONS"] = False
    app.config["SQLALCHEMY_ECHO"] = False  # Set to True for SQL query debugging

    if engine_options:
        app.config["SQLALCHEMY_ENGINE_OPTIONS"] = engine_options
