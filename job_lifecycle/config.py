"""Application configuration backed by Pydantic Settings.

All values can be overridden via environment variables prefixed with
``LIFECYCLE_`` (e.g. ``LIFECYCLE_PORT=9000``) or via a ``.env`` file in the
service working directory.
"""

from pydantic_settings import BaseSettings, SettingsConfigDict


class LifecycleSettings(BaseSettings):
    """Central configuration for the job lifecycle service.

    Attributes:
        host: Network interface to bind the HTTP server to.
        port: TCP port for the HTTP server.
        database_url: SQLAlchemy URL for the durable audit log.  Empty selects
            the in-memory store, which loses all history on restart.
        guard_timeout_seconds: Maximum seconds a single guard may wait on its
            collaborator before it fails closed.
        jwt_secret: Shared secret used to verify actor bearer tokens.
        jwt_algorithm: Accepted signing algorithm for actor tokens.
        log_level: Root logging level.
    """

    model_config = SettingsConfigDict(env_prefix="LIFECYCLE_", env_file=".env", extra="ignore")

    host: str = "0.0.0.0"
    port: int = 8430
    database_url: str = ""
    guard_timeout_seconds: float = 5.0
    jwt_secret: str = "dev-secret"
    jwt_algorithm: str = "HS256"
    log_level: str = "INFO"
