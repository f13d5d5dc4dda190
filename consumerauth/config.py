import logging
import warnings

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    # Environment
    environment: str = "development"  # development | test | production

    # Database (sqlite for local dev, postgresql+asyncpg for production)
    database_url: str = "sqlite+aiosqlite:///./data/consumerauth.db"

    # Auth
    jwt_secret_key: str = "dev-secret-change-in-production"
    jwt_algorithm: str = "HS256"
    jwt_expire_hours: int = 24 * 7  # 7 days

    # Consumer change tokens (HMAC key for optimistic concurrency tokens)
    change_token_secret: str = "dev-change-token-secret-change-in-production"

    # Sites
    site_id: str = "metawiki"
    management_site_id: str = "metawiki"
    site_names: dict[str, str] = {
        "metawiki": "Meta-Wiki",
        "enwiki": "English Wikipedia",
    }

    # Store state
    read_only_reason: str = ""  # non-empty puts the store in read-only mode
    block_disables_login: bool = True

    # Credentials
    consumer_key_bytes: int = 16  # 32 hex chars
    token_entropy_bytes: int = 32  # 64 hex chars
    request_token_lifetime_seconds: int = 600
    signature_timestamp_window_seconds: int = 300
    exchanged_token_retention_seconds: int = 86400  # kept past expiry, then purged
    owner_only_callback_url: str = "/oauth/verified"

    # Capabilities granted per role
    role_capabilities: dict[str, list[str]] = {
        "user": ["propose-consumer", "update-own-consumer"],
        "oauth-admin": ["manage-consumer"],
        "oversight": ["manage-consumer", "suppress-consumer"],
    }

    # Grants
    hidden_grants: list[str] = ["basic"]
    grant_bundles: dict[str, list[str]] = {
        "basic": ["read", "writeapi"],
        "highvolume": ["apihighlimits", "noratelimit"],
        "editpage": ["edit", "minoredit", "applychangetags"],
        "createeditmovepage": ["edit", "create", "move", "createpage"],
        "uploadfile": ["upload", "reupload"],
        "editprotected": ["edit", "editprotected"],
        "viewdeleted": ["deletedhistory", "deletedtext"],
        "privateinfo": ["viewmyprivateinfo"],
        "blockusers": ["block", "blockemail"],
    }

    # CORS
    cors_origins: str = "http://localhost:5173,http://localhost:3000"

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8", "extra": "ignore"}


settings = Settings()

# Warn on insecure defaults (logged at startup, not a hard error for dev convenience)
_logger = logging.getLogger("consumerauth.config")
_INSECURE_SECRETS = {
    "dev-secret-change-in-production",
    "change-me-to-a-random-string",
    "dev-change-token-secret-change-in-production",
}


def validate_security_posture(cfg: Settings) -> None:
    is_prod = cfg.environment.lower() in {"production", "prod"}

    if cfg.jwt_secret_key in _INSECURE_SECRETS:
        if is_prod:
            raise RuntimeError(
                "FATAL: JWT_SECRET_KEY is set to an insecure default. "
                "Set a strong random secret via the JWT_SECRET_KEY environment variable before deploying to production."
            )
        warnings.warn(
            "JWT_SECRET_KEY is set to the default insecure value. "
            "Set a strong random secret via the JWT_SECRET_KEY environment variable for production.",
            stacklevel=1,
        )

    if cfg.cors_origins == "*":
        if is_prod:
            raise RuntimeError(
                "FATAL: CORS_ORIGINS cannot be '*' in production. "
                "Set explicit trusted origins via the CORS_ORIGINS environment variable."
            )
        _logger.warning(
            "CORS_ORIGINS is set to '*' (allow all). "
            "Configure specific origins for production via the CORS_ORIGINS environment variable."
        )

    if is_prod:
        if not cfg.change_token_secret or cfg.change_token_secret in _INSECURE_SECRETS:
            raise RuntimeError(
                "FATAL: CHANGE_TOKEN_SECRET must be set to a strong random value in production."
            )
        if cfg.change_token_secret == cfg.jwt_secret_key:
            raise RuntimeError(
                "FATAL: CHANGE_TOKEN_SECRET must be different from JWT_SECRET_KEY in production."
            )

    if cfg.management_site_id not in cfg.site_names:
        _logger.warning(
            "MANAGEMENT_SITE_ID %r is not listed in SITE_NAMES; consumer proposals cannot target it by name.",
            cfg.management_site_id,
        )


validate_security_posture(settings)
