"""Configuration settings for the coordination platform."""

from pydantic_settings import BaseSettings

# Credential-like strings that must never reach any storage tier.
DEFAULT_REDACTION_PATTERNS: list[str] = [
    r"(?i)\b(?:api[_-]?key|secret|token|password|passwd|pwd)\b\s*[:=]\s*\S+",
    r"\bAKIA[0-9A-Z]{16}\b",
    r"\bgh[pousr]_[A-Za-z0-9]{36,}\b",
    r"\bsk-[A-Za-z0-9_\-]{20,}\b",
    r"\bxox[abprs]-[A-Za-z0-9\-]{10,}\b",
    r"(?i)\bbearer\s+[A-Za-z0-9\-._~+/]+=*",
    r"-----BEGIN [A-Z ]*PRIVATE KEY-----[\s\S]*?-----END [A-Z ]*PRIVATE KEY-----",
    r"(?i)\b[a-z][a-z0-9+.\-]*://[^\s:/@]+:[^\s@/]+@",
]

# Dict keys whose values are replaced outright, whatever they contain.
DEFAULT_SENSITIVE_KEY_PATTERNS: list[str] = [
    r"(?i)(?:^|[_\-.])(?:password|passwd|pwd|secret|token|api[_-]?key|apikey|private[_-]?key)$",
    r"(?i)^(?:authorization|credentials?|cookie)$",
]


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Database (audit sink)
    db_host: str = "localhost"
    db_port: int = 15432
    db_name: str = "conclave"
    db_user: str = "conclave"
    db_password: str = "conclave"

    # Redis (backing store)
    redis_url: str = "redis://localhost:16379/0"
    redis_max_connections: int = 20
    store_backend: str = "redis"  # "redis" or "memory"

    # Leases (seconds)
    lock_ttl: float = 30.0
    lock_poll_interval: float = 0.1
    claim_ttl: float = 60.0

    # Tasks
    task_retry_budget: int = 2

    # Consensus / sessions (seconds)
    proposal_deadline: float = 300.0
    session_ttl: float = 86400.0

    # Redaction
    redaction_patterns: list[str] = DEFAULT_REDACTION_PATTERNS
    redaction_key_patterns: list[str] = DEFAULT_SENSITIVE_KEY_PATTERNS
    redaction_marker: str = "[REDACTED]"

    # Retention tiers (hours)
    audit_hot_retention_hours: int = 24 * 7
    audit_warm_retention_hours: int = 24 * 90

    # Retry policies
    audit_write_attempts: int = 5
    audit_backoff_base: float = 0.1
    audit_backoff_max: float = 2.0
    store_retry_attempts: int = 3
    store_backoff_base: float = 0.05
    store_backoff_max: float = 1.0

    # Event bus
    event_block_ms: int = 1000
    event_page_size: int = 100

    @property
    def database_url(self) -> str:
        """SQLAlchemy database URL."""
        return f"postgresql://{self.db_user}:{self.db_password}@{self.db_host}:{self.db_port}/{self.db_name}"

    @property
    def async_database_url(self) -> str:
        """Async SQLAlchemy database URL."""
        return f"postgresql+asyncpg://{self.db_user}:{self.db_password}@{self.db_host}:{self.db_port}/{self.db_name}"

    class Config:
        env_prefix = "CONCLAVE_"
        env_file = ".env"


# Global settings instance
settings = Settings()
