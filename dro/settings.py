from __future__ import annotations

import os
from dataclasses import dataclass


def _env_bool(name: str, default: bool = False) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "y", "on"}


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        return int(raw)
    except ValueError:
        return default


@dataclass(frozen=True)
class Settings:
    # Layout
    project: str = os.getenv("DRO_PROJECT", "webapp")
    deploy_dir: str = os.getenv("DRO_DEPLOY_DIR", "/opt/webapp")
    backup_dir: str = os.getenv("DRO_BACKUP_DIR", "/opt/webapp-backups")
    # Empty means "<deploy_dir>/dro.db".
    db_path: str = os.getenv("DRO_DB_PATH", "")
    topology: str = os.getenv("DRO_TOPOLOGY", "volume")

    # Disk guard
    docker_root: str = os.getenv("DRO_DOCKER_ROOT", "/var/lib/docker")
    min_free_mb: int = _env_int("DRO_MIN_FREE_MB", 2048)
    snapshot_retention: int = _env_int("DRO_SNAPSHOT_RETENTION", 5)
    log_truncate_mb: int = _env_int("DRO_LOG_TRUNCATE_MB", 100)

    # Rollout / health gate
    start_grace_s: int = _env_int("DRO_START_GRACE_S", 20)
    health_attempts: int = _env_int("DRO_HEALTH_ATTEMPTS", 10)
    health_interval_s: int = _env_int("DRO_HEALTH_INTERVAL_S", 10)
    health_settle_s: int = _env_int("DRO_HEALTH_SETTLE_S", 5)

    # Locking
    lock_stale_s: int = _env_int("DRO_LOCK_STALE_S", 3600)

    # Comma separated hostnames always allowed besides localhost and the public ip
    extra_allowed_hosts: str = os.getenv("DRO_EXTRA_ALLOWED_HOSTS", "")

    # Policy knobs
    strict_config: bool = _env_bool("DRO_STRICT_CONFIG", False)
    auto_rollback: bool = _env_bool("DRO_AUTO_ROLLBACK", True)

    # Status API basic auth (disabled when no password is set)
    api_user: str = os.getenv("DRO_API_USER", "admin")
    api_password: str | None = os.getenv("DRO_API_PASSWORD")

    # Registry login
    aws_region: str = os.getenv("AWS_REGION", "us-east-1")
    registry_user: str | None = os.getenv("DRO_REGISTRY_USER")
    registry_password: str | None = os.getenv("DRO_REGISTRY_PASSWORD")


settings = Settings()
