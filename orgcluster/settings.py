from __future__ import annotations

from dataclasses import dataclass, field
import os

DEFAULT_BASE_URL = "https://cloud.mongodb.com/api/atlas/v2"
DEFAULT_DATABASE_URL = "sqlite:///./orgcluster.db"


def _env(name: str, default: str = "") -> str:
    return os.getenv(name, default).strip()


def _env_int(name: str, default: int) -> int:
    raw = _env(name)
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError as exc:
        raise ValueError(f"{name} must be an integer, got {raw!r}") from exc


def _env_list(name: str) -> tuple[str, ...]:
    return tuple(part.strip() for part in _env(name).split(",") if part.strip())


@dataclass(frozen=True)
class Settings:
    control_plane_public_key: str = ""
    control_plane_private_key: str = ""
    control_plane_base_url: str = DEFAULT_BASE_URL
    org_container_id: str = ""
    default_provider: str = "AWS"
    default_region: str = "US_EAST_1"
    # An empty allow-list means the network step opens 0.0.0.0/0 (development only).
    server_ips: tuple[str, ...] = field(default_factory=tuple)
    default_database_name: str = "forms"
    cluster_ready_timeout_sec: int = 120
    cluster_poll_interval_sec: int = 5
    project_settle_delay_sec: int = 2
    secret_backend: str = "database"
    vault_encryption_key: str = ""
    aws_region: str = ""
    secret_name_prefix: str = "/orgcluster"
    database_url: str = DEFAULT_DATABASE_URL

    @classmethod
    def from_env(cls) -> "Settings":
        return cls(
            control_plane_public_key=_env("ATLAS_PUBLIC_KEY"),
            control_plane_private_key=_env("ATLAS_PRIVATE_KEY"),
            control_plane_base_url=_env("ATLAS_BASE_URL", DEFAULT_BASE_URL) or DEFAULT_BASE_URL,
            org_container_id=_env("ATLAS_ORG_ID"),
            default_provider=_env("ATLAS_DEFAULT_PROVIDER", "AWS") or "AWS",
            default_region=_env("ATLAS_DEFAULT_REGION", "US_EAST_1") or "US_EAST_1",
            server_ips=_env_list("ATLAS_SERVER_IPS"),
            default_database_name=_env("ORGCLUSTER_DATABASE_NAME", "forms") or "forms",
            cluster_ready_timeout_sec=_env_int("ORGCLUSTER_READY_TIMEOUT_SEC", 120),
            cluster_poll_interval_sec=_env_int("ORGCLUSTER_POLL_INTERVAL_SEC", 5),
            project_settle_delay_sec=_env_int("ORGCLUSTER_SETTLE_DELAY_SEC", 2),
            secret_backend=(_env("ORGCLUSTER_SECRET_BACKEND", "database") or "database").lower(),
            vault_encryption_key=_env("ORGCLUSTER_VAULT_KEY"),
            aws_region=_env("AWS_REGION") or _env("AWS_DEFAULT_REGION"),
            secret_name_prefix=_env("ORGCLUSTER_SECRET_PREFIX", "/orgcluster") or "/orgcluster",
            database_url=_env("DATABASE_URL", DEFAULT_DATABASE_URL) or DEFAULT_DATABASE_URL,
        )

    @property
    def control_plane_configured(self) -> bool:
        return bool(self.control_plane_public_key and self.control_plane_private_key)

    @property
    def is_auto_provisioning_available(self) -> bool:
        return self.control_plane_configured and bool(self.org_container_id)

    def describe(self) -> dict[str, object]:
        """Loggable summary; never includes key material."""
        return {
            "org_container_id": f"{self.org_container_id[:8]}..." if self.org_container_id else "NOT SET",
            "provider": self.default_provider,
            "region": self.default_region,
            "has_public_key": bool(self.control_plane_public_key),
            "has_private_key": bool(self.control_plane_private_key),
            "server_ips": len(self.server_ips),
            "secret_backend": self.secret_backend,
        }


def get_settings() -> Settings:
    return Settings.from_env()
