"""Settings loaded from the environment and ``~/.config/orb/.env``."""

from pathlib import Path

from pydantic import Field, SecretStr, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

DEFAULT_ENV_FILE = Path.home() / ".config" / "orb" / ".env"
DEFAULT_LOCK_PATH = "/tmp/orb-cloudflared.lock"
DEFAULT_API_BASE = "https://api.cloudflare.com/client/v4/"


class OrbSettings(BaseSettings):
    """Runtime configuration for the tunnel coordinator.

    Every field maps to the environment variable in its alias. Values in
    the process environment win over the ``.env`` file.
    """

    model_config = SettingsConfigDict(
        env_file=DEFAULT_ENV_FILE,
        env_file_encoding="utf-8",
        extra="ignore",
        populate_by_name=True,
        str_strip_whitespace=True,
    )

    domain: str = Field(validation_alias="DOMAIN", min_length=1, description="Base domain")
    config_path: Path = Field(
        validation_alias="CONFIG_PATH", description="Path to the cloudflared config YAML"
    )
    api_token: SecretStr = Field(
        validation_alias="CLOUDFLARE_API_TOKEN", description="Cloudflare API token"
    )
    zone_id: str = Field(validation_alias="CLOUDFLARE_ZONE_ID", min_length=1)
    account_id: str = Field(validation_alias="CLOUDFLARE_ACCOUNT_ID", min_length=1)
    user_email: str | None = Field(
        default=None,
        validation_alias="USER_EMAIL",
        description="Operator identity for private and group access",
    )

    api_base: str = Field(default=DEFAULT_API_BASE, validation_alias="CLOUDFLARE_API_BASE")
    lock_path: Path = Field(default=Path(DEFAULT_LOCK_PATH), validation_alias="ORB_LOCK_PATH")
    lock_timeout: float = Field(
        default=30.0, gt=0, le=600, validation_alias="ORB_LOCK_TIMEOUT"
    )
    service_unit: str = Field(default="cloudflared", validation_alias="ORB_SERVICE_UNIT")
    use_sudo: bool = Field(default=True, validation_alias="ORB_USE_SUDO")
    probe_timeout: float = Field(
        default=5.0, gt=0, le=60, validation_alias="ORB_PROBE_TIMEOUT"
    )

    @field_validator("domain")
    @classmethod
    def validate_domain(cls, v: str) -> str:
        """Normalize and validate the base domain."""
        v = v.lower().strip(".")
        if not v.replace(".", "").replace("-", "").isalnum() or "." not in v:
            raise ValueError("DOMAIN must be a fully qualified domain such as example.com")
        return v

    @field_validator("user_email")
    @classmethod
    def validate_user_email(cls, v: str | None) -> str | None:
        """Treat an empty USER_EMAIL as unset."""
        if not v:
            return None
        if "@" not in v:
            raise ValueError("USER_EMAIL must be an email address")
        return v
