"""
Configuration management for the Modbus Security PKI.

Non-secret configuration loaded from YAML file, overrides from environment variables.
"""

import re
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

CONFIG_PATH = Path("/etc/mbsec/config.yaml")

# Aliases become file names in the PKI directory
ALIAS_PATTERN = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_.-]{0,62}$")


def yaml_config_settings_source() -> dict[str, Any]:
    """Load configuration from YAML file."""
    if CONFIG_PATH.exists():
        with open(CONFIG_PATH) as f:
            return yaml.safe_load(f) or {}
    return {}


class ClientIdentityConfig(BaseModel):
    """A client identity issued at bootstrap with a fixed role."""

    alias: str = Field(description="Store alias; also the archive file stem (e.g. 'client1')")
    role: str = Field(description="Role embedded in the client certificate (e.g. 'ReadOnly')")

    @field_validator("alias")
    @classmethod
    def validate_alias(cls, v: str) -> str:
        """Validate alias is usable as a file name."""
        if not ALIAS_PATTERN.match(v):
            raise ValueError(
                "Alias must start with a letter or digit and contain only "
                "letters, digits, '.', '_' or '-' (max 63 characters)"
            )
        return v


class CertificateConfig(BaseSettings):
    """Certificate authority configuration."""

    validity_days: int = Field(default=365, ge=1, description="Certificate lifetime in days")
    key_size: int = Field(default=2048, ge=2048, description="RSA modulus size in bits")


class ServerConfig(BaseSettings):
    """Modbus/TCP Security listener configuration."""

    host: str = Field(default="0.0.0.0", description="Bind address")
    port: int = Field(default=802, ge=0, le=65535, description="Bind port (802 is Modbus/TLS)")
    require_client_cert: bool = Field(
        default=True,
        description="Reject peers that present no certificate during the handshake",
    )
    dns_names: list[str] = Field(
        default_factory=lambda: ["localhost"],
        description="DNS names placed in the server certificate SAN",
    )


class ClientConfig(BaseModel):
    """Defaults for the mbsec-client command."""

    alias: str = Field(default="client1", description="Client identity used when none is given")
    port: int = Field(default=802, ge=1, le=65535, description="Server port")
    unit_id: int = Field(default=1, ge=0, le=255, description="Modbus unit id")
    server_name: str = Field(
        default="localhost",
        description="Name checked against the server certificate SAN",
    )
    timeout: float = Field(default=5.0, gt=0, description="Connect and response timeout in seconds")


def _default_clients() -> list[ClientIdentityConfig]:
    return [
        ClientIdentityConfig(alias="client1", role="ReadOnly"),
        ClientIdentityConfig(alias="client2", role="ReadWrite"),
    ]


class Settings(BaseSettings):
    """Main application settings."""

    model_config = SettingsConfigDict(
        env_prefix="MBSEC_",
        env_nested_delimiter="__",
        extra="ignore",
    )

    # Application
    app_name: str = Field(default="mbsec")
    debug: bool = Field(default=False)
    log_level: str = Field(default="INFO")
    json_logs: bool = Field(default=True, description="JSON logging in production")

    # Credential archives and their PEM companions are stored here
    pki_dir: Path = Field(
        default=Path("./pki"),
        description="Directory for CA, server and client credential storage",
    )

    clients: list[ClientIdentityConfig] = Field(
        default_factory=_default_clients,
        description="Client identities ensured at bootstrap",
    )

    certificates: CertificateConfig = Field(default_factory=CertificateConfig)

    server: ServerConfig = Field(default_factory=ServerConfig)

    client: ClientConfig = Field(default_factory=ClientConfig)

    @field_validator("clients")
    @classmethod
    def validate_unique_aliases(
        cls, v: list[ClientIdentityConfig]
    ) -> list[ClientIdentityConfig]:
        """Reject duplicate aliases and aliases reserved for the CA and server."""
        seen: set[str] = set()
        for client in v:
            if client.alias in ("ca", "server"):
                raise ValueError(f"Client alias '{client.alias}' is reserved")
            if client.alias in seen:
                raise ValueError(f"Duplicate client alias '{client.alias}'")
            seen.add(client.alias)
        return v

    @property
    def effective_log_level(self) -> str:
        """DEBUG when debug is enabled, otherwise the configured log level."""
        return "DEBUG" if self.debug else self.log_level

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings: Any,
        env_settings: Any,
        dotenv_settings: Any,
        file_secret_settings: Any,
    ) -> tuple[Any, ...]:
        """Customize settings sources: env vars override YAML config."""
        return (
            init_settings,
            env_settings,
            yaml_config_settings_source,
            dotenv_settings,
            file_secret_settings,
        )


# Global settings instance
settings = Settings()
