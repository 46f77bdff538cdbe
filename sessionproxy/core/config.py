"""
Configuration Management System
Handles proxy, certificate authority and session logging settings
"""

import yaml
from pathlib import Path
from typing import Dict, Any, Optional, Union
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings  # Pydantic v2 import
import structlog

from sessionproxy.core.exceptions import StorageError

logger = structlog.get_logger()

DEFAULT_CONFIG_FILE = Path("config/default.yaml")


class ProxyConfig(BaseSettings):
    """Listener settings handed to mitmproxy"""

    host: str = Field("0.0.0.0")
    port: int = Field(8080)

    # mitmproxy reads its CA bundle and dhparams from here
    confdir: Path = Field(Path("data/mitmproxy"))

    # Skip upstream certificate verification
    ssl_insecure: bool = Field(False)

    @field_validator("port", mode='after')
    @classmethod
    def validate_port(cls, v):
        if not 0 <= v <= 65535:
            raise ValueError("port must be between 0 and 65535")
        return v

    model_config = {
        "env_prefix": "PROXY_",
        "env_file": ".env",
        "extra": "ignore"
    }


class CertificateConfig(BaseSettings):
    """Root certificate authority used for TLS interception"""

    # Generate the CA on start-up when either file is missing
    auto_generate: bool = Field(True)

    organization: str = Field("Rogue Proxy")
    common_name: str = Field("Rogue CA")
    valid_days: int = Field(365)
    key_size: int = Field(2048)

    cert_path: Path = Field(Path("certs/ca.crt"))
    key_path: Path = Field(Path("certs/ca.key"))

    @field_validator("valid_days", mode='after')
    @classmethod
    def validate_valid_days(cls, v):
        if v < 1:
            raise ValueError("valid_days must be at least 1")
        return v

    @field_validator("key_size", mode='after')
    @classmethod
    def validate_key_size(cls, v):
        """Anything weaker than 2048-bit RSA is rejected by modern clients"""
        if v < 2048:
            raise ValueError("key_size must be at least 2048 bits")
        return v

    model_config = {
        "env_prefix": "CA_",
        "env_file": ".env",
        "extra": "ignore"
    }


class LoggingConfig(BaseSettings):
    """What the session recorder captures and where it goes"""

    session_dir: Path = Field(Path("logs"))

    log_requests: bool = Field(True)
    log_responses: bool = Field(True)
    log_headers: bool = Field(True)
    log_body: bool = Field(True)

    # Bytes of each body kept in the session document
    max_body_size: int = Field(1024 * 1024)  # 1MB

    @field_validator("max_body_size", mode='after')
    @classmethod
    def validate_max_body_size(cls, v):
        if v < 0:
            raise ValueError("max_body_size cannot be negative")
        return v

    model_config = {
        "env_prefix": "SESSION_",
        "env_file": ".env",
        "extra": "ignore"
    }


class ApplicationConfig:
    """
    Main configuration class that combines all config sections

    Values come from (highest priority first) explicit overrides, the YAML
    config file, environment variables, then the defaults above.
    """

    SECTIONS = {
        "proxy": ProxyConfig,
        "certificate": CertificateConfig,
        "logging": LoggingConfig,
    }

    def __init__(
        self,
        config_file: Optional[Union[str, Path]] = None,
        **overrides: Dict[str, Any]
    ):
        self.config_file = Path(config_file) if config_file else DEFAULT_CONFIG_FILE
        self.custom_config = self._load_custom_config()

        sections = {}
        for name, section_cls in self.SECTIONS.items():
            values = dict(self.custom_config.get(name) or {})
            values.update(overrides.get(name) or {})
            sections[name] = section_cls(**values)

        self.proxy: ProxyConfig = sections["proxy"]
        self.certificate: CertificateConfig = sections["certificate"]
        self.logging: LoggingConfig = sections["logging"]

    def _load_custom_config(self) -> Dict[str, Any]:
        """Load user-defined configuration from the YAML file"""
        if not self.config_file.exists():
            return {}

        with open(self.config_file, 'r') as f:
            data = yaml.safe_load(f) or {}

        if not isinstance(data, dict):
            raise ValueError(f"{self.config_file} must contain a mapping of sections")

        logger.debug("Loaded config file", path=str(self.config_file))
        return data

    def to_dict(self) -> Dict[str, Any]:
        """Plain, YAML-safe view of every section"""
        return {
            "proxy": self.proxy.model_dump(mode="json"),
            "certificate": self.certificate.model_dump(mode="json"),
            "logging": self.logging.model_dump(mode="json"),
        }

    def save(self, path: Optional[Union[str, Path]] = None) -> Path:
        """Write the effective configuration as YAML"""
        target = Path(path) if path else self.config_file
        try:
            target.parent.mkdir(parents=True, exist_ok=True)
            with open(target, 'w') as f:
                yaml.safe_dump(self.to_dict(), f, sort_keys=False)
        except OSError as e:
            raise StorageError(f"cannot write config file {target}: {e}") from e

        logger.info("Configuration saved", path=str(target))
        return target
