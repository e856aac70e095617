"""
Configuration for KEEL

The configuration is a tree of pydantic models, loaded from a YAML file
(``--config``) when one is given. Command line flags in ``panel_server.main``
override individual values.
"""

import re
from typing import List, Optional

import yaml
from pydantic import BaseModel, Field

_SIZE_UNITS = {"B": 1, "KB": 1024, "MB": 1024 ** 2, "GB": 1024 ** 3, "TB": 1024 ** 4}
_SIZE_PATTERN = re.compile(r"^\s*(\d+(?:\.\d+)?)\s*([KMGT]?B)?\s*$", re.IGNORECASE)


# ============================================================================
# Configuration Models
# ============================================================================

class ServerConfig(BaseModel):
    """HTTP server configuration"""
    host: str = "127.0.0.1"
    port: int = 8196
    workers: int = 16
    task_timeout: Optional[float] = 300.0


class StorageConfig(BaseModel):
    """File manager configuration"""
    root_dir: str = "./files"
    max_upload_bytes: int = 10 * 1024 * 1024  # 10MB
    chunk_size: int = 1024 * 1024  # 1MB
    allowed_extensions: List[str] = []
    blocked_extensions: List[str] = []


class SecurityConfig(BaseModel):
    """Authentication and session configuration"""
    admin_identifier: str = "admin"
    admin_password: Optional[str] = None
    users_file: Optional[str] = None
    session_ttl_seconds: int = 24 * 60 * 60
    bcrypt_rounds: int = 12
    cookie_name: str = "session_token"


class LoggingConfig(BaseModel):
    """Logging configuration"""
    level: str = "INFO"
    file: Optional[str] = None


class AppConfig(BaseModel):
    """Application configuration"""
    server: ServerConfig = Field(default_factory=ServerConfig)
    storage: StorageConfig = Field(default_factory=StorageConfig)
    security: SecurityConfig = Field(default_factory=SecurityConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)


def parse_size(size_str: str) -> int:
    """Parse a human readable size such as '10MB' or '1.5kb' into bytes"""
    match = _SIZE_PATTERN.match(size_str)
    if match is None:
        raise ValueError(f"Invalid size format: {size_str!r}")
    number, unit = match.groups()
    return int(float(number) * _SIZE_UNITS[(unit or "B").upper()])


def load_config_from_file(config_file: str) -> AppConfig:
    """Load configuration from YAML file"""
    with open(config_file, 'r') as f:
        config_dict = yaml.safe_load(f) or {}

    # Allow human readable sizes in the YAML file
    storage = config_dict.get("storage") or {}
    if isinstance(storage.get("max_upload_bytes"), str):
        storage["max_upload_bytes"] = parse_size(storage["max_upload_bytes"])

    return AppConfig(**config_dict)
