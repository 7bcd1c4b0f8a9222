from __future__ import annotations

import json
import signal
import threading
from enum import Enum
from functools import lru_cache
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

import yaml
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict
from structlog import get_logger


logger = get_logger(__name__)


def _b64url_int(data: int) -> str:
    """Return base64url encoding without padding for RSA component integers."""
    length = (data.bit_length() + 7) // 8
    return _b64url_bytes(data.to_bytes(length, "big"))


def _b64url_bytes(raw: bytes) -> str:
    import base64

    return base64.urlsafe_b64encode(raw).rstrip(b"=").decode("ascii")


class Settings(BaseSettings):
    APP_NAME: str = "policygate"
    JWT_ISSUER: str = "https://idp.local"
    JWT_AUDIENCE: str = "policygate"
    JWT_ALG: str = "RS256"
    JWT_TTL_MIN: int = 10
    JWKS_PATH: str = ".runtime/dev-jwks.json"
    SQLITE_URL: str = "sqlite:///./policygate.db"
    AUDIT_WORM_DIR: str = ".audit"
    AUDIT_ENABLED: bool = True
    RBAC_CONFIG_PATH: str = str(Path(__file__).resolve().parent.parent / "policies" / "rbac.yml")
    RBAC_ROLE_STORE: bool = True

    model_config = SettingsConfigDict(env_file=".env", case_sensitive=False)

    @property
    def jwks_path(self) -> Path:
        return Path(self.JWKS_PATH)

    @property
    def private_key_path(self) -> Path:
        return self.jwks_path.with_suffix(".pem")

    @property
    def rbac_config_path(self) -> Path:
        return Path(self.RBAC_CONFIG_PATH)


class RbacMode(str, Enum):
    STUB = "stub"
    PERSIST = "persist"


class PolicyBuckets(BaseModel):
    # Values stay loosely typed; the normalizer drops malformed entries.
    defaults: Dict[str, Any] = Field(default_factory=dict)
    overrides: Dict[str, Any] = Field(default_factory=dict)

    model_config = ConfigDict(extra="ignore")

    @model_validator(mode="before")
    @classmethod
    def accept_flat_map(cls, data: Any) -> Any:
        if data is None:
            return {}
        if not isinstance(data, dict):
            return {}
        if "defaults" in data or "overrides" in data:
            return {
                "defaults": data.get("defaults") if isinstance(data.get("defaults"), dict) else {},
                "overrides": data.get("overrides") if isinstance(data.get("overrides"), dict) else {},
            }
        # Legacy shape: a flat policy map is read as defaults.
        return {"defaults": data, "overrides": {}}


class RbacConfig(BaseModel):
    """Typed RBAC configuration, validated once when loaded."""

    enabled: bool = True
    mode: RbacMode = RbacMode.STUB
    persistence: bool = False
    require_auth: bool = False
    roles: List[str] = Field(default_factory=list)
    policies: PolicyBuckets = Field(default_factory=PolicyBuckets)
    capabilities: Dict[str, Any] = Field(default_factory=dict)

    model_config = ConfigDict(extra="ignore")

    @field_validator("mode", mode="before")
    @classmethod
    def default_blank_mode(cls, value: Any) -> Any:
        if value is None or value == "":
            return RbacMode.STUB
        if isinstance(value, str):
            return value.strip().lower()
        return value

    @field_validator("persistence", "require_auth", "enabled", mode="before")
    @classmethod
    def coerce_flag(cls, value: Any) -> Any:
        if value is None or value == "":
            return False
        return value

    @field_validator("roles", mode="before")
    @classmethod
    def keep_string_roles(cls, value: Any) -> List[str]:
        if isinstance(value, str):
            return [value]
        if not isinstance(value, list):
            return []
        return [item for item in value if isinstance(item, str) and item.strip()]

    @field_validator("capabilities", mode="before")
    @classmethod
    def default_capabilities(cls, value: Any) -> Dict[str, Any]:
        return value if isinstance(value, dict) else {}

    @property
    def persistence_enabled(self) -> bool:
        return self.mode is RbacMode.PERSIST or self.persistence

    def capability_enabled(self, key: str) -> bool:
        """Resolve a dotted capability flag; absent or non-boolean flags count as disabled."""
        node: Any = self.capabilities
        for part in key.split("."):
            if not isinstance(node, dict) or part not in node:
                return False
            node = node[part]
        return node is True


def load_rbac_config(path: Path) -> RbacConfig:
    if not path.exists():
        logger.warning("rbac_config.missing", path=str(path))
        return RbacConfig()
    data = yaml.safe_load(path.read_text("utf-8")) or {}
    if not isinstance(data, dict):
        raise ValueError(f"RBAC config at {path} must be a mapping")
    return RbacConfig.model_validate(data)


class RbacConfigSource:
    """Holds the live RBAC configuration; reloads from disk on demand or SIGHUP."""

    def __init__(self, path: Optional[Path] = None, config: Optional[RbacConfig] = None):
        self.path = path
        self.version = 0
        self._lock = threading.Lock()
        self._config = config or RbacConfig()
        if config is None and path is not None:
            self.reload()

    def install_signal_handler(self) -> bool:
        # signal.signal() only works from the main thread.
        if not hasattr(signal, "SIGHUP") or threading.current_thread() is not threading.main_thread():
            return False
        signal.signal(signal.SIGHUP, lambda *_: self.reload())
        return True

    def reload(self) -> None:
        if self.path is None:
            return
        config = load_rbac_config(self.path)
        self.set(config)
        logger.info("rbac_config.reloaded", path=str(self.path), version=self.version)

    def set(self, config: RbacConfig) -> None:
        with self._lock:
            self._config = config
            self.version += 1

    def current(self) -> RbacConfig:
        return self._config


def _generate_dev_rsa_key() -> rsa.RSAPrivateKey:
    return rsa.generate_private_key(public_exponent=65537, key_size=2048)


def _ensure_dev_jwks(settings: Settings) -> Tuple[Dict[str, Any], bytes]:
    """Ensure JWKS and PEM exist; returns jwks dict and private key bytes."""
    jwks_path = settings.jwks_path
    pem_path = settings.private_key_path

    if jwks_path.exists() and pem_path.exists():
        jwks = json.loads(jwks_path.read_text("utf-8"))
        return jwks, pem_path.read_bytes()

    jwks_path.parent.mkdir(parents=True, exist_ok=True)

    private_key = _generate_dev_rsa_key()
    pem_bytes = private_key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.NoEncryption(),
    )
    pem_path.write_bytes(pem_bytes)

    public_numbers = private_key.public_key().public_numbers()
    # Only the public half goes into the JWKS; the PEM stays beside it for signing.
    jwk = {
        "kty": "RSA",
        "alg": settings.JWT_ALG,
        "use": "sig",
        "kid": "dev-key",
        "n": _b64url_int(public_numbers.n),
        "e": _b64url_int(public_numbers.e),
    }

    jwks = {"keys": [jwk]}
    jwks_path.write_text(json.dumps(jwks, indent=2), encoding="utf-8")

    return jwks, pem_bytes


@lru_cache
def get_settings() -> Settings:
    settings = Settings()
    _ensure_dev_jwks(settings)
    return settings


@lru_cache
def get_dev_crypto_material() -> Tuple[Dict[str, Any], bytes]:
    """Return JWKS dictionary and PEM-encoded private key for dev usage."""
    settings = get_settings()
    return _ensure_dev_jwks(settings)
