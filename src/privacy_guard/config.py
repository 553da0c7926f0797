"""YAML/dict config loader and service wiring for privacy-guard.

Supports loading from a YAML file or a plain dict (for embedding in a
larger host config).

Example YAML:

    privacy_guard:
      environment: production
      database: ~/.privacy-guard/guard.db
      primary_key_version: v2
      use_presidio: false
      language: en
      score_threshold: 0.35
      dlp:
        high_risk_threshold: 70
        critical_threshold: 90
      identity_ttl_hours: 24
      unmasking_ttl_days: 30
      retention_notice_days: 30

Keys may be listed in the file under ``encryption_keys`` (version: key).
In production supply them through the environment instead; when set, these
replace any keys from the file:

    PRIVACY_ENCRYPTION_KEY=<fernet key>                 # version "v1"
    PRIVACY_ENCRYPTION_KEYS=v2:<new key>,v1:<old key>   # first is primary
"""

from __future__ import annotations
import logging
import os
from dataclasses import dataclass
from datetime import timedelta
from pathlib import Path
from typing import Any, Mapping

from .compliance import ComplianceCenter, ComplianceConfig
from .crypto import FieldCipher, generate_key
from .engine import Clock, EngineConfig, MaskingEngine, utcnow
from .errors import ConfigError
from .middleware import MessageGuard
from .store import SqliteStore
from .vault import IdentityVault

logger = logging.getLogger(__name__)

DEVELOPMENT = "development"

DEFAULT_DB = os.environ.get(
    "PRIVACY_GUARD_DB",
    str(Path.home() / ".privacy-guard" / "guard.db"),
)


def _parse_key_list(raw: str) -> dict[str, str]:
    keys: dict[str, str] = {}
    for item in raw.split(","):
        item = item.strip()
        if not item:
            continue
        version, sep, key = item.partition(":")
        if not sep or not version or not key:
            raise ConfigError("PRIVACY_ENCRYPTION_KEYS entries must look like 'v1:<key>'")
        keys[version.strip()] = key.strip()
    return keys


class LoadedConfig(dict):
    """A config dict that has already been through ``load_config``."""


def load_config(data: Mapping[str, Any] | None = None, env: Mapping[str, str] | None = None) -> LoadedConfig:
    """Normalize a config dict (from YAML or inline) and apply env overrides."""
    data = dict(data or {})
    env = os.environ if env is None else env
    # Support nested under "privacy_guard" key or flat
    if "privacy_guard" in data:
        data = dict(data["privacy_guard"] or {})

    dlp = data.get("dlp", {}) or {}
    keys = {str(k): str(v) for k, v in (data.get("encryption_keys") or {}).items()}
    primary = data.get("primary_key_version")

    if env.get("PRIVACY_ENCRYPTION_KEYS"):
        keys = _parse_key_list(env["PRIVACY_ENCRYPTION_KEYS"])
        primary = next(iter(keys), None)
    elif env.get("PRIVACY_ENCRYPTION_KEY"):
        keys = {"v1": env["PRIVACY_ENCRYPTION_KEY"]}
        primary = "v1"

    cfg = LoadedConfig({
        "environment": env.get("PRIVACY_GUARD_ENV", data.get("environment", "production")),
        "database": env.get("PRIVACY_GUARD_DB", data.get("database", DEFAULT_DB)),
        "encryption_keys": keys,
        "primary_key_version": primary,
        "use_presidio": bool(data.get("use_presidio", False)),
        "language": data.get("language", "en"),
        "score_threshold": float(data.get("score_threshold", 0.35)),
        "entities": data.get("entities"),
        "high_risk_threshold": float(dlp.get("high_risk_threshold", 70)),
        "critical_threshold": float(dlp.get("critical_threshold", 90)),
        "identity_ttl_hours": int(data.get("identity_ttl_hours", 24)),
        "unmasking_ttl_days": int(data.get("unmasking_ttl_days", 30)),
        "retention_notice_days": int(data.get("retention_notice_days", 30)),
    })
    if cfg["critical_threshold"] < cfg["high_risk_threshold"]:
        raise ConfigError("dlp.critical_threshold must not be below dlp.high_risk_threshold")
    return cfg


def load_from_yaml(path: str | Path, env: Mapping[str, str] | None = None) -> LoadedConfig:
    """Load config from a YAML file."""
    import yaml
    with open(Path(path).expanduser()) as f:
        return load_config(yaml.safe_load(f) or {}, env=env)


def build_cipher(cfg: dict[str, Any]) -> FieldCipher:
    """Fail fast when no key is provisioned, except in development."""
    keys = cfg["encryption_keys"]
    if not keys:
        if cfg["environment"] != DEVELOPMENT:
            raise ConfigError(
                "no encryption key configured: set PRIVACY_ENCRYPTION_KEY "
                f"(environment is {cfg['environment']!r})"
            )
        logger.warning("no encryption key configured; using an ephemeral development key")
        keys = {"dev": generate_key()}
        cfg = {**cfg, "primary_key_version": "dev"}
    return FieldCipher(keys, cfg["primary_key_version"])


@dataclass
class Services:
    """Everything a host process needs, constructed once at start-up."""
    store: SqliteStore
    cipher: FieldCipher
    engine: MaskingEngine
    vault: IdentityVault
    compliance: ComplianceCenter
    guard: MessageGuard

    def close(self) -> None:
        self.store.close()


def create_services(
    config: Mapping[str, Any] | None = None,
    *,
    store: SqliteStore | None = None,
    clock: Clock = utcnow,
) -> Services:
    """Create fully wired components from a config dict.

    Anything that is not already a ``LoadedConfig`` is normalized first.
    """
    cfg = config if isinstance(config, LoadedConfig) else load_config(config)

    cipher = build_cipher(cfg)
    store = store or SqliteStore(cfg["database"])
    engine = MaskingEngine(
        store,
        cipher,
        EngineConfig(
            use_presidio=cfg["use_presidio"],
            language=cfg["language"],
            score_threshold=cfg["score_threshold"],
            presidio_entities=cfg.get("entities"),
            high_risk_threshold=cfg["high_risk_threshold"],
            critical_threshold=cfg["critical_threshold"],
        ),
        clock=clock,
    )
    vault = IdentityVault(store, cipher, ttl=timedelta(hours=cfg["identity_ttl_hours"]), clock=clock)
    compliance = ComplianceCenter(
        store,
        cipher,
        ComplianceConfig(
            unmasking_ttl_days=cfg["unmasking_ttl_days"],
            retention_notice_days=cfg["retention_notice_days"],
        ),
        clock=clock,
    )
    logger.info(
        "privacy-guard ready environment=%s db=%s key_version=%s presidio=%s",
        cfg["environment"], store.path, cipher.primary_version, cfg["use_presidio"],
    )
    return Services(
        store=store,
        cipher=cipher,
        engine=engine,
        vault=vault,
        compliance=compliance,
        guard=MessageGuard(engine=engine, store=store),
    )
