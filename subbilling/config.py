#!/usr/bin/env python3
"""
Billing engine config adapter: unify env + optional YAML config.

Usage:
  from subbilling.config import cfg
  print(cfg.DATABASE_URL, cfg.MAX_PAYMENT_FAILURES)

Lookup order for the YAML file: $SUBBILLING_CONFIG, ./config.yaml, ./config.yml.
Only keys that exist on Config are applied; the raw mapping is kept on cfg._raw.
"""
from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml


def _config_paths() -> List[Path]:
    paths = []
    if os.environ.get("SUBBILLING_CONFIG"):
        paths.append(Path(os.environ["SUBBILLING_CONFIG"]))
    paths.extend([Path("config.yaml"), Path("config.yml")])
    return paths


def _load_yaml(path: Path) -> dict:
    try:
        return yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    except (OSError, yaml.YAMLError):
        return {}


def _env_int(name: str, default: int) -> int:
    return int(os.environ.get(name, str(default)))


def _env_list(name: str, default: str) -> List[str]:
    return [s.strip() for s in os.environ.get(name, default).split(",") if s.strip()]


@dataclass
class Config:
    # general
    ENV: str = field(default_factory=lambda: os.environ.get("ENV", "development"))
    LOG_LEVEL: str = field(default_factory=lambda: os.environ.get("SUBBILLING_LOG_LEVEL", "INFO"))

    # database
    DATABASE_URL: str = field(default_factory=lambda: os.environ.get("DATABASE_URL", "sqlite:///./subbilling.db"))

    # payment gateway
    STRIPE_API_KEY: Optional[str] = field(default_factory=lambda: os.environ.get("STRIPE_API_KEY"))
    STRIPE_WEBHOOK_SECRET: Optional[str] = field(default_factory=lambda: os.environ.get("STRIPE_WEBHOOK_SECRET"))
    GATEWAY_TIMEOUT_SECONDS: int = field(default_factory=lambda: _env_int("GATEWAY_TIMEOUT_SECONDS", 30))
    GATEWAY_MAX_NETWORK_RETRIES: int = field(default_factory=lambda: _env_int("GATEWAY_MAX_NETWORK_RETRIES", 2))

    # trigger auth: shared secret for the scheduler, JWT for operators
    SCHEDULER_SECRET: Optional[str] = field(default_factory=lambda: os.environ.get("SCHEDULER_SECRET"))
    JWT_SECRET_KEY: str = field(default_factory=lambda: os.environ.get("JWT_SECRET_KEY", "dev-secret-key-change-me"))
    JWT_ALGORITHM: str = "HS256"
    OPERATOR_SCOPES: List[str] = field(default_factory=lambda: _env_list("OPERATOR_SCOPES", "admin,billing:operator"))

    # scheduler / concurrency
    SCHEDULER_MAX_WORKERS: int = field(default_factory=lambda: _env_int("SCHEDULER_MAX_WORKERS", 4))
    ATTEMPT_LEASE_SECONDS: int = field(default_factory=lambda: _env_int("ATTEMPT_LEASE_SECONDS", 900))

    # dunning policy
    MAX_PAYMENT_FAILURES: int = field(default_factory=lambda: _env_int("MAX_PAYMENT_FAILURES", 3))
    GRACE_PERIOD_DAYS: int = field(default_factory=lambda: _env_int("GRACE_PERIOD_DAYS", 7))
    RETRY_INTERVAL_DAYS: int = field(default_factory=lambda: _env_int("RETRY_INTERVAL_DAYS", 3))

    # celery
    BROKER_URL: str = field(default_factory=lambda: os.environ.get("SUBBILLING_BROKER_URL", os.environ.get("CELERY_BROKER_URL", "redis://localhost:6379/0")))
    RESULT_BACKEND: Optional[str] = field(default_factory=lambda: os.environ.get("SUBBILLING_RESULT_BACKEND"))
    BILLING_RUN_INTERVAL_MINUTES: int = field(default_factory=lambda: _env_int("BILLING_RUN_INTERVAL_MINUTES", 60))

    # raw loaded yaml (if any)
    _raw: Dict[str, Any] = field(default_factory=dict)


def _merge_from_yaml(config: Config, path: Optional[Path] = None) -> Config:
    candidates = [path] if path else _config_paths()
    for p in candidates:
        if p.exists():
            raw = _load_yaml(p)
            for k, v in raw.items():
                if hasattr(config, k) and not k.startswith("_"):
                    setattr(config, k, v)
            config._raw = raw
            break
    return config


def load_config(path: Optional[Path] = None) -> Config:
    """Build a fresh Config from the environment plus the first YAML file found."""
    return _merge_from_yaml(Config(), Path(path) if path else None)


# Single shared config object
cfg = load_config()
