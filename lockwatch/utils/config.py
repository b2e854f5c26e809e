from __future__ import annotations
import os
from dataclasses import dataclass
from functools import lru_cache
from typing import List


def _parse_int(name: str, default: int) -> int:
    v = os.getenv(name)
    if v is None or v == "":
        return default
    try:
        return int(v)
    except ValueError as e:
        raise ValueError(f"Invalid int for {name}: {v!r}") from e


def _parse_float(name: str, default: float) -> float:
    v = os.getenv(name)
    if v is None or v == "":
        return default
    try:
        return float(v)
    except ValueError as e:
        raise ValueError(f"Invalid float for {name}: {v!r}") from e


def _parse_list(name: str) -> List[str]:
    raw = os.getenv(name, "")
    return [x.strip() for x in raw.split(",") if x.strip()]


@dataclass(frozen=True)
class Settings:
    # Identity & network
    node_id: str
    http_port: int

    # Ledger
    ledger_backend: str            # memory | redis
    redis_url: str
    ledger_namespace: str
    poll_interval_sec: float

    # Advice service
    advice_url: str
    advice_timeout_sec: float
    advice_retries: int
    advice_backoff_ms: int
    max_users: int
    max_resources: int

    # Disruption score weights
    weight_role: float
    weight_idle: float
    weight_session: float
    weight_active_locks: float
    exempt_users: List[str]

    # Misc
    log_level: str = "INFO"
    log_file: str = ""

    @property
    def uses_redis(self) -> bool:
        return self.ledger_backend == "redis"


@lru_cache(maxsize=1)
def load_settings() -> Settings:
    """
    Read environment variables and return Settings (cached).
    """
    backend = os.getenv("LEDGER_BACKEND", "memory").strip().lower()
    if backend not in ("memory", "redis"):
        raise ValueError(f"Invalid LEDGER_BACKEND: {backend!r}")
    return Settings(
        node_id=os.getenv("NODE_ID", "monitor-1"),
        http_port=_parse_int("HTTP_PORT", 8080),
        ledger_backend=backend,
        redis_url=os.getenv("REDIS_URL", "redis://redis:6379/0"),
        ledger_namespace=os.getenv("LEDGER_NAMESPACE", "default"),
        poll_interval_sec=_parse_float("POLL_INTERVAL_SEC", 0.0),  # 0 = push only
        advice_url=os.getenv("ADVICE_URL", ""),
        advice_timeout_sec=_parse_float("ADVICE_TIMEOUT_SEC", 20.0),
        advice_retries=_parse_int("ADVICE_RETRIES", 2),
        advice_backoff_ms=_parse_int("ADVICE_BACKOFF_MS", 500),
        max_users=_parse_int("MAX_USERS", 10),
        max_resources=_parse_int("MAX_RESOURCES", 20),
        weight_role=_parse_float("WEIGHT_ROLE", 10.0),
        weight_idle=_parse_float("WEIGHT_IDLE", 5.0),
        weight_session=_parse_float("WEIGHT_SESSION", 1.0),
        weight_active_locks=_parse_float("WEIGHT_ACTIVE_LOCKS", 2.0),
        exempt_users=_parse_list("EXEMPT_USERS"),  # e.g. "admin,ops-bot"
        log_level=os.getenv("LOG_LEVEL", "INFO"),
        log_file=os.getenv("LOG_FILE", ""),
    )
