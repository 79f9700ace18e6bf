from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict

import os

import yaml

from src.contracts.topics import DEFAULT_PARTITIONS


@dataclass(frozen=True)
class Settings:
    env: str
    redis_url: str
    partitions: int = DEFAULT_PARTITIONS
    consumer_group: str = "eventflow"
    block_ms: int = 5000
    read_count: int = 10
    publish_timeout_seconds: float = 10.0
    completion_workers: int = 4
    max_stream_length: int | None = None
    postgres_dsn: str | None = None
    strict_validation: bool = False
    ack_policy: str = "acknowledge_always"
    log_level: str = "INFO"
    api_host: str = "0.0.0.0"
    api_port: int = 8000


def load_settings(path: str | Path = "config/settings.yaml") -> Settings:
    p = Path(path)
    data: Dict[str, Any] = yaml.safe_load(p.read_text(encoding="utf-8")) or {}

    # Env overrides (used for compose profile isolation).
    env_redis_url = os.getenv("EVENTFLOW_REDIS_URL")
    env_postgres_dsn = os.getenv("EVENTFLOW_POSTGRES_DSN")
    env_log_level = os.getenv("EVENTFLOW_LOG_LEVEL")

    redis_section = data.get("redis", {})
    stream_section = redis_section.get("stream", {})
    producer_section = data.get("producer", {})
    consumer_section = data.get("consumer", {})
    api_section = data.get("api", {})

    max_len = stream_section.get("max_length")
    return Settings(
        env=data.get("env", "dev"),
        redis_url=env_redis_url or redis_section["url"],
        partitions=int(stream_section.get("partitions", DEFAULT_PARTITIONS)),
        consumer_group=consumer_section.get("group", "eventflow"),
        block_ms=int(consumer_section.get("block_ms", 5000)),
        read_count=int(consumer_section.get("read_count", 10)),
        publish_timeout_seconds=float(producer_section.get("timeout_seconds", 10.0)),
        completion_workers=int(producer_section.get("completion_workers", 4)),
        max_stream_length=int(max_len) if max_len else None,
        postgres_dsn=env_postgres_dsn or (data.get("postgres") or {}).get("dsn"),
        strict_validation=bool(producer_section.get("strict_validation", False)),
        ack_policy=consumer_section.get("ack_policy", "acknowledge_always"),
        log_level=(env_log_level or data.get("log_level", "INFO")).upper(),
        api_host=api_section.get("host", "0.0.0.0"),
        api_port=int(api_section.get("port", 8000)),
    )
