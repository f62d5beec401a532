from __future__ import annotations

import os
from dataclasses import dataclass

import structlog

_logger = structlog.get_logger(__name__)

try:
    # 统一从 APP_ENV 选择性加载环境文件；默认回退到 dev.env
    from dotenv import load_dotenv

    base_dir: str = os.path.dirname(os.path.dirname(os.path.dirname(__file__)))
    config_dir: str = os.path.join(base_dir, "config")

    env_name: str = (os.getenv("APP_ENV") or "").strip().lower()
    if env_name in {"field", "staging", "production"}:
        env_file: str = os.path.join(config_dir, f"env.{env_name}")
    else:
        env_file = os.path.join(config_dir, "dev.env")

    # 已存在的环境变量优先，环境文件只做补充
    load_dotenv(env_file, override=False)
    _logger.info("dotenv_env_selected", app_env=env_name or "(default:dev)", file=env_file)
except Exception as exc:
    # 环境文件缺失不影响运行（保持现有环境变量）
    _logger.warning("dotenv_load_skipped", error=str(exc))


_TRUE_VALUES = {"1", "true", "yes", "y", "on"}


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return float(raw)
    except ValueError:
        _logger.warning("config_value_invalid", key=name, raw=raw, fallback=default)
        return default


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return int(raw)
    except ValueError:
        _logger.warning("config_value_invalid", key=name, raw=raw, fallback=default)
        return default


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    return raw.strip().lower() in _TRUE_VALUES


@dataclass(frozen=True)
class AppConfig:
    store_backend: str
    postgres_online_dsn: str | None
    postgres_offline_dsn: str | None
    pool_max_size: int
    cascade_radius_km: float
    connection_max_km: float
    status_verify_attempts: int
    status_verify_delay_seconds: float
    at_risk_verify_delay_seconds: float
    report_severity_threshold: float
    report_adjustment_cap: float
    sync_interval_seconds: float
    start_online: bool
    seed_sample_data: bool
    log_json: bool
    log_level: str

    @property
    def cascade_radius_m(self) -> float:
        return self.cascade_radius_km * 1000.0

    @property
    def connection_max_m(self) -> float:
        return self.connection_max_km * 1000.0

    @staticmethod
    def load_from_env() -> "AppConfig":
        backend = (os.getenv("STORE_BACKEND") or "postgres").strip().lower()
        if backend not in {"postgres", "memory"}:
            _logger.warning("store_backend_unknown", raw=backend, fallback="memory")
            backend = "memory"

        online_dsn = os.getenv("POSTGRES_ONLINE_DSN")
        # 未单独配置离线库时复用在线库 DSN，由 schema 前缀隔离
        offline_dsn = os.getenv("POSTGRES_OFFLINE_DSN", online_dsn)

        verify_attempts = _env_int("STATUS_VERIFY_ATTEMPTS", 5)
        if verify_attempts < 1:
            _logger.warning("config_value_invalid", key="STATUS_VERIFY_ATTEMPTS", raw=verify_attempts, fallback=5)
            verify_attempts = 5

        return AppConfig(
            store_backend=backend,
            postgres_online_dsn=online_dsn,
            postgres_offline_dsn=offline_dsn,
            pool_max_size=_env_int("POSTGRES_POOL_MAX_SIZE", 4),
            cascade_radius_km=_env_float("CASCADE_RADIUS_KM", 50.0),
            connection_max_km=_env_float("CONNECTION_MAX_KM", 200.0),
            status_verify_attempts=verify_attempts,
            status_verify_delay_seconds=_env_float("STATUS_VERIFY_DELAY_SECONDS", 0.2),
            at_risk_verify_delay_seconds=_env_float("AT_RISK_VERIFY_DELAY_SECONDS", 0.1),
            report_severity_threshold=_env_float("REPORT_SEVERITY_THRESHOLD", 3.0),
            report_adjustment_cap=_env_float("REPORT_ADJUSTMENT_CAP", 50.0),
            sync_interval_seconds=_env_float("SYNC_INTERVAL_SECONDS", 5.0),
            start_online=_env_bool("START_ONLINE", True),
            seed_sample_data=_env_bool("SEED_SAMPLE_DATA", True),
            log_json=_env_bool("LOG_JSON", False),
            log_level=os.getenv("LOG_LEVEL", "INFO"),
        )
