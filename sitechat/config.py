import json
import os
from pathlib import Path
from typing import Any, Dict, Optional, Tuple, Type

from pydantic import BaseModel, Field, field_validator
from pydantic_settings import BaseSettings, PydanticBaseSettingsSource, SettingsConfigDict


BASE_DIR = Path(__file__).resolve().parent
DEFAULT_CONFIG_PATH = BASE_DIR.parent / "sitechat_config.json"


class BootstrapAssistant(BaseModel):
    name: str = Field(min_length=1, max_length=200)
    url: str = Field(min_length=1)

    @field_validator("name", "url")
    @classmethod
    def _strip(cls, value: str) -> str:
        return str(value).strip()

    @field_validator("url")
    @classmethod
    def _no_trailing_slash(cls, value: str) -> str:
        return value.rstrip("/")


class Settings(BaseSettings):
    """Runtime settings.

    Values come from ``SITECHAT_*`` environment variables first, then from
    the keyword arguments (the JSON config file, see ``load_settings``),
    then the defaults below. ``bootstrap_assistant`` can be set with
    ``SITECHAT_BOOTSTRAP_ASSISTANT__NAME`` and ``SITECHAT_BOOTSTRAP_ASSISTANT__URL``.
    """

    model_config = SettingsConfigDict(
        env_prefix="SITECHAT_",
        env_nested_delimiter="__",
        extra="ignore",
    )

    state_dir: str = "state"
    model: str = "gpt-3.5-turbo"
    crawl_interval_sec: float = Field(default=3600.0, gt=0)
    index_poll_interval_sec: float = Field(default=0.5, gt=0)
    wait_initial_backoff_sec: float = Field(default=0.5, gt=0)
    wait_max_backoff_sec: float = Field(default=10.0, gt=0)
    retry_initial_backoff_sec: float = Field(default=1.0, gt=0)
    retry_max_backoff_sec: float = Field(default=60.0, gt=0)
    upload_concurrency: int = Field(default=8, ge=1)
    gc_max_attempts: int = Field(default=5, ge=1)
    log_level: str = "INFO"
    auth_secret: str = ""
    bootstrap_assistant: Optional[BootstrapAssistant] = None

    @field_validator("log_level")
    @classmethod
    def _upper(cls, value: str) -> str:
        return str(value or "INFO").strip().upper()

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: Type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,
        file_secret_settings: PydanticBaseSettingsSource,
    ) -> Tuple[PydanticBaseSettingsSource, ...]:
        return env_settings, init_settings


# Bounds applied to values read from the config file.
_FLOAT_BOUNDS = {
    "crawl_interval_sec": (1.0, 7 * 86400.0),
    "index_poll_interval_sec": (0.05, 60.0),
    "wait_initial_backoff_sec": (0.01, 60.0),
    "wait_max_backoff_sec": (0.01, 600.0),
    "retry_initial_backoff_sec": (0.01, 60.0),
    "retry_max_backoff_sec": (0.01, 3600.0),
}
_INT_BOUNDS = {
    "upload_concurrency": (1, 64),
    "gc_max_attempts": (1, 100),
}


def _field_default(key: str) -> Any:
    return Settings.model_fields[key].default


def _float_in(raw: Dict[str, Any], key: str, low: float, high: float) -> float:
    default = float(_field_default(key))
    try:
        value = float(raw.get(key, default))
    except (TypeError, ValueError):
        value = default
    return min(max(value, low), high)


def _int_in(raw: Dict[str, Any], key: str, low: int, high: int) -> int:
    default = int(_field_default(key))
    try:
        value = int(raw.get(key, default))
    except (TypeError, ValueError):
        value = default
    return min(max(value, low), high)


def _load_config_file(path: Path) -> Dict[str, Any]:
    if not path.exists():
        return {}
    try:
        raw = json.loads(path.read_text(encoding="utf-8"))
    except Exception:
        return {}
    if not isinstance(raw, dict):
        return {}
    return raw


def _file_values(raw: Dict[str, Any]) -> Dict[str, Any]:
    values: Dict[str, Any] = {}
    for key in ("state_dir", "model", "log_level", "auth_secret"):
        if raw.get(key):
            values[key] = str(raw[key])
    for key, (low, high) in _FLOAT_BOUNDS.items():
        if key in raw:
            values[key] = _float_in(raw, key, low, high)
    for key, (low, high) in _INT_BOUNDS.items():
        if key in raw:
            values[key] = _int_in(raw, key, low, high)
    bootstrap = raw.get("bootstrap_assistant")
    if isinstance(bootstrap, dict):
        name = str(bootstrap.get("name", "") or "").strip()
        url = str(bootstrap.get("url", "") or "").strip()
        if name and url:
            values["bootstrap_assistant"] = {"name": name, "url": url}
    return values


def load_settings(path: Optional[Path] = None) -> Settings:
    """Build settings from the JSON config file plus ``SITECHAT_*`` env vars.

    A missing or malformed file falls back to defaults. Numeric file values
    are clamped to sane ranges instead of rejected.
    """
    if path is None:
        path = Path(os.getenv("SITECHAT_CONFIG", "") or DEFAULT_CONFIG_PATH)
    return Settings(**_file_values(_load_config_file(path)))
