"""Configuration loading utilities for the paddock-auth broker."""

from __future__ import annotations

import argparse
import json
import os
from dataclasses import dataclass
from datetime import timedelta
from pathlib import Path
from typing import Any, Mapping, MutableMapping, Sequence

ENV_PREFIX = "PADDOCK_AUTH_"

BOOL_TRUE = {"1", "true", "t", "yes", "y", "on"}
BOOL_FALSE = {"0", "false", "f", "no", "n", "off"}

DEFAULT_HTTP_HOST = "127.0.0.1"
DEFAULT_HTTP_PORT = 8765
DEFAULT_HTTP_PATH = "/mcp"
DEFAULT_METRICS_PATH = "/metrics"
DEFAULT_STORAGE_SUBDIR = "paddock-auth"
DEFAULT_STORAGE_BACKEND = "memory"
DEFAULT_IDP_SCOPES = "openid email profile"
DEFAULT_IDP_TIMEOUT = "10s"
DEFAULT_SESSION_TTL = "10m"
DEFAULT_CODE_TTL = "5m"
DEFAULT_LOG_LEVEL = "INFO"

STORAGE_BACKENDS = {"memory", "lancedb"}
LOG_LEVELS = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}


def _default_storage_dir() -> Path:
    """Return the default storage directory under the current working directory."""

    return (Path.cwd() / DEFAULT_STORAGE_SUBDIR).resolve()


DEFAULT_STORAGE_DIR = _default_storage_dir()

T_DURATION_UNITS = {"s": 1, "m": 60, "h": 3600}

_FIELDS = (
    "config_file",
    "storage_backend",
    "storage_dir",
    "base_url",
    "enable_stdio",
    "enable_http",
    "enable_metrics",
    "http_host",
    "http_port",
    "http_path",
    "metrics_path",
    "idp_authorize_url",
    "idp_token_url",
    "idp_userinfo_url",
    "idp_client_id",
    "idp_client_secret",
    "idp_scopes",
    "idp_timeout",
    "session_ttl",
    "code_ttl",
    "dev_user",
    "log_level",
)

ENV_FIELD_MAP = {field: f"{ENV_PREFIX}{field.upper()}" for field in _FIELDS}

# The client secret stays out of generated config files.
_SECRET_FIELDS = {"idp_client_secret"}

DEFAULT_VALUES: dict[str, Any] = {
    "config_file": None,
    "storage_backend": DEFAULT_STORAGE_BACKEND,
    "storage_dir": str(DEFAULT_STORAGE_DIR),
    "base_url": None,
    "enable_stdio": False,
    "enable_http": True,
    "enable_metrics": False,
    "http_host": DEFAULT_HTTP_HOST,
    "http_port": DEFAULT_HTTP_PORT,
    "http_path": DEFAULT_HTTP_PATH,
    "metrics_path": DEFAULT_METRICS_PATH,
    "idp_authorize_url": None,
    "idp_token_url": None,
    "idp_userinfo_url": None,
    "idp_client_id": None,
    "idp_client_secret": None,
    "idp_scopes": DEFAULT_IDP_SCOPES,
    "idp_timeout": DEFAULT_IDP_TIMEOUT,
    "session_ttl": DEFAULT_SESSION_TTL,
    "code_ttl": DEFAULT_CODE_TTL,
    "dev_user": None,
    "log_level": DEFAULT_LOG_LEVEL,
}


class ConfigError(ValueError):
    """Raised when configuration values are invalid."""


@dataclass(slots=True)
class Config:
    """Configuration model for the paddock-auth broker."""

    storage_backend: str
    storage_dir: Path
    base_url: str
    enable_stdio: bool
    enable_http: bool
    enable_metrics: bool
    http_host: str
    http_port: int
    http_path: str
    metrics_path: str
    idp_authorize_url: str | None
    idp_token_url: str | None
    idp_userinfo_url: str | None
    idp_client_id: str | None
    idp_client_secret: str | None
    idp_scopes: str
    idp_timeout: timedelta
    session_ttl: timedelta
    code_ttl: timedelta
    dev_user: str | None
    log_level: str
    config_file: Path | None = None

    @property
    def idp_configured(self) -> bool:
        return bool(self.idp_authorize_url and self.idp_token_url and self.idp_userinfo_url and self.idp_client_id)

    @property
    def callback_url(self) -> str:
        return f"{self.base_url}/oauth/callback"


def load_config(
    argv: Sequence[str] | None = None,
    environ: Mapping[str, str] | None = None,
) -> Config:
    """Load configuration from CLI arguments, environment variables, and optional file."""

    parser = _build_arg_parser()
    parsed = parser.parse_args(argv)
    cli_values = {k: v for k, v in vars(parsed).items() if v is not None}

    env_values = _extract_env_values(os.environ if environ is None else environ)

    config_path_value = cli_values.get("config_file") or env_values.get("config_file")
    file_values = _load_config_file(config_path_value)

    merged: dict[str, Any] = {}
    _merge_layer(merged, DEFAULT_VALUES)
    _merge_layer(merged, file_values)
    _merge_layer(merged, env_values)
    _merge_layer(merged, cli_values)

    config = _normalize_values(merged, config_path_value)

    _maybe_write_config_file(config)
    return config


def hot_reload_config(*_args: Any, **_kwargs: Any) -> None:
    """Explicitly prevent runtime configuration reloading."""

    raise ConfigError("Configuration can only be loaded during startup. Restart the server to apply changes.")


def _build_arg_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="paddock-auth",
        description="paddock-auth broker configuration flags.",
        add_help=False,
        formatter_class=argparse.RawTextHelpFormatter,
    )
    parser.add_argument("-h", "--help", action="help", help="Show this help message and exit.")
    parser.add_argument(
        "--config-file",
        dest="config_file",
        metavar="PATH",
        help="Path to a JSON configuration file (created on first run). Default: none.",
    )
    parser.add_argument(
        "--storage-backend",
        dest="storage_backend",
        metavar="NAME",
        help=f"Credential store backend: memory or lancedb (default: {DEFAULT_STORAGE_BACKEND}).",
    )
    parser.add_argument(
        "--storage-dir",
        dest="storage_dir",
        metavar="PATH",
        help=f"Directory for LanceDB storage (default: {DEFAULT_STORAGE_DIR}).",
    )
    parser.add_argument(
        "--base-url",
        dest="base_url",
        metavar="URL",
        help="Public URL of this broker, used for callback and metadata documents (default: http://HOST:PORT).",
    )

    parser.add_argument("--enable-stdio", dest="enable_stdio", metavar="BOOL", help="Enable the MCP stdio transport (default: false).")
    parser.add_argument("--enable-http", dest="enable_http", metavar="BOOL", help="Enable the HTTP listener (default: true).")
    parser.add_argument(
        "--enable-metrics",
        dest="enable_metrics",
        metavar="BOOL",
        help="Expose Prometheus metrics (requires --enable-http true; default: false).",
    )

    parser.add_argument("--http-host", dest="http_host", metavar="HOST", help=f"HTTP listener host (default: {DEFAULT_HTTP_HOST}).")
    parser.add_argument("--http-port", dest="http_port", metavar="PORT", help=f"HTTP listener port (default: {DEFAULT_HTTP_PORT}).")
    parser.add_argument("--http-path", dest="http_path", metavar="PATH", help=f"MCP endpoint path (default: {DEFAULT_HTTP_PATH}).")
    parser.add_argument("--metrics-path", dest="metrics_path", metavar="PATH", help=f"Metrics endpoint path (default: {DEFAULT_METRICS_PATH}).")

    parser.add_argument("--idp-authorize-url", dest="idp_authorize_url", metavar="URL", help="Identity provider authorization endpoint.")
    parser.add_argument("--idp-token-url", dest="idp_token_url", metavar="URL", help="Identity provider token endpoint.")
    parser.add_argument("--idp-userinfo-url", dest="idp_userinfo_url", metavar="URL", help="Identity provider userinfo endpoint.")
    parser.add_argument("--idp-client-id", dest="idp_client_id", metavar="ID", help="Client id registered with the identity provider.")
    parser.add_argument(
        "--idp-client-secret",
        dest="idp_client_secret",
        metavar="SECRET",
        help="Client secret for the identity provider (sent with HTTP Basic; never written to the config file).",
    )
    parser.add_argument("--idp-scopes", dest="idp_scopes", metavar="SCOPES", help=f"Scopes requested upstream (default: {DEFAULT_IDP_SCOPES!r}).")
    parser.add_argument("--idp-timeout", dest="idp_timeout", metavar="DURATION", help=f"Timeout for identity provider calls (default: {DEFAULT_IDP_TIMEOUT}).")

    parser.add_argument("--session-ttl", dest="session_ttl", metavar="DURATION", help=f"Authorization session lifetime (default: {DEFAULT_SESSION_TTL}).")
    parser.add_argument("--code-ttl", dest="code_ttl", metavar="DURATION", help=f"Authorization code lifetime (default: {DEFAULT_CODE_TTL}).")
    parser.add_argument(
        "--dev-user",
        dest="dev_user",
        metavar="USER_ID",
        help="Resolve every bearer to this user id. Local development only.",
    )
    parser.add_argument("--log-level", dest="log_level", metavar="LEVEL", help=f"Log level (default: {DEFAULT_LOG_LEVEL}).")

    return parser


def _extract_env_values(env: Mapping[str, str]) -> dict[str, Any]:
    values: dict[str, Any] = {}
    for field, env_name in ENV_FIELD_MAP.items():
        if env_name in env:
            values[field] = env[env_name]
    return values


def _load_config_file(path_value: str | Path | None) -> dict[str, Any]:
    if not path_value:
        return {}
    path = _parse_path(path_value, field="config_file")
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except FileNotFoundError:
        return {}
    except json.JSONDecodeError as exc:
        raise ConfigError(f"Config file is not valid JSON: {path}") from exc
    if not isinstance(data, dict):
        raise ConfigError("Config file must contain a JSON object")
    result: dict[str, Any] = {k: v for k, v in data.items() if k in DEFAULT_VALUES}
    result["config_file"] = str(path)
    return result


def _merge_layer(base: MutableMapping[str, Any], overrides: Mapping[str, Any]) -> None:
    for key, value in overrides.items():
        if value is None:
            continue
        base[key] = value


def _normalize_values(values: Mapping[str, Any], config_path_value: str | Path | None) -> Config:
    storage_backend = str(values.get("storage_backend", DEFAULT_STORAGE_BACKEND)).strip().lower()
    if storage_backend not in STORAGE_BACKENDS:
        raise ConfigError("storage_backend must be one of: lancedb, memory")
    storage_dir = _parse_path(values["storage_dir"], field="storage_dir")

    enable_stdio = _parse_bool(values.get("enable_stdio"), default=DEFAULT_VALUES["enable_stdio"])
    enable_http = _parse_bool(values.get("enable_http"), default=DEFAULT_VALUES["enable_http"])
    enable_metrics = _parse_bool(values.get("enable_metrics"), default=DEFAULT_VALUES["enable_metrics"])
    if enable_metrics and not enable_http:
        raise ConfigError("enable_metrics requires enable_http to be true")

    http_host = str(values.get("http_host", DEFAULT_VALUES["http_host"]))
    http_port = _parse_int(values.get("http_port", DEFAULT_VALUES["http_port"]), field="http_port", minimum=0, maximum=65535)
    http_path = _parse_route(values.get("http_path", DEFAULT_VALUES["http_path"]), field="http_path")
    metrics_path = _parse_route(values.get("metrics_path", DEFAULT_VALUES["metrics_path"]), field="metrics_path")
    if http_path == metrics_path:
        raise ConfigError("http_path and metrics_path must be distinct")

    base_url_value = values.get("base_url")
    if base_url_value in (None, ""):
        base_url = f"http://{http_host}:{http_port}"
    else:
        base_url = _parse_url(base_url_value, field="base_url")

    idp_urls = {
        field: _parse_optional_url(values.get(field), field=field)
        for field in ("idp_authorize_url", "idp_token_url", "idp_userinfo_url")
    }

    idp_scopes = " ".join(str(values.get("idp_scopes", DEFAULT_IDP_SCOPES)).split())
    if not idp_scopes:
        raise ConfigError("idp_scopes may not be empty")

    idp_timeout = _parse_duration(values.get("idp_timeout", DEFAULT_VALUES["idp_timeout"]), default_unit="s", field="idp_timeout")
    session_ttl = _parse_duration(values.get("session_ttl", DEFAULT_VALUES["session_ttl"]), default_unit="m", field="session_ttl")
    code_ttl = _parse_duration(values.get("code_ttl", DEFAULT_VALUES["code_ttl"]), default_unit="m", field="code_ttl")
    for field, duration in (("idp_timeout", idp_timeout), ("session_ttl", session_ttl), ("code_ttl", code_ttl)):
        if duration.total_seconds() <= 0:
            raise ConfigError(f"{field} must be greater than zero")

    log_level = str(values.get("log_level", DEFAULT_LOG_LEVEL)).strip().upper()
    if log_level not in LOG_LEVELS:
        raise ConfigError(f"log_level must be one of: {', '.join(sorted(LOG_LEVELS))}")

    config_file_path = _parse_optional_path(config_path_value, field="config_file")

    return Config(
        storage_backend=storage_backend,
        storage_dir=storage_dir,
        base_url=base_url,
        enable_stdio=enable_stdio,
        enable_http=enable_http,
        enable_metrics=enable_metrics,
        http_host=http_host,
        http_port=http_port,
        http_path=http_path,
        metrics_path=metrics_path,
        idp_authorize_url=idp_urls["idp_authorize_url"],
        idp_token_url=idp_urls["idp_token_url"],
        idp_userinfo_url=idp_urls["idp_userinfo_url"],
        idp_client_id=_parse_optional_str(values.get("idp_client_id")),
        idp_client_secret=_parse_optional_str(values.get("idp_client_secret")),
        idp_scopes=idp_scopes,
        idp_timeout=idp_timeout,
        session_ttl=session_ttl,
        code_ttl=code_ttl,
        dev_user=_parse_optional_str(values.get("dev_user")),
        log_level=log_level,
        config_file=config_file_path,
    )


def _maybe_write_config_file(config: Config) -> None:
    path = config.config_file
    if path is None:
        return

    path.parent.mkdir(parents=True, exist_ok=True)
    if path.exists():
        return

    payload = _serialize_config(config)
    path.write_text(json.dumps(payload, indent=2, ensure_ascii=False) + "\n", encoding="utf-8")


def _serialize_config(config: Config) -> dict[str, Any]:
    payload = {
        "config_file": str(config.config_file) if config.config_file else None,
        "storage_backend": config.storage_backend,
        "storage_dir": str(config.storage_dir),
        "base_url": config.base_url,
        "enable_stdio": config.enable_stdio,
        "enable_http": config.enable_http,
        "enable_metrics": config.enable_metrics,
        "http_host": config.http_host,
        "http_port": config.http_port,
        "http_path": config.http_path,
        "metrics_path": config.metrics_path,
        "idp_authorize_url": config.idp_authorize_url,
        "idp_token_url": config.idp_token_url,
        "idp_userinfo_url": config.idp_userinfo_url,
        "idp_client_id": config.idp_client_id,
        "idp_scopes": config.idp_scopes,
        "idp_timeout": _format_duration(config.idp_timeout, preferred_unit="s"),
        "session_ttl": _format_duration(config.session_ttl, preferred_unit="m"),
        "code_ttl": _format_duration(config.code_ttl, preferred_unit="m"),
        "dev_user": config.dev_user,
        "log_level": config.log_level,
    }
    for field in _SECRET_FIELDS:
        payload.pop(field, None)
    return payload


def _format_duration(duration: timedelta, *, preferred_unit: str) -> str:
    total_seconds = int(duration.total_seconds())
    factor = T_DURATION_UNITS.get(preferred_unit, 1)
    if factor and total_seconds % factor == 0:
        return f"{total_seconds // factor}{preferred_unit}"
    return f"{total_seconds}s"


def _parse_bool(value: Any, *, default: bool) -> bool:
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return bool(value)
    if isinstance(value, str):
        lowered = value.strip().lower()
        if lowered in BOOL_TRUE:
            return True
        if lowered in BOOL_FALSE:
            return False
    raise ConfigError(f"Invalid boolean value: {value!r}")


def _parse_int(value: Any, *, field: str, minimum: int | None = None, maximum: int | None = None) -> int:
    try:
        if isinstance(value, (int, float)):
            int_value = int(value)
        else:
            int_value = int(str(value).strip())
    except (TypeError, ValueError) as exc:
        raise ConfigError(f"Invalid integer for {field}: {value!r}") from exc

    if minimum is not None and int_value < minimum:
        raise ConfigError(f"{field} must be >= {minimum}")
    if maximum is not None and int_value > maximum:
        raise ConfigError(f"{field} must be <= {maximum}")
    return int_value


def _parse_duration(value: Any, *, default_unit: str, field: str) -> timedelta:
    if isinstance(value, timedelta):
        return value
    if isinstance(value, bool):
        raise ConfigError(f"Invalid duration for {field}: {value!r}")
    if isinstance(value, (int, float)):
        seconds = float(value)
        if seconds < 0:
            raise ConfigError(f"{field} must be positive")
        return timedelta(seconds=seconds)
    if not isinstance(value, str):
        raise ConfigError(f"Invalid duration for {field}: {value!r}")

    stripped = value.strip()
    if not stripped:
        raise ConfigError(f"{field} may not be empty")

    unit = default_unit
    number_part = stripped
    if stripped[-1].lower() in T_DURATION_UNITS:
        unit = stripped[-1].lower()
        number_part = stripped[:-1]
    if not number_part or not number_part.isdigit():
        raise ConfigError(f"{field} must be a positive integer optionally suffixed with s, m, or h")
    return timedelta(seconds=int(number_part) * T_DURATION_UNITS[unit])


def _parse_path(value: Any, *, field: str) -> Path:
    if isinstance(value, Path):
        return value.expanduser().resolve()
    if not isinstance(value, str):
        raise ConfigError(f"Invalid path for {field}: {value!r}")
    stripped = value.strip()
    if not stripped:
        raise ConfigError(f"{field} may not be empty")
    return Path(stripped).expanduser().resolve()


def _parse_optional_path(value: Any, *, field: str) -> Path | None:
    if value in (None, ""):
        return None
    return _parse_path(value, field=field)


def _parse_route(value: Any, *, field: str) -> str:
    route = str(value).strip()
    if not route.startswith("/"):
        raise ConfigError(f"{field} must start with '/'")
    return route


def _parse_url(value: Any, *, field: str) -> str:
    if not isinstance(value, str):
        raise ConfigError(f"Invalid URL for {field}: {value!r}")
    stripped = value.strip().rstrip("/")
    if not stripped.startswith(("http://", "https://")):
        raise ConfigError(f"{field} must be an http(s) URL")
    return stripped


def _parse_optional_url(value: Any, *, field: str) -> str | None:
    if value in (None, ""):
        return None
    return _parse_url(value, field=field)


def _parse_optional_str(value: Any) -> str | None:
    if value is None:
        return None
    stripped = str(value).strip()
    return stripped or None
