"""
Relay configuration.

Read once at startup from a JSON file (CLAWRELAY_CONFIG, default
./config.json). A handful of environment variables override file values so a
container can be configured without rewriting the file:

  CLAWRELAY_PORT       listen port
  CLAWRELAY_PASSWORD   shared secret for browser connections ("" = open)
  CLAWRELAY_LOG_LEVEL  DEBUG | INFO | WARNING | ERROR
  CLAWRELAY_IDENTITY   path of the device identity file
"""
import json
import logging
import os
from dataclasses import dataclass, field

log = logging.getLogger("clawrelay.config")

VERSION = "0.1.0"

DEFAULT_PORT = 18890
DEFAULT_CONFIG_PATH = "config.json"
DEFAULT_IDENTITY_PATH = "device.json"
LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR")

DEFAULT_MODELS = [
    {"value": "opus46", "label": "Claude Opus 4.6"},
    {"value": "sonnet", "label": "Claude Sonnet 4.6"},
    {"value": "gemini", "label": "Gemini 2.5 Flash"},
    {"value": "pro",    "label": "Gemini 2.5 Pro"},
    {"value": "kimi",   "label": "Kimi"},
]


class ConfigError(ValueError):
    """The config file is missing, unreadable or invalid."""


@dataclass
class GatewayConfig:
    name: str
    url: str
    token: str = ""
    agent_id: str = "main"

    @classmethod
    def from_dict(cls, d: dict, index: int = 0) -> "GatewayConfig":
        if not isinstance(d, dict):
            raise ConfigError(f"gateways[{index}] must be an object")
        url = str(d.get("url") or "").strip()
        if not url:
            raise ConfigError(f"gateways[{index}] has no url")
        return cls(
            name=str(d.get("name") or f"gateway-{index}"),
            url=url,
            token=str(d.get("token") or ""),
            agent_id=str(d.get("agentId") or "main"),
        )


@dataclass
class RelayConfig:
    port: int = DEFAULT_PORT
    password: str | None = None
    log_level: str = "INFO"
    identity_path: str = DEFAULT_IDENTITY_PATH
    gateways: list[GatewayConfig] = field(default_factory=list)
    models: list[dict] = field(default_factory=lambda: [dict(m) for m in DEFAULT_MODELS])

    @property
    def auth_required(self) -> bool:
        return bool(self.password)

    @classmethod
    def from_dict(cls, d: dict) -> "RelayConfig":
        if not isinstance(d, dict):
            raise ConfigError("config root must be a JSON object")
        try:
            port = int(d.get("port") or DEFAULT_PORT)
        except (TypeError, ValueError):
            raise ConfigError(f"port must be an integer, got {d.get('port')!r}")

        password = d.get("password")
        password = password.strip() if isinstance(password, str) else ""

        log_level = str(d.get("log_level") or "INFO").upper()
        if log_level not in LOG_LEVELS:
            raise ConfigError(f"log_level must be one of {LOG_LEVELS}")

        raw_gateways = d.get("gateways") or []
        if not isinstance(raw_gateways, list):
            raise ConfigError("gateways must be a list")
        gateways = [GatewayConfig.from_dict(g, i) for i, g in enumerate(raw_gateways)]

        models = d.get("models")
        if isinstance(models, list) and models:
            models = [
                {"value": str(m.get("value", "")), "label": str(m.get("label", m.get("value", "")))}
                for m in models if isinstance(m, dict)
            ]
        else:
            models = [dict(m) for m in DEFAULT_MODELS]

        return cls(
            port=port,
            password=password or None,
            log_level=log_level,
            identity_path=str(d.get("identity_path") or DEFAULT_IDENTITY_PATH),
            gateways=gateways,
            models=models,
        )

    def apply_env(self, environ=None) -> "RelayConfig":
        env = os.environ if environ is None else environ
        if env.get("CLAWRELAY_PORT"):
            try:
                self.port = int(env["CLAWRELAY_PORT"])
            except ValueError:
                raise ConfigError(f"CLAWRELAY_PORT must be an integer, got {env['CLAWRELAY_PORT']!r}")
        if "CLAWRELAY_PASSWORD" in env:
            self.password = env["CLAWRELAY_PASSWORD"].strip() or None
        if env.get("CLAWRELAY_LOG_LEVEL"):
            level = env["CLAWRELAY_LOG_LEVEL"].upper()
            if level not in LOG_LEVELS:
                raise ConfigError(f"CLAWRELAY_LOG_LEVEL must be one of {LOG_LEVELS}")
            self.log_level = level
        if env.get("CLAWRELAY_IDENTITY"):
            self.identity_path = env["CLAWRELAY_IDENTITY"]
        return self


def load_config(path: str | None = None, environ=None) -> RelayConfig:
    """Read and validate the config file, then apply environment overrides."""
    env = os.environ if environ is None else environ
    path = path or env.get("CLAWRELAY_CONFIG") or DEFAULT_CONFIG_PATH
    try:
        with open(path, encoding="utf-8") as f:
            data = json.load(f)
    except OSError as exc:
        raise ConfigError(f"could not read {path}: {exc}") from exc
    except json.JSONDecodeError as exc:
        raise ConfigError(f"{path} is not valid JSON: {exc}") from exc
    cfg = RelayConfig.from_dict(data).apply_env(env)
    if not cfg.gateways:
        log.warning("No gateways configured in %s", path)
    return cfg
