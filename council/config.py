"""
council.config
--------------

Configuration for council coordinators and signing agents.

- network:  address HRP, JSON-RPC endpoint, staging endpoint, membership anchor
- channel:  mailbox directory, poll interval, inline payload limit, identity
- retry:    attempt budget and backoff shape for collaborator calls
- paths:    data directory (proposal store, claims)
- logging:  level and format

The loader supports environment variables and optional YAML/JSON files.
Precedence (highest first): explicit overrides, environment, file, defaults.

ENV overrides (all optional; examples shown as defaults):
  COUNCIL_HRP=cncl
  COUNCIL_RPC_URL=http://127.0.0.1:8545/rpc
  COUNCIL_STAGING_URL=                     # empty = no staging
  COUNCIL_ANCHOR_ID=
  COUNCIL_IDENTITY=coordinator
  COUNCIL_MAILBOX_DIR=~/.council/mailbox
  COUNCIL_POLL_INTERVAL=5.0
  COUNCIL_INLINE_LIMIT=16384
  COUNCIL_DATA_DIR=~/.council
  COUNCIL_RETRY_ATTEMPTS=5
  COUNCIL_RETRY_BASE=0.5
  COUNCIL_RETRY_MULTIPLIER=2.0
  COUNCIL_RETRY_MAX_DELAY=30.0
  COUNCIL_LOG_LEVEL=INFO
  COUNCIL_LOG_FORMAT=                      # json | text (default: auto)
"""

from __future__ import annotations

import json
import os
from dataclasses import asdict, dataclass, field, replace
from pathlib import Path
from typing import Any, Dict, Mapping, Optional, Union

import yaml

from .errors import ConfigError
from .utils.bech32 import DEFAULT_HRP
from .utils.retry import RetryPolicy

ENV_PREFIX = "COUNCIL_"

# --------- Helpers -----------------------------------------------------------


def _env(name: str) -> Optional[str]:
    val = os.environ.get(ENV_PREFIX + name)
    if val is None or val.strip() == "":
        return None
    return val.strip()


def _env_int(name: str, default: int) -> int:
    val = _env(name)
    if val is None:
        return default
    try:
        return int(val)
    except ValueError:
        raise ConfigError(f"{ENV_PREFIX}{name} must be an integer", details={"value": val}) from None


def _env_float(name: str, default: float) -> float:
    val = _env(name)
    if val is None:
        return default
    try:
        return float(val)
    except ValueError:
        raise ConfigError(f"{ENV_PREFIX}{name} must be a number", details={"value": val}) from None


# --------- Dataclasses -------------------------------------------------------


@dataclass(frozen=True)
class NetworkSettings:
    hrp: str = DEFAULT_HRP
    rpc_url: str = "http://127.0.0.1:8545/rpc"
    staging_url: Optional[str] = None
    anchor_id: Optional[str] = None
    timeout: float = 15.0


@dataclass(frozen=True)
class ChannelSettings:
    mailbox_dir: Path = Path("~/.council/mailbox")
    identity: str = "coordinator"
    poll_interval: float = 5.0
    inline_limit: int = 16 * 1024


@dataclass(frozen=True)
class RetrySettings:
    attempts: int = 5
    base_delay: float = 0.5
    multiplier: float = 2.0
    max_delay: float = 30.0
    jitter_fraction: float = 0.2

    def policy(self) -> RetryPolicy:
        return RetryPolicy(
            attempts=self.attempts,
            base_delay=self.base_delay,
            multiplier=self.multiplier,
            max_delay=self.max_delay,
            jitter_fraction=self.jitter_fraction,
        )


@dataclass(frozen=True)
class CouncilConfig:
    network: NetworkSettings = field(default_factory=NetworkSettings)
    channel: ChannelSettings = field(default_factory=ChannelSettings)
    retry: RetrySettings = field(default_factory=RetrySettings)
    data_dir: Path = Path("~/.council")
    log_level: str = "INFO"
    log_format: Optional[str] = None

    @property
    def store_dir(self) -> Path:
        return self.data_dir.expanduser()

    @property
    def claims_dir(self) -> Path:
        return self.data_dir.expanduser() / "claims"

    def to_dict(self) -> Dict[str, Any]:
        d = asdict(self)
        d["data_dir"] = str(self.data_dir)
        d["channel"]["mailbox_dir"] = str(self.channel.mailbox_dir)
        return d

    def with_overrides(self, **overrides: Any) -> "CouncilConfig":
        """
        Flat overrides by field name, routed to the right section:
        hrp, rpc_url, staging_url, anchor_id, mailbox_dir, identity,
        poll_interval, inline_limit, data_dir, log_level, log_format.
        """
        net = {k: v for k, v in overrides.items() if k in NetworkSettings.__dataclass_fields__ and v is not None}
        chan = {k: v for k, v in overrides.items() if k in ChannelSettings.__dataclass_fields__ and v is not None}
        top = {k: v for k, v in overrides.items() if k in ("data_dir", "log_level", "log_format") and v is not None}
        if "mailbox_dir" in chan:
            chan["mailbox_dir"] = Path(chan["mailbox_dir"])
        if "data_dir" in top:
            top["data_dir"] = Path(top["data_dir"])
        cfg = replace(self, network=replace(self.network, **net), channel=replace(self.channel, **chan), **top)
        cfg.validate()
        return cfg

    # Sanity checks; raise ConfigError on misconfiguration.
    def validate(self) -> None:
        hrp = self.network.hrp
        if not hrp or any(not ("a" <= c <= "z" or "0" <= c <= "9") for c in hrp):
            raise ConfigError("hrp must be lowercase alphanumeric", details={"hrp": hrp})
        if not self.network.rpc_url.startswith(("http://", "https://")):
            raise ConfigError("rpc_url must be an http(s) URL", details={"rpc_url": self.network.rpc_url})
        if self.network.staging_url and not self.network.staging_url.startswith(("http://", "https://")):
            raise ConfigError("staging_url must be an http(s) URL")
        if self.channel.poll_interval <= 0:
            raise ConfigError("poll_interval must be > 0")
        if self.channel.inline_limit < 256:
            raise ConfigError("inline_limit is unrealistically small (< 256 bytes)")
        if not self.channel.identity:
            raise ConfigError("identity must not be empty")
        if self.retry.attempts < 1:
            raise ConfigError("retry.attempts must be >= 1")
        if self.retry.base_delay < 0 or self.retry.max_delay < self.retry.base_delay:
            raise ConfigError("retry delays must satisfy 0 <= base_delay <= max_delay")
        if self.retry.multiplier < 1.0:
            raise ConfigError("retry.multiplier must be >= 1.0")
        if self.log_format not in (None, "json", "text"):
            raise ConfigError("log_format must be 'json' or 'text'")


# --------- Loading -----------------------------------------------------------


def _from_mapping(m: Mapping[str, Any]) -> CouncilConfig:
    try:
        net = NetworkSettings(**(m.get("network") or {}))
        chan_raw = dict(m.get("channel") or {})
        if "mailbox_dir" in chan_raw:
            chan_raw["mailbox_dir"] = Path(chan_raw["mailbox_dir"])
        chan = ChannelSettings(**chan_raw)
        retry = RetrySettings(**(m.get("retry") or {}))
    except TypeError as e:
        raise ConfigError(f"unknown or invalid config key: {e}") from e
    return CouncilConfig(
        network=net,
        channel=chan,
        retry=retry,
        data_dir=Path(m.get("data_dir", CouncilConfig.data_dir)),
        log_level=str(m.get("log_level", "INFO")),
        log_format=m.get("log_format"),
    )


def _from_env(base: CouncilConfig) -> CouncilConfig:
    b = base
    network = NetworkSettings(
        hrp=_env("HRP") or b.network.hrp,
        rpc_url=_env("RPC_URL") or b.network.rpc_url,
        staging_url=_env("STAGING_URL") or b.network.staging_url,
        anchor_id=_env("ANCHOR_ID") or b.network.anchor_id,
        timeout=_env_float("RPC_TIMEOUT", b.network.timeout),
    )
    mailbox = _env("MAILBOX_DIR")
    channel = ChannelSettings(
        mailbox_dir=Path(mailbox) if mailbox else b.channel.mailbox_dir,
        identity=_env("IDENTITY") or b.channel.identity,
        poll_interval=_env_float("POLL_INTERVAL", b.channel.poll_interval),
        inline_limit=_env_int("INLINE_LIMIT", b.channel.inline_limit),
    )
    retry = RetrySettings(
        attempts=_env_int("RETRY_ATTEMPTS", b.retry.attempts),
        base_delay=_env_float("RETRY_BASE", b.retry.base_delay),
        multiplier=_env_float("RETRY_MULTIPLIER", b.retry.multiplier),
        max_delay=_env_float("RETRY_MAX_DELAY", b.retry.max_delay),
        jitter_fraction=b.retry.jitter_fraction,
    )
    data_dir = _env("DATA_DIR")
    fmt = _env("LOG_FORMAT")
    return CouncilConfig(
        network=network,
        channel=channel,
        retry=retry,
        data_dir=Path(data_dir) if data_dir else b.data_dir,
        log_level=(_env("LOG_LEVEL") or b.log_level).upper(),
        log_format=fmt.lower() if fmt else b.log_format,
    )


def load_config(path: Optional[Union[str, Path]] = None, **overrides: Any) -> CouncilConfig:
    """
    Load configuration from (in order of precedence):
      1) keyword overrides (CLI flags)
      2) environment variables (see header)
      3) file at `path` or $COUNCIL_CONFIG (YAML/JSON), if it exists
      4) built-in defaults
    """
    base = CouncilConfig()
    path = path or _env("CONFIG")
    if path:
        p = Path(path).expanduser()
        if not p.exists():
            raise ConfigError(f"config file not found: {p}")
        text = p.read_text(encoding="utf-8")
        try:
            if p.suffix.lower() in {".yml", ".yaml"}:
                data = yaml.safe_load(text) or {}
            else:
                data = json.loads(text)
        except (yaml.YAMLError, ValueError) as e:
            raise ConfigError(f"cannot parse {p}: {e}") from e
        if not isinstance(data, dict):
            raise ConfigError(f"{p}: top level must be a mapping")
        base = _from_mapping(data)
    cfg = _from_env(base)
    cfg.validate()
    if overrides:
        cfg = cfg.with_overrides(**overrides)
    return cfg


__all__ = [
    "NetworkSettings",
    "ChannelSettings",
    "RetrySettings",
    "CouncilConfig",
    "load_config",
]
