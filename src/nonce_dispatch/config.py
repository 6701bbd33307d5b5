import os
import tomllib
from collections.abc import Mapping
from dataclasses import dataclass, field
from pathlib import Path
from urllib.parse import urlsplit

import nonce_dispatch.constants as C
from nonce_dispatch.errors import ConfigError
from nonce_dispatch.nonce import NonceAccountHandle

pkg_root = Path(__file__).parent
config_file = pkg_root / "config.toml"

SCHEMES = {"http", "https"}


@dataclass(frozen=True, slots=True)
class EndpointConfig:
    name: str
    host: str
    fee_recipient: str
    scheme: str = "http"
    path: str = ""
    credential: str | None = None
    credential_param: str = "api-key"
    rate_limit: float = C.RATE_LIMIT
    keepalive_interval: float = C.KEEPALIVE_INTERVAL
    idle_timeout: float = C.IDLE_TIMEOUT
    probe_method: str = "getHealth"
    probe_path: str = ""

    def __post_init__(self) -> None:
        if self.scheme not in SCHEMES:
            raise ConfigError(f"[endpoints.{self.name}] scheme must be one of {sorted(SCHEMES)}, got {self.scheme!r}")
        if not self.host:
            raise ConfigError(f"[endpoints.{self.name}] host is required")
        if self.rate_limit <= 0:
            raise ConfigError(f"[endpoints.{self.name}] rate_limit must be positive")
        if not 0 < self.keepalive_interval < self.idle_timeout:
            raise ConfigError(
                f"[endpoints.{self.name}] keepalive_interval ({self.keepalive_interval}) "
                f"must be positive and below idle_timeout ({self.idle_timeout})"
            )

    @property
    def base_url(self) -> str:
        return f"{self.scheme}://{self.host}{self.path}"


@dataclass(frozen=True, slots=True)
class Settings:
    rpc_url: str
    endpoints: dict[str, EndpointConfig]
    commitment: str = "confirmed"
    rpc_timeout: float = C.RPC_TIMEOUT
    send_timeout: float = C.SEND_TIMEOUT
    max_attempts: int = C.MAX_ATTEMPTS
    nonce_account: NonceAccountHandle | None = None
    payer_secret: str | None = field(default=None, repr=False)

    def fee_recipients(self) -> dict[str, str]:
        return {name: ep.fee_recipient for name, ep in self.endpoints.items()}


def _endpoint(name: str, table: dict, defaults: dict, env: Mapping[str, str]) -> EndpointConfig:
    merged = {**defaults, **table}
    url = merged.pop("url", None)
    if url:
        parts = urlsplit(url)
        merged.setdefault("scheme", parts.scheme)
        merged.setdefault("host", parts.netloc)
        merged.setdefault("path", parts.path.rstrip("/"))
    credential = env.get(f"{name.upper()}_API_KEY") or merged.pop("credential", None) or None
    merged.pop("credential", None)
    if "fee_recipient" not in merged:
        raise ConfigError(f"[endpoints.{name}] fee_recipient is required")
    known = set(EndpointConfig.__dataclass_fields__) - {"name", "credential"}
    unknown = set(merged) - known
    if unknown:
        raise ConfigError(f"[endpoints.{name}] unknown keys: {sorted(unknown)}")
    return EndpointConfig(name=name, credential=credential, **merged)


def parse_settings(cfg: dict, env: Mapping[str, str] | None = None) -> Settings:
    env = os.environ if env is None else env
    rpc = cfg.get("rpc", {})
    dispatch = cfg.get("dispatch", {})
    connection = cfg.get("connection", {})
    na = cfg.get("nonce_account", {})

    endpoints = {name: _endpoint(name, table, connection, env) for name, table in cfg.get("endpoints", {}).items()}
    if not endpoints:
        raise ConfigError("at least one [endpoints.<NAME>] table is required")

    rpc_url = env.get("RPC_URL", rpc.get("url"))
    if not rpc_url:
        raise ConfigError("[rpc] url is required")

    address = env.get("NONCE_ACCOUNT", na.get("address", ""))
    authority = env.get("NONCE_AUTHORITY", na.get("authority", ""))
    nonce_account = NonceAccountHandle(address, authority) if address and authority else None

    return Settings(
        rpc_url=rpc_url,
        endpoints=endpoints,
        commitment=rpc.get("commitment", "confirmed"),
        rpc_timeout=float(rpc.get("timeout", C.RPC_TIMEOUT)),
        send_timeout=float(dispatch.get("send_timeout", C.SEND_TIMEOUT)),
        max_attempts=int(dispatch.get("max_attempts", C.MAX_ATTEMPTS)),
        nonce_account=nonce_account,
        payer_secret=env.get("PAYER_SECRET"),
    )


def load_settings(path: Path | str | None = None, env: Mapping[str, str] | None = None) -> Settings:
    env = os.environ if env is None else env
    path = Path(path or env.get("NONCE_DISPATCH_CONFIG") or config_file)
    cfg = tomllib.loads(path.read_text())
    return parse_settings(cfg, env)
