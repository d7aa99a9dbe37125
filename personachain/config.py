"""Runtime settings from the environment, optionally overlaid by a YAML file."""

import logging
import os
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any, Dict, Mapping, Optional

import yaml

from .errors import ValidationError

log = logging.getLogger(__name__)

CONFIG_ENV = "PERSONACHAIN_CONFIG"
DEFAULT_ABI_PATH = Path(__file__).with_name("data") / "persona.abi.json"

# setting name -> environment variable
_ENV_KEYS = {
    "ledger_url": "LEDGER_URL",
    "registry_contract": "REGISTRY_CONTRACT",
    "system_account": "SYSTEM_ACCOUNT",
    "policy_contract": "POLICY_CONTRACT",
    "policy_issuer": "POLICY_ISSUER",
    "policy_net_weight": "POLICY_NET_WEIGHT",
    "policy_cpu_weight": "POLICY_CPU_WEIGHT",
    "policy_ram_weight": "POLICY_RAM_WEIGHT",
    "policy_time_block": "POLICY_TIME_BLOCK",
    "policy_network_gen": "POLICY_NETWORK_GEN",
    "private_key": "SIGNER_PRIVATE_KEY",
    "ipfs_api_url": "IPFS_API_URL",
    "ipfs_gateway_url": "IPFS_GATEWAY_URL",
    "store_retry_delay": "STORE_RETRY_DELAY",
    "store_probe_timeout": "STORE_PROBE_TIMEOUT",
    "poll_interval": "POLL_INTERVAL",
    "poll_backoff": "POLL_BACKOFF",
    "poll_max_interval": "POLL_MAX_INTERVAL",
    "poll_max_attempts": "POLL_MAX_ATTEMPTS",
    "poll_max_errors": "POLL_MAX_ERRORS",
    "expire_seconds": "TRX_EXPIRE_SECONDS",
    "state_dir": "STATE_DIR",
    "contract_wasm": "PERSONA_WASM",
    "contract_abi": "PERSONA_ABI",
    "log_level": "LOG_LEVEL",
}


@dataclass
class Settings:
    ledger_url: str = "http://127.0.0.1:8888"
    registry_contract: str = "immutablenpc"
    system_account: str = "sysio"
    policy_contract: str = "sysio.roa"
    policy_issuer: str = "sysio"
    policy_net_weight: str = "0.1000 SYS"
    policy_cpu_weight: str = "0.1000 SYS"
    policy_ram_weight: str = "0.1000 SYS"
    policy_time_block: int = 1
    policy_network_gen: int = 0
    private_key: Optional[str] = None
    ipfs_api_url: str = "http://127.0.0.1:5001/api/v0"
    ipfs_gateway_url: Optional[str] = None
    store_retry_delay: float = 5.0
    store_probe_timeout: float = 2.0
    poll_interval: float = 3.0
    poll_backoff: float = 1.5
    poll_max_interval: float = 30.0
    poll_max_attempts: int = 120
    poll_max_errors: int = 3
    expire_seconds: int = 120
    state_dir: Path = field(default_factory=lambda: Path("state"))
    contract_wasm: Optional[Path] = None
    contract_abi: Path = DEFAULT_ABI_PATH
    log_level: str = "INFO"

    @property
    def journal_path(self) -> Path:
        return self.state_dir / "provisioning.json"


def _coerce(name: str, raw: Any, default: Any) -> Any:
    if raw is None or raw == "":
        return default
    kind = type(default) if default is not None else str
    if name in ("contract_wasm", "state_dir", "contract_abi"):
        kind = Path
    try:
        if kind is int:
            return int(raw)
        if kind is float:
            return float(raw)
        if kind is Path:
            return Path(str(raw)).expanduser()
    except (TypeError, ValueError) as exc:
        raise ValidationError(f"setting {name} must be {kind.__name__}, got {raw!r}") from exc
    return str(raw)


def _read_yaml(path: Path) -> Dict[str, Any]:
    try:
        raw = yaml.safe_load(path.read_text(encoding="utf-8"))
    except OSError as exc:
        raise ValidationError(f"cannot read config file {path}: {exc}") from exc
    except yaml.YAMLError as exc:
        raise ValidationError(f"config file {path} is not valid YAML: {exc}") from exc
    if raw is None:
        return {}
    if not isinstance(raw, dict):
        raise ValidationError(f"config file {path} must hold a mapping")
    return raw


def load_settings(env: Optional[Mapping[str, str]] = None, path: Optional[Path] = None) -> Settings:
    """Environment first, then the YAML file (keys named like the fields) on top."""
    env = os.environ if env is None else env
    defaults = Settings()
    values: Dict[str, Any] = {}
    for item in fields(Settings):
        raw = env.get(_ENV_KEYS[item.name])
        values[item.name] = _coerce(item.name, raw, getattr(defaults, item.name))

    path = path or (Path(env[CONFIG_ENV]) if env.get(CONFIG_ENV) else None)
    if path is not None:
        overlay = _read_yaml(Path(path))
        unknown = sorted(set(overlay) - set(values))
        if unknown:
            log.warning("ignoring unknown settings in %s: %s", path, ", ".join(unknown))
        for name, raw in overlay.items():
            if name in values:
                values[name] = _coerce(name, raw, getattr(defaults, name))
        log.debug("loaded settings overlay from %s", path)
    return Settings(**values)
