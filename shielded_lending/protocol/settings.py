"""
Runtime settings.

Loaded from a YAML file, then overridden from the environment:

    rpc_url: https://starknet-sepolia.example/rpc
    vault_address: "0x04..."
    store_dir: ~/.shielded-lending
    proof_backend: subprocess
    prover_command: "lending-prover --inputs {input} --proof-out {output}"
    proof_timeout: 120
    account_address: "0x07..."
    signer_command: "sncast invoke --contract-address {contract} --function {entrypoint} --calldata {calldata}"
"""

from __future__ import annotations

import os
from dataclasses import asdict, dataclass, field, fields
from pathlib import Path
from typing import Any, Dict, Optional

import yaml

from . import config
from .exceptions import ConfigurationError
from .factory import DEFAULT_BACKEND, resolve_backend_name

DEFAULT_SETTINGS_PATH = Path("~/.shielded-lending/config.yaml")
DEFAULT_STORE_DIR = Path("~/.shielded-lending/commitments")

ENV_OVERRIDES = {
    "SHIELDED_LENDING_RPC_URL": "rpc_url",
    "SHIELDED_LENDING_VAULT": "vault_address",
    "SHIELDED_LENDING_STORE_DIR": "store_dir",
    "SHIELDED_LENDING_PROVER_CMD": "prover_command",
    "SHIELDED_LENDING_STORE_KEY": "store_key",
    "SHIELDED_LENDING_ACCOUNT": "account_address",
    "SHIELDED_LENDING_SIGNER_CMD": "signer_command",
    "SHIELDED_LENDING_PROOF_BACKEND": "proof_backend",
}


@dataclass
class Settings:
    rpc_url: str = "http://127.0.0.1:5050/rpc"
    vault_address: str = "0x0"
    account_address: Optional[str] = None
    signer_command: Optional[str] = None
    store_dir: Path = field(default_factory=lambda: DEFAULT_STORE_DIR)
    store_key: Optional[str] = None
    proof_backend: str = DEFAULT_BACKEND
    prover_command: Optional[str] = None
    prover_workdir: Optional[Path] = None
    proof_timeout: float = config.PROOF_TIMEOUT_SEC
    submission_timeout: float = config.SUBMISSION_TIMEOUT_SEC
    btc_price: int = config.BTC_PRICE
    usdc_price: int = config.USDC_PRICE

    def __post_init__(self):
        try:
            self.proof_backend = resolve_backend_name(self.proof_backend)
        except ValueError as exc:
            raise ConfigurationError(str(exc)) from exc
        self.store_dir = Path(self.store_dir).expanduser()
        if self.prover_workdir is not None:
            self.prover_workdir = Path(self.prover_workdir).expanduser()
        for name in ("proof_timeout", "submission_timeout"):
            value = getattr(self, name)
            if isinstance(value, bool) or not isinstance(value, (int, float)) or value <= 0:
                raise ConfigurationError(f"{name} must be a positive number")
        for name in ("btc_price", "usdc_price"):
            value = getattr(self, name)
            if isinstance(value, bool) or not isinstance(value, int) or value <= 0:
                raise ConfigurationError(f"{name} must be a positive integer")

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["store_dir"] = str(self.store_dir)
        if self.prover_workdir is not None:
            data["prover_workdir"] = str(self.prover_workdir)
        return data


def load_settings(
    path: Optional[Path] = None, environ: Optional[Dict[str, str]] = None
) -> Settings:
    """
    Load settings from YAML plus environment overrides.

    A missing default file yields defaults; a missing explicit file is an error.

    Raises:
        ConfigurationError: Unreadable file, unknown keys or bad values
    """
    environ = os.environ if environ is None else environ
    explicit = path is not None
    settings_path = Path(path or DEFAULT_SETTINGS_PATH).expanduser()

    data: Dict[str, Any] = {}
    if settings_path.exists():
        try:
            with open(settings_path, "r", encoding="utf-8") as fh:
                loaded = yaml.safe_load(fh)
        except (OSError, yaml.YAMLError) as exc:
            raise ConfigurationError(f"Could not read settings {settings_path}: {exc}") from exc
        if loaded is not None and not isinstance(loaded, dict):
            raise ConfigurationError(f"Settings file {settings_path} must hold a mapping")
        data.update(loaded or {})
    elif explicit:
        raise ConfigurationError(f"Settings file not found: {settings_path}")

    known = {f.name for f in fields(Settings)}
    unknown = sorted(set(data) - known)
    if unknown:
        raise ConfigurationError(f"Unknown settings keys: {', '.join(unknown)}")

    for variable, key in ENV_OVERRIDES.items():
        value = environ.get(variable)
        if value:
            data[key] = value

    try:
        return Settings(**data)
    except TypeError as exc:
        raise ConfigurationError(f"Invalid settings: {exc}") from exc


def save_settings(settings: Settings, path: Optional[Path] = None) -> Path:
    settings_path = Path(path or DEFAULT_SETTINGS_PATH).expanduser()
    settings_path.parent.mkdir(parents=True, exist_ok=True)
    with open(settings_path, "w", encoding="utf-8") as fh:
        yaml.safe_dump(settings.to_dict(), fh, default_flow_style=False)
    return settings_path
