"""
Wallet configuration.

``WalletConfig`` is stored with the wallet. ``WalletSettings`` only supplies
defaults to the command-line interface and is read from the environment.
"""

from __future__ import annotations

from enum import Enum
from pathlib import Path

from pydantic import BaseModel
from pydantic_settings import BaseSettings, SettingsConfigDict


class NetworkType(str, Enum):
    MAINNET = "mainnet"
    TESTNET = "testnet"
    SIGNET = "signet"
    REGTEST = "regtest"


# Bech32 human readable part per network
BECH32_HRP: dict[NetworkType, str] = {
    NetworkType.MAINNET: "bc",
    NetworkType.TESTNET: "tb",
    NetworkType.SIGNET: "tb",
    NetworkType.REGTEST: "bcrt",
}


class WalletConfig(BaseModel):
    """Per-wallet configuration. The network only affects address encoding."""

    network: NetworkType = NetworkType.MAINNET

    model_config = {"frozen": True}

    @property
    def bech32_hrp(self) -> str:
        return BECH32_HRP[self.network]


class WalletSettings(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="HDLEDGER_", env_file=".env", env_file_encoding="utf-8", case_sensitive=False
    )

    wallet_file: Path = Path.home() / ".hdledger" / "wallet.json"
    network: NetworkType = NetworkType.MAINNET

    rpc_url: str = "http://127.0.0.1:8332"
    rpc_user: str = ""
    rpc_password: str = ""

    log_level: str = "INFO"


def get_settings() -> WalletSettings:
    return WalletSettings()
