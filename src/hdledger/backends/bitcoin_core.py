"""
Bitcoin Core RPC block source and broadcaster.
Uses only non-wallet RPC methods.
"""

from __future__ import annotations

from typing import Any

import httpx
from loguru import logger

from hdledger.backends.base import BlockSource, Broadcaster
from hdledger.wallet.transaction import Block

# Timeout for regular RPC calls (seconds)
DEFAULT_RPC_TIMEOUT = 30.0


class BitcoinCoreBackend(BlockSource, Broadcaster):
    def __init__(
        self,
        rpc_url: str = "http://127.0.0.1:18443",
        rpc_user: str = "rpcuser",
        rpc_password: str = "rpcpassword",
        timeout: float = DEFAULT_RPC_TIMEOUT,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.rpc_url = rpc_url.rstrip("/")
        self.rpc_user = rpc_user
        self.rpc_password = rpc_password
        self.client = httpx.AsyncClient(
            timeout=timeout, auth=(rpc_user, rpc_password), transport=transport
        )
        self._request_id = 0

    async def _rpc_call(self, method: str, params: list | None = None) -> Any:
        """
        Make an RPC call to Bitcoin Core.

        Args:
            method: RPC method name
            params: Method parameters

        Returns:
            RPC result

        Raises:
            ValueError: On RPC errors
            httpx.HTTPError: On connection/timeout errors
        """
        self._request_id += 1
        payload = {
            "jsonrpc": "2.0",
            "id": self._request_id,
            "method": method,
            "params": params or [],
        }

        try:
            response = await self.client.post(self.rpc_url, json=payload)
            # Bitcoin Core answers RPC errors with HTTP 500 and a JSON body
            if response.status_code != 500:
                response.raise_for_status()
            data = response.json()

            if "error" in data and data["error"]:
                error_info = data["error"]
                error_code = error_info.get("code", "unknown")
                error_msg = error_info.get("message", str(error_info))
                raise ValueError(f"RPC error {error_code}: {error_msg}")

            return data.get("result")

        except httpx.TimeoutException as e:
            logger.error(f"RPC call timed out: {method} - {e}")
            raise
        except httpx.HTTPError as e:
            logger.error(f"RPC call failed: {method} - {e}")
            raise

    async def get_block_count(self) -> int:
        height = await self._rpc_call("getblockcount")
        logger.debug(f"Current block height: {height}")
        return height

    async def get_block_hash(self, height: int) -> str:
        try:
            block_hash = await self._rpc_call("getblockhash", [height])
            logger.debug(f"Block hash for height {height}: {block_hash}")
            return block_hash

        except Exception as e:
            logger.error(f"Failed to fetch block hash for height {height}: {e}")
            raise

    async def get_block(self, block_hash: str) -> Block:
        header = await self._rpc_call("getblockheader", [block_hash])
        raw_block = await self._rpc_call("getblock", [block_hash, 0])
        block = Block.from_hex(raw_block, height=header["height"])

        if not block.has_valid_merkle_root():
            raise ValueError(f"Block {block_hash} has an invalid merkle root")
        if block.hash != block_hash:
            raise ValueError(f"Node returned block {block.hash}, requested {block_hash}")
        return block

    async def broadcast_transaction(self, tx_hex: str) -> str:
        try:
            txid = await self._rpc_call("sendrawtransaction", [tx_hex])
            logger.info(f"Broadcast transaction: {txid}")
            return txid

        except Exception as e:
            logger.error(f"Failed to broadcast transaction: {e}")
            raise ValueError(f"Broadcast failed: {e}") from e

    async def close(self) -> None:
        await self.client.aclose()
