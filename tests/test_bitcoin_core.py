"""
Unit tests for BitcoinCoreBackend against a mocked JSON-RPC endpoint.
"""

import json

import httpx
import pytest
from conftest import Chain

from hdledger.backends.bitcoin_core import BitcoinCoreBackend


def rpc_transport(chain: Chain, calls: list | None = None) -> httpx.MockTransport:
    """Answer the RPC methods the backend uses from an in-memory chain."""

    def handler(request: httpx.Request) -> httpx.Response:
        payload = json.loads(request.content)
        method, params = payload["method"], payload["params"]
        if calls is not None:
            calls.append(method)

        if method == "getblockcount":
            result = chain.height
        elif method == "getblockhash":
            if params[0] not in chain.blocks:
                return httpx.Response(
                    500,
                    json={
                        "result": None,
                        "error": {"code": -8, "message": "Block height out of range"},
                        "id": payload["id"],
                    },
                )
            result = chain.blocks[params[0]].hash
        elif method == "getblockheader":
            result = {"hash": params[0], "height": chain.by_hash(params[0]).height}
        elif method == "getblock":
            assert params[1] == 0
            result = chain.by_hash(params[0]).serialize().hex()
        elif method == "sendrawtransaction":
            result = "ab" * 32
        else:
            return httpx.Response(404)

        return httpx.Response(200, json={"result": result, "error": None, "id": payload["id"]})

    return httpx.MockTransport(handler)


@pytest.fixture
def populated_chain(chain) -> Chain:
    chain.extend(chain.pay(chain.foreign_script, 5_000))
    chain.extend()
    return chain


class TestBitcoinCoreBackend:
    @pytest.mark.asyncio
    async def test_block_count_and_hash(self, populated_chain):
        backend = BitcoinCoreBackend(transport=rpc_transport(populated_chain))
        try:
            assert await backend.get_block_count() == populated_chain.height
            assert await backend.get_block_hash(populated_chain.height) == (
                populated_chain.tip.hash
            )
        finally:
            await backend.close()

    @pytest.mark.asyncio
    async def test_get_block(self, populated_chain):
        block = populated_chain.blocks[populated_chain.height - 1]
        backend = BitcoinCoreBackend(transport=rpc_transport(populated_chain))
        try:
            fetched = await backend.get_block(block.hash)
        finally:
            await backend.close()

        assert fetched.hash == block.hash
        assert fetched.height == block.height
        assert fetched.transactions == block.transactions

    @pytest.mark.asyncio
    async def test_rpc_error(self, populated_chain):
        backend = BitcoinCoreBackend(transport=rpc_transport(populated_chain))
        try:
            with pytest.raises(ValueError, match="Block height out of range"):
                await backend.get_block_hash(populated_chain.height + 10)
        finally:
            await backend.close()

    @pytest.mark.asyncio
    async def test_http_error(self, populated_chain):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(401)

        backend = BitcoinCoreBackend(transport=httpx.MockTransport(handler))
        try:
            with pytest.raises(httpx.HTTPStatusError):
                await backend.get_block_count()
        finally:
            await backend.close()

    @pytest.mark.asyncio
    async def test_broadcast(self, populated_chain):
        calls = []
        backend = BitcoinCoreBackend(transport=rpc_transport(populated_chain, calls))
        try:
            assert await backend.broadcast_transaction("00") == "ab" * 32
        finally:
            await backend.close()
        assert calls == ["sendrawtransaction"]

    @pytest.mark.asyncio
    async def test_broadcast_rejected(self):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(
                500,
                json={
                    "result": None,
                    "error": {"code": -25, "message": "bad-txns-inputs-missingorspent"},
                    "id": 1,
                },
            )

        backend = BitcoinCoreBackend(transport=httpx.MockTransport(handler))
        try:
            with pytest.raises(ValueError, match="missingorspent"):
                await backend.broadcast_transaction("00")
        finally:
            await backend.close()
