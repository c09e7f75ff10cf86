"""
Tests for the JSON-RPC clients (bundler, paymaster, node).

HTTP traffic is served by httpx.MockTransport handlers.
"""
from __future__ import annotations

import json

import httpx
import pytest

from gasless_chain.config import ENTRYPOINT_V06
from gasless_chain.erc4337 import (
    BundlerClient,
    BundlerConfig,
    PaymasterClient,
    PaymasterConfig,
    UserOperation,
)
from gasless_chain.exceptions import BundlerError, BundlerTimeout, PaymasterError, RPCError
from gasless_chain.models import CallRequest
from gasless_chain.rpc_client import ChainRPCClient

OWNER = "0x1111111111111111111111111111111111111111"
TARGET = "0x3333333333333333333333333333333333333333"
USER_OP_HASH = "0x" + "ab" * 32
HTML_PAGE = "<html><body>502 Bad Gateway</body></html>"


def _rpc_result(request: httpx.Request, result) -> httpx.Response:
    body = json.loads(request.content)
    return httpx.Response(200, json={"jsonrpc": "2.0", "id": body["id"], "result": result})


def _rpc_error(request: httpx.Request, code: int, message: str) -> httpx.Response:
    body = json.loads(request.content)
    return httpx.Response(
        200,
        json={"jsonrpc": "2.0", "id": body["id"], "error": {"code": code, "message": message}},
    )


def _client(handler) -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


def _user_op() -> UserOperation:
    return UserOperation.from_calls(OWNER, 0, [CallRequest(to=TARGET)], 10, 1)


def _bundler(handler) -> BundlerClient:
    return BundlerClient(BundlerConfig(url="https://bundler.test/137"), http_client=_client(handler))


def _paymaster(handler) -> PaymasterClient:
    return PaymasterClient(PaymasterConfig(url="https://paymaster.test/137"), http_client=_client(handler))


class TestBundlerClient:
    @pytest.mark.asyncio
    async def test_send_user_operation(self):
        requests = []

        def handler(request):
            requests.append(json.loads(request.content))
            return _rpc_result(request, USER_OP_HASH)

        bundler = _bundler(handler)
        op = _user_op()

        assert await bundler.send_user_operation(op, ENTRYPOINT_V06) == USER_OP_HASH
        assert requests[0]["method"] == "eth_sendUserOperation"
        assert requests[0]["params"] == [op.to_rpc(), ENTRYPOINT_V06]
        await bundler.close()

    @pytest.mark.asyncio
    async def test_error_payload_is_rejection(self):
        bundler = _bundler(lambda request: _rpc_error(request, -32500, "AA21 didn't pay prefund"))

        with pytest.raises(BundlerError) as exc_info:
            await bundler.send_user_operation(_user_op(), ENTRYPOINT_V06)

        assert exc_info.value.code == -32500

    @pytest.mark.asyncio
    async def test_client_error_status_is_rejection(self):
        bundler = _bundler(lambda request: httpx.Response(400, text="bad request"))

        with pytest.raises(BundlerError):
            await bundler.send_user_operation(_user_op(), ENTRYPOINT_V06)

    @pytest.mark.asyncio
    async def test_server_error_is_unknown(self):
        bundler = _bundler(lambda request: httpx.Response(503, text="unavailable"))

        with pytest.raises(BundlerTimeout):
            await bundler.send_user_operation(_user_op(), ENTRYPOINT_V06)

    @pytest.mark.asyncio
    async def test_read_timeout_is_unknown(self):
        def handler(request):
            raise httpx.ReadTimeout("timed out", request=request)

        with pytest.raises(BundlerTimeout):
            await _bundler(handler).send_user_operation(_user_op(), ENTRYPOINT_V06)

    @pytest.mark.asyncio
    async def test_connect_error_is_rejection(self):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        with pytest.raises(BundlerError):
            await _bundler(handler).send_user_operation(_user_op(), ENTRYPOINT_V06)

    @pytest.mark.asyncio
    async def test_missing_hash_is_unknown(self):
        bundler = _bundler(lambda request: _rpc_result(request, None))

        with pytest.raises(BundlerTimeout):
            await bundler.send_user_operation(_user_op(), ENTRYPOINT_V06)

    @pytest.mark.asyncio
    async def test_non_json_reply_is_unknown(self):
        bundler = _bundler(lambda request: httpx.Response(200, text=HTML_PAGE))

        with pytest.raises(BundlerTimeout):
            await bundler.send_user_operation(_user_op(), ENTRYPOINT_V06)

    @pytest.mark.asyncio
    async def test_non_object_reply_is_unknown(self):
        bundler = _bundler(lambda request: httpx.Response(200, json=[USER_OP_HASH]))

        with pytest.raises(BundlerTimeout):
            await bundler.send_user_operation(_user_op(), ENTRYPOINT_V06)

    @pytest.mark.asyncio
    async def test_supported_entry_points(self):
        bundler = _bundler(lambda request: _rpc_result(request, [ENTRYPOINT_V06]))

        assert await bundler.supported_entry_points() == [ENTRYPOINT_V06]

    @pytest.mark.asyncio
    async def test_wait_for_receipt_polls_until_included(self):
        receipt = {"userOpHash": USER_OP_HASH, "success": True}
        responses = [None, None, receipt]

        def handler(request):
            return _rpc_result(request, responses.pop(0))

        result = await _bundler(handler).wait_for_receipt(USER_OP_HASH, timeout_seconds=1, poll_seconds=0)

        assert result == receipt
        assert responses == []

    @pytest.mark.asyncio
    async def test_wait_for_receipt_times_out(self):
        bundler = _bundler(lambda request: _rpc_result(request, None))

        with pytest.raises(BundlerTimeout):
            await bundler.wait_for_receipt(USER_OP_HASH, timeout_seconds=0.03, poll_seconds=0.01)


class TestPaymasterClient:
    @pytest.mark.asyncio
    async def test_sponsor_user_operation(self):
        requests = []

        def handler(request):
            requests.append(json.loads(request.content))
            return _rpc_result(request, {
                "paymasterAndData": "0x" + "aa" * 20,
                "callGasLimit": "0x1d4c0",
                "verificationGasLimit": "0x3d090",
                "preVerificationGas": 50_000,
            })

        sponsored = await _paymaster(handler).sponsor_user_operation(_user_op(), ENTRYPOINT_V06, expiry_seconds=300)

        assert sponsored.paymaster_and_data == "0x" + "aa" * 20
        assert sponsored.call_gas_limit == 120_000
        assert sponsored.verification_gas_limit == 250_000
        assert sponsored.pre_verification_gas == 50_000
        assert requests[0]["method"] == "pm_sponsorUserOperation"
        assert requests[0]["params"][1] == {
            "mode": "SPONSORED",
            "calculateGasLimits": True,
            "expiryDuration": 300,
            "entryPoint": ENTRYPOINT_V06,
        }

    @pytest.mark.asyncio
    async def test_rejection(self):
        paymaster = _paymaster(lambda request: _rpc_error(request, -32001, "policy rejected"))

        with pytest.raises(PaymasterError):
            await paymaster.sponsor_user_operation(_user_op(), ENTRYPOINT_V06)

    @pytest.mark.asyncio
    async def test_timeout(self):
        def handler(request):
            raise httpx.ReadTimeout("timed out", request=request)

        with pytest.raises(PaymasterError):
            await _paymaster(handler).sponsor_user_operation(_user_op(), ENTRYPOINT_V06)

    @pytest.mark.asyncio
    async def test_empty_paymaster_data(self):
        paymaster = _paymaster(lambda request: _rpc_result(request, {"paymasterAndData": "0x"}))

        with pytest.raises(PaymasterError):
            await paymaster.sponsor_user_operation(_user_op(), ENTRYPOINT_V06)

    @pytest.mark.asyncio
    async def test_non_json_reply(self):
        paymaster = _paymaster(lambda request: httpx.Response(200, text=HTML_PAGE))

        with pytest.raises(PaymasterError):
            await paymaster.sponsor_user_operation(_user_op(), ENTRYPOINT_V06)

    @pytest.mark.asyncio
    async def test_malformed_gas_limits(self):
        paymaster = _paymaster(lambda request: _rpc_result(
            request, {"paymasterAndData": "0x" + "99" * 20, "callGasLimit": "0xzz"},
        ))

        with pytest.raises(PaymasterError):
            await paymaster.sponsor_user_operation(_user_op(), ENTRYPOINT_V06)

    @pytest.mark.asyncio
    async def test_malformed_balance(self):
        paymaster = _paymaster(lambda request: _rpc_result(request, "plenty"))

        with pytest.raises(PaymasterError):
            await paymaster.get_balance()

    @pytest.mark.asyncio
    async def test_get_balance(self):
        paymaster = _paymaster(lambda request: _rpc_result(request, "0xde0b6b3a7640000"))

        assert await paymaster.get_balance() == 10**18


class TestChainRPCClient:
    @pytest.mark.asyncio
    async def test_get_balance(self):
        def handler(request):
            body = json.loads(request.content)
            assert body["method"] == "eth_getBalance"
            assert body["params"] == [OWNER, "latest"]
            return _rpc_result(request, "0x0de0b6b3a7640000")

        rpc = ChainRPCClient("https://rpc.test", http_client=_client(handler))

        assert await rpc.get_balance(OWNER) == 10**18

    @pytest.mark.asyncio
    async def test_error_payload(self):
        rpc = ChainRPCClient("https://rpc.test", http_client=_client(
            lambda request: _rpc_error(request, -32000, "execution reverted"),
        ))

        with pytest.raises(RPCError) as exc_info:
            await rpc.estimate_gas({"to": TARGET})

        assert exc_info.value.code == -32000

    @pytest.mark.asyncio
    async def test_non_json_reply(self):
        rpc = ChainRPCClient("https://rpc.test", http_client=_client(
            lambda request: httpx.Response(200, text=HTML_PAGE),
        ))

        with pytest.raises(RPCError):
            await rpc.get_gas_price()

    @pytest.mark.asyncio
    async def test_priority_fee_fallback(self):
        rpc = ChainRPCClient("https://rpc.test", http_client=_client(
            lambda request: _rpc_error(request, -32601, "method not found"),
        ))

        assert await rpc.get_max_priority_fee() == 1_000_000_000

    @pytest.mark.asyncio
    async def test_wait_for_confirmation(self):
        def handler(request):
            method = json.loads(request.content)["method"]
            if method == "eth_getTransactionReceipt":
                return _rpc_result(request, {"status": "0x1", "blockNumber": "0x10", "gasUsed": "0x5208"})
            return _rpc_result(request, "0x11")

        rpc = ChainRPCClient("https://rpc.test", http_client=_client(handler))

        receipt = await rpc.wait_for_confirmation("0xabc", confirmations=2, timeout_seconds=1, poll_seconds=0)

        assert receipt["gasUsed"] == "0x5208"

    @pytest.mark.asyncio
    async def test_wait_for_confirmation_reverted(self):
        rpc = ChainRPCClient("https://rpc.test", http_client=_client(
            lambda request: _rpc_result(request, {"status": "0x0", "blockNumber": "0x10"}),
        ))

        with pytest.raises(RPCError):
            await rpc.wait_for_confirmation("0xabc", timeout_seconds=1, poll_seconds=0)

    @pytest.mark.asyncio
    async def test_wait_for_confirmation_timeout(self):
        rpc = ChainRPCClient("https://rpc.test", http_client=_client(lambda request: _rpc_result(request, None)))

        with pytest.raises(TimeoutError):
            await rpc.wait_for_confirmation("0xabc", timeout_seconds=0.03, poll_seconds=0.01)
