from unittest.mock import AsyncMock, MagicMock

import pytest
import requests

import bundler
from bundler import (
    BundlerClient,
    JsonRpcClient,
    convert_authorization_to_rpc_format,
    convert_user_operation_to_rpc_format,
)
from conftest import OWNER_ADDRESS
from config import ENTRYPOINT_V07, KERNEL_V3_3
from errors import BundlerError, ErrorKind, TransportError
from user_operations import DUMMY_ECDSA_SIGNATURE, SignedUserOperation, create_user_operation

AUTHORIZATION = {
    "chainId": 8453,
    "address": KERNEL_V3_3.implementation_address,
    "nonce": 4,
    "yParity": 1,
    "r": 0x1234,
    "s": 0x5678,
}


def make_config():
    config = MagicMock()
    config.bundler_url = "https://bundler.example"
    config.entry_point_address = ENTRYPOINT_V07
    return config


def make_response(status_code=200, payload=None):
    response = MagicMock()
    response.status_code = status_code
    response.json.return_value = payload
    return response


def test_authorization_rpc_format():
    assert convert_authorization_to_rpc_format(AUTHORIZATION) == {
        "address": KERNEL_V3_3.implementation_address,
        "chainId": "0x2105",
        "nonce": "0x4",
        "r": "0x1234",
        "s": "0x5678",
        "yParity": "0x1",
    }


def test_user_operation_rpc_format():
    user_op = create_user_operation(OWNER_ADDRESS, b"\xab", 2)
    rpc = convert_user_operation_to_rpc_format(SignedUserOperation(user_op, b"\x01\x02", AUTHORIZATION))

    assert rpc["nonce"] == "0x2"
    assert rpc["callData"] == "0xab"
    assert rpc["signature"] == "0x0102"
    assert rpc["paymaster"] is None
    assert rpc["factory"] is None
    assert rpc["eip7702Auth"]["nonce"] == "0x4"


def test_user_operation_without_authorization_has_no_eip7702_auth():
    user_op = create_user_operation(OWNER_ADDRESS, b"", 0)
    rpc = convert_user_operation_to_rpc_format(user_op)

    assert rpc["signature"] == "0x"
    assert "eip7702Auth" not in rpc


def test_json_rpc_returns_result(monkeypatch):
    post = MagicMock(return_value=make_response(payload={"jsonrpc": "2.0", "id": 1, "result": "0xabc"}))
    monkeypatch.setattr(bundler.requests, "post", post)

    assert JsonRpcClient("https://rpc.example").request("eth_chainId", []) == "0xabc"
    assert post.call_args.kwargs["json"]["method"] == "eth_chainId"


def test_json_rpc_error_raises_bundler_error(monkeypatch):
    payload = {"error": {"code": -32500, "message": "AA33 reverted (or OOG)", "data": "0xdeadbeef"}}
    monkeypatch.setattr(bundler.requests, "post", MagicMock(return_value=make_response(payload=payload)))

    with pytest.raises(BundlerError) as exc_info:
        JsonRpcClient("https://rpc.example").request("eth_sendUserOperation", [])

    assert exc_info.value.code == -32500
    assert exc_info.value.data == "0xdeadbeef"
    assert exc_info.value.kind is ErrorKind.REVERTED_ON_CHAIN


def test_json_rpc_http_error_is_transport_error(monkeypatch):
    monkeypatch.setattr(bundler.requests, "post", MagicMock(return_value=make_response(status_code=503)))

    with pytest.raises(TransportError):
        JsonRpcClient("https://rpc.example").request("eth_chainId", [])


def test_json_rpc_connection_failure_is_transport_error(monkeypatch):
    monkeypatch.setattr(bundler.requests, "post", MagicMock(side_effect=requests.ConnectionError("refused")))

    with pytest.raises(TransportError):
        JsonRpcClient("https://rpc.example").request("eth_chainId", [])


def test_send_user_operation_targets_entry_point():
    rpc = MagicMock()
    rpc.request.return_value = "0xhash"
    client = BundlerClient(make_config(), rpc=rpc)
    user_op = create_user_operation(OWNER_ADDRESS, b"", 0)

    assert client.send_user_operation(SignedUserOperation(user_op, b"\x01")) == "0xhash"
    method, params = rpc.request.call_args[0]
    assert method == "eth_sendUserOperation"
    assert params[1] == ENTRYPOINT_V07


def test_send_user_operation_without_hash_fails():
    rpc = MagicMock()
    rpc.request.return_value = None
    client = BundlerClient(make_config(), rpc=rpc)

    with pytest.raises(BundlerError):
        client.send_user_operation(SignedUserOperation(create_user_operation(OWNER_ADDRESS, b"", 0), b"\x01"))


@pytest.mark.asyncio
async def test_wait_for_receipt_backs_off(monkeypatch):
    receipt = {"success": True, "receipt": {"transactionHash": "0xtx"}}
    rpc = MagicMock()
    rpc.request.side_effect = [None, None, receipt]
    sleep = AsyncMock()
    monkeypatch.setattr(bundler.asyncio, "sleep", sleep)

    result = await BundlerClient(make_config(), rpc=rpc).wait_for_user_operation_receipt(
        "0xhash", timeout=60, initial_delay=1, max_delay=8
    )

    assert result == receipt
    assert [c.args[0] for c in sleep.await_args_list] == [1, 2]


@pytest.mark.asyncio
async def test_wait_for_receipt_times_out(monkeypatch):
    rpc = MagicMock()
    rpc.request.return_value = None
    monkeypatch.setattr(bundler.asyncio, "sleep", AsyncMock())

    with pytest.raises(TransportError):
        await BundlerClient(make_config(), rpc=rpc).wait_for_user_operation_receipt(
            "0xhash", timeout=0, initial_delay=1, max_delay=8
        )


def test_estimate_uses_placeholder_signature():
    rpc = MagicMock()
    rpc.request.return_value = {"callGasLimit": "0x1", "verificationGasLimit": "0x2", "preVerificationGas": "0x3"}
    client = BundlerClient(make_config(), rpc=rpc)

    estimate = client.estimate_user_operation_gas(create_user_operation(OWNER_ADDRESS, b"\x01", 0), AUTHORIZATION)

    assert estimate["callGasLimit"] == "0x1"
    method, params = rpc.request.call_args[0]
    assert method == "eth_estimateUserOperationGas"
    assert params[0]["signature"] == "0x" + DUMMY_ECDSA_SIGNATURE.hex()
    assert params[0]["eip7702Auth"]["address"] == KERNEL_V3_3.implementation_address
    assert params[1] == ENTRYPOINT_V07
