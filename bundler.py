"""
ERC-4337 bundler JSON-RPC client and format conversion utilities for Kernel accounts
"""

import asyncio
import logging
import time
from typing import Dict, List, Optional, Union

import requests
from nucypher_core import UserOperation

from config import POLL_INITIAL_DELAY, POLL_MAX_DELAY, POLL_TIMEOUT, SmartAccountConfig
from errors import BundlerError, TransportError
from user_operations import DUMMY_ECDSA_SIGNATURE, SignedUserOperation

logger = logging.getLogger(__name__)


def _hex_bytes(value: Optional[bytes]) -> str:
    if isinstance(value, str):
        return value
    return "0x" + bytes(value or b"").hex()


def convert_authorization_to_rpc_format(authorization: Dict) -> Dict:
    """Convert a signed EIP-7702 authorization to the bundler's eip7702Auth shape"""
    return {
        "address": authorization["address"],
        "chainId": hex(authorization["chainId"]),
        "nonce": hex(authorization["nonce"]),
        "r": hex(authorization["r"]),
        "s": hex(authorization["s"]),
        "yParity": hex(authorization["yParity"]),
    }


def convert_user_operation_to_rpc_format(
    user_op: Union[UserOperation, SignedUserOperation],
    signature: bytes = None
) -> Dict:
    """Convert a UserOperation to the bundler's JSON format (EntryPoint v0.7)"""
    authorization = None
    if isinstance(user_op, SignedUserOperation):
        op = user_op.user_operation
        signature = user_op.signature
        authorization = user_op.authorization
    else:
        op = user_op

    rpc_dict = {
        "sender": op.sender,
        "nonce": hex(op.nonce),
        "callData": _hex_bytes(op.call_data),
        "callGasLimit": hex(op.call_gas_limit),
        "verificationGasLimit": hex(op.verification_gas_limit),
        "preVerificationGas": hex(op.pre_verification_gas),
        "maxFeePerGas": hex(op.max_fee_per_gas),
        "maxPriorityFeePerGas": hex(op.max_priority_fee_per_gas),
        "signature": _hex_bytes(signature) if signature else "0x",
    }

    # Optional factory fields
    factory = op.factory
    rpc_dict.update({
        "factory": factory,
        "factoryData": _hex_bytes(op.factory_data) if factory else None
    })

    # Optional paymaster fields
    paymaster = op.paymaster
    if paymaster:
        rpc_dict.update({
            "paymaster": paymaster,
            "paymasterVerificationGasLimit": hex(op.paymaster_verification_gas_limit),
            "paymasterPostOpGasLimit": hex(op.paymaster_post_op_gas_limit),
            "paymasterData": _hex_bytes(op.paymaster_data)
        })
    else:
        rpc_dict.update({
            "paymaster": None,
            "paymasterVerificationGasLimit": None,
            "paymasterPostOpGasLimit": None,
            "paymasterData": None
        })

    if authorization:
        rpc_dict["eip7702Auth"] = convert_authorization_to_rpc_format(authorization)

    return rpc_dict


class JsonRpcClient:
    """Minimal JSON-RPC 2.0 transport over HTTP"""

    def __init__(self, url: str, timeout: int = 30):
        self.url = url
        self.timeout = timeout
        self._request_id = 0

    def request(self, method: str, params: List):
        self._request_id += 1
        payload = {
            "jsonrpc": "2.0",
            "method": method,
            "params": params,
            "id": self._request_id
        }

        try:
            response = requests.post(
                self.url,
                json=payload,
                headers={'Content-Type': 'application/json'},
                timeout=self.timeout
            )
        except requests.RequestException as e:
            logger.error(f"{method} request failed: {e}")
            raise TransportError(f"{method} request failed: {e}") from e

        if response.status_code != 200:
            logger.error(f"{method} HTTP error: {response.status_code}")
            raise TransportError(f"{method} HTTP error: {response.status_code}")

        result = response.json()
        if 'error' in result:
            error = result['error']
            message = error.get('message', 'Unknown error')
            logger.error(f"{method} error: {message}")
            raise BundlerError(message, code=error.get('code'), data=error.get('data'))
        return result.get('result')


class BundlerClient:
    """Client for interacting with an ERC-4337 bundler"""

    GAS_PRICE_METHOD = "zd_getUserOperationGasPrice"

    def __init__(self, config: SmartAccountConfig, rpc: JsonRpcClient = None):
        self.config = config
        self.rpc = rpc or JsonRpcClient(config.bundler_url)

    def estimate_user_operation_gas(self, user_operation: UserOperation, authorization: Dict = None) -> Dict:
        """Estimate gas limits with an ECDSA-shaped placeholder signature"""
        user_op_dict = convert_user_operation_to_rpc_format(
            SignedUserOperation(user_operation, DUMMY_ECDSA_SIGNATURE, authorization)
        )
        return self.rpc.request("eth_estimateUserOperationGas", [user_op_dict, self.config.entry_point_address])

    def get_user_operation_gas_price(self) -> Optional[Dict]:
        """Get current gas prices from the bundler"""
        return self.rpc.request(self.GAS_PRICE_METHOD, [])

    def send_user_operation(self, signed_user_op: SignedUserOperation) -> str:
        """Send a SignedUserOperation and return its hash"""
        logger.info("Sending UserOperation to bundler...")

        user_op_dict = convert_user_operation_to_rpc_format(signed_user_op)
        logger.info(f"Full UserOp to bundler: {user_op_dict}")
        user_op_hash = self.rpc.request("eth_sendUserOperation", [user_op_dict, self.config.entry_point_address])
        if not user_op_hash:
            raise BundlerError("Bundler returned no UserOperation hash")

        logger.info(f"UserOperation sent successfully: {user_op_hash}")
        return user_op_hash

    def get_user_operation_receipt(self, user_op_hash: str) -> Optional[Dict]:
        return self.rpc.request("eth_getUserOperationReceipt", [user_op_hash])

    async def wait_for_user_operation_receipt(
        self,
        user_op_hash: str,
        timeout: float = POLL_TIMEOUT,
        initial_delay: float = POLL_INITIAL_DELAY,
        max_delay: float = POLL_MAX_DELAY,
    ) -> Dict:
        """Poll for the receipt with exponential back-off until it lands or the timeout elapses"""
        deadline = time.monotonic() + timeout
        delay = initial_delay
        while True:
            receipt = self.get_user_operation_receipt(user_op_hash)
            if receipt:
                tx_hash = receipt.get('receipt', {}).get('transactionHash')
                logger.info(f"UserOperation {user_op_hash} included in {tx_hash}")
                return receipt

            if time.monotonic() + delay > deadline:
                raise TransportError(f"Timed out waiting for UserOperation receipt {user_op_hash}")
            await asyncio.sleep(delay)
            delay = min(delay * 2, max_delay)
