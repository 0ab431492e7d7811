"""
UserOperation creation utilities for Kernel smart accounts (EntryPoint v0.7)
"""

import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence

from eth_abi import encode
from hexbytes import HexBytes
from nucypher_core import UserOperation
from web3 import Web3

from config import DEFAULT_GAS_LIMITS

logger = logging.getLogger(__name__)


@dataclass
class SignedUserOperation:
    """Wrapper holding a UserOperation, its signature and an optional EIP-7702 authorization"""
    user_operation: UserOperation
    signature: bytes
    authorization: Optional[Dict] = None


@dataclass
class Call:
    to: str
    value: int = 0
    data: bytes = field(default=b"")

    def __post_init__(self):
        self.data = bytes(HexBytes(self.data))


# Function selector for ERC-7579 execute(bytes32,bytes)
EXECUTE_SELECTOR = Web3.keccak(text="execute(bytes32,bytes)")[:4]
SINGLE_CALL_MODE = b"\x00" * 32
BATCH_CALL_MODE = b"\x01" + b"\x00" * 31

# ECDSA-shaped placeholder accepted by the validator during gas estimation
DUMMY_ECDSA_SIGNATURE = bytes.fromhex(
    "fffffffffffffffffffffffffffffff000000000000000000000000000000007"
    "aaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaa1c"
)

USER_OPERATION_FIELDS = (
    "sender",
    "nonce",
    "factory",
    "factory_data",
    "call_data",
    "call_gas_limit",
    "verification_gas_limit",
    "pre_verification_gas",
    "max_fee_per_gas",
    "max_priority_fee_per_gas",
    "paymaster",
    "paymaster_verification_gas_limit",
    "paymaster_post_op_gas_limit",
    "paymaster_data",
)


def encode_kernel_execute(calls: Sequence[Call]) -> bytes:
    """Encode Kernel execute(mode, executionCalldata) for one or more calls"""
    if not calls:
        raise ValueError("At least one call is required")

    if len(calls) == 1:
        call = calls[0]
        execution_calldata = (
            bytes(HexBytes(Web3.to_checksum_address(call.to)))
            + call.value.to_bytes(32, "big")
            + call.data
        )
        mode = SINGLE_CALL_MODE
    else:
        execution_calldata = encode(
            ['(address,uint256,bytes)[]'],
            [[(Web3.to_checksum_address(c.to), c.value, c.data) for c in calls]]
        )
        mode = BATCH_CALL_MODE

    return EXECUTE_SELECTOR + encode(['bytes32', 'bytes'], [mode, execution_calldata])


def create_user_operation(sender: str, call_data: bytes, nonce: int) -> UserOperation:
    """Create an unsponsored UserOperation with default gas settings"""
    logger.info(f"Created UserOperation for {sender} (nonce {nonce}, {len(call_data)} bytes of call data)")

    return UserOperation(
        sender=Web3.to_checksum_address(sender),
        nonce=nonce,
        factory=None,
        factory_data=b'',
        call_data=call_data,
        call_gas_limit=DEFAULT_GAS_LIMITS["call"],
        verification_gas_limit=DEFAULT_GAS_LIMITS["verification"],
        pre_verification_gas=DEFAULT_GAS_LIMITS["pre_verification"],
        max_fee_per_gas=DEFAULT_GAS_LIMITS["fee"],
        max_priority_fee_per_gas=DEFAULT_GAS_LIMITS["fee"],
        paymaster=None,
        paymaster_verification_gas_limit=0,
        paymaster_post_op_gas_limit=0,
        paymaster_data=b'',
    )


def replace_user_operation(user_op: UserOperation, **changes) -> UserOperation:
    """Copy a UserOperation with some fields changed"""
    unknown = set(changes) - set(USER_OPERATION_FIELDS)
    if unknown:
        raise ValueError(f"Unknown UserOperation fields: {sorted(unknown)}")
    values = {name: getattr(user_op, name) for name in USER_OPERATION_FIELDS}
    values.update(changes)
    return UserOperation(**values)


def pack_paymaster_and_data(user_op: UserOperation) -> bytes:
    if not user_op.paymaster:
        return b""
    return (
        bytes(HexBytes(user_op.paymaster))
        + user_op.paymaster_verification_gas_limit.to_bytes(16, "big")
        + user_op.paymaster_post_op_gas_limit.to_bytes(16, "big")
        + bytes(user_op.paymaster_data or b"")
    )


def compute_user_operation_hash(user_op: UserOperation, entry_point: str, chain_id: int) -> bytes:
    """EntryPoint v0.7 getUserOpHash"""
    init_code = b""
    if user_op.factory:
        init_code = bytes(HexBytes(user_op.factory)) + bytes(user_op.factory_data or b"")

    account_gas_limits = (
        user_op.verification_gas_limit.to_bytes(16, "big")
        + user_op.call_gas_limit.to_bytes(16, "big")
    )
    gas_fees = (
        user_op.max_priority_fee_per_gas.to_bytes(16, "big")
        + user_op.max_fee_per_gas.to_bytes(16, "big")
    )

    packed = encode(
        ['address', 'uint256', 'bytes32', 'bytes32', 'bytes32', 'uint256', 'bytes32', 'bytes32'],
        [
            Web3.to_checksum_address(user_op.sender),
            user_op.nonce,
            Web3.keccak(init_code),
            Web3.keccak(bytes(user_op.call_data)),
            account_gas_limits,
            user_op.pre_verification_gas,
            gas_fees,
            Web3.keccak(pack_paymaster_and_data(user_op)),
        ]
    )
    return bytes(Web3.keccak(encode(
        ['bytes32', 'address', 'uint256'],
        [Web3.keccak(packed), Web3.to_checksum_address(entry_point), chain_id]
    )))


def calls_summary(calls: List[Call]) -> str:
    return ", ".join(f"{c.to} (value={c.value}, {len(c.data)} bytes)" for c in calls)
