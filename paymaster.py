"""
Paymaster sponsorship for Kernel UserOperations
"""

import logging
from typing import Dict

from nucypher_core import UserOperation

from bundler import JsonRpcClient, convert_user_operation_to_rpc_format
from config import SmartAccountConfig
from errors import BundlerError, PaymasterRejected, TransportError
from user_operations import DUMMY_ECDSA_SIGNATURE, SignedUserOperation, replace_user_operation

logger = logging.getLogger(__name__)


class PaymasterClient:
    """Requests gas sponsorship for UserOperations"""

    def __init__(self, config: SmartAccountConfig, rpc: JsonRpcClient = None):
        self.config = config
        self.rpc = rpc or JsonRpcClient(config.paymaster_url)

    def sponsor_user_operation(self, user_operation: UserOperation, authorization: Dict = None) -> UserOperation:
        """Return a copy of the UserOperation with paymaster fields and sponsored gas limits"""
        user_op_dict = convert_user_operation_to_rpc_format(
            SignedUserOperation(user_operation, DUMMY_ECDSA_SIGNATURE, authorization)
        )
        try:
            result = self.rpc.request(
                "pm_sponsorUserOperation", [user_op_dict, self.config.entry_point_address]
            )
        except BundlerError as e:
            raise PaymasterRejected(f"Paymaster rejected UserOperation: {e.message}") from e
        except TransportError as e:
            raise PaymasterRejected(f"Paymaster unreachable: {e.message}") from e

        if not result or 'paymaster' not in result:
            raise PaymasterRejected("Paymaster returned no sponsorship data")

        logger.info(f"UserOperation sponsored by paymaster {result['paymaster']}")
        changes = {
            "paymaster": result['paymaster'],
            "paymaster_data": bytes.fromhex(result.get('paymasterData', '0x')[2:]),
            "paymaster_verification_gas_limit": int(result.get('paymasterVerificationGasLimit', '0x0'), 16),
            "paymaster_post_op_gas_limit": int(result.get('paymasterPostOpGasLimit', '0x0'), 16),
        }
        for rpc_name, field_name in (
            ('callGasLimit', 'call_gas_limit'),
            ('verificationGasLimit', 'verification_gas_limit'),
            ('preVerificationGas', 'pre_verification_gas'),
            ('maxFeePerGas', 'max_fee_per_gas'),
            ('maxPriorityFeePerGas', 'max_priority_fee_per_gas'),
        ):
            if rpc_name in result:
                changes[field_name] = int(result[rpc_name], 16)

        return replace_user_operation(user_operation, **changes)
