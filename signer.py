"""
Kernel signatures produced by a local owner key

The owner key is the EOA that was delegated to Kernel with EIP-7702, so the
smart account address and the owner address are normally the same.
"""

import logging
from typing import Any, Dict, List, Tuple, Union

from eth_account.messages import encode_defunct
from eth_account.signers.local import LocalAccount
from nucypher_core import UserOperation
from web3 import Web3

from config import ECDSA_VALIDATOR_ADDRESS, KernelVersion
from digest import AccountDomain, hash_message, hash_typed_data, typed_data_message
from envelope import SignatureEnvelope, ValidationType
from user_operations import SignedUserOperation, compute_user_operation_hash

logger = logging.getLogger(__name__)

KERNEL_WRAPPER_TYPES = {"Kernel": [{"name": "hash", "type": "bytes32"}]}


class KernelSignatureService:
    """Signs UserOperations, messages and EIP-7702 authorizations for a Kernel account"""

    def __init__(
        self,
        account: LocalAccount,
        kernel: KernelVersion,
        chain_id: int,
        account_address: str = None,
        validator_address: str = ECDSA_VALIDATOR_ADDRESS,
    ):
        self.account = account
        self.kernel = kernel
        self.chain_id = chain_id
        self.account_address = Web3.to_checksum_address(account_address or account.address)
        self.validator_address = Web3.to_checksum_address(validator_address)

    @property
    def account_domain(self) -> AccountDomain:
        return AccountDomain(
            name=self.kernel.name,
            version=self.kernel.version,
            chain_id=self.chain_id,
            verifying_contract=self.account_address,
        )

    def sign_user_operation(self, user_operation: UserOperation, entry_point: str,
                            authorization: Dict = None) -> SignedUserOperation:
        """Sign the v0.7 UserOperation hash as an EIP-191 message"""
        user_op_hash = compute_user_operation_hash(user_operation, entry_point, self.chain_id)
        logger.info(f"Signing UserOperation 0x{user_op_hash.hex()} for {user_operation.sender}")

        signed = self.account.sign_message(encode_defunct(primitive=user_op_hash))
        return SignedUserOperation(
            user_operation=user_operation,
            signature=bytes(signed.signature),
            authorization=authorization,
        )

    def sign_digest(self, original_digest: bytes) -> SignatureEnvelope:
        """Sign Kernel(bytes32 hash) under the account domain and tag it with the validator"""
        signed = self.account.sign_typed_data(
            self.account_domain.to_dict(),
            KERNEL_WRAPPER_TYPES,
            {"hash": bytes(original_digest)},
        )
        return SignatureEnvelope(
            validation_type=ValidationType.VALIDATOR,
            identifier=bytes.fromhex(self.validator_address[2:]),
            payload=bytes(signed.signature),
        )

    def sign_message(self, message: Union[str, bytes]) -> Tuple[bytes, SignatureEnvelope]:
        """Return the message's EIP-191 digest and its Kernel envelope"""
        original_digest = hash_message(message)
        return original_digest, self.sign_digest(original_digest)

    def sign_typed_data(self, domain: Dict[str, Any], types: Dict[str, List[Dict[str, str]]],
                        primary_type: str, message: Dict[str, Any]) -> Tuple[bytes, SignatureEnvelope]:
        """Return the application's EIP-712 digest and its Kernel envelope"""
        original_digest = hash_typed_data(domain, types, primary_type, message)
        logger.info(f"Signing {primary_type} typed data, digest 0x{original_digest.hex()}")
        return original_digest, self.sign_digest(original_digest)

    def sign_typed_data_as_owner(self, domain: Dict[str, Any], types: Dict[str, List[Dict[str, str]]],
                                 primary_type: str, message: Dict[str, Any]) -> Tuple[bytes, bytes]:
        """Plain EIP-712 signature by the owner EOA, with no Kernel wrapping or envelope"""
        full_message = typed_data_message(domain, types, primary_type, message)
        signed = self.account.sign_typed_data(full_message=full_message)
        return hash_typed_data(domain, types, primary_type, message), bytes(signed.signature)

    def sign_authorization(self, nonce: int) -> Dict:
        """EIP-7702 authorization delegating the owner EOA to the Kernel implementation"""
        signed = self.account.sign_authorization({
            "chainId": self.chain_id,
            "address": self.kernel.implementation_address,
            "nonce": nonce,
        })
        logger.info(f"Signed EIP-7702 authorization to {self.kernel.implementation_address} (nonce {nonce})")
        return {
            "chainId": signed.chain_id,
            "address": Web3.to_checksum_address(signed.address),
            "nonce": signed.nonce,
            "yParity": signed.y_parity,
            "r": signed.r,
            "s": signed.s,
        }
