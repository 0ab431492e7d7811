"""
On-chain signature validation and validator state reads for Kernel accounts
"""

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Optional, Union

import requests
from hexbytes import HexBytes
from web3 import Web3
from web3.exceptions import ContractLogicError, Web3Exception

from config import EIP1271_MAGIC_VALUE, EIP7702_DELEGATION_PREFIX, HOOK_MODULE_INSTALLED
from digest import AccountDomain, recover_envelope_signer, recover_signer, to_digest
from envelope import SignatureEnvelope, split_validation_id
from errors import ErrorKind, classify_error_message, describe_error

logger = logging.getLogger(__name__)

KERNEL_ACCOUNT_ABI = [
    {
        "inputs": [{"name": "hash", "type": "bytes32"}, {"name": "signature", "type": "bytes"}],
        "name": "isValidSignature",
        "outputs": [{"name": "", "type": "bytes4"}],
        "stateMutability": "view",
        "type": "function"
    },
    {
        "inputs": [{"name": "vId", "type": "bytes21"}],
        "name": "validationConfig",
        "outputs": [{
            "components": [
                {"name": "nonce", "type": "uint32"},
                {"name": "hook", "type": "address"}
            ],
            "name": "",
            "type": "tuple"
        }],
        "stateMutability": "view",
        "type": "function"
    },
    {
        "inputs": [],
        "name": "rootValidator",
        "outputs": [{"name": "", "type": "bytes21"}],
        "stateMutability": "view",
        "type": "function"
    },
    {
        "inputs": [],
        "name": "currentNonce",
        "outputs": [{"name": "", "type": "uint32"}],
        "stateMutability": "view",
        "type": "function"
    },
    {
        "inputs": [],
        "name": "validNonceFrom",
        "outputs": [{"name": "", "type": "uint32"}],
        "stateMutability": "view",
        "type": "function"
    },
]


class ValidationStatus(Enum):
    VALID = "valid"
    INVALID = "invalid"
    UNVERIFIABLE = "unverifiable"
    ACCOUNT_HAS_NO_CODE = "account_has_no_code"
    TRANSPORT_ERROR = "transport_error"


@dataclass(frozen=True)
class ValidationOutcome:
    """Result of an isValidSignature check"""
    status: ValidationStatus
    code: Optional[bytes] = None
    reason: Optional[ErrorKind] = None
    message: str = ""

    @property
    def is_valid(self) -> bool:
        return self.status is ValidationStatus.VALID


@dataclass(frozen=True)
class ValidatorConfig:
    nonce: int
    hook: str

    @property
    def is_installed(self) -> bool:
        return self.hook.lower() == HOOK_MODULE_INSTALLED.lower()


@dataclass(frozen=True)
class DelegationStatus:
    has_code: bool
    is_eip7702: bool
    delegate: Optional[str] = None


class SignatureValidationClient:
    """Read-only client for a Kernel account's signature validation entry points"""

    def __init__(self, web3: Web3):
        self.web3 = web3

    def _account(self, address: str):
        return self.web3.eth.contract(address=Web3.to_checksum_address(address), abi=KERNEL_ACCOUNT_ABI)

    def get_code(self, address: str) -> bytes:
        return bytes(self.web3.eth.get_code(Web3.to_checksum_address(address)))

    def has_code(self, address: str) -> bool:
        return len(self.get_code(address)) > 0

    def delegation_status(self, address: str) -> DelegationStatus:
        """Inspect the account's code for an EIP-7702 delegation designator"""
        code = self.get_code(address)
        if not code:
            logger.info(f"No code at {address} - EOA without delegation")
            return DelegationStatus(has_code=False, is_eip7702=False)

        if code.startswith(EIP7702_DELEGATION_PREFIX) and len(code) == 23:
            delegate = Web3.to_checksum_address(code[3:])
            logger.info(f"EIP-7702 delegation detected on {address} -> {delegate}")
            return DelegationStatus(has_code=True, is_eip7702=True, delegate=delegate)

        logger.info(f"Regular contract code at {address} ({len(code)} bytes)")
        return DelegationStatus(has_code=True, is_eip7702=False)

    def verify(self, account_address: str, original_digest: Union[bytes, str],
               signature: Union[SignatureEnvelope, bytes, str]) -> ValidationOutcome:
        """Call isValidSignature with the unwrapped digest and classify the answer

        A digest that is not 32 bytes raises ValueError before any RPC is made.
        """
        if isinstance(signature, SignatureEnvelope):
            signature = signature.to_bytes()
        signature = bytes(HexBytes(signature))
        digest = to_digest(original_digest)

        try:
            if not self.has_code(account_address):
                logger.warning(f"Account {account_address} has no code; skipping isValidSignature")
                return ValidationOutcome(
                    status=ValidationStatus.ACCOUNT_HAS_NO_CODE,
                    reason=ErrorKind.ACCOUNT_HAS_NO_CODE,
                    message="Account has no code deployed",
                )
            result = self._account(account_address).functions.isValidSignature(digest, signature).call()
        except ContractLogicError as e:
            message = describe_error(e)
            kind, _ = classify_error_message(message)
            if kind is not ErrorKind.UNKNOWN_VALIDATOR:
                kind = ErrorKind.UNVERIFIABLE
            logger.error(f"isValidSignature reverted: {message}")
            return ValidationOutcome(status=ValidationStatus.UNVERIFIABLE, reason=kind, message=message)
        except (requests.RequestException, Web3Exception, OSError) as e:
            message = describe_error(e)
            logger.error(f"isValidSignature transport failure: {message}")
            return ValidationOutcome(
                status=ValidationStatus.TRANSPORT_ERROR,
                reason=ErrorKind.TRANSPORT_ERROR,
                message=message,
            )

        result = bytes(result)
        logger.info(f"isValidSignature({account_address}) -> 0x{result.hex()}")
        if result == EIP1271_MAGIC_VALUE:
            return ValidationOutcome(status=ValidationStatus.VALID, code=result)
        return ValidationOutcome(
            status=ValidationStatus.INVALID,
            code=result,
            reason=ErrorKind.INVALID,
            message=f"Unexpected return value 0x{result.hex()}",
        )

    def verify_locally(self, original_digest: Union[bytes, str], envelope: SignatureEnvelope,
                       domain: AccountDomain, expected_signer: str) -> bool:
        """Direct EOA check: recover from the Kernel-wrapped digest and compare"""
        recovered = recover_envelope_signer(original_digest, envelope, domain)
        return recovered.lower() == expected_signer.lower()

    def verify_eoa(self, original_digest: Union[bytes, str], signature: Union[bytes, str],
                   expected_signer: str) -> ValidationOutcome:
        """Direct EOA check for accounts with no code: recover from the unwrapped digest"""
        recovered = recover_signer(original_digest, signature)
        if recovered.lower() == expected_signer.lower():
            return ValidationOutcome(status=ValidationStatus.VALID, message=f"Signed directly by {recovered}")
        return ValidationOutcome(
            status=ValidationStatus.INVALID,
            reason=ErrorKind.INVALID,
            message=f"Recovered {recovered}, expected {expected_signer}",
        )

    def validation_config(self, account_address: str, vid: Union[bytes, str]) -> ValidatorConfig:
        nonce, hook = self._account(account_address).functions.validationConfig(bytes(HexBytes(vid))).call()
        return ValidatorConfig(nonce=int(nonce), hook=Web3.to_checksum_address(hook))

    def is_validator_installed(self, account_address: str, vid: Union[bytes, str]) -> bool:
        config = self.validation_config(account_address, vid)
        logger.info(f"validationConfig(0x{bytes(HexBytes(vid)).hex()}) -> nonce={config.nonce}, hook={config.hook}")
        return config.is_installed

    def root_validator(self, account_address: str) -> bytes:
        return bytes(self._account(account_address).functions.rootValidator().call())

    def current_nonce(self, account_address: str) -> int:
        return int(self._account(account_address).functions.currentNonce().call())

    def valid_nonce_from(self, account_address: str) -> int:
        return int(self._account(account_address).functions.validNonceFrom().call())

    def describe_root_validator(self, account_address: str) -> dict:
        """Decode rootValidator() into its validation type and identifier"""
        vid = self.root_validator(account_address)
        validation_type, identifier = split_validation_id(vid)
        # zeroed or still holding the constructor placeholder
        uninitialized = not any(vid) or vid.startswith(bytes.fromhex("deadbeef"))
        return {
            "validation_type": getattr(validation_type, "name", f"UNKNOWN({validation_type})"),
            "identifier": Web3.to_checksum_address(identifier),
            "initialized": not uninitialized,
        }
