"""
Kernel Smart Account Demo Service

A small, modular implementation for driving a Kernel v3 smart account behind an
EIP-7702 delegated EOA: tagged signature envelopes, Kernel EIP-712 digest
wrapping, ERC-1271 validation, validator installation through sponsored
UserOperations and 0x Permit2 swaps.
"""

# Main service
from smart_account import KernelAccountService, create_kernel_account_service

# Configuration
from config import KERNEL_VERSIONS, KernelVersion, SmartAccountConfig

# Individual components for advanced usage
from bundler import BundlerClient, convert_user_operation_to_rpc_format
from digest import AccountDomain, wrap_digest
from envelope import SignatureEnvelope, ValidationType, decode_envelope, encode_envelope
from installer import ValidatorInstaller
from paymaster import PaymasterClient
from signer import KernelSignatureService
from swap import SwapService, ZeroXQuoteClient
from validation import SignatureValidationClient, ValidationOutcome, ValidationStatus

__version__ = "1.0.0"

__all__ = [
    "KernelAccountService",
    "create_kernel_account_service",
    "SmartAccountConfig",
    "KernelVersion",
    "KERNEL_VERSIONS",
    "BundlerClient",
    "PaymasterClient",
    "KernelSignatureService",
    "SignatureValidationClient",
    "ValidationOutcome",
    "ValidationStatus",
    "ValidatorInstaller",
    "SignatureEnvelope",
    "ValidationType",
    "encode_envelope",
    "decode_envelope",
    "AccountDomain",
    "wrap_digest",
    "SwapService",
    "ZeroXQuoteClient",
    "convert_user_operation_to_rpc_format",
]
