"""
Error taxonomy for smart account operations and best-effort message classification
"""

import re
from enum import Enum
from typing import Optional, Tuple


class ErrorKind(Enum):
    """Failure categories surfaced to callers"""

    MALFORMED_ENVELOPE = "malformed_envelope"
    ACCOUNT_HAS_NO_CODE = "account_has_no_code"
    UNKNOWN_VALIDATOR = "unknown_validator"
    INVALID = "invalid"
    UNVERIFIABLE = "unverifiable"
    PAYMASTER_REJECTED = "paymaster_rejected"
    REVERTED_ON_CHAIN = "reverted_on_chain"
    TRANSPORT_ERROR = "transport_error"
    INSTALLED_BUT_UNVERIFIED = "installed_but_unverified"
    UNKNOWN = "unknown"


class SmartAccountError(Exception):
    """Base exception for smart account errors."""

    kind = ErrorKind.UNKNOWN

    def __init__(self, message: str, kind: Optional[ErrorKind] = None):
        super().__init__(message)
        self.message = message
        if kind is not None:
            self.kind = kind


class MalformedEnvelope(SmartAccountError):
    """Signature bytes too short to carry a validation type and identifier."""

    kind = ErrorKind.MALFORMED_ENVELOPE


class AccountHasNoCode(SmartAccountError):
    """Nothing is deployed (or delegated) at the account address."""

    kind = ErrorKind.ACCOUNT_HAS_NO_CODE


class UnknownValidator(SmartAccountError):
    """The account does not recognise the validator named in a signature."""

    kind = ErrorKind.UNKNOWN_VALIDATOR


class TransportError(SmartAccountError):
    """RPC, HTTP or timeout failure talking to a node, bundler or API."""

    kind = ErrorKind.TRANSPORT_ERROR


class BundlerError(SmartAccountError):
    """JSON-RPC error returned by a bundler or paymaster endpoint."""

    def __init__(self, message: str, code: Optional[int] = None, data=None):
        kind, _ = classify_error_message(message)
        super().__init__(message, kind)
        self.code = code
        self.data = data


class PaymasterRejected(SmartAccountError):
    """The paymaster refused to sponsor the user operation."""

    kind = ErrorKind.PAYMASTER_REJECTED


class RevertedOnChain(SmartAccountError):
    """Execution reverted, optionally with raw revert data."""

    kind = ErrorKind.REVERTED_ON_CHAIN

    def __init__(self, message: str, code: Optional[str] = None):
        super().__init__(message)
        self.code = code


class OperationInProgress(SmartAccountError):
    """An operation of the same family is already running."""


# Substring heuristics, checked in order against the lowercased message.
# Anything unmatched is UNKNOWN.
ERROR_MESSAGE_PATTERNS = [
    ("invalidvalidator", ErrorKind.UNKNOWN_VALIDATOR),
    ("0x682a6e7c", ErrorKind.UNKNOWN_VALIDATOR),
    ("paymaster", ErrorKind.PAYMASTER_REJECTED),
    ("revert", ErrorKind.REVERTED_ON_CHAIN),
    ("timed out", ErrorKind.TRANSPORT_ERROR),
    ("timeout", ErrorKind.TRANSPORT_ERROR),
    ("connection", ErrorKind.TRANSPORT_ERROR),
    ("http error", ErrorKind.TRANSPORT_ERROR),
]

REVERT_DATA_PATTERN = re.compile(r"revert\w*[:\s(]*(?:with|data)?:?\s*(0x[a-fA-F0-9]+)")


def classify_error_message(message: Optional[str]) -> Tuple[ErrorKind, Optional[str]]:
    """Map an error message to an ErrorKind plus revert data when present"""
    if not message:
        return ErrorKind.UNKNOWN, None

    lowered = message.lower()
    for pattern, kind in ERROR_MESSAGE_PATTERNS:
        if pattern in lowered:
            if kind is ErrorKind.REVERTED_ON_CHAIN:
                match = REVERT_DATA_PATTERN.search(message)
                return kind, match.group(1) if match else None
            return kind, None
    return ErrorKind.UNKNOWN, None


def describe_error(error: BaseException) -> str:
    """Flatten an exception (including web3 revert data) into one message"""
    message = getattr(error, "message", None) or str(error)
    data = getattr(error, "data", None)
    if isinstance(data, bytes):
        data = "0x" + data.hex()
    if isinstance(data, str) and data and data not in message:
        message = f"{message} (data: {data})"
    return message
