"""
Kernel signature envelope codec

A tagged signature is ``validation type (1 byte) || identifier (20 bytes) || payload``.
The identifier is a validator address or a permission id; the payload runs to the
end of the buffer with no length prefix.
"""

from dataclasses import dataclass, replace
from enum import IntEnum
from typing import Tuple, Union

from hexbytes import HexBytes
from web3 import Web3

from errors import MalformedEnvelope

TYPE_LENGTH = 1
IDENTIFIER_LENGTH = 20
HEADER_LENGTH = TYPE_LENGTH + IDENTIFIER_LENGTH


class ValidationType(IntEnum):
    ROOT = 0x00
    VALIDATOR = 0x01
    PERMISSION = 0x02
    EIP7702 = 0x03


def _to_bytes(value: Union[bytes, str]) -> bytes:
    if isinstance(value, str):
        return bytes(HexBytes(value))
    return bytes(value)


def _coerce_type(tag: int) -> Union[ValidationType, int]:
    try:
        return ValidationType(tag)
    except ValueError:
        return tag


@dataclass(frozen=True)
class SignatureEnvelope:
    """Decoded tagged signature; unknown tags are kept as plain ints"""
    validation_type: Union[ValidationType, int]
    identifier: bytes
    payload: bytes

    @property
    def is_known_type(self) -> bool:
        return isinstance(self.validation_type, ValidationType)

    @property
    def validation_id(self) -> bytes:
        return validation_id(self.validation_type, self.identifier)

    @property
    def identifier_address(self) -> str:
        return Web3.to_checksum_address(self.identifier)

    def to_bytes(self) -> bytes:
        return encode_envelope(self.validation_type, self.identifier, self.payload)

    def to_hex(self) -> str:
        return "0x" + self.to_bytes().hex()


def validation_id(validation_type: int, identifier: Union[bytes, str]) -> bytes:
    """Build the 21-byte ValidationId used as the account's config key"""
    identifier = _to_bytes(identifier)
    if not 0 <= int(validation_type) <= 0xFF:
        raise ValueError(f"Validation type out of range: {validation_type}")
    if len(identifier) != IDENTIFIER_LENGTH:
        raise ValueError(f"Identifier must be {IDENTIFIER_LENGTH} bytes, got {len(identifier)}")
    return bytes([int(validation_type)]) + identifier


def split_validation_id(vid: Union[bytes, str]) -> Tuple[Union[ValidationType, int], bytes]:
    """Split a 21-byte ValidationId into its type and identifier"""
    vid = _to_bytes(vid)
    if len(vid) != HEADER_LENGTH:
        raise MalformedEnvelope(f"ValidationId must be {HEADER_LENGTH} bytes, got {len(vid)}")
    return _coerce_type(vid[0]), vid[TYPE_LENGTH:]


def encode_envelope(validation_type: int, identifier: Union[bytes, str], payload: Union[bytes, str]) -> bytes:
    """Concatenate tag, identifier and payload"""
    return validation_id(validation_type, identifier) + _to_bytes(payload)


def decode_envelope(data: Union[bytes, str]) -> SignatureEnvelope:
    """Parse a tagged signature. The tag itself is not validated."""
    data = _to_bytes(data)
    if len(data) < HEADER_LENGTH:
        raise MalformedEnvelope(
            f"Signature envelope needs at least {HEADER_LENGTH} bytes, got {len(data)}"
        )
    validation_type, identifier = split_validation_id(data[:HEADER_LENGTH])
    return SignatureEnvelope(
        validation_type=validation_type,
        identifier=identifier,
        payload=data[HEADER_LENGTH:],
    )


def retag_envelope(envelope: SignatureEnvelope, validation_type: int) -> SignatureEnvelope:
    """Copy of the envelope under a different validation type"""
    return replace(envelope, validation_type=_coerce_type(int(validation_type)))
