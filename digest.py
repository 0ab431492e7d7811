"""
EIP-712 digest helpers for Kernel accounts

Kernel v0.3 does not check signatures against the caller's digest directly. It
first wraps it as ``Kernel(bytes32 hash)`` and re-hashes that under the account's
own EIP-712 domain, so a signature made for one account can not be replayed
against another. ``wrap_digest`` reproduces that computation off chain for local
signer recovery; ``isValidSignature`` must still be called with the original digest.
"""

import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Union

from eth_abi import encode
from eth_account import Account
from eth_account.messages import encode_defunct, encode_typed_data
from eth_utils import keccak
from hexbytes import HexBytes
from web3 import Web3

from envelope import SignatureEnvelope

logger = logging.getLogger(__name__)

KERNEL_WRAPPER_TYPE = "Kernel(bytes32 hash)"
KERNEL_WRAPPER_TYPEHASH = keccak(text=KERNEL_WRAPPER_TYPE)
EIP712_DOMAIN_TYPE = "EIP712Domain(string name,string version,uint256 chainId,address verifyingContract)"
EIP712_DOMAIN_TYPEHASH = keccak(text=EIP712_DOMAIN_TYPE)
EIP712_VERSION_PREFIX = b"\x19\x01"


@dataclass(frozen=True)
class AccountDomain:
    """EIP-712 domain of the smart account itself (not of the signed application)"""
    name: str
    version: str
    chain_id: int
    verifying_contract: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "version": self.version,
            "chainId": self.chain_id,
            "verifyingContract": Web3.to_checksum_address(self.verifying_contract),
        }


def to_digest(value: Union[bytes, str]) -> bytes:
    digest = bytes(HexBytes(value))
    if len(digest) != 32:
        raise ValueError(f"Digest must be 32 bytes, got {len(digest)}")
    return digest


def kernel_hash_wrapper(original_digest: Union[bytes, str]) -> bytes:
    """keccak(abi.encode(keccak("Kernel(bytes32 hash)"), digest))"""
    return keccak(encode(["bytes32", "bytes32"], [KERNEL_WRAPPER_TYPEHASH, to_digest(original_digest)]))


def domain_separator(domain: AccountDomain) -> bytes:
    return keccak(encode(
        ["bytes32", "bytes32", "bytes32", "uint256", "address"],
        [
            EIP712_DOMAIN_TYPEHASH,
            keccak(text=domain.name),
            keccak(text=domain.version),
            domain.chain_id,
            Web3.to_checksum_address(domain.verifying_contract),
        ],
    ))


def wrap_digest(original_digest: Union[bytes, str], domain: AccountDomain) -> bytes:
    """Digest the account's validator actually checks for ``original_digest``"""
    return keccak(EIP712_VERSION_PREFIX + domain_separator(domain) + kernel_hash_wrapper(original_digest))


def typed_data_message(domain: Dict[str, Any], types: Dict[str, List[Dict[str, str]]],
                       primary_type: str, message: Dict[str, Any]) -> Dict[str, Any]:
    """Full EIP-712 payload with the EIP712Domain type rebuilt from the domain's present fields"""
    domain = {key: value for key, value in domain.items() if value is not None}
    types = {name: fields for name, fields in types.items() if name != "EIP712Domain"}
    return {
        "types": {"EIP712Domain": _domain_fields(domain), **types},
        "primaryType": primary_type,
        "domain": domain,
        "message": message,
    }


def hash_typed_data(domain: Dict[str, Any], types: Dict[str, List[Dict[str, str]]],
                    primary_type: str, message: Dict[str, Any]) -> bytes:
    """Application-level EIP-712 digest (what callers pass to isValidSignature)"""
    signable = encode_typed_data(full_message=typed_data_message(domain, types, primary_type, message))
    return keccak(b"\x19" + signable.version + signable.header + signable.body)


def hash_message(message: Union[str, bytes]) -> bytes:
    """EIP-191 personal message digest"""
    if isinstance(message, str):
        signable = encode_defunct(text=message)
    else:
        signable = encode_defunct(primitive=message)
    return keccak(b"\x19" + signable.version + signable.header + signable.body)


def recover_signer(digest: Union[bytes, str], signature: Union[bytes, str]) -> str:
    """Raw ECDSA recovery over an already-final digest"""
    return Account._recover_hash(to_digest(digest), signature=bytes(HexBytes(signature)))


def recover_envelope_signer(original_digest: Union[bytes, str], envelope: SignatureEnvelope,
                            domain: AccountDomain) -> str:
    wrapped = wrap_digest(original_digest, domain)
    signer = recover_signer(wrapped, envelope.payload)
    logger.info(f"Recovered {signer} from wrapped digest 0x{wrapped.hex()}")
    return signer


def _domain_fields(domain: Dict[str, Any]) -> List[Dict[str, str]]:
    field_types = [
        ("name", "string"),
        ("version", "string"),
        ("chainId", "uint256"),
        ("verifyingContract", "address"),
        ("salt", "bytes32"),
    ]
    return [{"name": name, "type": kind} for name, kind in field_types if domain.get(name) is not None]
