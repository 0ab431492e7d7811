"""
Validator installation for Kernel accounts

Installation is check-before-write: the account's validationConfig is read first
and nothing is submitted when the validator is already installed. After a
confirmed install the account state is polled with exponential back-off, then a
test signature is verified through isValidSignature. Installation and a working
signature path are reported separately.

An account whose root validator was never set (zeroed, or still holding the
constructor placeholder) can be repaired with `repair_root_validator`: a delegated
account gets `changeRootValidator`, an account without code gets `initialize`.
"""

import asyncio
import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import Callable, List, Optional, Sequence, Tuple, Union

import requests
from eth_abi import encode
from hexbytes import HexBytes
from web3 import Web3
from web3.exceptions import Web3Exception

from config import ECDSA_VALIDATOR_ADDRESS, HOOK_MODULE_INSTALLED, POLL_INITIAL_DELAY, POLL_MAX_DELAY, POLL_TIMEOUT
from envelope import ValidationType, validation_id
from errors import ErrorKind, SmartAccountError, classify_error_message, describe_error
from user_operations import Call
from validation import ValidationOutcome

logger = logging.getLogger(__name__)

INSTALL_VALIDATIONS_SELECTOR = Web3.keccak(text="installValidations(bytes21[],(uint32,address)[],bytes[],bytes[])")[:4]
CHANGE_ROOT_VALIDATOR_SELECTOR = Web3.keccak(text="changeRootValidator(bytes21,address,bytes,bytes)")[:4]
INITIALIZE_SELECTOR = Web3.keccak(text="initialize(bytes21,address,bytes,bytes,bytes[])")[:4]

TEST_MESSAGE = "Post-install test"

# Failures that end an attempt with a FAILED status instead of propagating
INSTALL_ERRORS = (SmartAccountError, Web3Exception, requests.RequestException, ValueError)


def encode_install_validations(
    vids: Sequence[bytes],
    configs: Sequence[Tuple[int, str]],
    validator_data: Sequence[bytes],
    hook_data: Sequence[bytes],
) -> bytes:
    if not len(vids) == len(configs) == len(validator_data) == len(hook_data):
        raise ValueError("installValidations arguments must have equal lengths")
    return INSTALL_VALIDATIONS_SELECTOR + encode(
        ['bytes21[]', '(uint32,address)[]', 'bytes[]', 'bytes[]'],
        [
            list(vids),
            [(nonce, Web3.to_checksum_address(hook)) for nonce, hook in configs],
            list(validator_data),
            list(hook_data),
        ]
    )


def encode_change_root_validator(vid: bytes, hook: str = HOOK_MODULE_INSTALLED,
                                 validator_data: bytes = b"", hook_data: bytes = b"") -> bytes:
    return CHANGE_ROOT_VALIDATOR_SELECTOR + encode(
        ['bytes21', 'address', 'bytes', 'bytes'],
        [vid, Web3.to_checksum_address(hook), validator_data, hook_data]
    )


def encode_initialize(vid: bytes, hook: str = HOOK_MODULE_INSTALLED, validator_data: bytes = b"",
                      hook_data: bytes = b"", init_config: List[bytes] = None) -> bytes:
    return INITIALIZE_SELECTOR + encode(
        ['bytes21', 'address', 'bytes', 'bytes', 'bytes[]'],
        [vid, Web3.to_checksum_address(hook), validator_data, hook_data, list(init_config or [])]
    )


class InstallState(Enum):
    NOT_CHECKED = "not_checked"
    CHECKING = "checking"
    ALREADY_INSTALLED = "already_installed"
    NOT_INSTALLED = "not_installed"
    INSTALLING = "installing"
    INSTALLED = "installed"
    FAILED = "failed"


@dataclass(frozen=True)
class StatusUpdate:
    state: InstallState
    message: str


@dataclass
class InstallResult:
    state: InstallState
    kind: Optional[ErrorKind] = None
    message: str = ""
    revert_code: Optional[str] = None
    user_operation_hash: Optional[str] = None
    transaction_hash: Optional[str] = None
    validation: Optional[ValidationOutcome] = None

    @property
    def succeeded(self) -> bool:
        return self.state in (InstallState.ALREADY_INSTALLED, InstallState.INSTALLED) and self.kind is None


class ValidatorInstaller:
    """Drives NotChecked -> Checking -> {AlreadyInstalled | NotInstalled -> Installing -> {Installed | Failed}}"""

    def __init__(
        self,
        service,
        validator_address: str = ECDSA_VALIDATOR_ADDRESS,
        on_status: Callable[[StatusUpdate], None] = None,
        poll_timeout: float = POLL_TIMEOUT,
        poll_initial_delay: float = POLL_INITIAL_DELAY,
        poll_max_delay: float = POLL_MAX_DELAY,
    ):
        self.service = service
        self.validator_address = Web3.to_checksum_address(validator_address)
        self.vid = validation_id(ValidationType.VALIDATOR, self.validator_address)
        self.on_status = on_status
        self.poll_timeout = poll_timeout
        self.poll_initial_delay = poll_initial_delay
        self.poll_max_delay = poll_max_delay
        self.state = InstallState.NOT_CHECKED

    def _transition(self, state: InstallState, message: str) -> None:
        self.state = state
        logger.info(f"[{state.value}] {message}")
        if self.on_status:
            self.on_status(StatusUpdate(state=state, message=message))

    def _fail(self, error: BaseException, **details) -> InstallResult:
        message = describe_error(error)
        kind, revert_code = classify_error_message(message)
        if isinstance(error, SmartAccountError) and error.kind is not ErrorKind.UNKNOWN:
            kind = error.kind
        if kind is ErrorKind.REVERTED_ON_CHAIN and revert_code:
            status = f"Reverted with: {revert_code}"
        elif kind is ErrorKind.PAYMASTER_REJECTED:
            status = "Paymaster rejected the installation - the validator's onInstall might be reverting"
        elif kind is ErrorKind.UNKNOWN_VALIDATOR:
            status = "InvalidValidator error - validator format issue"
        else:
            status = f"Error: {message[:100]}"
        logger.error(f"Validator installation failed ({kind.value}): {message}")
        self._transition(InstallState.FAILED, status)
        return InstallResult(state=InstallState.FAILED, kind=kind, message=status, revert_code=revert_code, **details)

    def _reverted(self, receipt: dict, user_op_hash: str, tx_hash: Optional[str]) -> InstallResult:
        self._transition(InstallState.FAILED, f"UserOperation reverted in {tx_hash}")
        return InstallResult(
            state=InstallState.FAILED,
            kind=ErrorKind.REVERTED_ON_CHAIN,
            message=receipt.get('reason') or "UserOperation reverted",
            revert_code=receipt.get('reason'),
            user_operation_hash=user_op_hash,
            transaction_hash=tx_hash,
        )

    async def install(self, validator_data: Union[bytes, str] = None) -> InstallResult:
        """Install the validator unless it already is; never retried automatically"""
        with self.service.guard.hold("validator_install"):
            return await self._run(validator_data)

    async def _run(self, validator_data) -> InstallResult:
        address = self.service.address
        client = self.service.validation_client
        self._transition(InstallState.CHECKING, f"Checking if validator {self.validator_address} is installed...")
        try:
            owner_data = self._validator_data(validator_data)
            if not client.has_code(address):
                self._transition(InstallState.FAILED, f"Account {address} has no code - delegate it first")
                return InstallResult(
                    state=InstallState.FAILED,
                    kind=ErrorKind.ACCOUNT_HAS_NO_CODE,
                    message="Account has no code deployed",
                )
            installed = client.is_validator_installed(address, self.vid)
        except INSTALL_ERRORS as e:
            return self._fail(e)

        if installed:
            self._transition(InstallState.ALREADY_INSTALLED, "Validator is already installed")
            return InstallResult(state=InstallState.ALREADY_INSTALLED, message="Validator is already installed")

        self._transition(InstallState.NOT_INSTALLED, "Validator not installed. Proceeding with installation...")

        self._transition(InstallState.INSTALLING, "Sending UserOp to install validator...")
        user_op_hash = None
        try:
            nonce = client.current_nonce(address)
            call_data = encode_install_validations(
                [self.vid],
                [(nonce, HOOK_MODULE_INSTALLED)],
                [owner_data],
                [b""],
            )
            user_op_hash = await self.service.send_user_operation(call_data=call_data)
            self._transition(InstallState.INSTALLING, f"UserOp sent: {user_op_hash[:10]}...")
            receipt = await self.service.wait_for_receipt(user_op_hash)
        except INSTALL_ERRORS as e:
            return self._fail(e, user_operation_hash=user_op_hash)

        tx_hash = receipt.get('receipt', {}).get('transactionHash')
        if receipt.get('success') is False:
            return self._reverted(receipt, user_op_hash, tx_hash)

        return await self._verify_installation(user_op_hash, tx_hash)

    async def repair_root_validator(self, validator_data: Union[bytes, str] = None) -> InstallResult:
        """Point an uninitialized root validator at this validator; no-op when one is set"""
        with self.service.guard.hold("root_validator"):
            return await self._repair_root(validator_data)

    async def _repair_root(self, validator_data) -> InstallResult:
        address = self.service.address
        client = self.service.validation_client

        self._transition(InstallState.CHECKING, "Checking root validator...")
        try:
            owner_data = self._validator_data(validator_data)
            if client.has_code(address):
                root = client.describe_root_validator(address)
                if root["initialized"]:
                    message = f"Root validator already set to {root['identifier']}"
                    if root["identifier"].lower() != self.validator_address.lower():
                        message += f" (expected {self.validator_address}, use changeRootValidator to update it)"
                    self._transition(InstallState.ALREADY_INSTALLED, message)
                    return InstallResult(state=InstallState.ALREADY_INSTALLED, message=message)
                action = "changeRootValidator"
                call_data = encode_change_root_validator(self.vid, validator_data=owner_data)
            else:
                action = "initialize"
                call_data = encode_initialize(self.vid, validator_data=owner_data)
        except INSTALL_ERRORS as e:
            return self._fail(e)

        self._transition(InstallState.NOT_INSTALLED, f"Root validator is not set. Using {action}...")
        self._transition(InstallState.INSTALLING, f"Sending {action} UserOp...")
        user_op_hash = None
        try:
            user_op_hash = await self.service.send_user_operation(calls=[Call(to=address, data=call_data)])
            receipt = await self.service.wait_for_receipt(user_op_hash)
        except INSTALL_ERRORS as e:
            return self._fail(e, user_operation_hash=user_op_hash)

        tx_hash = receipt.get('receipt', {}).get('transactionHash')
        if receipt.get('success') is False:
            return self._reverted(receipt, user_op_hash, tx_hash)

        message = f"Root validator set with {action} in {tx_hash}"
        self._transition(InstallState.INSTALLED, message)
        return InstallResult(
            state=InstallState.INSTALLED,
            message=message,
            user_operation_hash=user_op_hash,
            transaction_hash=tx_hash,
        )

    async def _verify_installation(self, user_op_hash: str, tx_hash: Optional[str]) -> InstallResult:
        details = {"user_operation_hash": user_op_hash, "transaction_hash": tx_hash}

        if not await self._wait_until_installed():
            message = "Installation confirmed but validationConfig never showed the validator"
            self._transition(InstallState.INSTALLED, message)
            return InstallResult(
                state=InstallState.INSTALLED, kind=ErrorKind.INSTALLED_BUT_UNVERIFIED, message=message, **details
            )

        digest, envelope = self.service.sign_message(TEST_MESSAGE)
        outcome = self.service.verify_signature(digest, envelope)
        if outcome.is_valid:
            message = "Validator installed and signatures validate"
            self._transition(InstallState.INSTALLED, message)
            return InstallResult(state=InstallState.INSTALLED, message=message, validation=outcome, **details)

        message = f"Validator installed but signatures not validating ({outcome.status.value})"
        self._transition(InstallState.INSTALLED, message)
        return InstallResult(
            state=InstallState.INSTALLED,
            kind=ErrorKind.INSTALLED_BUT_UNVERIFIED,
            message=message,
            validation=outcome,
            **details,
        )

    async def _wait_until_installed(self) -> bool:
        """Poll validationConfig with exponential back-off until installed or timed out"""
        deadline = time.monotonic() + self.poll_timeout
        delay = self.poll_initial_delay
        while True:
            try:
                if self.service.validation_client.is_validator_installed(self.service.address, self.vid):
                    return True
            except (Web3Exception, requests.RequestException) as e:
                logger.warning(f"validationConfig read failed while polling: {e}")

            if time.monotonic() + delay > deadline:
                return False
            await asyncio.sleep(delay)
            delay = min(delay * 2, self.poll_max_delay)

    def _validator_data(self, validator_data) -> bytes:
        """ECDSA validator data is the 20-byte owner address"""
        if validator_data is None:
            validator_data = self.service.signer.account.address
        if isinstance(validator_data, str):
            if not Web3.is_address(validator_data):
                raise ValueError(f"Invalid owner address format: {validator_data}")
            return bytes(HexBytes(validator_data))
        return bytes(validator_data)
