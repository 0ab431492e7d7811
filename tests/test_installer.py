import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest
from eth_abi import decode
from eth_utils import keccak

from conftest import OWNER_ADDRESS
from config import ECDSA_VALIDATOR_ADDRESS, HOOK_MODULE_INSTALLED
from envelope import ValidationType, validation_id
from errors import BundlerError, ErrorKind, OperationInProgress, PaymasterRejected, TransportError
from installer import (
    CHANGE_ROOT_VALIDATOR_SELECTOR,
    INITIALIZE_SELECTOR,
    INSTALL_VALIDATIONS_SELECTOR,
    InstallState,
    ValidatorInstaller,
    encode_change_root_validator,
    encode_install_validations,
    encode_initialize,
)
from smart_account import OperationGuard
from user_operations import Call
from validation import ValidationOutcome, ValidationStatus

VID = validation_id(ValidationType.VALIDATOR, ECDSA_VALIDATOR_ADDRESS)
TX_HASH = "0x" + "11" * 32
USER_OP_HASH = "0x" + "22" * 32


def make_service(installed=False, has_code=True, outcome=ValidationStatus.VALID):
    service = MagicMock()
    service.address = OWNER_ADDRESS
    service.guard = OperationGuard()
    service.signer.account.address = OWNER_ADDRESS

    client = service.validation_client
    client.has_code.return_value = has_code
    if isinstance(installed, list):
        client.is_validator_installed.side_effect = installed
    else:
        client.is_validator_installed.return_value = installed
    client.current_nonce.return_value = 1

    service.send_user_operation = AsyncMock(return_value=USER_OP_HASH)
    service.wait_for_receipt = AsyncMock(
        return_value={"success": True, "receipt": {"transactionHash": TX_HASH}}
    )
    service.sign_message.return_value = (keccak(text="Post-install test"), b"\x01" * 86)
    service.verify_signature.return_value = ValidationOutcome(status=outcome)
    return service


def make_installer(service, updates=None):
    return ValidatorInstaller(
        service,
        on_status=updates.append if updates is not None else None,
        poll_timeout=0.05,
        poll_initial_delay=0.01,
        poll_max_delay=0.02,
    )


@pytest.mark.asyncio
async def test_already_installed_issues_no_write():
    service = make_service(installed=True)
    installer = make_installer(service)

    first = await installer.install()
    second = await installer.install()

    assert first.state is InstallState.ALREADY_INSTALLED
    assert second.state is InstallState.ALREADY_INSTALLED
    assert first.succeeded
    service.send_user_operation.assert_not_called()


@pytest.mark.asyncio
async def test_install_then_verify():
    service = make_service(installed=[False, True])
    updates = []

    result = await make_installer(service, updates).install()

    assert result.state is InstallState.INSTALLED
    assert result.kind is None
    assert result.succeeded
    assert result.transaction_hash == TX_HASH
    assert result.user_operation_hash == USER_OP_HASH
    assert [u.state for u in updates] == [
        InstallState.CHECKING,
        InstallState.NOT_INSTALLED,
        InstallState.INSTALLING,
        InstallState.INSTALLING,
        InstallState.INSTALLED,
    ]

    call_data = service.send_user_operation.call_args.kwargs["call_data"]
    assert call_data[:4] == INSTALL_VALIDATIONS_SELECTOR
    vids, configs, validator_data, hook_data = decode(
        ['bytes21[]', '(uint32,address)[]', 'bytes[]', 'bytes[]'], call_data[4:]
    )
    assert list(vids) == [VID]
    assert configs[0][0] == 1
    assert configs[0][1].lower() == HOOK_MODULE_INSTALLED.lower()
    assert list(validator_data) == [bytes.fromhex(OWNER_ADDRESS[2:])]
    assert list(hook_data) == [b""]


@pytest.mark.asyncio
async def test_rejected_test_signature_is_installed_but_unverified():
    service = make_service(installed=[False, True], outcome=ValidationStatus.UNVERIFIABLE)

    result = await make_installer(service).install()

    assert result.state is InstallState.INSTALLED
    assert result.kind is ErrorKind.INSTALLED_BUT_UNVERIFIED
    assert not result.succeeded
    assert result.validation.status is ValidationStatus.UNVERIFIABLE


@pytest.mark.asyncio
async def test_state_never_visible_is_installed_but_unverified():
    service = make_service(installed=False)

    result = await make_installer(service).install()

    assert result.state is InstallState.INSTALLED
    assert result.kind is ErrorKind.INSTALLED_BUT_UNVERIFIED
    service.verify_signature.assert_not_called()


@pytest.mark.asyncio
async def test_account_without_code_fails_before_write():
    service = make_service(has_code=False)

    result = await make_installer(service).install()

    assert result.state is InstallState.FAILED
    assert result.kind is ErrorKind.ACCOUNT_HAS_NO_CODE
    service.validation_client.is_validator_installed.assert_not_called()
    service.send_user_operation.assert_not_called()


@pytest.mark.asyncio
@pytest.mark.parametrize("error, kind, revert_code, message", [
    (PaymasterRejected("Paymaster rejected UserOperation: AA33"), ErrorKind.PAYMASTER_REJECTED, None,
     "Paymaster rejected the installation - the validator's onInstall might be reverting"),
    (BundlerError("UserOperation reverted with: 0xdeadbeef"), ErrorKind.REVERTED_ON_CHAIN, "0xdeadbeef",
     "Reverted with: 0xdeadbeef"),
    (BundlerError("execution reverted: InvalidValidator()"), ErrorKind.UNKNOWN_VALIDATOR, None,
     "InvalidValidator error - validator format issue"),
    (TransportError("eth_sendUserOperation request failed"), ErrorKind.TRANSPORT_ERROR, None,
     "Error: eth_sendUserOperation request failed"),
    (BundlerError("something unexpected"), ErrorKind.UNKNOWN, None, "Error: something unexpected"),
])
async def test_submission_failures_are_classified(error, kind, revert_code, message):
    service = make_service(installed=False)
    service.send_user_operation.side_effect = error
    updates = []

    result = await make_installer(service, updates).install()

    assert result.state is InstallState.FAILED
    assert result.kind is kind
    assert result.revert_code == revert_code
    assert result.message == message
    assert updates[-1].state is InstallState.FAILED
    service.wait_for_receipt.assert_not_called()


@pytest.mark.asyncio
async def test_reverted_receipt_fails():
    service = make_service(installed=False)
    service.wait_for_receipt.return_value = {
        "success": False,
        "reason": "0xdeadbeef",
        "receipt": {"transactionHash": TX_HASH},
    }

    result = await make_installer(service).install()

    assert result.state is InstallState.FAILED
    assert result.kind is ErrorKind.REVERTED_ON_CHAIN
    assert result.revert_code == "0xdeadbeef"
    assert result.transaction_hash == TX_HASH


@pytest.mark.asyncio
async def test_concurrent_install_is_rejected():
    service = make_service(installed=False)
    release = asyncio.Event()

    async def slow_send(call_data):
        await release.wait()
        return USER_OP_HASH

    service.send_user_operation.side_effect = slow_send
    installer = make_installer(service)

    first = asyncio.ensure_future(installer.install())
    await asyncio.sleep(0)
    with pytest.raises(OperationInProgress):
        await installer.install()
    release.set()
    await first

    assert service.send_user_operation.await_count == 1


@pytest.mark.asyncio
async def test_invalid_owner_address_fails_before_any_read():
    service = make_service(installed=False)
    updates = []

    result = await make_installer(service, updates).install(validator_data="0x1234")

    assert result.state is InstallState.FAILED
    assert result.message == "Error: Invalid owner address format: 0x1234"
    assert [u.state for u in updates] == [InstallState.CHECKING, InstallState.FAILED]
    service.validation_client.has_code.assert_not_called()
    service.send_user_operation.assert_not_called()


@pytest.mark.asyncio
async def test_value_error_while_installing_reports_failure():
    service = make_service(installed=False)
    service.send_user_operation.side_effect = ValueError("non-hexadecimal number found in fromhex()")
    updates = []

    result = await make_installer(service, updates).install()

    assert result.state is InstallState.FAILED
    assert updates[-2].state is InstallState.INSTALLING
    assert updates[-1].state is InstallState.FAILED
    assert result.message.startswith("Error: non-hexadecimal")


def test_install_validations_requires_matching_lengths():
    with pytest.raises(ValueError):
        encode_install_validations([VID], [], [b""], [b""])


def test_change_root_and_initialize_encoding():
    owner = bytes.fromhex(OWNER_ADDRESS[2:])
    change_root = encode_change_root_validator(VID, validator_data=owner)
    vid, hook, validator_data, hook_data = decode(['bytes21', 'address', 'bytes', 'bytes'], change_root[4:])

    assert change_root[:4] == CHANGE_ROOT_VALIDATOR_SELECTOR
    assert (vid, hook.lower(), validator_data, hook_data) == (VID, HOOK_MODULE_INSTALLED.lower(), owner, b"")

    initialize = encode_initialize(VID, validator_data=owner)
    assert decode(['bytes21', 'address', 'bytes', 'bytes', 'bytes[]'], initialize[4:])[4] == ()


def root_validator(initialized, identifier=ECDSA_VALIDATOR_ADDRESS):
    return {"validation_type": "VALIDATOR", "identifier": identifier, "initialized": initialized}


def sent_call(service):
    (call,) = service.send_user_operation.call_args.kwargs["calls"]
    return call


@pytest.mark.asyncio
async def test_repair_changes_uninitialized_root_on_delegated_account():
    service = make_service()
    service.validation_client.describe_root_validator.return_value = root_validator(False)
    updates = []

    result = await make_installer(service, updates).repair_root_validator()

    assert result.state is InstallState.INSTALLED
    assert result.transaction_hash == TX_HASH
    call = sent_call(service)
    assert isinstance(call, Call)
    assert call.to == OWNER_ADDRESS
    assert call.value == 0
    assert call.data[:4] == CHANGE_ROOT_VALIDATOR_SELECTOR
    vid, hook, validator_data, _ = decode(['bytes21', 'address', 'bytes', 'bytes'], call.data[4:])
    assert vid == VID
    assert hook.lower() == HOOK_MODULE_INSTALLED.lower()
    assert validator_data == bytes.fromhex(OWNER_ADDRESS[2:])
    assert [u.state for u in updates] == [
        InstallState.CHECKING,
        InstallState.NOT_INSTALLED,
        InstallState.INSTALLING,
        InstallState.INSTALLED,
    ]


@pytest.mark.asyncio
async def test_repair_initializes_account_without_code():
    service = make_service(has_code=False)

    result = await make_installer(service).repair_root_validator()

    assert result.state is InstallState.INSTALLED
    assert sent_call(service).data[:4] == INITIALIZE_SELECTOR
    service.validation_client.describe_root_validator.assert_not_called()


@pytest.mark.asyncio
async def test_repair_is_noop_when_root_is_set():
    service = make_service()
    other = "0x" + "12" * 20
    service.validation_client.describe_root_validator.return_value = root_validator(True, other)

    result = await make_installer(service).repair_root_validator()

    assert result.state is InstallState.ALREADY_INSTALLED
    assert "expected" in result.message
    service.send_user_operation.assert_not_called()


@pytest.mark.asyncio
async def test_repair_failure_is_classified():
    service = make_service(has_code=False)
    service.send_user_operation.side_effect = PaymasterRejected("Paymaster rejected UserOperation")

    result = await make_installer(service).repair_root_validator()

    assert result.state is InstallState.FAILED
    assert result.kind is ErrorKind.PAYMASTER_REJECTED
