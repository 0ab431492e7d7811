"""
Main Kernel smart account service orchestration
"""

import logging
from contextlib import contextmanager
from typing import Dict, Optional, Sequence, Union

from eth_account.signers.local import LocalAccount
from web3 import Web3

from bundler import BundlerClient
from config import SmartAccountConfig
from digest import AccountDomain
from envelope import SignatureEnvelope
from errors import OperationInProgress
from inspect_account import inspect_account
from paymaster import PaymasterClient
from signer import KernelSignatureService
from user_operations import Call, calls_summary, create_user_operation, encode_kernel_execute, replace_user_operation
from validation import DelegationStatus, SignatureValidationClient, ValidationOutcome, ValidationStatus

logger = logging.getLogger(__name__)


class OperationGuard:
    """At most one in-flight operation per family"""

    def __init__(self):
        self._busy = set()

    def is_busy(self, family: str) -> bool:
        return family in self._busy

    @contextmanager
    def hold(self, family: str):
        if family in self._busy:
            raise OperationInProgress(f"A {family} operation is already in progress")
        self._busy.add(family)
        try:
            yield
        finally:
            self._busy.discard(family)


class KernelAccountService:
    """Main service for a Kernel account delegated from an EOA via EIP-7702"""

    def __init__(
        self,
        config: SmartAccountConfig,
        account: LocalAccount,
        web3: Web3 = None,
        bundler_client: BundlerClient = None,
        paymaster_client: PaymasterClient = None,
    ):
        self.config = config
        self.web3 = web3 or Web3(Web3.HTTPProvider(config.rpc_url))
        if bundler_client is None or paymaster_client is None:
            config.require_user_operation_endpoints()
        self.bundler_client = bundler_client or BundlerClient(config)
        self.paymaster_client = paymaster_client or PaymasterClient(config)
        self.signer = KernelSignatureService(
            account,
            kernel=config.kernel,
            chain_id=config.chain_id,
            validator_address=config.validator_address,
        )
        self.validation_client = SignatureValidationClient(self.web3)
        self.guard = OperationGuard()

        logger.info(f"Kernel account service initialized for {self.address} (Kernel {config.kernel.version})")

    @property
    def address(self) -> str:
        return self.signer.account_address

    @property
    def account_domain(self) -> AccountDomain:
        return self.signer.account_domain

    def delegation_status(self) -> DelegationStatus:
        return self.validation_client.delegation_status(self.address)

    def is_delegated(self) -> bool:
        status = self.delegation_status()
        return status.is_eip7702 and status.delegate is not None and (
            status.delegate.lower() == self.config.kernel.implementation_address.lower()
        )

    async def send_user_operation(self, calls: Sequence[Call] = None, call_data: bytes = None) -> str:
        """Build, sponsor, sign and submit a UserOperation; returns its hash"""
        if (calls is None) == (call_data is None):
            raise ValueError("Provide either calls or call_data")

        with self.guard.hold("user_operation"):
            if calls is not None:
                logger.info(f"Sending calls: {calls_summary(list(calls))}")
                call_data = encode_kernel_execute(list(calls))

            authorization = self._authorization_if_needed()
            user_operation = create_user_operation(self.address, call_data, self._get_nonce())
            user_operation = self._apply_gas_price(user_operation)
            user_operation = self.paymaster_client.sponsor_user_operation(user_operation, authorization)

            signed_user_operation = self.signer.sign_user_operation(
                user_operation, self.config.entry_point_address, authorization
            )
            return self.bundler_client.send_user_operation(signed_user_operation)

    async def wait_for_receipt(self, user_op_hash: str) -> Dict:
        return await self.bundler_client.wait_for_user_operation_receipt(user_op_hash)

    async def send_transaction(self, calls: Sequence[Call]) -> str:
        """Submit calls and wait for inclusion; returns the transaction hash"""
        user_op_hash = await self.send_user_operation(calls=calls)
        receipt = await self.wait_for_receipt(user_op_hash)
        return receipt['receipt']['transactionHash']

    def sign_message(self, message: Union[str, bytes]):
        return self.signer.sign_message(message)

    def sign_typed_data(self, domain: Dict, types: Dict, primary_type: str, message: Dict):
        return self.signer.sign_typed_data(domain, types, primary_type, message)

    def verify_signature(self, original_digest: bytes,
                         signature: Union[SignatureEnvelope, bytes, str]) -> ValidationOutcome:
        return self.validation_client.verify(self.address, original_digest, signature)

    def verify_locally(self, original_digest: bytes, envelope: SignatureEnvelope) -> bool:
        return self.validation_client.verify_locally(
            original_digest, envelope, self.account_domain, self.signer.account.address
        )

    def sign_and_verify_typed_data(self, domain: Dict, types: Dict, primary_type: str,
                                   message: Dict) -> ValidationOutcome:
        """Sign typed data through the account and check it with isValidSignature

        An account with no code cannot answer isValidSignature, so the data is
        signed directly by the owner EOA and checked by recovery instead.
        """
        original_digest, envelope = self.sign_typed_data(domain, types, primary_type, message)
        outcome = self.verify_signature(original_digest, envelope)
        if outcome.status is not ValidationStatus.ACCOUNT_HAS_NO_CODE:
            return outcome

        logger.info(f"{self.address} has no code; falling back to a direct EOA signature check")
        original_digest, signature = self.signer.sign_typed_data_as_owner(domain, types, primary_type, message)
        return self.validation_client.verify_eoa(original_digest, signature, self.signer.account.address)

    def inspect(self) -> Dict:
        """Collect validator-related diagnostics for the account"""
        report = inspect_account(self.address, self.config, self.web3)
        report["kernel_version"] = self.config.kernel.version
        return report

    def _authorization_if_needed(self) -> Optional[Dict]:
        if self.is_delegated():
            return None
        nonce = self.web3.eth.get_transaction_count(self.address)
        return self.signer.sign_authorization(nonce)

    def _apply_gas_price(self, user_operation):
        """Update UserOperation fees with the bundler's fast gas price"""
        gas_prices = self.bundler_client.get_user_operation_gas_price()
        if gas_prices and 'fast' in gas_prices:
            fast_prices = gas_prices['fast']
            changes = {}
            if 'maxFeePerGas' in fast_prices:
                changes['max_fee_per_gas'] = int(fast_prices['maxFeePerGas'], 16)
            if 'maxPriorityFeePerGas' in fast_prices:
                changes['max_priority_fee_per_gas'] = int(fast_prices['maxPriorityFeePerGas'], 16)
            if changes:
                user_operation = replace_user_operation(user_operation, **changes)
        return user_operation

    def _get_nonce(self) -> int:
        """Get current nonce for the account from EntryPoint (root validator key)"""
        get_nonce_abi = [{
            "inputs": [{"name": "sender", "type": "address"}, {"name": "key", "type": "uint192"}],
            "name": "getNonce",
            "outputs": [{"name": "", "type": "uint256"}],
            "stateMutability": "view",
            "type": "function"
        }]

        entry_point_contract = self.web3.eth.contract(
            address=self.web3.to_checksum_address(self.config.entry_point_address),
            abi=get_nonce_abi
        )

        nonce = entry_point_contract.functions.getNonce(
            self.web3.to_checksum_address(self.address),
            0  # Root validator key
        ).call()

        logger.info(f"Current nonce: {nonce}")
        return nonce


def create_kernel_account_service(account: LocalAccount) -> KernelAccountService:
    """Create a Kernel account service with default configuration"""
    return KernelAccountService(SmartAccountConfig(), account)
