"""Shared fixtures."""

from unittest.mock import MagicMock

import pytest
from eth_account import Account

from config import KERNEL_V3_3

# Well-known development key (first Hardhat/Anvil account)
OWNER_KEY = "0xac0974bec39a17e36ba4a6b4d238ff944bacb478cbed5efcae784d7bf4f2ff80"
OWNER_ADDRESS = "0xf39Fd6e51aad88F6F4ce6aB8827279cffFb92266"
DELEGATED_CODE = bytes.fromhex("ef0100") + bytes.fromhex(KERNEL_V3_3.implementation_address[2:])


@pytest.fixture
def owner():
    return Account.from_key(OWNER_KEY)


@pytest.fixture
def fake_web3():
    """MagicMock standing in for Web3: configure eth.get_code and contract call results per test."""
    web3 = MagicMock()
    web3.eth.get_code.return_value = DELEGATED_CODE
    web3.eth.get_transaction_count.return_value = 0
    return web3


def contract_function(web3, name):
    """The mock behind web3.eth.contract(...).functions.<name>"""
    return getattr(web3.eth.contract.return_value.functions, name)
