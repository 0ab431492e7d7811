"""Command-line diagnostics for a Kernel account: delegation, root validator, nonces and validator installation"""

import sys

import requests
from web3 import Web3
from web3.exceptions import Web3Exception

from config import SmartAccountConfig
from envelope import ValidationType, validation_id
from validation import SignatureValidationClient


def inspect_account(address: str, config: SmartAccountConfig = None, web3: Web3 = None) -> dict:
    config = config or SmartAccountConfig()
    client = SignatureValidationClient(web3 or Web3(Web3.HTTPProvider(config.rpc_url)))

    status = client.delegation_status(address)
    report = {
        "address": Web3.to_checksum_address(address),
        "has_code": status.has_code,
        "is_eip7702": status.is_eip7702,
        "delegate": status.delegate,
    }
    if not status.has_code:
        return report

    vid = validation_id(ValidationType.VALIDATOR, config.validator_address)
    report["root_validator"] = client.describe_root_validator(address)
    report["current_nonce"] = client.current_nonce(address)
    report["valid_nonce_from"] = client.valid_nonce_from(address)
    report["validator_installed"] = client.is_validator_installed(address, vid)
    return report


def main(argv) -> int:
    if len(argv) != 2 or not Web3.is_address(argv[1]):
        print("Usage: python inspect_account.py <account address>")
        return 2

    try:
        report = inspect_account(argv[1])
    except (requests.RequestException, Web3Exception) as e:
        print(f"Error inspecting account: {e}")
        return 1

    print(f"Account {report['address']}:")
    for key, value in report.items():
        if key != "address":
            print(f"- {key}: {value}")
    return 0


if __name__ == "__main__":
    sys.exit(main(sys.argv))
