"""
0x swap quotes and Permit2 swap execution from a Kernel account
"""

import logging
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional

import requests
from eth_abi import encode
from hexbytes import HexBytes
from web3 import Web3

from config import BASE_CHAIN_ID, NATIVE_ETH_ADDRESS, PERMIT2_ADDRESS, USDC_ADDRESS, USDC_DECIMALS, ZEROX_QUOTE_URL
from errors import TransportError
from user_operations import Call

logger = logging.getLogger(__name__)

MAX_UINT256 = 2 ** 256 - 1
APPROVE_SELECTOR = Web3.keccak(text="approve(address,uint256)")[:4]


def usdc_amount(amount_usd: float) -> int:
    return int(round(amount_usd * 10 ** USDC_DECIMALS))


def encode_erc20_approve(spender: str, amount: int) -> bytes:
    return APPROVE_SELECTOR + encode(['address', 'uint256'], [Web3.to_checksum_address(spender), amount])


def append_permit2_signature(transaction_data: bytes, signature: bytes) -> bytes:
    """Append uint256(len(signature)) || signature to the 0x settler calldata"""
    signature = bytes(HexBytes(signature))
    return bytes(HexBytes(transaction_data)) + len(signature).to_bytes(32, "big") + signature


@dataclass(frozen=True)
class SwapQuote:
    eip712: Dict[str, Any]
    to: str
    data: bytes
    gas: Optional[int] = None
    value: Optional[int] = None

    @classmethod
    def from_json(cls, payload: Dict[str, Any]) -> "SwapQuote":
        try:
            eip712 = payload["permit2"]["eip712"]
            transaction = payload["transaction"]
            to = Web3.to_checksum_address(transaction["to"])
            data = bytes(HexBytes(transaction["data"]))
        except (KeyError, TypeError) as e:
            raise ValueError(f"Malformed swap quote: missing {e}") from e

        for key in ("domain", "types", "primaryType", "message"):
            if key not in eip712:
                raise ValueError(f"Malformed swap quote: permit2.eip712 missing {key}")

        return cls(
            eip712=eip712,
            to=to,
            data=data,
            gas=int(transaction["gas"]) if transaction.get("gas") else None,
            value=int(transaction["value"]) if transaction.get("value") else None,
        )


class ZeroXQuoteClient:
    """Fetches Permit2 swap quotes from the 0x API"""

    def __init__(self, api_key: str, chain_id: int = BASE_CHAIN_ID, timeout: int = 30):
        self.api_key = api_key
        self.chain_id = chain_id
        self.timeout = timeout

    def get_quote(self, taker: str, sell_token: str = USDC_ADDRESS, buy_token: str = NATIVE_ETH_ADDRESS,
                  sell_amount: int = usdc_amount(1)) -> Dict[str, Any]:
        params = {
            "chainId": self.chain_id,
            "sellToken": sell_token,
            "buyToken": buy_token,
            "sellAmount": str(sell_amount),
            "taker": taker,
        }
        headers = {
            "0x-api-key": self.api_key,
            "0x-version": "v2",
        }

        try:
            response = requests.get(ZEROX_QUOTE_URL, params=params, headers=headers, timeout=self.timeout)
            response.raise_for_status()
        except requests.RequestException as e:
            logger.error(f"0x quote request failed: {e}")
            raise TransportError(f"0x quote request failed: {e}") from e

        quote = response.json()
        logger.info(f"0x quote for {taker}: {quote}")
        return quote


class SwapService:
    """Permit2 approval and USDC -> ETH swap through a Kernel account"""

    def __init__(self, account_service):
        self.account_service = account_service

    async def approve_permit2(self) -> str:
        """Approve Permit2 to spend the account's USDC; returns the transaction hash"""
        call = Call(to=USDC_ADDRESS, data=encode_erc20_approve(PERMIT2_ADDRESS, MAX_UINT256))
        return await self.account_service.send_transaction([call])

    async def swap(self, wallet_quote_fetcher: Callable[[str], Dict[str, Any]]) -> str:
        """Quote, sign the Permit2 typed data with the account and execute; returns the transaction hash

        ``wallet_quote_fetcher`` maps the account address to the raw quote JSON, for
        example ``ZeroXQuoteClient.get_quote`` or a call to the backend's /api/swap.
        """
        quote = SwapQuote.from_json(wallet_quote_fetcher(self.account_service.address))

        eip712 = quote.eip712
        _, envelope = self.account_service.sign_typed_data(
            eip712["domain"], eip712["types"], eip712["primaryType"], eip712["message"]
        )
        call = Call(
            to=quote.to,
            value=quote.value or 0,
            data=append_permit2_signature(quote.data, envelope.to_bytes()),
        )
        return await self.account_service.send_transaction([call])
