"""
Kernel Smart Account Demo Backend

A small Flask server for the browser demo that:
1. Proxies 0x Permit2 swap quotes without exposing the API key
2. Publishes the public front-end configuration (wallet-login app id, chain)
"""

import logging
from typing import Any, Dict, Optional

from flask import Flask, jsonify, request
from web3 import Web3

from config import SmartAccountConfig
from errors import TransportError
from swap import ZeroXQuoteClient

# Configure logging
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

# Server defaults
DEFAULT_HOST = "0.0.0.0"
DEFAULT_PORT = 8080


class DemoServer:
    """HTTP endpoints consumed by the browser demo"""

    def __init__(self, config: Optional[SmartAccountConfig] = None):
        self.app = Flask(__name__)
        self.config = config or SmartAccountConfig()
        self._setup_routes()

    def _setup_routes(self) -> None:
        """Set up Flask routes"""
        self.app.route("/api/swap", methods=["GET"])(self.handle_swap_quote)
        self.app.route("/api/config", methods=["GET"])(self.handle_public_config)
        self.app.route("/health", methods=["GET"])(self.health_check)

    def _quote_client(self) -> ZeroXQuoteClient:
        return ZeroXQuoteClient(self.config.swap_api_key, chain_id=self.config.chain_id)

    def handle_swap_quote(self):
        """Return a 0x Permit2 quote for swapping 1 USDC to ETH from ?wallet="""
        if not self.config.swap_api_key:
            logger.error("Swap quote requested but API_KEY_0X is not set")
            return jsonify({"error": "Missing API key"}), 500

        wallet = request.args.get("wallet", "")
        if not Web3.is_address(wallet):
            return jsonify({"error": "Invalid wallet address"}), 400

        try:
            quote: Dict[str, Any] = self._quote_client().get_quote(Web3.to_checksum_address(wallet))
        except TransportError as e:
            logger.error(f"Quote failed for {wallet}: {e}")
            return jsonify({"error": e.message}), 502

        return jsonify(quote)

    def handle_public_config(self):
        return jsonify({
            "privyAppId": self.config.privy_app_id,
            "chainId": self.config.chain_id,
            "kernelVersion": self.config.kernel.version,
        })

    def health_check(self):
        """Dead-simple health check endpoint"""
        return "OK", 200

    def run(self, host: str = DEFAULT_HOST, port: int = DEFAULT_PORT) -> None:
        """Run the Flask application"""
        self.app.run(host=host, port=port)


if __name__ == "__main__":
    server = DemoServer()
    server.run()
