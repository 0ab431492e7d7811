"""
Configuration for Kernel smart account operations
"""

import os
from dataclasses import dataclass

# Network constants
BASE_CHAIN_ID = 8453
BASE_RPC_URL = "https://mainnet.base.org"
ENTRYPOINT_V07 = "0x0000000071727De22E5E9d8BAf0edAc6f37da032"

# Kernel module constants
ECDSA_VALIDATOR_ADDRESS = "0x845ADb2C711129d4f3966735eD98a9F09fC4cE57"
HOOK_MODULE_INSTALLED = "0x0000000000000000000000000000000000000001"
ZERO_ADDRESS = "0x0000000000000000000000000000000000000000"
EIP1271_MAGIC_VALUE = bytes.fromhex("1626ba7e")
EIP7702_DELEGATION_PREFIX = bytes.fromhex("ef0100")

# Swap constants
PERMIT2_ADDRESS = "0x000000000022D473030F116dDEE9F6B43aC78BA3"
USDC_ADDRESS = "0x833589fCD6eDb6E08f4c7C32D4f71b54bdA02913"
NATIVE_ETH_ADDRESS = "0xEeeeeEeeeEeEeeEeEeEeeEEEeeeeEeeeeeeeEEeE"
USDC_DECIMALS = 6
ZEROX_QUOTE_URL = "https://api.0x.org/swap/permit2/quote"

# Default gas limits for UserOperations
DEFAULT_GAS_LIMITS = {
    "call": 300000,
    "verification": 1000000,
    "pre_verification": 60000,
    "fee": 1100000
}

# Receipt and state polling
POLL_INITIAL_DELAY = 1.0
POLL_MAX_DELAY = 8.0
POLL_TIMEOUT = 120.0


@dataclass(frozen=True)
class KernelVersion:
    """EIP-712 metadata and implementation address of one deployed Kernel version"""
    name: str
    version: str
    implementation_address: str


KERNEL_V3_1 = KernelVersion(
    name="Kernel",
    version="0.3.1",
    implementation_address="0xBAC849bB641841b44E965fB01A4Bf5F074f84b4D",
)

KERNEL_V3_3 = KernelVersion(
    name="Kernel",
    version="0.3.3",
    implementation_address="0xd6CEDDe84be40893d153Be9d467CD6aD37875b28",
)

KERNEL_VERSIONS = {
    KERNEL_V3_1.version: KERNEL_V3_1,
    KERNEL_V3_3.version: KERNEL_V3_3,
}


@dataclass
class SmartAccountConfig:
    """Configuration for Kernel smart account operations"""

    def __init__(self, kernel_version: str = KERNEL_V3_3.version):
        # Network configuration
        self.rpc_url = BASE_RPC_URL
        self.chain_id = BASE_CHAIN_ID
        self.entry_point_address = ENTRYPOINT_V07

        # Account implementation
        if kernel_version not in KERNEL_VERSIONS:
            raise ValueError(f"Unsupported Kernel version: {kernel_version}")
        self.kernel = KERNEL_VERSIONS[kernel_version]
        self.validator_address = ECDSA_VALIDATOR_ADDRESS

        # Environment (no other variables are read)
        self.swap_api_key = os.environ.get('API_KEY_0X')
        self.privy_app_id = os.environ.get('PRIVY_APP_ID')
        self.bundler_url = os.environ.get('BUNDLER_RPC')
        self.paymaster_url = os.environ.get('PAYMASTER_RPC')

    def require_user_operation_endpoints(self) -> None:
        """Fail early when the bundler or paymaster endpoint is not configured"""
        if not self.bundler_url:
            raise ValueError("BUNDLER_RPC environment variable is required")
        if not self.paymaster_url:
            raise ValueError("PAYMASTER_RPC environment variable is required")
