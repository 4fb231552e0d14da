"""TWAP oracle adapter over an EVM JSON-RPC endpoint."""

from typing import Any

import structlog
from web3 import AsyncHTTPProvider, AsyncWeb3, Web3
from web3.exceptions import ContractCustomError, ContractLogicError

from ..core.errors import (
    InsufficientDataError,
    InvalidPairError,
    InvalidPeriodError,
    InvalidTokenError,
    OracleError,
    OracleNotInitializedError,
    StalePriceError,
)
from ..core.interfaces import PriceOracle

logger = structlog.get_logger(__name__)

ORACLE_ABI: list[dict[str, Any]] = [
    {
        "inputs": [
            {"name": "pair", "type": "address"},
            {"name": "tokenIn", "type": "address"},
            {"name": "amountIn", "type": "uint256"},
            {"name": "period", "type": "uint32"},
        ],
        "name": "consult",
        "outputs": [{"name": "amountOut", "type": "uint256"}],
        "stateMutability": "view",
        "type": "function",
    },
    {
        "inputs": [{"name": "pair", "type": "address"}],
        "name": "isPairInitialized",
        "outputs": [{"name": "", "type": "bool"}],
        "stateMutability": "view",
        "type": "function",
    },
    {"inputs": [], "name": "InvalidPair", "type": "error"},
    {"inputs": [], "name": "InvalidToken", "type": "error"},
    {"inputs": [], "name": "StalePrice", "type": "error"},
    {"inputs": [], "name": "InsufficientData", "type": "error"},
    {"inputs": [], "name": "InvalidPeriod", "type": "error"},
    {"inputs": [], "name": "NotInitialized", "type": "error"},
    {"inputs": [], "name": "ElapsedTimeZero", "type": "error"},
    {"inputs": [], "name": "InvalidTimeElapsed", "type": "error"},
]

# Contract custom errors and the typed error each maps to.
_ERROR_TYPES: dict[str, type[OracleError]] = {
    "NotInitialized": OracleNotInitializedError,
    "StalePrice": StalePriceError,
    "InvalidPeriod": InvalidPeriodError,
    "InsufficientData": InsufficientDataError,
    "ElapsedTimeZero": InsufficientDataError,
    "InvalidTimeElapsed": InsufficientDataError,
    "InvalidPair": InvalidPairError,
    "InvalidToken": InvalidTokenError,
}


def _selector(signature: str) -> str:
    return Web3.keccak(text=signature)[:4].hex().removeprefix("0x").lower()


_SELECTORS: dict[str, str] = {_selector(f"{name}()"): name for name in _ERROR_TYPES}


def map_oracle_error(pair_address: str, error: Exception) -> OracleError:
    """Translate a contract revert into a typed oracle error.

    Matches the 4-byte selector in the revert data first, then the error name
    in the message. Unknown reverts become a plain ``OracleError``.
    """
    data = getattr(error, "data", None)
    if isinstance(data, bytes):
        data = data.hex()
    if isinstance(data, str):
        selector = data.removeprefix("0x").lower()[:8]
        name = _SELECTORS.get(selector)
        if name:
            return _ERROR_TYPES[name](pair_address, name)

    message = str(error)
    # Longest name first.
    for name in sorted(_ERROR_TYPES, key=len, reverse=True):
        if name in message:
            return _ERROR_TYPES[name](pair_address, name)

    return OracleError(pair_address, message)


class Web3TwapOracle(PriceOracle):
    """Reads time-weighted prices from the on-chain oracle contract."""

    def __init__(
        self,
        rpc_url: str | None = None,
        oracle_address: str | None = None,
        w3: AsyncWeb3 | None = None,
        request_timeout: float = 10.0,
    ) -> None:
        """Initialize oracle adapter.

        Args:
            rpc_url: JSON-RPC endpoint URL
            oracle_address: Oracle contract address
            w3: Optional pre-built AsyncWeb3 instance (takes precedence)
            request_timeout: HTTP request timeout in seconds
        """
        if not oracle_address:
            raise ValueError("oracle_address is required")
        if w3 is None:
            if not rpc_url:
                raise ValueError("Either rpc_url or w3 is required")
            w3 = AsyncWeb3(
                AsyncHTTPProvider(rpc_url, request_kwargs={"timeout": request_timeout})
            )

        self.w3 = w3
        self.oracle_address = Web3.to_checksum_address(oracle_address)
        self.contract = w3.eth.contract(address=self.oracle_address, abi=ORACLE_ABI)

        logger.info("TWAP oracle initialized", oracle_address=self.oracle_address)

    async def is_pair_initialized(self, pair_address: str) -> bool:
        pair = Web3.to_checksum_address(pair_address)
        try:
            return bool(await self.contract.functions.isPairInitialized(pair).call())
        except (ContractCustomError, ContractLogicError) as e:
            raise map_oracle_error(pair_address, e) from e

    async def consult(
        self, pair_address: str, token_address: str, amount_in: int, period: int
    ) -> int:
        pair = Web3.to_checksum_address(pair_address)
        token = Web3.to_checksum_address(token_address)
        try:
            amount_out = await self.contract.functions.consult(
                pair, token, amount_in, period
            ).call()
        except (ContractCustomError, ContractLogicError) as e:
            error = map_oracle_error(pair_address, e)
            logger.debug(
                "Oracle consult reverted",
                pair_address=pair_address,
                error_type=type(error).__name__,
            )
            raise error from e

        return int(amount_out)
