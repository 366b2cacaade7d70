"""
Ledger Reader: raw account reads against the Solana JSON-RPC endpoint.

The reader returns bytes, never entities. ``None`` means the ledger
explicitly reported the account as absent; every transport failure, RPC
error object or malformed response becomes ``UpstreamUnavailable``.
"""
import asyncio
import base64
import itertools
import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Sequence, Tuple

import requests
from solders.pubkey import Pubkey

from common.circuit_breaker import CircuitBreaker, CircuitBreakerException, ledger_circuit_breaker
from common.error_handling import ErrorCodes, UpstreamUnavailable
from common.retry import LEDGER_RETRY_CONFIG, RetryConfig, retry_async
from common.settings import settings
from gateway_service.accounts import DISCRIMINATORS, decode_token_amount
from gateway_service.addresses import PROGRAM_ID

logger = logging.getLogger(__name__)

# Node-side conditions that clear on their own (block not available, node unhealthy,
# slot skipped, min context slot not reached). Any other error object is final.
TRANSIENT_RPC_ERROR_CODES = frozenset({-32004, -32005, -32007, -32014, -32016})

@dataclass(frozen=True)
class MemcmpFilter:
    """Match records whose bytes at ``offset`` equal ``value``"""
    offset: int
    value: bytes

    def to_rpc(self) -> Dict[str, Any]:
        return {
            "memcmp": {
                "offset": self.offset,
                "bytes": base64.b64encode(self.value).decode("ascii"),
                "encoding": "base64",
            }
        }

    def matches(self, data: bytes) -> bool:
        return data[self.offset:self.offset + len(self.value)] == self.value

class SolanaLedgerReader:
    """Read-only access to program accounts over JSON-RPC"""

    def __init__(
        self,
        rpc_url: str = None,
        program_id: Pubkey = PROGRAM_ID,
        commitment: str = None,
        timeout: float = None,
        session: Optional[requests.Session] = None,
        breaker: CircuitBreaker = ledger_circuit_breaker,
        retry_config: RetryConfig = LEDGER_RETRY_CONFIG,
    ):
        self.rpc_url = rpc_url or settings.rpc_url
        self.program_id = program_id
        self.commitment = commitment or settings.rpc_commitment
        self.timeout = timeout or settings.rpc_timeout_seconds
        self.session = session or requests.Session()
        self.breaker = breaker
        self.retry_config = retry_config
        self._ids = itertools.count(1)

    # -- transport -----------------------------------------------------------

    def _post(self, method: str, params: List[Any]) -> Any:
        payload = {"jsonrpc": "2.0", "id": next(self._ids), "method": method, "params": params}
        try:
            response = self.session.post(self.rpc_url, json=payload, timeout=self.timeout)
            response.raise_for_status()
            body = response.json()
        except requests.RequestException as e:
            raise UpstreamUnavailable(f"Ledger RPC {method} failed", original_error=e)
        except ValueError as e:
            raise UpstreamUnavailable(f"Ledger RPC {method} returned invalid JSON", original_error=e)

        if not isinstance(body, dict):
            raise UpstreamUnavailable(f"Ledger RPC {method} returned an unexpected payload")
        if body.get("error"):
            error = body["error"]
            rpc_code = error.get("code") if isinstance(error, dict) else None
            raise UpstreamUnavailable(
                f"Ledger RPC {method} error: {error.get('message', error) if isinstance(error, dict) else error}",
                code=None if rpc_code in TRANSIENT_RPC_ERROR_CODES else ErrorCodes.LEDGER_RPC_ERROR,
            )
        if "result" not in body:
            raise UpstreamUnavailable(f"Ledger RPC {method} returned no result")
        return body["result"]

    async def _call(self, method: str, params: List[Any]) -> Any:
        async def attempt():
            try:
                return await self.breaker.call(self._post, method, params)
            except CircuitBreakerException as e:
                raise UpstreamUnavailable(str(e), original_error=e, code=ErrorCodes.CIRCUIT_BREAKER_OPEN)
            except asyncio.TimeoutError as e:
                raise UpstreamUnavailable(f"Ledger RPC {method} timed out", original_error=e)

        return await retry_async(attempt, self.retry_config, operation=f"Ledger RPC {method}")

    @staticmethod
    def _decode_data(account: Dict[str, Any]) -> bytes:
        try:
            encoded, encoding = account["data"]
            if encoding != "base64":
                raise ValueError(f"unexpected encoding {encoding}")
            return base64.b64decode(encoded)
        except (KeyError, TypeError, ValueError) as e:
            raise UpstreamUnavailable("Ledger RPC returned malformed account data", original_error=e)

    # -- public interface ----------------------------------------------------

    async def fetch_raw(self, address: Pubkey) -> Optional[bytes]:
        """Raw account bytes, or None when the account does not exist"""
        result = await self._call("getAccountInfo", [
            str(address),
            {"encoding": "base64", "commitment": self.commitment},
        ])
        value = result.get("value") if isinstance(result, dict) else None
        if value is None:
            return None
        return self._decode_data(value)

    async def account_exists(self, address: Pubkey) -> bool:
        return await self.fetch_raw(address) is not None

    async def fetch_all_of_kind(self, kind: str, filters: Sequence[MemcmpFilter] = ()) -> List[Tuple[Pubkey, bytes]]:
        """All program records of ``kind`` matching every memcmp filter"""
        rpc_filters = [MemcmpFilter(0, DISCRIMINATORS[kind]).to_rpc()]
        rpc_filters.extend(f.to_rpc() for f in filters)
        result = await self._call("getProgramAccounts", [
            str(self.program_id),
            {"encoding": "base64", "commitment": self.commitment, "filters": rpc_filters},
        ])
        if not isinstance(result, list):
            raise UpstreamUnavailable("Ledger RPC getProgramAccounts returned an unexpected payload")

        records = []
        for item in result:
            try:
                address = Pubkey.from_string(item["pubkey"])
            except (KeyError, TypeError, ValueError) as e:
                raise UpstreamUnavailable("Ledger RPC returned a malformed account address", original_error=e)
            records.append((address, self._decode_data(item.get("account") or {})))
        logger.debug(f"Fetched {len(records)} {kind} records")
        return records

    async def token_balance(self, vault: Pubkey) -> int:
        """Token amount held by ``vault`` in minor units, 0 if the vault does not exist"""
        data = await self.fetch_raw(vault)
        if data is None:
            return 0
        return decode_token_amount(data)

    async def get_slot(self) -> int:
        return await self._call("getSlot", [{"commitment": self.commitment}])
