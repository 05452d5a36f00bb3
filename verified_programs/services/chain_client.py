"""
Solana JSON-RPC client used to fetch the hash of the deployed executable.

An upgradeable program account only points at its program data account. The
program data account starts with a 45 byte header (account tag, deployment
slot, upgrade authority) followed by the executable padded with zeros.
"""

import base64
from typing import Any, Dict, Optional

import httpx
from loguru import logger
from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from verified_programs.core.config import settings
from verified_programs.core.errors import ChainUnreachableError, ProgramNotFoundError
from verified_programs.utils.hashing import compute_executable_hash

PROGRAM_DATA_HEADER_SIZE = 45
UPGRADEABLE_LOADER_ID = "BPFLoaderUpgradeab1e11111111111111111111111"


class _TransientRpcError(Exception):
    """Transport failure or retryable HTTP status from the RPC node."""


class SolanaRpcClient:
    """Chain-state collaborator: get_deployed_executable_hash(program_id)."""

    def __init__(
        self,
        rpc_url: Optional[str] = None,
        timeout: Optional[float] = None,
        max_attempts: Optional[int] = None,
        backoff_multiplier: float = 0.5,
        http_client: Optional[httpx.AsyncClient] = None,
        metrics=None,
    ):
        self.rpc_url = rpc_url or settings.RPC_URL
        self.max_attempts = max_attempts or settings.RPC_MAX_ATTEMPTS
        self.backoff_multiplier = backoff_multiplier
        self.metrics = metrics
        self._owns_client = http_client is None
        self.http = http_client or httpx.AsyncClient(timeout=timeout or settings.RPC_TIMEOUT_SECONDS)
        self._request_id = 0

    async def get_deployed_executable_hash(self, program_id: str) -> str:
        """
        Hash of the executable currently deployed at ``program_id``.

        Raises:
            ProgramNotFoundError: account missing, not a program, or closed
            ChainUnreachableError: the RPC node failed or timed out
        """
        try:
            data = await self._deployed_bytes(program_id)
        except ProgramNotFoundError:
            self._record("not_found")
            raise
        except ChainUnreachableError:
            self._record("unreachable")
            raise

        self._record("ok")
        return compute_executable_hash(data)

    async def _deployed_bytes(self, program_id: str) -> bytes:
        account = await self._get_account_info(program_id, encoding="jsonParsed")
        if account is None:
            raise ProgramNotFoundError(program_id)

        if not account.get("executable"):
            raise ProgramNotFoundError(program_id)

        if account.get("owner") != UPGRADEABLE_LOADER_ID:
            # Non-upgradeable loaders store the executable in the account itself
            raw = await self._get_account_info(program_id, encoding="base64")
            if raw is None:
                raise ProgramNotFoundError(program_id)
            return self._decode(raw)

        parsed = (account.get("data") or {}).get("parsed") or {}
        program_data_address = (parsed.get("info") or {}).get("programData")
        if not program_data_address:
            raise ProgramNotFoundError(program_id)

        program_data = await self._get_account_info(program_data_address, encoding="base64")
        if program_data is None:
            # Closed programs keep the program account but lose their data
            raise ProgramNotFoundError(program_id)

        data = self._decode(program_data)
        if len(data) <= PROGRAM_DATA_HEADER_SIZE:
            raise ProgramNotFoundError(program_id)
        return data[PROGRAM_DATA_HEADER_SIZE:]

    async def _get_account_info(self, address: str, encoding: str) -> Optional[Dict[str, Any]]:
        result = await self._call("getAccountInfo", [address, {"encoding": encoding, "commitment": "finalized"}])
        return (result or {}).get("value")

    async def _call(self, method: str, params: list) -> Any:
        self._request_id += 1
        payload = {"jsonrpc": "2.0", "id": self._request_id, "method": method, "params": params}

        try:
            async for attempt in AsyncRetrying(
                stop=stop_after_attempt(self.max_attempts),
                wait=wait_exponential(multiplier=self.backoff_multiplier, min=0, max=10),
                retry=retry_if_exception_type(_TransientRpcError),
                reraise=True,
            ):
                with attempt:
                    body = await self._post(payload)
        except _TransientRpcError as e:
            logger.error(f"RPC {method} failed after {self.max_attempts} attempts: {e}")
            raise ChainUnreachableError(f"RPC node unreachable: {e}") from e

        if "error" in body and body["error"]:
            error = body["error"]
            logger.error(f"RPC {method} returned error: {error}")
            raise ChainUnreachableError(f"RPC error: {error.get('message', error)}")
        return body.get("result")

    async def _post(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        try:
            response = await self.http.post(self.rpc_url, json=payload)
        except httpx.HTTPError as e:
            logger.warning(f"RPC transport error: {e}")
            raise _TransientRpcError(str(e)) from e

        if response.status_code == 429 or response.status_code >= 500:
            logger.warning(f"RPC returned HTTP {response.status_code}")
            raise _TransientRpcError(f"HTTP {response.status_code}")
        if response.status_code != 200:
            raise ChainUnreachableError(f"RPC returned HTTP {response.status_code}")

        try:
            return response.json()
        except ValueError as e:
            raise _TransientRpcError("invalid JSON from RPC node") from e

    @staticmethod
    def _decode(account: Dict[str, Any]) -> bytes:
        data = account.get("data")
        if isinstance(data, list) and data and data[-1] == "base64":
            return base64.b64decode(data[0])
        raise ChainUnreachableError("Unexpected account encoding from RPC node")

    def _record(self, outcome: str):
        if self.metrics:
            self.metrics.chain_lookups.labels(outcome=outcome).inc()

    async def close(self):
        if self._owns_client:
            await self.http.aclose()
