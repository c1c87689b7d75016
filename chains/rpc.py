"""JSON-RPC transport shared by the chain clients."""

import asyncio
import functools
import json
import logging
from decimal import Decimal
from typing import Any, List, Optional, Union

import aiohttp
from tenacity import (
    AsyncRetrying,
    before_sleep_log,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from core.errors import ChainError, RPCError, TransientChainError

logger = logging.getLogger(__name__)

Params = Union[List[Any], dict, None]

# Coin amounts come back as JSON numbers; keep them exact
_loads = functools.partial(json.loads, parse_float=Decimal)


class JsonRpcClient:
    """Manages a JSON-RPC 2.0 connection over HTTP.

    Connection failures and timeouts surface as TransientChainError, error
    objects in the response as RPCError.
    """

    def __init__(
        self,
        rpc_url: str,
        rpc_user: Optional[str] = None,
        rpc_password: Optional[str] = None,
        timeout: float = 30.0,
        max_attempts: int = 3,
    ):
        """Create a new JSON-RPC client.

        Args:
            rpc_url: URL of the RPC endpoint
            rpc_user: Optional basic-auth user
            rpc_password: Optional basic-auth password
            timeout: Total timeout per request in seconds
            max_attempts: Attempts for retried calls
        """
        self.rpc_url = rpc_url
        self.rpc_user = rpc_user
        self.rpc_password = rpc_password
        self.timeout = timeout
        self.max_attempts = max_attempts
        self._session: Optional[aiohttp.ClientSession] = None
        self._request_id = 0

    async def start(self) -> None:
        """Open the HTTP session."""
        if self._session:
            return

        timeout = aiohttp.ClientTimeout(total=self.timeout)
        auth = None
        if self.rpc_user and self.rpc_password:
            auth = aiohttp.BasicAuth(self.rpc_user, self.rpc_password)

        self._session = aiohttp.ClientSession(timeout=timeout, auth=auth)
        logger.info(f"Opened RPC session to {self.rpc_url}")

    async def stop(self) -> None:
        """Close the HTTP session."""
        if self._session:
            await self._session.close()
            self._session = None
            logger.info(f"Closed RPC session to {self.rpc_url}")

    async def call(self, method: str, params: Params = None, retry: bool = True) -> Any:
        """Make an RPC call.

        Args:
            method: RPC method name
            params: Positional or named parameters
            retry: Retry transient failures with exponential backoff. Leave
                off for calls with side effects.

        Returns:
            The result from the RPC response

        Raises:
            TransientChainError: On timeout or connection failure
            RPCError: If the RPC call returns an error
        """
        if not retry:
            return await self._call_once(method, params)

        async for attempt in AsyncRetrying(
            stop=stop_after_attempt(self.max_attempts),
            wait=wait_exponential(multiplier=0.5, max=5),
            retry=retry_if_exception_type(TransientChainError),
            before_sleep=before_sleep_log(logger, logging.WARNING),
            reraise=True,
        ):
            with attempt:
                return await self._call_once(method, params)

    async def _call_once(self, method: str, params: Params) -> Any:
        if not self._session:
            raise ChainError("Session not initialized - call start() first")

        self._request_id += 1
        request_body = {
            "jsonrpc": "2.0",
            "id": self._request_id,
            "method": method,
            "params": params if params is not None else [],
        }

        try:
            async with self._session.post(self.rpc_url, json=request_body) as response:
                response_data = await response.json(loads=_loads, content_type=None)
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise TransientChainError(f"RPC request {method} failed: {e!r}")
        except ValueError as e:
            raise TransientChainError(f"RPC response for {method} was not JSON: {e}")

        error = response_data.get("error")
        if error:
            code = error.get("code") if isinstance(error, dict) else None
            message = error.get("message", str(error)) if isinstance(error, dict) else str(error)
            raise RPCError(message, method=method, details=str(error), code=code)

        if "result" not in response_data:
            raise RPCError("Missing result in RPC response", method=method)

        return response_data["result"]

    async def __aenter__(self) -> "JsonRpcClient":
        """Async context manager entry."""
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        """Async context manager exit."""
        await self.stop()
