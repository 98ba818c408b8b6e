import itertools
import logging
from abc import ABC, abstractmethod
from typing import Any, Dict, Optional

import httpx

from ..core.recovery.errors import TransportError

logger = logging.getLogger(__name__)


class Provider(ABC):
    """Base provider interface"""

    name: str
    timeout_s: float = 10

    @abstractmethod
    async def ready(self) -> bool:
        """Check if provider is ready to serve requests"""
        pass

    @abstractmethod
    async def health_check(self) -> Dict[str, Any]:
        """Return provider health status"""
        pass


class JsonRpcError(Exception):
    """A JSON-RPC error object returned by the endpoint."""

    def __init__(
        self,
        code: Optional[int],
        message: str,
        data: Any = None,
        status_code: Optional[int] = None,
    ):
        super().__init__(f"JSON-RPC error {code}: {message}")
        self.code = code
        self.message = message
        self.data = data
        self.status_code = status_code


class JsonRpcProvider(Provider):
    """
    Provider speaking JSON-RPC over HTTP.

    A single ``httpx.AsyncClient`` is shared by all calls; each call builds
    its own request and response objects, so concurrent use is safe.
    """

    def __init__(
        self,
        rpc_url: str,
        timeout_s: Optional[float] = None,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self.rpc_url = rpc_url
        if timeout_s is not None:
            self.timeout_s = timeout_s
        self._client = client
        self._ids = itertools.count(1)

    async def ready(self) -> bool:
        return bool(self.rpc_url)

    async def health_check(self) -> Dict[str, Any]:
        if not await self.ready():
            return {"status": "disabled", "reason": f"{self.name} not configured"}

        try:
            result = await self._rpc_call("eth_chainId", [])
            return {"status": "healthy", "chainId": result}
        except (TransportError, JsonRpcError) as exc:
            return {"status": "error", "reason": str(exc)}

    async def _rpc_call(self, method: str, params: list[Any]) -> Any:
        if not self._client or self._client.is_closed:
            self._client = httpx.AsyncClient(timeout=self.timeout_s)

        request_id = next(self._ids)
        try:
            response = await self._client.post(
                self.rpc_url,
                json={"jsonrpc": "2.0", "id": request_id, "method": method, "params": params},
            )
        except httpx.HTTPError as exc:
            raise TransportError(f"{method} request failed: {exc}", provider=self.name) from exc

        if response.status_code >= 500:
            raise TransportError(
                f"{method} returned HTTP {response.status_code}",
                provider=self.name,
                status_code=response.status_code,
            )

        try:
            payload = response.json()
        except ValueError as exc:
            if response.is_error:
                raise JsonRpcError(
                    None,
                    f"HTTP {response.status_code}: {response.text[:200]}",
                    status_code=response.status_code,
                ) from exc
            raise TransportError(f"{method} returned invalid JSON", provider=self.name) from exc

        if not isinstance(payload, dict):
            raise TransportError(f"{method} returned an unexpected payload", provider=self.name)

        error = payload.get("error")
        if error is not None:
            if not isinstance(error, dict):
                error = {"message": str(error)}
            raise JsonRpcError(
                error.get("code"),
                str(error.get("message", "Unknown error")),
                error.get("data"),
                status_code=response.status_code,
            )

        if response.is_error:
            raise JsonRpcError(
                None,
                f"HTTP {response.status_code}",
                status_code=response.status_code,
            )

        if "result" not in payload:
            raise TransportError(f"{method} response has neither result nor error", provider=self.name)
        return payload["result"]

    async def close(self) -> None:
        """Close the HTTP client."""
        if self._client and not self._client.is_closed:
            await self._client.aclose()
