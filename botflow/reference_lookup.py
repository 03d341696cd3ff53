# botflow/reference_lookup.py
"""
Reference text lookup over a request/reply channel.

Every outgoing request gets a generated id and a pending slot (a future).
Replies are matched back to their slot by id. A slot whose reply does not
arrive in time is rejected with LookupTimeout and removed, so the pending
table never grows without bound.
"""

import asyncio
import logging
import uuid
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional

import httpx

from botflow.errors import LookupTimeout, RemoteServiceError
from botflow.memo_cache import MemoCache
from botflow.settings import REFERENCE_API_KEY, REFERENCE_BASE_URL, REFERENCE_TIMEOUT_SECONDS

logger = logging.getLogger("botflow_backend")

Transport = Callable[[dict], Awaitable[None]]

SEARCH_METHOD = "search_docs"
CAPABILITIES_METHOD = "tools/list"


class HttpReferenceTransport:
    """
    JSON-RPC over plain HTTP POST. The reply body is handed to `on_reply`,
    which is how it reaches the pending slot.
    """

    def __init__(self, base_url: str, api_key: str, on_reply: Callable[[dict], bool], timeout: float):
        self.base_url = base_url
        self.api_key = api_key
        self.on_reply = on_reply
        self.timeout = timeout

    async def __call__(self, message: dict) -> None:
        headers = {"Content-Type": "application/json", "Accept": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        async with httpx.AsyncClient(timeout=self.timeout) as client:
            resp = await client.post(self.base_url, json=message, headers=headers)
        if not resp.is_success:
            raise RemoteServiceError(
                f"Reference service answered HTTP {resp.status_code}",
                status_code=resp.status_code,
                payload=resp.text[:500],
            )
        body = resp.json() if resp.content else None
        for reply in body if isinstance(body, list) else [body]:
            if isinstance(reply, dict):
                self.on_reply(reply)


def _text_of(result: Any) -> str:
    if result is None:
        return ""
    if isinstance(result, str):
        return result
    if isinstance(result, dict):
        content = result.get("content")
        if isinstance(content, list):
            return "\n".join(str(c.get("text", "")) for c in content if isinstance(c, dict)).strip()
        for key in ("text", "result", "answer"):
            if isinstance(result.get(key), str):
                return result[key]
    if isinstance(result, list):
        return "\n".join(_text_of(r) for r in result).strip()
    return str(result)


class ReferenceLookup:
    def __init__(
        self,
        transport: Optional[Transport] = None,
        *,
        timeout: float = REFERENCE_TIMEOUT_SECONDS,
    ):
        self.timeout = timeout
        self._pending: Dict[str, asyncio.Future] = {}
        self._transport = transport or HttpReferenceTransport(
            REFERENCE_BASE_URL, REFERENCE_API_KEY, self.resolve, timeout
        )
        self.capabilities_cache: MemoCache[List[str]] = MemoCache(name="reference_capabilities")

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    def resolve(self, reply: dict) -> bool:
        """Settle the slot matching `reply["id"]`. False when nobody waits for it."""
        request_id = str(reply.get("id", ""))
        future = self._pending.get(request_id)
        if future is None or future.done():
            logger.debug(f"[Reference] dropping reply for unknown request {request_id!r}")
            return False
        error = reply.get("error")
        if error:
            message = error.get("message") if isinstance(error, dict) else str(error)
            future.set_exception(RemoteServiceError(f"Reference lookup failed: {message}", payload=error))
        else:
            future.set_result(reply.get("result"))
        return True

    async def call(self, method: str, params: dict | None = None) -> Any:
        request_id = uuid.uuid4().hex
        future = asyncio.get_running_loop().create_future()
        self._pending[request_id] = future
        message = {"jsonrpc": "2.0", "id": request_id, "method": method, "params": params or {}}
        try:
            await self._transport(message)
            return await asyncio.wait_for(future, self.timeout)
        except asyncio.TimeoutError as e:
            logger.warning(f"[Reference] {method} request {request_id} timed out after {self.timeout}s")
            raise LookupTimeout(request_id, self.timeout) from e
        finally:
            self._pending.pop(request_id, None)

    async def search(self, query: str) -> str:
        result = await self.call(SEARCH_METHOD, {"query": query})
        return _text_of(result)

    async def fetch_many(self, queries: Iterable[str]) -> List[str]:
        """
        Independent lookups run concurrently; results keep the query order.
        The service must advertise the search method first.
        """
        queries = [q for q in queries if q and q.strip()]
        if not queries:
            return []
        if SEARCH_METHOD not in await self.capabilities():
            raise RemoteServiceError(f"Reference service does not offer {SEARCH_METHOD}")
        return list(await asyncio.gather(*(self.search(q) for q in queries)))

    async def capabilities(self) -> List[str]:
        if self.capabilities_cache.is_loaded():
            return self.capabilities_cache.get()
        result = await self.call(CAPABILITIES_METHOD, {})
        tools = result.get("tools", []) if isinstance(result, dict) else (result or [])
        names = [t.get("name") if isinstance(t, dict) else str(t) for t in tools]
        return self.capabilities_cache.offer([n for n in names if n])
