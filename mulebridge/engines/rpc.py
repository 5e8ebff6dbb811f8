import aiohttp
import asyncio
import itertools
import logging

from ..errors import ConnectionLostError, ProtocolError

log = logging.getLogger(__name__)


class JsonRpcSession:
    """
    Control session speaking JSON-RPC 2.0 over HTTP to a download daemon
    (aria2 style: optional "token:<secret>" first param).

    Operation names are mapped to RPC method names through `methods`; names
    without a mapping are sent as-is.
    """

    def __init__(self, url: str, secret: str | None = None, methods: dict | None = None,
                 ping_method: str | None = None, timeout: float = 30):
        self.url = url
        self.secret = secret
        self.methods = dict(methods or {})
        self.ping_method = ping_method
        self.timeout = aiohttp.ClientTimeout(total=timeout)
        self._http: aiohttp.ClientSession | None = None
        self._ids = itertools.count(1)
        self._lost = True

    def _payload(self, method, params):
        p = ["token:" + self.secret] if self.secret else []
        p.extend(params)
        return {"jsonrpc": "2.0", "id": str(next(self._ids)), "method": method, "params": p}

    def is_alive(self) -> bool:
        return self._http is not None and not self._http.closed and not self._lost

    async def connect(self):
        if self._http is None or self._http.closed:
            self._http = aiohttp.ClientSession(timeout=self.timeout)
        self._lost = False
        if self.ping_method:
            try:
                return await self._post(self.ping_method, [])
            except ProtocolError:
                self._lost = True
                raise
        return True

    async def disconnect(self):
        self._lost = True
        if self._http is not None and not self._http.closed:
            await self._http.close()
        self._http = None

    async def invoke(self, operation: str, *args):
        if self._http is None:
            raise ConnectionLostError("not connected", operation)
        return await self._post(self.methods.get(operation, operation), list(args), operation)

    async def _post(self, method, params, operation=None):
        data = self._payload(method, params)
        try:
            async with self._http.post(self.url, json=data) as r:
                j = await r.json(content_type=None)
        except aiohttp.ClientConnectionError as e:
            self._lost = True
            log.error("Connection to %s lost: %s", self.url, e)
            raise ConnectionLostError(str(e), operation or method) from e
        except (aiohttp.ClientError, asyncio.TimeoutError, ValueError) as e:
            raise ProtocolError(str(e), operation or method) from e

        if not isinstance(j, dict):
            raise ProtocolError(f"unexpected response: {j!r}", operation or method)
        if j.get("error"):
            err = j["error"]
            msg = err.get("message") if isinstance(err, dict) else str(err)
            raise ProtocolError(msg, operation or method)
        return j.get("result")
