from typing import Any, Dict, Iterable, Optional

import httpx

from .tools import TOOL_ARGS, ToolFn


class HttpCapabilitySurface:
    """Forwards tool calls to the browser-side agent that owns the real tabs."""

    def __init__(self, base_url: str, timeout: float = 20.0, transport: Optional[httpx.AsyncBaseTransport] = None):
        self.base_url = base_url.rstrip("/")
        self.client = httpx.AsyncClient(
            timeout=timeout,
            limits=httpx.Limits(max_connections=16, max_keepalive_connections=8),
            transport=transport,
        )

    async def call(self, name: str, args: Dict[str, Any]) -> Dict[str, Any]:
        try:
            resp = await self.client.post(f"{self.base_url}/tools/call", json={"name": name, "args": args})
            resp.raise_for_status()
            data = resp.json()
        except httpx.HTTPStatusError as e:
            detail: Any
            try:
                detail = e.response.json()
            except Exception:
                detail = e.response.text
            return {
                "error": f"Capability bridge returned HTTP {e.response.status_code}",
                "status_code": e.response.status_code,
                "detail": detail,
            }
        except httpx.RequestError as e:
            return {"error": f"Capability bridge unreachable: {e}"}
        except ValueError:
            return {"error": "Capability bridge returned a non-JSON body"}
        if not isinstance(data, dict):
            return {"result": data}
        return data

    def _bind(self, name: str) -> ToolFn:
        async def invoke(args: Dict[str, Any]) -> Dict[str, Any]:
            return await self.call(name, args)

        return invoke

    def implementations(self, names: Optional[Iterable[str]] = None) -> Dict[str, ToolFn]:
        return {name: self._bind(name) for name in (names or TOOL_ARGS.keys())}

    async def close(self) -> None:
        if not self.client.is_closed:
            await self.client.aclose()
