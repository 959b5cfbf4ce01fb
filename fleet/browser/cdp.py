"""Chrome DevTools Protocol (CDP) client."""

import asyncio
import json
from typing import Any

import httpx
import websockets
from websockets import ClientConnection

from fleet.utils.logging import get_logger

logger = get_logger(__name__)

COMMAND_TIMEOUT_SECONDS = 30.0


class CDPError(Exception):
    """CDP protocol error."""


class CDPClient:
    """Client for one page target of a Chrome instance."""

    def __init__(self, devtools_port: int, host: str = "localhost") -> None:
        self.devtools_port = devtools_port
        self.host = host
        self._ws: ClientConnection | None = None
        self._next_id = 0
        self._waiting: dict[int, asyncio.Future[Any]] = {}
        self._reader: asyncio.Task[None] | None = None

    @property
    def base_url(self) -> str:
        """Base URL for DevTools HTTP endpoints."""
        return f"http://{self.host}:{self.devtools_port}"

    async def _page_websocket_url(self, timeout: float) -> str:
        deadline = asyncio.get_running_loop().time() + timeout
        async with httpx.AsyncClient() as client:
            while asyncio.get_running_loop().time() < deadline:
                try:
                    response = await client.get(f"{self.base_url}/json/list")
                    if response.status_code == 200:
                        for target in response.json():
                            if target.get("type") == "page" and target.get("webSocketDebuggerUrl"):
                                return target["webSocketDebuggerUrl"]
                        logger.debug("Browser up but no page target yet", port=self.devtools_port)
                except httpx.TransportError:
                    pass
                await asyncio.sleep(0.5)
        raise CDPError(f"No DevTools page target on port {self.devtools_port} after {timeout}s")

    async def connect(self, timeout: float = 10.0) -> None:
        """
        Attach to the first page target.

        Args:
            timeout: Seconds to wait for Chrome to expose a page target
        """
        ws_url = await self._page_websocket_url(timeout)
        self._ws = await websockets.connect(ws_url, max_size=100 * 1024 * 1024)
        self._reader = asyncio.create_task(self._read_loop())
        logger.debug("CDP connected", port=self.devtools_port)

    async def disconnect(self) -> None:
        """Disconnect from Chrome DevTools."""
        if self._reader:
            self._reader.cancel()
            try:
                await self._reader
            except asyncio.CancelledError:
                pass
            self._reader = None

        if self._ws:
            await self._ws.close()
            self._ws = None

        for future in self._waiting.values():
            if not future.done():
                future.set_exception(CDPError("Connection closed"))
        self._waiting.clear()

    async def _read_loop(self) -> None:
        if not self._ws:
            return

        try:
            async for raw in self._ws:
                message = json.loads(raw)
                future = self._waiting.pop(message.get("id", -1), None)
                if future is None or future.done():
                    continue
                if "error" in message:
                    future.set_exception(CDPError(message["error"].get("message", "Unknown error")))
                else:
                    future.set_result(message.get("result", {}))
        except websockets.ConnectionClosed:
            logger.debug("DevTools websocket closed", port=self.devtools_port)

    async def send(self, method: str, params: dict[str, Any] | None = None) -> dict[str, Any]:
        """
        Send a CDP command and wait for its result.

        Raises:
            CDPError: If not connected, the command fails or times out
        """
        if not self._ws:
            raise CDPError("Not connected to DevTools")

        self._next_id += 1
        message_id = self._next_id
        future: asyncio.Future[Any] = asyncio.get_running_loop().create_future()
        self._waiting[message_id] = future

        payload = {"id": message_id, "method": method, "params": params or {}}
        await self._ws.send(json.dumps(payload))
        try:
            return await asyncio.wait_for(future, timeout=COMMAND_TIMEOUT_SECONDS)
        except TimeoutError as e:
            self._waiting.pop(message_id, None)
            raise CDPError(f"Timeout waiting for response to {method}") from e

    async def evaluate(self, expression: str) -> Any:
        """Evaluate a JS expression in the page and return its value."""
        result = await self.send(
            "Runtime.evaluate",
            {"expression": expression, "returnByValue": True, "awaitPromise": True},
        )
        if "exceptionDetails" in result:
            raise CDPError(f"Script error: {result['exceptionDetails'].get('text', 'unknown')}")
        return result.get("result", {}).get("value")

    # Page setup

    async def add_init_script(self, source: str) -> None:
        """Run ``source`` in every document before page scripts."""
        await self.send("Page.addScriptToEvaluateOnNewDocument", {"source": source})

    async def emulate_viewport(self, width: int, height: int) -> None:
        await self.send(
            "Emulation.setDeviceMetricsOverride",
            {"width": width, "height": height, "deviceScaleFactor": 1, "mobile": False},
        )

    async def set_user_agent(self, user_agent: str) -> None:
        await self.send("Network.setUserAgentOverride", {"userAgent": user_agent})

    async def navigate(self, url: str) -> None:
        """Navigate the page; raises if Chrome reports a navigation error."""
        result = await self.send("Page.navigate", {"url": url})
        if result.get("errorText"):
            raise CDPError(f"Navigation to {url} failed: {result['errorText']}")

    async def wait_for_load(self, timeout: float = 30.0) -> None:
        """Poll ``document.readyState`` until the page is complete."""
        deadline = asyncio.get_running_loop().time() + timeout
        while asyncio.get_running_loop().time() < deadline:
            try:
                if await self.evaluate("document.readyState") == "complete":
                    return
            except CDPError:
                pass
            await asyncio.sleep(0.5)
        raise CDPError("Timeout waiting for page load")

    # Interaction

    async def element_center(self, selector: str) -> tuple[float, float] | None:
        """Viewport coordinates of the first element matching ``selector``."""
        box = await self.evaluate(
            "(() => { const el = document.querySelector(%s);"
            " if (!el) return null; el.scrollIntoView({block: 'center'});"
            " const r = el.getBoundingClientRect();"
            " return [r.left + r.width / 2, r.top + r.height / 2]; })()" % json.dumps(selector)
        )
        return (box[0], box[1]) if box else None

    async def mouse_move(self, x: float, y: float) -> None:
        await self.send("Input.dispatchMouseEvent", {"type": "mouseMoved", "x": x, "y": y})

    async def click(self, x: float, y: float) -> None:
        await self.mouse_move(x, y)
        for event in ("mousePressed", "mouseReleased"):
            await self.send(
                "Input.dispatchMouseEvent",
                {"type": event, "x": x, "y": y, "button": "left", "clickCount": 1},
            )

    async def scroll(self, delta_y: int) -> None:
        await self.send(
            "Input.dispatchMouseEvent",
            {"type": "mouseWheel", "x": 100, "y": 100, "deltaX": 0, "deltaY": delta_y},
        )

    async def insert_text(self, text: str) -> None:
        await self.send("Input.insertText", {"text": text})

    # Output

    async def title(self) -> str:
        return await self.evaluate("document.title") or ""

    async def screenshot(self, format: str = "png", quality: int = 80) -> str:
        """Base64-encoded screenshot of the viewport."""
        params: dict[str, Any] = {"format": format}
        if format == "jpeg":
            params["quality"] = quality
        result = await self.send("Page.captureScreenshot", params)
        return result.get("data", "")

    async def page_load_time_ms(self) -> int:
        """Navigation timing: load event end relative to navigation start."""
        value = await self.evaluate(
            "(() => { const t = performance.timing;"
            " return Math.max(0, t.loadEventEnd - t.navigationStart); })()"
        )
        return int(value or 0)
