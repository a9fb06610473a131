"""
Block-head clock for the pipeline.

Subscribes to ``newHeads`` over the node's JSON-RPC WebSocket and hands block
numbers to the pipeline. Reconnects with exponential backoff; when the consumer
falls behind, older heads are discarded since only the latest block matters.
"""
import asyncio
import logging
from typing import Optional

import aiohttp

log = logging.getLogger(__name__)

SUBSCRIBE_REQUEST = {"jsonrpc": "2.0", "id": 1, "method": "eth_subscribe", "params": ["newHeads"]}


def parse_head(payload: dict) -> Optional[int]:
    """Block number from an eth_subscription notification, None for anything else."""
    if payload.get("method") != "eth_subscription":
        return None
    header = (payload.get("params") or {}).get("result") or {}
    number = header.get("number")
    if number is None:
        return None
    return int(number, 16) if isinstance(number, str) else int(number)


class HeadStream:
    """eth_subscribe("newHeads") client feeding a small latest-wins buffer."""

    def __init__(self, url: str, backoff_min: float = 3.0, backoff_max: float = 60.0, buffer: int = 8):
        self.url = url
        self.backoff_min = backoff_min
        self.backoff_max = backoff_max
        self.last_block: Optional[int] = None
        self.reconnects = 0
        self._active = True
        self._socket: Optional[aiohttp.ClientWebSocketResponse] = None
        self._heads: asyncio.Queue = asyncio.Queue(maxsize=buffer)

    async def start(self, session: aiohttp.ClientSession):
        """Keep a subscription open until stop() is called."""
        self._active = True
        backoff = self.backoff_min
        while self._active:
            try:
                async with session.ws_connect(self.url, heartbeat=20, receive_timeout=60) as ws:
                    self._socket = ws
                    await ws.send_json(SUBSCRIBE_REQUEST)
                    log.info(f"Subscribed to newHeads (reconnects={self.reconnects})")
                    backoff = self.backoff_min
                    await self._consume(ws)
            except asyncio.CancelledError:
                break
            except Exception as e:
                if self._active:
                    log.warning(f"Head stream error: {e}")
            finally:
                self._socket = None

            if not self._active:
                break
            self.reconnects += 1
            log.warning(f"Head stream down, retrying in {backoff:.0f}s")
            await asyncio.sleep(backoff)
            backoff = min(backoff * 2, self.backoff_max)

    async def stop(self):
        self._active = False
        if self._socket is not None and not self._socket.closed:
            await self._socket.close()

    async def _consume(self, ws: aiohttp.ClientWebSocketResponse):
        async for msg in ws:
            if not self._active:
                return
            if msg.type != aiohttp.WSMsgType.TEXT:
                if msg.type in (aiohttp.WSMsgType.CLOSED, aiohttp.WSMsgType.ERROR):
                    log.warning(f"Head socket closed: {msg.type}")
                    return
                continue
            try:
                payload = msg.json()
            except ValueError:
                log.debug(f"Ignoring non-JSON frame: {msg.data[:80]}")
                continue
            if payload.get("error"):
                raise RuntimeError(f"newHeads subscription rejected: {payload['error']}")
            number = parse_head(payload)
            if number is not None:
                self._offer(number)

    def _offer(self, number: int):
        self.last_block = number
        if self._heads.full():
            self._heads.get_nowait()
        self._heads.put_nowait(number)

    async def next_head(self, timeout: float) -> Optional[int]:
        """Newest buffered block number, or None when nothing arrives in time."""
        try:
            number = await asyncio.wait_for(self._heads.get(), timeout=timeout)
        except asyncio.TimeoutError:
            return None
        while not self._heads.empty():
            number = self._heads.get_nowait()
        return number
