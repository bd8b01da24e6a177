"""
Exchange WebSocket Client Base

Long-lived aiohttp WebSocket connection shared by every exchange variant.
It handles:
- Connection in a background task with automatic reconnection
- Exponential backoff on failures (1s → 2s → 4s → ... → max_reconnect_delay)
- Optional login handshake for private streams
- Keepalive pings (protocol-level or exchange text/JSON pings)
- Topic bookkeeping: active topics are re-sent after every reconnect
- Lifecycle events on the owning adapter's EventBus:
    ws_connected, ws_disconnected, ws_error, heartbeat

Subclasses provide the exchange wire format through hooks:
    subscribe_message(topics)    frame that subscribes a list of topics
    unsubscribe_message(topics)  frame that unsubscribes them
    ping_payload()               app-level ping ("ping" / {"op": "ping"}) or None
    login_message()              auth frame for private streams or None
    is_login_ack(data)           True / False for a login reply, None otherwise

Parsed JSON frames are handed to the `on_message` callback supplied by the
adapter, which normalizes and dispatches them.

Usage:
    client = BybitWebSocketClient(url, events=bus, on_message=adapter._handle_ws_message)
    await client.start()
    await client.subscribe(["tickers.BTCUSDT"])
    ...
    await client.stop()
"""

import aiohttp
import asyncio
import json
import time
from typing import Any, Callable, Dict, List, Optional, Union

from core.event_bus import EventBus
from core.errors import AuthenticationError, ExchangeError
from core.logging import get_logger, log_websocket_event


Frame = Union[str, Dict[str, Any], None]


class WebSocketClient:
    """
    Async WebSocket client with reconnect, keepalive and topic replay.

    Attributes:
        EXCHANGE: Exchange name used in logs and events
        url: Stream endpoint
        private: True when the stream requires a login handshake
        events: EventBus of the owning adapter
        on_message: Callback receiving every parsed JSON frame
        ping_interval: Seconds between keepalive pings
        max_reconnect_delay: Maximum delay between reconnection attempts (seconds)

    Notes:
        - start() returns immediately; the connection lives in a background task
        - A failed login stops the client instead of reconnecting
    """

    EXCHANGE = "exchange"
    LOGIN_TIMEOUT = 10.0

    def __init__(
        self,
        url: str,
        events: EventBus,
        on_message: Callable[[Any], None],
        private: bool = False,
        ping_interval: float = 20.0,
        max_reconnect_delay: float = 30.0
    ):
        self.url = url
        self.events = events
        self.on_message = on_message
        self.private = private
        self.ping_interval = ping_interval
        self.max_reconnect_delay = max_reconnect_delay

        # Connection state
        self.session: Optional[aiohttp.ClientSession] = None
        self.ws: Optional[aiohttp.ClientWebSocketResponse] = None
        self._is_running = False
        self._reconnect_attempt = 0
        self._listen_task: Optional[asyncio.Task] = None
        self._ping_task: Optional[asyncio.Task] = None

        # Insertion-ordered set of active topics
        self._topics: Dict[str, None] = {}

        self.last_message_at: Optional[int] = None
        self.logger = get_logger(f"exchanges.{self.EXCHANGE}.ws_client")

    # ============================================
    # Exchange Hooks
    # ============================================

    def subscribe_message(self, topics: List[str]) -> Frame:
        raise NotImplementedError

    def unsubscribe_message(self, topics: List[str]) -> Frame:
        raise NotImplementedError

    def ping_payload(self) -> Frame:
        """App-level ping frame; None uses aiohttp protocol heartbeats."""
        return None

    def login_message(self) -> Frame:
        return None

    def is_login_ack(self, data: Any) -> Optional[bool]:
        return None

    # ============================================
    # Properties
    # ============================================

    @property
    def is_connected(self) -> bool:
        return self.ws is not None and not self.ws.closed

    @property
    def is_running(self) -> bool:
        return self._is_running

    @property
    def topics(self) -> List[str]:
        return list(self._topics)

    # ============================================
    # Lifecycle
    # ============================================

    async def start(self) -> None:
        """
        Create the session and launch the background connection task.

        Safe to call when already running.
        """
        if self._is_running:
            return
        if self.session is None or self.session.closed:
            self.session = aiohttp.ClientSession()
        self._is_running = True
        self._reconnect_attempt = 0
        self._listen_task = asyncio.create_task(self._run())
        self.logger.debug(f"{self.EXCHANGE} WebSocket client started ({self.url})")

    async def stop(self) -> None:
        """
        Stop reconnecting, close the socket and the session.

        Notes:
            - Safe to call multiple times
            - Emits ws_disconnected if a socket was open
        """
        self._is_running = False
        was_connected = self.is_connected

        for task in (self._ping_task, self._listen_task):
            if task and not task.done() and task is not asyncio.current_task():
                task.cancel()
                try:
                    await task
                except (asyncio.CancelledError, Exception):
                    pass
        self._ping_task = None
        self._listen_task = None

        if self.ws and not self.ws.closed:
            await self.ws.close()
        self.ws = None

        if self.session and not self.session.closed:
            await self.session.close()
        self.session = None

        if was_connected:
            self._emit("ws_disconnected", {"reason": "closed"})
        self.logger.debug(f"{self.EXCHANGE} WebSocket client stopped ({self.url})")

    # ============================================
    # Topic Management
    # ============================================

    async def subscribe(self, topics: List[str]) -> None:
        """
        Register topics; sends the subscribe frame when connected.

        Topics already active are skipped. When disconnected, topics are
        stored and sent on the next (re)connect.
        """
        new = [t for t in topics if t not in self._topics]
        for topic in new:
            self._topics[topic] = None
        if new and self.is_connected:
            await self.send(self.subscribe_message(new))

    async def unsubscribe(self, topics: List[str]) -> None:
        active = [t for t in topics if t in self._topics]
        for topic in active:
            del self._topics[topic]
        if active and self.is_connected:
            await self.send(self.unsubscribe_message(active))

    async def send(self, frame: Frame) -> None:
        if frame is None or not self.is_connected:
            return
        if isinstance(frame, str):
            await self.ws.send_str(frame)
        else:
            await self.ws.send_json(frame)

    # ============================================
    # Connection Loop
    # ============================================

    async def _connect(self) -> None:
        protocol_heartbeat = self.ping_interval if self.ping_payload() is None else None
        self.logger.info(f"Connecting to {self.url}")
        self.ws = await self.session.ws_connect(
            self.url,
            heartbeat=protocol_heartbeat,
            timeout=aiohttp.ClientWSTimeout(ws_close=10)
        )

    async def _login(self) -> None:
        """
        Send the login frame and wait for its acknowledgement.

        Raises:
            AuthenticationError: Exchange rejected the login
            asyncio.TimeoutError: No acknowledgement in LOGIN_TIMEOUT seconds
        """
        frame = self.login_message()
        if frame is None:
            return
        await self.send(frame)

        async def wait_ack() -> None:
            async for msg in self.ws:
                if msg.type != aiohttp.WSMsgType.TEXT:
                    continue
                try:
                    data = json.loads(msg.data)
                except json.JSONDecodeError:
                    continue
                ack = self.is_login_ack(data)
                if ack is True:
                    return
                if ack is False:
                    raise AuthenticationError(f"WebSocket login rejected: {data}", exchange=self.EXCHANGE)
            raise ExchangeError("WebSocket closed during login", exchange=self.EXCHANGE)

        await asyncio.wait_for(wait_ack(), timeout=self.LOGIN_TIMEOUT)

    async def _on_open(self) -> None:
        """Re-send every active topic, start keepalive and announce the connection."""
        self._reconnect_attempt = 0
        self.last_message_at = int(time.time() * 1000)

        if self._topics:
            await self.send(self.subscribe_message(list(self._topics)))

        if self.ping_payload() is not None:
            if self._ping_task and not self._ping_task.done():
                self._ping_task.cancel()
            self._ping_task = asyncio.create_task(self._ping_loop())

        self._emit("ws_connected", {"url": self.url, "topics": len(self._topics)})

    async def _ping_loop(self) -> None:
        while self._is_running and self.is_connected:
            await asyncio.sleep(self.ping_interval)
            try:
                await self.send(self.ping_payload())
            except Exception as e:
                self.logger.warning(f"{self.EXCHANGE} ping failed: {e}")
                return

    def _handle_frame(self, raw: str) -> None:
        """
        Process one inbound text frame.

        Every frame counts as a heartbeat. Non-JSON frames (text "pong") stop
        there; JSON frames go to on_message.
        """
        self.last_message_at = int(time.time() * 1000)
        self._emit("heartbeat", {"timestamp": self.last_message_at})

        try:
            data = json.loads(raw)
        except (json.JSONDecodeError, TypeError):
            return

        try:
            self.on_message(data)
        except Exception as e:
            self.logger.error(f"{self.EXCHANGE} failed to handle message: {e}")

    async def _run(self) -> None:
        """
        Connection loop with automatic reconnection.

        Reconnection Strategy:
            - Attempt N: Wait min(2^(N-1), max_reconnect_delay) seconds
            - Login rejection stops the loop
        """
        while self._is_running:
            opened = False
            try:
                await self._connect()
                await self._login()
                await self._on_open()
                opened = True

                async for msg in self.ws:
                    if msg.type == aiohttp.WSMsgType.TEXT:
                        self._handle_frame(msg.data)

                    elif msg.type == aiohttp.WSMsgType.BINARY:
                        self._handle_frame(msg.data.decode("utf-8", errors="ignore"))

                    elif msg.type == aiohttp.WSMsgType.CLOSED:
                        self.logger.warning(f"{self.EXCHANGE} WebSocket closed: {msg.data}")
                        break

                    elif msg.type == aiohttp.WSMsgType.ERROR:
                        self.logger.error(f"{self.EXCHANGE} WebSocket error: {msg.data}")
                        break

            except asyncio.CancelledError:
                self.logger.info(f"{self.EXCHANGE} WebSocket listener cancelled")
                raise

            except AuthenticationError as e:
                self.logger.error(f"{e}")
                self._emit("ws_error", {"error": str(e), "fatal": True})
                self._is_running = False

            except Exception as e:
                self.logger.error(f"{self.EXCHANGE} WebSocket error: {e}")
                self._emit("ws_error", {"error": str(e), "fatal": False})

            if self.ws and not self.ws.closed:
                await self.ws.close()
            if opened:
                self._emit("ws_disconnected", {"reason": "connection lost"})

            if self._is_running:
                self._reconnect_attempt += 1
                delay = min(2 ** (self._reconnect_attempt - 1), self.max_reconnect_delay)
                self.logger.warning(
                    f"{self.EXCHANGE} reconnecting in {delay}s... (attempt {self._reconnect_attempt})"
                )
                await asyncio.sleep(delay)

        self.logger.info(f"{self.EXCHANGE} WebSocket listener stopped ({self.url})")

    def _emit(self, event: str, details: Dict[str, Any]) -> None:
        if event != "heartbeat":
            log_websocket_event(self.EXCHANGE, event, details=str(details))
        self.events.emit(event, {"exchange": self.EXCHANGE, "private": self.private, **details})
