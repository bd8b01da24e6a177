"""
Exchange Manager: Connection Registry and Health Monitor

The ExchangeManager owns one adapter per exchange name and everything around
its connection:

    - Registry: add/remove exchanges, explicit connect/disconnect per name,
      connect_all/disconnect_all that isolate per-name failures
    - Health loop: every `health_check_interval` seconds each eligible entry
      is inspected; a stale heartbeat (older than twice the interval) or an
      adapter that reports itself disconnected triggers a reconnect
    - Reconnect: one background task per exchange, exponential backoff
      (base * 2**n before attempt n), at most `max_reconnect_attempts`
      attempts, then a terminal "reconnect_failed" event and a halt that
      lasts until the exchange is added again
    - Batch queries over connected adapters that return partial results
    - Subscription fan-out with messages tagged by exchange name; async
      callbacks run as tracked tasks whose failures are logged

Design Notes:
    - No global singleton: construct it, pass it where it is needed, and call
      cleanup() (or use it as an async context manager) at shutdown
    - All registry state is touched from the event loop only, so no locks
    - AuthenticationError is fatal: it halts auto-reconnect immediately

Events (subscribe with manager.on(event, callback)):
    exchange_added, exchange_removed, exchange_connected,
    exchange_disconnected, exchange_error, exchange_ws_connected,
    exchange_ws_disconnected, exchange_ws_error, exchange_reconnected,
    reconnect_attempt_failed, reconnect_failed, websocket_data

Example Usage:
    async with ExchangeManager() as manager:
        await manager.add_exchange("binance", binance_credentials)
        await manager.add_exchange("okx", okx_credentials)

        tickers = await manager.get_all_tickers("BTC/USDT")
        await manager.subscribe_to_all_exchanges("ticker", "BTC/USDT", on_ticker)
"""

import asyncio
import inspect
import time
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set, Tuple, Union

from core.config import Settings, settings as default_settings
from core.errors import AuthenticationError, NetworkError
from core.event_bus import EventBus
from core.exchange_factory import create_exchange, validate_exchange_config
from core.exchange_interface import ExchangeInterface
from core.logging import get_logger
from core.schemas import (
    AccountInfo,
    ExchangeCredentials,
    ExchangeStatus,
    Order,
    OrderRequest,
    Position,
    SubscriptionType,
    Ticker,
    WebSocketMessage,
)


ExchangeFactory = Callable[[str, Optional[Settings]], ExchangeInterface]
MessageCallback = Callable[[WebSocketMessage], Any]
SubscriptionKey = Tuple[SubscriptionType, str]

# adapter event -> manager event
FORWARDED_EVENTS = {
    "connected": "exchange_connected",
    "disconnected": "exchange_disconnected",
    "ws_connected": "exchange_ws_connected",
    "ws_disconnected": "exchange_ws_disconnected",
    "ws_error": "exchange_ws_error",
    "error": "exchange_error",
}


class ManagedExchange:
    """
    Registry entry for one exchange name.

    Attributes:
        name: Lowercase exchange name
        adapter: The adapter instance
        credentials: Credentials used for every (re)connect
        wants_connected: True after a successful connect until an explicit
            disconnect; only such entries are health-checked
        reconnect_attempts: Failed attempts in the current reconnect cycle
        halted: Auto-reconnect given up (exhausted or fatal auth error)
        reconnect_task: Running reconnect task, if any
        subscriptions: Fan-out subscriptions to re-apply after a reconnect
        last_error: Last connection error message
    """

    def __init__(self, name: str, adapter: ExchangeInterface, credentials: ExchangeCredentials):
        self.name = name
        self.adapter = adapter
        self.credentials = credentials
        self.wants_connected = False
        self.reconnect_attempts = 0
        self.halted = False
        self.reconnect_task: Optional[asyncio.Task] = None
        self.subscriptions: Dict[SubscriptionKey, "FanOut"] = {}
        self.last_error: Optional[str] = None

    @property
    def reconnecting(self) -> bool:
        return self.reconnect_task is not None and not self.reconnect_task.done()

    def __repr__(self) -> str:
        return f"<ManagedExchange(name='{self.name}', connected={self.adapter.is_connected()})>"


class FanOut:
    """
    Manager-side listener for one (type, symbol) stream of one exchange.

    The adapter sees a single listener per key, so repeated fan-out
    subscriptions never open a second stream. Every distinct caller callback
    is kept and receives each message, tagged with the exchange name.
    """

    def __init__(self, manager: "ExchangeManager", name: str):
        self.manager = manager
        self.name = name
        self.callbacks: List[MessageCallback] = []

    def add(self, callback: Optional[MessageCallback]) -> None:
        if callback is not None and callback not in self.callbacks:
            self.callbacks.append(callback)

    def __call__(self, message: WebSocketMessage) -> None:
        tagged = message.model_copy(update={"exchange": self.name})
        for callback in list(self.callbacks):
            try:
                result = callback(tagged)
            except Exception as e:
                self.manager.logger.error(f"{self.name} subscription callback raised: {e}")
                continue
            if inspect.isawaitable(result):
                self.manager._track(result, f"{self.name} subscription callback")
        self.manager.events.emit("websocket_data", tagged)


class ExchangeManager:
    """
    Central Manager for Exchange Connections

    Args:
        settings: Health-check and backoff constants (defaults to the global settings)
        factory: Callable (name, settings) -> adapter; create_exchange by default

    Example:
        >>> manager = ExchangeManager()
        >>> await manager.start()
        >>> await manager.add_exchange("bybit", credentials)
        >>> manager.get_connected_exchanges()
        ['bybit']
        >>> await manager.cleanup()
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        factory: ExchangeFactory = create_exchange
    ):
        self.settings = settings or default_settings
        self._factory = factory
        self._exchanges: Dict[str, ManagedExchange] = {}
        self._health_task: Optional[asyncio.Task] = None
        self._callback_tasks: Set[asyncio.Future] = set()

        self.events = EventBus("manager")
        self.logger = get_logger("exchange_manager")

    # ============================================
    # Lifecycle
    # ============================================

    async def start(self) -> None:
        """Launch the health-check loop (idempotent)."""
        if self._health_task is None or self._health_task.done():
            self._health_task = asyncio.create_task(self._health_loop())
            self.logger.info(
                f"Health monitor started (every {self.settings.health_check_interval}s)"
            )

    async def cleanup(self) -> None:
        """
        Stop the health loop, clean up every adapter and clear the registry.

        Observers registered on the manager are dropped as well.
        """
        if self._health_task is not None:
            self._health_task.cancel()
            await asyncio.gather(self._health_task, return_exceptions=True)
            self._health_task = None

        pending = list(self._callback_tasks)
        for task in pending:
            task.cancel()
        await asyncio.gather(*pending, return_exceptions=True)

        for entry in list(self._exchanges.values()):
            await self._dispose(entry)
        self._exchanges.clear()
        self.events.clear()
        self.logger.info("ExchangeManager cleaned up")

    async def __aenter__(self) -> "ExchangeManager":
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.cleanup()

    # ============================================
    # Registry Management
    # ============================================

    async def add_exchange(
        self,
        name: str,
        credentials: ExchangeCredentials,
        auto_connect: bool = True
    ) -> ExchangeInterface:
        """
        Register an exchange and optionally connect it.

        Adding a name that is already registered replaces the old entry (its
        adapter is cleaned up first), which also clears a halted reconnect.

        Args:
            name: Exchange name (case-insensitive)
            credentials: API key material
            auto_connect: Connect immediately

        Returns:
            ExchangeInterface: The new adapter

        Raises:
            ValueError: Unsupported exchange or incomplete credentials
            AuthenticationError / NetworkError: auto_connect failed (the entry
                stays registered, disconnected)
        """
        key = name.lower()
        validate_exchange_config(key, credentials)

        previous = self._exchanges.pop(key, None)
        if previous is not None:
            self.logger.info(f"Replacing existing {key} connection")
            await self._dispose(previous)

        adapter = self._factory(key, self.settings)
        entry = ManagedExchange(key, adapter, credentials)
        self._wire_events(entry)
        self._exchanges[key] = entry

        self.logger.info(f"Exchange {key} added")
        self.events.emit("exchange_added", {"exchange": key})

        if auto_connect:
            await self.connect_exchange(key)
        return adapter

    async def remove_exchange(self, name: str) -> None:
        """
        Disconnect, clean up and unregister an exchange.

        Raises:
            KeyError: Unknown exchange
        """
        entry = self._entry(name)
        del self._exchanges[entry.name]
        await self._dispose(entry)
        self.logger.info(f"Exchange {entry.name} removed")
        self.events.emit("exchange_removed", {"exchange": entry.name})

    async def connect_exchange(self, name: str) -> None:
        """
        Connect a registered exchange. No-op when it is already connected.

        Raises:
            KeyError: Unknown exchange
            AuthenticationError: Credentials rejected; auto-reconnect is halted
            NetworkError: Exchange unreachable
        """
        entry = self._entry(name)
        if entry.adapter.is_connected():
            self.logger.debug(f"{entry.name} already connected")
            return

        try:
            await entry.adapter.connect(entry.credentials)
        except AuthenticationError as e:
            entry.wants_connected = False
            self._halt(entry, e)
            raise
        except Exception as e:
            entry.last_error = str(e)
            self.logger.error(f"✗ Failed to connect {entry.name}: {e}")
            self.events.emit("exchange_error", {"exchange": entry.name, "error": str(e)})
            raise

        entry.wants_connected = True
        entry.halted = False
        entry.reconnect_attempts = 0
        entry.last_error = None

    async def disconnect_exchange(self, name: str) -> None:
        """
        Disconnect an exchange and stop monitoring it.

        Fan-out subscriptions of this exchange are forgotten.

        Raises:
            KeyError: Unknown exchange
        """
        entry = self._entry(name)
        entry.wants_connected = False
        entry.subscriptions.clear()
        await self._cancel_reconnect(entry)

        if not entry.adapter.is_connected():
            self.logger.debug(f"{entry.name} already disconnected")
            return
        await entry.adapter.disconnect()

    async def connect_all(self) -> None:
        """Connect every registered exchange concurrently; failures are logged, never raised."""
        names = list(self._exchanges)
        results = await asyncio.gather(
            *(self.connect_exchange(n) for n in names), return_exceptions=True
        )
        self._log_failures("connect", names, results)

    async def disconnect_all(self) -> None:
        """Disconnect every registered exchange concurrently; failures are logged, never raised."""
        names = list(self._exchanges)
        results = await asyncio.gather(
            *(self.disconnect_exchange(n) for n in names), return_exceptions=True
        )
        self._log_failures("disconnect", names, results)

    def _log_failures(self, action: str, names: List[str], results: List[Any]) -> None:
        for name, result in zip(names, results):
            if isinstance(result, Exception):
                self.logger.error(f"✗ Failed to {action} {name}: {result}")
                if action == "disconnect":
                    self.events.emit("exchange_error", {"exchange": name, "error": str(result)})

    # ============================================
    # Queries
    # ============================================

    def get_exchange(self, name: str) -> Optional[ExchangeInterface]:
        entry = self._exchanges.get(name.lower())
        return entry.adapter if entry else None

    def get_connected_exchanges(self) -> List[str]:
        return [name for name, entry in self._exchanges.items() if entry.adapter.is_connected()]

    def get_all_exchange_statuses(self) -> List[ExchangeStatus]:
        """
        Health snapshot of every registered exchange.

        Example:
            >>> [s.name for s in manager.get_all_exchange_statuses() if s.connected]
            ['binance', 'okx']
        """
        return [
            ExchangeStatus(
                name=name,
                connected=entry.adapter.is_connected(),
                ws_connected=entry.adapter.is_websocket_connected(),
                last_heartbeat=entry.adapter.last_heartbeat,
                reconnect_attempts=entry.reconnect_attempts,
                subscription_count=entry.adapter.subscription_count,
                reconnect_halted=entry.halted,
                error=entry.last_error,
            )
            for name, entry in self._exchanges.items()
        ]

    def __len__(self) -> int:
        return len(self._exchanges)

    def __contains__(self, name: str) -> bool:
        return name.lower() in self._exchanges

    def __repr__(self) -> str:
        return f"<ExchangeManager(exchanges={list(self._exchanges.keys())})>"

    # ============================================
    # Batch Operations
    # ============================================

    async def get_all_accounts_info(self) -> Dict[str, AccountInfo]:
        """Account summary per connected exchange; failing exchanges are omitted."""
        return await self._gather_connected("account info", lambda ex: ex.get_account())

    async def get_all_positions(self, symbol: Optional[str] = None) -> Dict[str, List[Position]]:
        """Open positions per connected exchange; failing exchanges are omitted."""
        return await self._gather_connected("positions", lambda ex: ex.get_positions(symbol))

    async def get_all_tickers(self, symbol: str) -> Dict[str, Ticker]:
        """Ticker per connected exchange; failing exchanges are omitted."""
        return await self._gather_connected("ticker", lambda ex: ex.get_ticker(symbol))

    async def _gather_connected(
        self,
        label: str,
        call: Callable[[ExchangeInterface], Awaitable[Any]]
    ) -> Dict[str, Any]:
        names = self.get_connected_exchanges()
        results = await asyncio.gather(
            *(call(self._exchanges[n].adapter) for n in names), return_exceptions=True
        )

        collected: Dict[str, Any] = {}
        for name, result in zip(names, results):
            if isinstance(result, Exception):
                self.logger.error(f"Failed to fetch {label} from {name}: {result}")
                continue
            if isinstance(result, BaseException):
                raise result
            collected[name] = result
        return collected

    async def create_order(self, exchange_name: str, request: OrderRequest) -> Order:
        """
        Place an order on one exchange.

        Raises:
            KeyError: Unknown exchange
            NetworkError: Exchange not connected
            ExchangeError: Adapter errors propagate unchanged
        """
        entry = self._entry(exchange_name)
        if not entry.adapter.is_connected():
            raise NetworkError(f"{entry.name} is not connected", exchange=entry.name)
        return await entry.adapter.create_order(request)

    # ============================================
    # Subscription Fan-Out
    # ============================================

    async def subscribe_to_all_exchanges(
        self,
        sub_type: Union[SubscriptionType, str],
        symbol: Optional[str],
        callback: Optional[MessageCallback] = None
    ) -> List[str]:
        """
        Subscribe every connected exchange to the same stream.

        Each message is copied with `exchange` set to its origin, passed to
        every callback registered for this stream and emitted as
        "websocket_data". Subscribing again with another callback adds it to
        the same stream instead of opening a second one. The subscription is
        remembered and re-applied after an automatic reconnect.

        Returns:
            List[str]: Exchanges that accepted the subscription
        """
        sub_type = SubscriptionType(sub_type)
        subscribed = []

        for name in self.get_connected_exchanges():
            entry = self._exchanges[name]
            key = ExchangeInterface._subscription_key(sub_type, symbol)
            forward = entry.subscriptions.get(key) or FanOut(self, name)
            try:
                await entry.adapter.subscribe_websocket(sub_type, symbol, forward)
            except NotImplementedError as e:
                self.logger.warning(f"{name}: {e}")
                continue
            except Exception as e:
                self.logger.error(f"Failed to subscribe {name} to {sub_type.value} {symbol or '*'}: {e}")
                continue
            forward.add(callback)
            entry.subscriptions[key] = forward
            subscribed.append(name)

        return subscribed

    async def unsubscribe_from_all_exchanges(
        self,
        sub_type: Union[SubscriptionType, str],
        symbol: Optional[str]
    ) -> int:
        """
        Remove a fan-out subscription everywhere.

        Returns:
            int: Number of exchanges the stream was removed from
        """
        sub_type = SubscriptionType(sub_type)
        key = ExchangeInterface._subscription_key(sub_type, symbol)
        removed = 0

        for entry in self._exchanges.values():
            if entry.subscriptions.pop(key, None) is None:
                continue
            try:
                if await entry.adapter.unsubscribe_websocket(sub_type, symbol):
                    removed += 1
            except Exception as e:
                self.logger.error(f"Failed to unsubscribe {entry.name} from {sub_type.value}: {e}")
        return removed

    def _track(self, awaitable: Awaitable[Any], label: str) -> asyncio.Future:
        """
        Run an async callback result as a tracked task.

        The task is referenced until it finishes; its exception, if any, is
        logged here instead of being left to the garbage collector.
        """
        task = asyncio.ensure_future(awaitable)
        self._callback_tasks.add(task)
        task.add_done_callback(lambda fut: self._on_callback_done(fut, label))
        return task

    def _on_callback_done(self, future: asyncio.Future, label: str) -> None:
        self._callback_tasks.discard(future)
        if future.cancelled():
            return
        if future.exception() is not None:
            self.logger.error(f"{label} raised: {future.exception()}")

    async def _restore_subscriptions(self, entry: ManagedExchange) -> None:
        for (sub_type, symbol), forward in list(entry.subscriptions.items()):
            try:
                await entry.adapter.subscribe_websocket(sub_type, symbol or None, forward)
            except Exception as e:
                self.logger.error(
                    f"Failed to restore {entry.name} {sub_type.value} {symbol or '*'} subscription: {e}"
                )

    # ============================================
    # Health Monitoring & Reconnect
    # ============================================

    async def _health_loop(self) -> None:
        while True:
            await asyncio.sleep(self.settings.health_check_interval)
            try:
                self.check_connections()
            except Exception as e:
                self.logger.error(f"Health check sweep failed: {e}")

    def check_connections(self) -> List[str]:
        """
        One health sweep.

        An entry is eligible when it was connected successfully, was not
        disconnected explicitly, is not halted and has no reconnect running.

        Returns:
            List[str]: Exchanges a reconnect was started for
        """
        now = int(time.time() * 1000)
        stale_after_ms = self.settings.health_check_interval * 2 * 1000
        started = []

        for name, entry in self._exchanges.items():
            if not entry.wants_connected or entry.halted or entry.reconnecting:
                continue

            adapter = entry.adapter
            heartbeat = adapter.last_heartbeat or 0
            if not adapter.is_connected():
                self.logger.warning(f"{name} reports disconnected, reconnecting")
            elif now - heartbeat > stale_after_ms:
                self.logger.warning(f"{name} heartbeat is stale ({(now - heartbeat) / 1000:.0f}s), reconnecting")
            else:
                continue

            entry.reconnect_task = asyncio.create_task(self._reconnect(entry))
            started.append(name)

        return started

    async def _reconnect(self, entry: ManagedExchange) -> None:
        """
        Reconnect with exponential backoff.

        Attempt n (0-based) waits reconnect_base_delay * 2**n seconds first.
        """
        max_attempts = self.settings.max_reconnect_attempts

        while entry.reconnect_attempts < max_attempts:
            delay = self.settings.reconnect_base_delay * 2 ** entry.reconnect_attempts
            await asyncio.sleep(delay)

            if not entry.wants_connected or self._exchanges.get(entry.name) is not entry:
                return

            entry.reconnect_attempts += 1
            attempt = entry.reconnect_attempts
            self.logger.info(f"Reconnecting {entry.name} ({attempt}/{max_attempts})")

            try:
                await entry.adapter.connect(entry.credentials)
            except AuthenticationError as e:
                self._halt(entry, e)
                return
            except Exception as e:
                entry.last_error = str(e)
                self.logger.error(f"✗ Reconnect {attempt}/{max_attempts} of {entry.name} failed: {e}")
                self.events.emit("reconnect_attempt_failed", {
                    "exchange": entry.name,
                    "attempt": attempt,
                    "error": str(e),
                })
                continue

            entry.reconnect_attempts = 0
            entry.last_error = None
            await self._restore_subscriptions(entry)
            self.logger.info(f"✓ {entry.name} reconnected")
            self.events.emit("exchange_reconnected", {"exchange": entry.name, "attempts": attempt})
            return

        entry.halted = True
        self.logger.error(
            f"✗ {entry.name} reconnect gave up after {entry.reconnect_attempts} attempts"
        )
        self.events.emit("reconnect_failed", {
            "exchange": entry.name,
            "attempts": entry.reconnect_attempts,
            "error": entry.last_error,
        })

    def _halt(self, entry: ManagedExchange, error: AuthenticationError) -> None:
        entry.halted = True
        entry.last_error = str(error)
        self.logger.error(f"✗ {entry.name} authentication failed, auto-reconnect halted: {error}")
        self.events.emit("exchange_error", {"exchange": entry.name, "error": str(error), "fatal": True})

    async def _cancel_reconnect(self, entry: ManagedExchange) -> None:
        task = entry.reconnect_task
        entry.reconnect_task = None
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)

    # ============================================
    # Internal Helpers
    # ============================================

    def _entry(self, name: str) -> ManagedExchange:
        entry = self._exchanges.get(name.lower())
        if entry is None:
            raise KeyError(f"Exchange '{name}' not found")
        return entry

    async def _dispose(self, entry: ManagedExchange) -> None:
        entry.wants_connected = False
        await self._cancel_reconnect(entry)
        try:
            await entry.adapter.cleanup()
        except Exception as e:
            self.logger.error(f"✗ Error cleaning up {entry.name}: {e}")

    def _wire_events(self, entry: ManagedExchange) -> None:
        name = entry.name

        def forwarder(manager_event: str) -> Callable[[Any], None]:
            def forward(payload: Any) -> None:
                details = dict(payload) if isinstance(payload, dict) else {"data": payload}
                details["exchange"] = name
                self.events.emit(manager_event, details)
            return forward

        for adapter_event, manager_event in FORWARDED_EVENTS.items():
            entry.adapter.on(adapter_event, forwarder(manager_event))

    # ============================================
    # Observer Helpers
    # ============================================

    def on(self, event: str, callback: Callable[[Any], Any]) -> None:
        self.events.on(event, callback)

    def off(self, event: str, callback: Callable[[Any], Any] = None) -> None:
        self.events.off(event, callback)
