"""
Asyncio runtime around one GameMachine.

A GameSession is the single owner of its machine. Every input (commands
from the connection, clock ticks, fired delayed events) goes through one
queue and is applied by one consumer task, so no two transitions ever run
at the same time and the context needs no locks.

Producers:
    - send()/submit(): commands from the presentation layer
    - the tick task: exists only while the timer region is running
    - the armed delayed event: scheduled with loop.call_later and
      cancelled as soon as the machine's token moves on
"""

import asyncio
import uuid
from typing import Awaitable, Callable, Optional, Union

from config import EngineTiming, config
from logging_config import get_logger
from machine import DelayedEvent, GameMachine
from models.events import GameEvent, tick
from services.persistence import PersistenceGateway

logger = get_logger(__name__)

Listener = Callable[[GameMachine], Awaitable[None]]


class GameSession:
    """
    Serialized event loop for one table.

    Usage:
        session = await open_session(gateway, resume=True)
        session.start()
        accepted = await session.submit(page_mounted())
        ...
        await session.close()
    """

    def __init__(
        self,
        machine: Optional[GameMachine] = None,
        gateway: Optional[PersistenceGateway] = None,
        timing: Optional[EngineTiming] = None,
        session_id: Optional[str] = None,
    ):
        self.session_id = session_id or str(uuid.uuid4())
        self.timing = timing or config.timing
        self.machine = machine or GameMachine(timing=self.timing, session_id=self.session_id)
        self.gateway = gateway
        self.log = logger.with_context(session_id=self.session_id)

        self._queue: asyncio.Queue = asyncio.Queue()
        self._consumer: Optional[asyncio.Task] = None
        self._ticker: Optional[asyncio.Task] = None
        self._delay_handle: Optional[asyncio.TimerHandle] = None
        self._armed: Optional[DelayedEvent] = None
        self._listeners: list[Listener] = []
        self._closed = False

    @property
    def running(self) -> bool:
        return self._consumer is not None and not self._consumer.done()

    def add_listener(self, listener: Listener) -> None:
        """Register a coroutine called with the machine after each accepted event."""
        self._listeners.append(listener)

    def remove_listener(self, listener: Listener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    def start(self) -> None:
        """Start the consumer task and arm whatever the machine already needs."""
        if self.running:
            return
        self._closed = False
        self._consumer = asyncio.create_task(self._run())
        self._sync_runtime()
        self.log.info("Session started")

    async def close(self) -> None:
        """Stop producers and the consumer, then flush pending persistence."""
        if self._closed:
            return
        self._closed = True
        self._stop_ticker()
        self._cancel_delay()

        if self._consumer:
            self._consumer.cancel()
            try:
                await self._consumer
            except asyncio.CancelledError:
                pass
            self._consumer = None

        # Anything still queued will never be applied
        while not self._queue.empty():
            _, future = self._queue.get_nowait()
            if future and not future.done():
                future.set_result(False)

        if self.gateway:
            await self.gateway.flush()
        self.log.info("Session closed")

    def send(self, event: Union[GameEvent, dict]) -> None:
        """
        Enqueue an event without waiting for it to be applied.

        Raises:
            ValueError: If a dict event cannot be parsed.
        """
        if isinstance(event, dict):
            event = GameEvent.from_dict(event)
        if self._closed:
            return
        self._queue.put_nowait((event, None))

    async def submit(self, event: Union[GameEvent, dict]) -> bool:
        """
        Enqueue an event and wait for the machine's verdict.

        Returns:
            True if the event was accepted, False if rejected.

        Raises:
            ValueError: If a dict event cannot be parsed.
        """
        if isinstance(event, dict):
            event = GameEvent.from_dict(event)
        if self._closed:
            return False
        future = asyncio.get_running_loop().create_future()
        self._queue.put_nowait((event, future))
        return await future

    async def _run(self) -> None:
        while True:
            event, future = await self._queue.get()
            try:
                accepted = self.machine.send(event)
            except Exception as e:
                self.log.error(f"Error applying {event.event_type.value}: {e}", exc_info=True)
                accepted = False

            self._sync_runtime()
            if accepted:
                await self._after_commit()

            if future and not future.done():
                future.set_result(accepted)

    async def _after_commit(self) -> None:
        if self.gateway:
            self.gateway.observe(self.machine.get_snapshot())
        for listener in list(self._listeners):
            try:
                await listener(self.machine)
            except Exception as e:
                self.log.error(f"Session listener failed: {e}")

    # -------------------------------------------------------------------------
    # Tick source and delayed events
    # -------------------------------------------------------------------------

    def _sync_runtime(self) -> None:
        if self._closed:
            return
        if self.machine.is_timer_running():
            self._start_ticker()
        else:
            self._stop_ticker()

        pending = self.machine.pending_delay
        if pending != self._armed:
            self._cancel_delay()
            if pending is not None:
                loop = asyncio.get_running_loop()
                self._delay_handle = loop.call_later(
                    pending.delay_ms / 1000, self._fire_delay, pending
                )
                self._armed = pending

    def _fire_delay(self, delayed: DelayedEvent) -> None:
        # Stays armed until the machine moves its token on
        self._delay_handle = None
        if not self._closed:
            self._queue.put_nowait((delayed.to_event(), None))

    def _cancel_delay(self) -> None:
        if self._delay_handle:
            self._delay_handle.cancel()
        self._delay_handle = None
        self._armed = None

    def _start_ticker(self) -> None:
        if self._ticker is None or self._ticker.done():
            self._ticker = asyncio.create_task(self._tick_loop())

    def _stop_ticker(self) -> None:
        if self._ticker and not self._ticker.done():
            self._ticker.cancel()
        self._ticker = None

    async def _tick_loop(self) -> None:
        loop = asyncio.get_running_loop()
        last = loop.time()
        interval = self.timing.tick_ms / 1000
        while True:
            await asyncio.sleep(interval)
            now = loop.time()
            delta = int(round((now - last) * 1000))
            last = now
            self._queue.put_nowait((tick(delta), None))


async def open_session(
    gateway: Optional[PersistenceGateway] = None,
    resume: bool = False,
    timing: Optional[EngineTiming] = None,
    session_id: Optional[str] = None,
    seed: Optional[int] = None,
) -> GameSession:
    """
    Create a session, resuming the saved game when asked and available.

    A saved snapshot that cannot be restored is dropped and the session
    starts fresh in the lobby.
    """
    session_id = session_id or str(uuid.uuid4())
    timing = timing or config.timing
    machine = None

    if resume and gateway:
        snapshot = await gateway.load()
        if snapshot is not None:
            try:
                machine = GameMachine.from_snapshot(
                    snapshot, timing=timing, seed=seed, session_id=session_id
                )
                logger.info(f"Resumed saved game for session {session_id}")
            except (ValueError, KeyError, TypeError, AttributeError) as e:
                logger.warning(f"Saved game could not be restored: {e}")
                await gateway.clear()

    if machine is None:
        machine = GameMachine(timing=timing, seed=seed, session_id=session_id)

    return GameSession(machine=machine, gateway=gateway, timing=timing, session_id=session_id)
