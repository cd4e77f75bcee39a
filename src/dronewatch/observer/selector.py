"""Source Selector: picks the acquisition strategy for one observer.

Three tiers, best first: the push stream from the fan-out hub, timed pull
queries against the HTTP surface, and a local synthetic generator. Each
failure degrades one tier; a successful push (re)connect promotes the
selector straight back to ``PUSH_CONNECTED`` from wherever it is.

Consumers never see exceptions from the read path. They subscribe to
:class:`TelemetryView` snapshots, which keep the last good agents and
reading across failures and carry ``active_source`` and ``error`` so the
degradation is visible.

Exactly one acquisition task (the poll loop or the synthetic ticker) is
alive at a time. Every transition cancels the previous one before the next
is started.
"""

from __future__ import annotations

import asyncio
import logging
from collections import deque
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

from pydantic import ValidationError

from dronewatch._internal.async_utils import cancel_task
from dronewatch._internal.listeners import Listeners, Subscription
from dronewatch.api.client import PullClient
from dronewatch.errors import AgentNotFoundError, AgentOfflineError
from dronewatch.models.agent import Agent, Reading
from dronewatch.observer.session import ObserverSession
from dronewatch.observer.state import STATE_SOURCE, DataSource, SelectorState, TelemetryView
from dronewatch.simulator.generator import GeneratorSettings, SyntheticGenerator
from dronewatch.store.time_range import resolve_since

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable

    from dronewatch.errors import SessionConnectionError
    from dronewatch.models.config import ObserverConfig

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(UTC)


class SourceSelector:
    """Per-observer state machine over push, pull and synthetic sources."""

    def __init__(
        self,
        config: ObserverConfig,
        *,
        session: ObserverSession | None = None,
        pull: PullClient | None = None,
        generator: SyntheticGenerator | None = None,
        agent_id: str | None = None,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._config = config
        self._session = session if config.enable_push else None
        self._pull = pull if config.enable_pull else None
        self._generator = generator or SyntheticGenerator(
            settings=GeneratorSettings(tick_seconds=config.synthetic_interval),
            seed=config.seed,
        )
        self._clock = clock

        if self._session is not None:
            self._state = SelectorState.PUSH_CONNECTING
        elif self._pull is not None:
            self._state = SelectorState.PULL_POLLING
        else:
            self._state = SelectorState.SYNTHETIC_FALLBACK

        self._agents: list[Agent] = []
        self._current: Reading | None = None
        self._history: deque[Reading] = deque(maxlen=config.history_limit)
        self._connected = False
        self._last_update: datetime | None = None
        self._error: str | None = None
        self._selected = agent_id
        self._reconnect_attempts = 0

        self._acquisition_task: asyncio.Task[None] | None = None
        self._acquisition_epoch = 0
        self._connect_task: asyncio.Task[None] | None = None
        self._pending_commands: dict[tuple[str, str], deque[asyncio.Future[bool]]] = {}
        self._session_subs: list[Subscription] = []
        self._listeners: Listeners[TelemetryView] = Listeners()
        self._transition_count = 0
        self._started = False

    @classmethod
    def from_config(cls, config: ObserverConfig, **kwargs: Any) -> SourceSelector:
        """Build a selector with its session and pull client from *config*."""
        session = None
        if config.enable_push:
            session = ObserverSession(
                config.push_url,
                connect_timeout=config.connect_timeout,
                heartbeat_interval=config.heartbeat_interval,
                backoff_base=config.backoff_base,
                backoff_max=config.backoff_max,
            )
        pull = None
        if config.enable_pull:
            pull = PullClient(config.pull_url, timeout=config.request_timeout)
        return cls(config, session=session, pull=pull, **kwargs)

    # -- Read-only projection --------------------------------------------------

    @property
    def state(self) -> SelectorState:
        return self._state

    @property
    def active_source(self) -> DataSource:
        return STATE_SOURCE[self._state]

    @property
    def push_enabled(self) -> bool:
        return self._session is not None

    @property
    def pull_enabled(self) -> bool:
        return self._pull is not None

    @property
    def acquisition_task(self) -> asyncio.Task[None] | None:
        return self._acquisition_task

    @property
    def transition_count(self) -> int:
        return self._transition_count

    @property
    def generator(self) -> SyntheticGenerator:
        return self._generator

    @property
    def view(self) -> TelemetryView:
        return TelemetryView(
            state=self._state,
            active_source=self.active_source,
            connected=self._connected,
            agents=tuple(self._agents),
            current_reading=self._current,
            history=tuple(self._history),
            last_update=self._last_update,
            error=self._error,
            selected_agent=self._selected,
            reconnect_attempts=self._reconnect_attempts,
        )

    def subscribe(
        self, callback: Callable[[TelemetryView], Awaitable[None] | None]
    ) -> Subscription:
        """Receive a fresh :class:`TelemetryView` after every change."""
        return self._listeners.add(callback)

    # -- Lifecycle -------------------------------------------------------------

    async def start(self) -> None:
        if self._started:
            return
        self._started = True
        if self._session is not None:
            self._session_subs = [
                self._session.on_message.add(self._on_push_message),
                self._session.on_close.add(self._on_push_closed),
            ]

        if self._state is SelectorState.PUSH_CONNECTING:
            self._begin_connect()
        elif self._state is SelectorState.PULL_POLLING:
            await self._enter_pull()
        else:
            await self._enter_synthetic(None)
        await self._notify()

    async def stop(self) -> None:
        """Cancel every task, close network resources, release listeners."""
        self._started = False
        connect_task, self._connect_task = self._connect_task, None
        await cancel_task(connect_task)
        await self._cancel_acquisition()
        for sub in self._session_subs:
            sub.cancel()
        self._session_subs = []
        if self._session is not None:
            await self._session.close()
        if self._pull is not None:
            await self._pull.close()
        for waiters in self._pending_commands.values():
            for future in waiters:
                if not future.done():
                    future.set_result(False)
        self._pending_commands.clear()
        self._connected = False
        self._listeners.clear()

    async def __aenter__(self) -> SourceSelector:
        await self.start()
        return self

    async def __aexit__(self, *exc: object) -> None:
        await self.stop()

    # -- Public operations -----------------------------------------------------

    async def select_agent(self, agent_id: str) -> None:
        """Switch the observed agent and fetch its data from the active tier."""
        if agent_id != self._selected:
            self._selected = agent_id
            self._history.clear()
            self._current = None

        if self._state is SelectorState.PUSH_CONNECTED:
            await self._request_agent_data()
        elif self._state is SelectorState.PULL_POLLING:
            await self._enter_pull()
        elif self._state is SelectorState.SYNTHETIC_FALLBACK:
            self._generator.ensure_agent(agent_id)
            self._seed_synthetic_history()
            self._apply_synthetic(self._generator.latest())
        await self._notify()

    async def refresh_all(self) -> None:
        """Re-acquire everything; retries push from scratch when it is down."""
        if self._session is not None and not self._connected:
            connect_task, self._connect_task = self._connect_task, None
            await cancel_task(connect_task)
            await self._cancel_acquisition()
            self._reconnect_attempts = 0
            self._set_state(SelectorState.PUSH_CONNECTING)
            self._begin_connect()
        elif self._state is SelectorState.PUSH_CONNECTED:
            assert self._session is not None
            await self._session.subscribe_agents()
            await self._request_agent_data()
        elif self._pull is not None:
            await self._enter_pull()
        else:
            self._apply_synthetic(self._generator.tick())
        await self._notify()

    async def send_command(
        self,
        agent_id: str,
        command: str,
        parameters: dict[str, Any] | None = None,
    ) -> bool:
        """Deliver a command over push, else pull. Returns ``False`` if neither worked."""
        if (
            self._state is SelectorState.PUSH_CONNECTED
            and self._session is not None
            and self._session.is_connected
        ):
            delivered = await self._send_command_push(agent_id, command, parameters)
            if delivered is not None:
                return delivered

        if self._pull is not None:
            try:
                async with asyncio.timeout(self._config.request_timeout):
                    result = await self._pull.send_command(agent_id, command, parameters)
                return bool(result.get("success"))
            except (AgentOfflineError, AgentNotFoundError) as exc:
                logger.warning("Command %s rejected for %s: %s", command, agent_id, exc)
                return False
            except Exception as exc:
                logger.warning("Command %s via pull failed: %s", command, exc)

        logger.warning("Command %s to %s could not be delivered", command, agent_id)
        return False

    async def _send_command_push(
        self, agent_id: str, command: str, parameters: dict[str, Any] | None
    ) -> bool | None:
        """``True``/``False`` from the hub's response, ``None`` if push gave no answer."""
        assert self._session is not None
        future: asyncio.Future[bool] = asyncio.get_running_loop().create_future()
        key = (agent_id, command)
        waiters = self._pending_commands.setdefault(key, deque())
        waiters.append(future)
        try:
            if not await self._session.send_command(agent_id, command, parameters):
                return None
            async with asyncio.timeout(self._config.command_timeout):
                return await future
        except TimeoutError:
            logger.warning("No command_response for %s/%s over push", agent_id, command)
            return None
        finally:
            if future in waiters:
                waiters.remove(future)
            if not waiters:
                self._pending_commands.pop(key, None)

    # -- Push tier -------------------------------------------------------------

    def _begin_connect(self) -> None:
        if self._connect_task is not None and not self._connect_task.done():
            return
        self._connect_task = asyncio.create_task(self._connect_loop())

    async def _connect_loop(self) -> None:
        assert self._session is not None
        max_attempts = self._config.max_reconnect_attempts
        ok = await self._session.connect_with_backoff(
            max_attempts=max_attempts, on_failure=self._on_connect_failure
        )
        if ok:
            await self._on_push_connected()
            return
        self._error = f"Push channel unavailable after {max_attempts} attempts"
        await self._notify()

    async def _on_connect_failure(self, attempt: int, exc: SessionConnectionError) -> None:
        self._reconnect_attempts = attempt
        if self._state in (SelectorState.PUSH_CONNECTING, SelectorState.PUSH_CONNECTED):
            await self._degrade_from_push(f"Push channel unavailable: {exc}")
        await self._notify()

    async def _on_push_connected(self) -> None:
        assert self._session is not None
        previous, self._acquisition_task = self._acquisition_task, None
        self._set_state(SelectorState.PUSH_CONNECTED)
        self._connected = True
        self._error = None
        self._reconnect_attempts = 0
        await cancel_task(previous)

        await self._session.subscribe_agents()
        await self._request_agent_data()
        await self._notify()

    async def _on_push_closed(self, reason: str) -> None:
        self._connected = False
        if self._state is SelectorState.PUSH_CONNECTED:
            await self._degrade_from_push(f"Push channel closed: {reason}")
            if self._config.auto_reconnect and self._started:
                self._reconnect_attempts = 0
                self._begin_connect()
        await self._notify()

    async def _request_agent_data(self) -> None:
        assert self._session is not None
        await self._session.subscribe_telemetry(self._selected)
        if self._selected is not None:
            await self._session.get_history(self._selected, self._config.time_range)

    async def _on_push_message(self, msg: dict[str, Any]) -> None:
        msg_type = msg.get("type")
        try:
            changed = await self._apply_push_message(msg_type, msg)
        except (ValidationError, KeyError, TypeError, ValueError):
            logger.warning("Ignoring malformed %s message", msg_type, exc_info=True)
            return
        if changed:
            await self._notify()

    async def _apply_push_message(self, msg_type: Any, msg: dict[str, Any]) -> bool:
        data = msg.get("data")
        if msg_type == "drones_update":
            agents = [Agent.from_wire(item) for item in data or []]
            self._agents = agents
            if self._selected is None and agents:
                self._selected = agents[0].agent_id
                await self._request_agent_data()
        elif msg_type == "telemetry_update":
            logs = (data or {}).get("logs") or []
            readings = [Reading.from_wire(item) for item in logs]
            if self._selected is not None:
                readings = [r for r in readings if r.agent_id == self._selected]
            if readings:
                self._replace_history(reversed(readings))
        elif msg_type == "telemetry_realtime":
            reading = Reading.from_wire(data)
            if self._selected is not None and reading.agent_id != self._selected:
                return False
            self._history.append(reading)
            self._current = reading
        elif msg_type == "drone_status_update":
            self._upsert_agent(Agent.from_wire(data))
        elif msg_type == "drone_history":
            payload = data or {}
            if payload.get("droneId") != self._selected:
                return False
            readings = [Reading.from_wire(item) for item in payload.get("data") or []]
            if readings:
                self._replace_history(reversed(readings))
        elif msg_type == "command_response":
            self._resolve_command(data or {})
            return False
        elif msg_type == "error":
            self._error = str(msg.get("message") or "Hub reported an error")
            return True
        else:
            return False
        self._last_update = self._clock()
        return True

    def _resolve_command(self, data: dict[str, Any]) -> None:
        key = (str(data.get("droneId", "")), str(data.get("command", "")))
        waiters = self._pending_commands.get(key)
        while waiters:
            future = waiters.popleft()
            if not future.done():
                future.set_result(bool(data.get("success")))
                return

    def _upsert_agent(self, agent: Agent) -> None:
        for i, existing in enumerate(self._agents):
            if existing.agent_id == agent.agent_id:
                self._agents[i] = agent
                return
        self._agents.append(agent)

    async def _degrade_from_push(self, reason: str) -> None:
        self._error = reason
        if self._pull is not None:
            await self._enter_pull()
        else:
            await self._enter_synthetic(reason)

    # -- Pull tier -------------------------------------------------------------

    async def _enter_pull(self) -> None:
        await self._cancel_acquisition()
        self._set_state(SelectorState.PULL_POLLING)
        self._acquisition_task = asyncio.create_task(self._poll_loop(self._acquisition_epoch))

    async def _poll_loop(self, epoch: int) -> None:
        while self._acquisition_current(epoch, SelectorState.PULL_POLLING):
            await self.poll_once()
            if not self._acquisition_current(epoch, SelectorState.PULL_POLLING):
                return
            await asyncio.sleep(self._config.poll_interval)

    async def poll_once(self) -> bool:
        """One pull tick. On failure the selector falls to synthetic."""
        assert self._pull is not None
        since = resolve_since(self._config.time_range, self._clock())
        try:
            async with asyncio.timeout(self._config.request_timeout):
                agents = await self._pull.list_agents()
                if self._selected is None and agents:
                    self._selected = agents[0].agent_id
                readings = await self._pull.get_readings(
                    self._selected, since=since, limit=self._config.history_limit
                )
        except Exception as exc:
            reason = str(exc) or type(exc).__name__
            logger.warning("Pull query failed: %s", reason)
            await self._enter_synthetic(f"Pull query failed: {reason}")
            return False

        if agents:
            self._agents = agents
        if readings:
            self._replace_history(reversed(readings))
        self._last_update = self._clock()
        await self._notify()
        return True

    # -- Synthetic tier --------------------------------------------------------

    async def _enter_synthetic(self, reason: str | None) -> None:
        await self._cancel_acquisition()
        self._set_state(SelectorState.SYNTHETIC_FALLBACK)
        if reason:
            self._error = reason
        if self._selected is not None:
            self._generator.ensure_agent(self._selected)
        self._seed_synthetic_history()
        self._apply_synthetic(self._generator.latest())
        self._acquisition_task = asyncio.create_task(
            self._synthetic_loop(self._acquisition_epoch)
        )
        await self._notify()

    async def _synthetic_loop(self, epoch: int) -> None:
        while self._acquisition_current(epoch, SelectorState.SYNTHETIC_FALLBACK):
            await asyncio.sleep(self._config.synthetic_interval)
            if not self._acquisition_current(epoch, SelectorState.SYNTHETIC_FALLBACK):
                return
            self._apply_synthetic(self._generator.tick())
            await self._notify()

    def _seed_synthetic_history(self) -> None:
        if self._history:
            return
        target = self._selected or next(iter(self._generator.agent_ids), None)
        backlog = [r for r in self._generator.backfill(hours=1) if r.agent_id == target]
        self._history.extend(backlog)

    def _apply_synthetic(self, readings: list[Reading]) -> None:
        if not self._agents:
            self._agents = self._generator.agents()
        if self._selected is not None:
            reading = next((r for r in readings if r.agent_id == self._selected), None)
        else:
            reading = readings[0] if readings else None
        if reading is not None:
            self._history.append(reading)
            self._current = reading
        self._last_update = self._clock()

    # -- Helpers ---------------------------------------------------------------

    def _replace_history(self, chronological: Any) -> None:
        self._history = deque(chronological, maxlen=self._config.history_limit)
        if self._history:
            self._current = self._history[-1]

    def _acquisition_current(self, epoch: int, state: SelectorState) -> bool:
        return self._acquisition_epoch == epoch and self._state is state

    async def _cancel_acquisition(self) -> None:
        # cancel_task skips the calling task, so a loop that triggered its own
        # replacement (through a listener) only stops by seeing a newer epoch.
        self._acquisition_epoch += 1
        task, self._acquisition_task = self._acquisition_task, None
        await cancel_task(task)

    def _set_state(self, state: SelectorState) -> None:
        if state is self._state:
            return
        logger.info("Source %s -> %s", self._state, state)
        self._state = state
        self._transition_count += 1

    async def _notify(self) -> None:
        await self._listeners.emit(self.view)
