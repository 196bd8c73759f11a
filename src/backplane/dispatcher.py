"""
Dispatcher: the single serialization point.

The dispatcher owns the event channel, the view state store, the update
sources and the session manager. Its loop is the only place where state
changes:

  1. wait for events (or the render deadline)
  2. drain a batch and apply it; intents are turned into I/O here
  3. Tick the store (tombstone purge, status expiry)
  4. reconcile sessions: any session the state no longer shows is closed
  5. render a snapshot, at most once per render interval

Commands run as background tasks through asyncio.to_thread and report back
as CommandStarted / CommandSucceeded / CommandFailed events, so a slow
`docker stop` never blocks input or rendering.
"""

import asyncio
import itertools
import logging
import time
from typing import Callable, Optional, Set

from . import events as ev
from .channel import ChannelClosed, EventChannel
from .config import AppConfig
from .errors import BackplaneError
from .model import CreateModal, ListView, ViewSnapshot
from .sessions import SessionHandle, SessionManager
from .sources import UpdateSourceManager
from .store import ViewStateStore

logger = logging.getLogger(__name__)

COMMANDS = ("start", "stop", "restart", "remove", "pause", "unpause")


class Dispatcher:
    def __init__(self, backend, render: Callable[[ViewSnapshot], None],
                 config: Optional[AppConfig] = None, clock: Callable[[], float] = time.monotonic):
        self.backend = backend
        self.render = render
        self.config = config or AppConfig()
        self.clock = clock
        self.channel = EventChannel()
        self.store = ViewStateStore(self.config)
        self.sources = UpdateSourceManager(backend, self.channel, self.config.refresh)
        self.sessions = SessionManager(backend, self.channel, self.config.sessions)

        self._adopted: Set[str] = set()
        self._tasks: Set[asyncio.Task] = set()
        self._command_ids = itertools.count(1)
        self._pending_input = bytearray()
        self._writer: Optional[asyncio.Task] = None
        self._stopping = False
        self._last_render: Optional[float] = None
        self._rendered_version = -1

        self._intents = {
            ev.OpenLogs: self._open_logs,
            ev.OpenExec: self._open_exec,
            ev.CloseSession: self._close_session,
            ev.ExecInput: self._exec_input,
            ev.ExecResize: self._exec_resize,
            ev.RunCommand: self._run_command,
            ev.SubmitCreate: self._submit_create,
            ev.RefreshRequested: self._refresh,
        }

    # --- Public API ---

    def post(self, event: ev.Event) -> None:
        """Entry point for the UI. Must be called on the loop thread."""
        if self._stopping:
            return
        self.channel.put(event)

    async def run(self, start_sources: bool = True) -> None:
        self.channel.bind(asyncio.get_running_loop())
        if start_sources:
            self.sources.start()
        self._render(self.clock())
        try:
            while not self._stopping:
                await self.step()
        finally:
            await self.shutdown()

    async def step(self) -> None:
        """One iteration: wait, apply a batch, tick, reconcile, render."""
        try:
            await self.channel.wait(self._wait_timeout())
        except ChannelClosed:
            self._stopping = True
            return
        for event in self.channel.drain(self.config.refresh.max_batch):
            self.handle(event)
        now = self.clock()
        self.store.apply(ev.Tick(now))
        self.reconcile()
        if now - (self._last_render or 0.0) >= self.config.refresh.render_interval or self._last_render is None:
            self._render(now)

    def stop(self) -> None:
        self._stopping = True
        self.channel.close()

    async def shutdown(self) -> None:
        self._stopping = True
        await self.sources.stop()
        await self.sessions.close_all()
        self._adopted.clear()
        tasks = [t for t in self._tasks if not t.done()]
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._tasks.clear()
        self.channel.close()
        logger.info("Dispatcher shut down")

    # --- Core ---

    def handle(self, event: ev.Event) -> None:
        if isinstance(event, ev.Intent):
            handler = self._intents.get(type(event))
            if handler is None:
                logger.debug(f"Unhandled intent {type(event).__name__}")
                return
            try:
                handler(event)
            except BackplaneError as e:
                logger.warning(f"{type(event).__name__} failed: {e}")
            return

        accepted = self.store.apply(event)
        if isinstance(event, ev.CreateModalOpened) and accepted:
            self._spawn(self._load_images())
        elif isinstance(event, (ev.LogSessionOpened, ev.ExecSessionOpened)):
            if accepted and self.store.active_session_id() == event.session_id:
                self._adopted.add(event.session_id)
            else:
                # Navigation moved on while the session was opening
                handle = self.sessions.get(event.session_id)
                if handle is not None:
                    logger.info(f"Session {event.session_id} not shown, closing it")
                    self.sessions.close(handle, reason="discarded")

    def reconcile(self) -> None:
        active = self.store.active_session_id()
        for session_id in list(self._adopted):
            if session_id == active:
                continue
            self._adopted.discard(session_id)
            handle = self.sessions.get(session_id)
            if handle is not None:
                record = self.store.record(handle.container_id)
                gone = record is None or record.is_tombstoned
                self.sessions.close(handle, reason="container removed" if gone else "closed")

    def _wait_timeout(self) -> float:
        interval = self.config.refresh.render_interval
        if self._last_render is None or self.store.version == self._rendered_version:
            return interval
        return max(0.0, self._last_render + interval - self.clock())

    def _render(self, now: float) -> None:
        if self.store.version == self._rendered_version:
            return
        self._last_render = now
        self._rendered_version = self.store.version
        try:
            self.render(self.store.snapshot())
        except Exception:
            logger.exception("Render failed")

    def _spawn(self, coro) -> asyncio.Task:
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    def _active_handle(self, kind: str) -> Optional[SessionHandle]:
        session_id = self.store.active_session_id()
        handle = self.sessions.get(session_id) if session_id else None
        if handle is None or handle.kind != kind:
            return None
        return handle

    # --- Intents ---

    def _open_logs(self, intent: ev.OpenLogs) -> None:
        record = self.store.selected_record()
        if record is None or record.is_tombstoned:
            return
        if not isinstance(self.store.state.navigation, ListView):
            return
        self._spawn(self._negotiate_logs(record.id))

    async def _negotiate_logs(self, container_id: str) -> None:
        try:
            await self.sessions.open_logs(container_id)
        except BackplaneError as e:
            logger.info(f"Logs of {container_id[:12]} failed: {e}")
            self.channel.put(ev.LogOpenFailed(container_id, str(e)))

    def _open_exec(self, intent: ev.OpenExec) -> None:
        record = self.store.selected_record()
        if record is None or record.is_tombstoned:
            return
        if not isinstance(self.store.state.navigation, ListView):
            return
        if not record.state.is_running:
            self.channel.put(ev.ExecOpenFailed(record.id, "container is not running"))
            return
        self._spawn(self._negotiate_exec(record.id, intent.shells or None))

    async def _negotiate_exec(self, container_id: str, shells) -> None:
        try:
            await self.sessions.open_exec(container_id, shells)
        except BackplaneError as e:
            logger.info(f"Exec into {container_id[:12]} failed: {e}")
            self.channel.put(ev.ExecOpenFailed(container_id, str(e)))

    def _close_session(self, intent: ev.CloseSession) -> None:
        session_id = self.store.active_session_id()
        handle = self.sessions.get(session_id) if session_id else None
        if handle is not None:
            self.sessions.close(handle)

    def _exec_input(self, intent: ev.ExecInput) -> None:
        handle = self._active_handle("exec")
        if handle is None:
            return
        self._pending_input.extend(intent.data)
        if self._writer is None or self._writer.done():
            self._writer = self._spawn(self._flush_input())

    async def _flush_input(self) -> None:
        # One writer at a time keeps keystrokes in order. The session is
        # looked up per write: a new shell may open while a write is in flight
        while self._pending_input:
            handle = self._active_handle("exec")
            if handle is None:
                self._pending_input.clear()
                return
            data = bytes(self._pending_input)
            self._pending_input.clear()
            await self.sessions.write(handle, data)

    def _exec_resize(self, intent: ev.ExecResize) -> None:
        handle = self._active_handle("exec")
        if handle is not None:
            self._spawn(self.sessions.resize(handle, intent.rows, intent.cols))

    def _run_command(self, intent: ev.RunCommand) -> None:
        if intent.action not in COMMANDS:
            logger.warning(f"Unknown command {intent.action!r}")
            return
        container_id = intent.container_id
        if container_id is None:
            record = self.store.selected_record()
            if record is None or record.is_tombstoned:
                return
            container_id = record.id
        self._start_command(intent.action, container_id, getattr(self.backend, intent.action), container_id)

    def _submit_create(self, intent: ev.SubmitCreate) -> None:
        nav = self.store.state.navigation
        if not isinstance(nav, CreateModal):
            return
        try:
            spec = nav.form.to_spec()
        except ValueError as e:
            self.store.apply(ev.CreateFormRejected(str(e)))
            return
        self.store.apply(ev.ModalClosed())
        self._start_command("create", None, self.backend.create, spec)

    def _refresh(self, intent: ev.RefreshRequested) -> None:
        self.sources.request_refresh()

    async def _load_images(self) -> None:
        try:
            images = await asyncio.to_thread(self.backend.list_images)
        except BackplaneError as e:
            logger.warning(f"Listing images failed: {e}")
            images = []
        self.channel.put(ev.ImagesListed(tuple(images)))

    # --- Commands ---

    def _start_command(self, action: str, container_id: Optional[str], func, *args) -> None:
        command_id = f"cmd-{next(self._command_ids)}"
        self.store.apply(ev.CommandStarted(command_id, action, container_id))
        self._spawn(self._execute(command_id, action, container_id, func, *args))

    async def _execute(self, command_id: str, action: str, container_id: Optional[str], func, *args) -> None:
        try:
            result = await asyncio.to_thread(func, *args)
        except BackplaneError as e:
            self.channel.put(ev.CommandFailed(command_id, action, container_id, str(e)))
        except Exception as e:
            logger.exception(f"Command {action} crashed")
            self.channel.put(ev.CommandFailed(command_id, action, container_id, str(e) or type(e).__name__))
        else:
            message = f"Created container {result[:12]}" if action == "create" and result else ""
            logger.info(f"Command {action} {(container_id or '')[:12]} succeeded")
            self.channel.put(ev.CommandSucceeded(command_id, action, container_id, message))
        self.sources.request_refresh()
