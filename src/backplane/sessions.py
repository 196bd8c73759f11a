"""
Log tail and exec shell sessions.

Each session owns a cancellation token (a threading.Event) and one daemon
reader thread that pulls from a blocking docker stream and hands events to
the loop. Delivery happens on the loop and is dropped once the token is set,
so after close() returns no further line or output event for that session
can reach the channel.

The stream is opened before the session exists: open_logs() awaits
stream_logs() off the loop and only then registers the handle, so every
registered session has a stream that close() can release.

Teardown:
  - remote exit, stream error, container removal and user close all end in
    _end(), which runs on the loop and emits exactly one SessionEnded
  - close() sets the token and closes the stream (which unblocks the
    reader) without waiting for the reader; close_all() additionally joins
    the readers through a worker thread on shutdown

Exec sessions are exclusive: opening a second one while another is live or
still negotiating raises SessionAlreadyActive and leaves the first alone.
"""

import asyncio
import itertools
import logging
import threading
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence

from . import events as ev
from .channel import EventChannel
from .config import SessionConfig
from .errors import (
    BackplaneError, CommandFailed, ContainerGone, NoShellAvailable, SessionAlreadyActive, StreamInterrupted,
)

logger = logging.getLogger(__name__)

_ids = itertools.count(1)


def new_session_id(kind: str) -> str:
    return f"{kind}-{next(_ids)}"


def _release_stream(opening: asyncio.Future) -> None:
    if opening.cancelled() or opening.exception() is not None:
        return
    try:
        opening.result().close()
    except Exception as e:
        logger.debug(f"Closing abandoned log stream: {e}")


@dataclass(eq=False)
class SessionHandle:
    session_id: str
    container_id: str
    kind: str  # "logs" or "exec"
    shell: str = ""
    token: threading.Event = field(default_factory=threading.Event)
    stream: Any = None
    thread: Optional[threading.Thread] = None
    ended: bool = False

    @property
    def cancelled(self) -> bool:
        return self.token.is_set()


class SessionManager:
    def __init__(self, backend, channel: EventChannel, settings: Optional[SessionConfig] = None):
        self.backend = backend
        self.channel = channel
        self.settings = settings or SessionConfig()
        self._handles: Dict[str, SessionHandle] = {}
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._exec_opening = False
        self.active_exec: Optional[SessionHandle] = None

    def handles(self) -> List[SessionHandle]:
        return list(self._handles.values())

    def get(self, session_id: str) -> Optional[SessionHandle]:
        return self._handles.get(session_id)

    # --- Opening ---

    async def open_logs(self, container_id: str) -> SessionHandle:
        self._loop = asyncio.get_running_loop()
        opening = asyncio.ensure_future(
            asyncio.to_thread(self.backend.stream_logs, container_id, tail=self.settings.log_tail)
        )
        try:
            stream = await asyncio.shield(opening)
        except asyncio.CancelledError:
            # Nobody will own a stream that arrives after this
            opening.add_done_callback(_release_stream)
            raise

        for old in [h for h in self._handles.values() if h.kind == "logs" and h.container_id == container_id]:
            self.close(old, reason="replaced")

        handle = SessionHandle(new_session_id("logs"), container_id, "logs", stream=stream)
        self._handles[handle.session_id] = handle
        self.channel.put(ev.LogSessionOpened(handle.session_id, container_id))
        self._spawn(handle, self._read_logs)
        logger.info(f"Log session {handle.session_id} opened for {container_id[:12]}")
        return handle

    async def open_exec(self, container_id: str, shells: Optional[Sequence[str]] = None) -> SessionHandle:
        if self.active_exec is not None or self._exec_opening:
            raise SessionAlreadyActive(container_id)
        self._loop = asyncio.get_running_loop()
        candidates = list(shells or self.settings.exec_shells)
        self._exec_opening = True
        try:
            pty = None
            for shell in candidates:
                try:
                    pty = await asyncio.to_thread(self.backend.exec_create, container_id, shell)
                    break
                except CommandFailed as e:
                    logger.info(f"Shell {shell} unusable in {container_id[:12]}: {e}")
            if pty is None:
                raise NoShellAvailable(container_id, candidates)

            handle = SessionHandle(new_session_id("exec"), container_id, "exec",
                                   shell=getattr(pty, "shell", "") or shell, stream=pty)
            self._handles[handle.session_id] = handle
            self.active_exec = handle
        finally:
            self._exec_opening = False

        self.channel.put(ev.ExecSessionOpened(handle.session_id, container_id, handle.shell))
        self._spawn(handle, self._read_exec)
        logger.info(f"Exec session {handle.session_id} opened in {container_id[:12]} with {handle.shell}")
        return handle

    def _spawn(self, handle: SessionHandle, target) -> None:
        handle.thread = threading.Thread(
            target=target, args=(handle,), daemon=True, name=f"backplane-{handle.session_id}",
        )
        handle.thread.start()

    # --- Reader threads ---

    def _read_logs(self, handle: SessionHandle) -> None:
        reason = "ended"
        try:
            for line in handle.stream:
                if handle.cancelled:
                    break
                self._post(handle, ev.LogLineReceived(handle.session_id, line))
        except ContainerGone:
            reason = "container gone"
        except (BackplaneError, OSError) as e:
            logger.warning(f"Log stream {handle.session_id} interrupted: {e}")
            reason = "interrupted"
        except Exception:
            logger.exception(f"Log reader {handle.session_id} crashed")
            reason = "interrupted"
        finally:
            self._post_end(handle, reason)

    def _read_exec(self, handle: SessionHandle) -> None:
        reason = "exited"
        pty = handle.stream
        try:
            while not handle.cancelled:
                data = pty.read(4096)
                if not data:
                    break
                self._post(handle, ev.ExecOutput(handle.session_id, data))
        except Exception:
            logger.exception(f"Exec reader {handle.session_id} crashed")
            reason = "interrupted"
        finally:
            self._post_end(handle, reason)

    def _post(self, handle: SessionHandle, event: ev.Event) -> None:
        if handle.cancelled:
            return
        try:
            self._loop.call_soon_threadsafe(self._deliver, handle, event)
        except RuntimeError:
            handle.token.set()

    def _deliver(self, handle: SessionHandle, event: ev.Event) -> None:
        if not handle.cancelled and not handle.ended:
            self.channel.put(event)

    def _post_end(self, handle: SessionHandle, reason: str) -> None:
        try:
            self._loop.call_soon_threadsafe(self._end, handle, reason)
        except RuntimeError:
            logger.debug(f"Loop closed before {handle.session_id} could end")

    # --- Teardown ---

    def _end(self, handle: SessionHandle, reason: str) -> None:
        """The one teardown path. Runs on the loop; idempotent."""
        if handle.ended:
            return
        handle.ended = True
        handle.token.set()
        stream = handle.stream
        if stream is not None:
            try:
                stream.close()
            except Exception as e:
                logger.debug(f"Closing {handle.session_id}: {e}")
        self._handles.pop(handle.session_id, None)
        if self.active_exec is handle:
            self.active_exec = None
        dropped = self.channel.discard(lambda e: getattr(e, "session_id", None) == handle.session_id)
        if dropped:
            logger.debug(f"Discarded {dropped} pending events of {handle.session_id}")
        self.channel.put(ev.SessionEnded(handle.session_id, handle.container_id, reason))
        logger.info(f"Session {handle.session_id} ended ({reason})")

    def close(self, handle: SessionHandle, reason: str = "closed") -> None:
        """Cancel and release the stream; never waits for the reader."""
        self._end(handle, reason)

    async def close_all(self) -> None:
        handles = self.handles()
        for handle in handles:
            self.close(handle, reason="shutdown")
        for handle in handles:
            thread = handle.thread
            if thread is None or not thread.is_alive():
                continue
            await asyncio.to_thread(thread.join, self.settings.join_timeout)
            if thread.is_alive():
                logger.debug(f"Reader of {handle.session_id} still blocked, left as daemon")

    # --- Exec I/O ---

    async def write(self, handle: SessionHandle, data: bytes) -> bool:
        if handle.ended or handle.cancelled or not data:
            return False
        try:
            await asyncio.to_thread(handle.stream.write, data)
            return True
        except OSError as e:
            logger.info(f"Exec {handle.session_id} write failed: {e}")
            self._end(handle, "interrupted")
            return False

    async def resize(self, handle: SessionHandle, rows: int, cols: int) -> bool:
        if handle.ended or handle.cancelled:
            return False
        try:
            await asyncio.to_thread(handle.stream.resize, rows, cols)
            return True
        except StreamInterrupted as e:
            logger.debug(f"Exec {handle.session_id} resize failed: {e}")
            return False
