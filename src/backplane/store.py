"""
View state store: the single mutable source of truth.

This module merges every event into one ViewState. It does no I/O and takes
no locks: the dispatcher is its only caller and applies events one at a
time, so a render pass never sees half an event.

Architecture:
  - ViewStateStore.apply(event): dispatch on the event type, mutate state,
    bump ``version`` only when something actually changed (applying a no-op
    inventory delta twice leaves the state identical)
  - Canonical container list: sorted by name, records updated in place so
    a container's identity survives refreshes
  - Derived view: text filter and status filter are applied on read by
    visible(); the canonical list is never filtered destructively. The
    groups filter only reorders, by compose project
  - Selection: kept by container id and re-resolved after every change that
    can move it; the index is derived

Merge Rules:
  - Added/Updated: insert or update in place, revive tombstones
  - Removed: tombstone, drop any session on that container (back to List)
  - StatsSampled: newer samples only; RX/TX rates from the previous sample,
    counter resets clamp to 0
  - Tick: purge tombstones past the grace window, expire status messages
"""

import copy
import logging
from collections import deque
from dataclasses import replace
from typing import Callable, Dict, List, Optional

from . import events as ev
from .config import AppConfig
from .model import (
    CREATE_FIELDS, ContainerRecord, CreateModal, ExecSessionState, ExecView, HelpModal,
    ListView, LogSessionState, LogsView, PendingCommand, ViewSnapshot, ViewState,
)
from .stats import counter_rate, vram_for

logger = logging.getLogger(__name__)


class ViewStateStore:
    def __init__(self, settings: Optional[AppConfig] = None):
        settings = settings or AppConfig()
        self.tombstone_grace = settings.refresh.tombstone_grace
        self.status_ttl = settings.refresh.status_ttl
        self.log_buffer_size = settings.sessions.log_buffer_size
        self.exec_buffer_bytes = settings.sessions.exec_buffer_bytes
        self.history_samples = settings.docker.history_samples

        self._state = ViewState()
        self._by_id: Dict[str, ContainerRecord] = {}
        # Time of the latest Tick; status messages are stamped with it
        self._clock = 0.0

        self._handlers: Dict[type, Callable[[ev.Event], bool]] = {
            ev.ContainerAdded: self._on_added,
            ev.ContainerUpdated: self._on_updated,
            ev.ContainerRemoved: self._on_removed,
            ev.StatsSampled: self._on_stats,
            ev.StatsUnavailable: self._on_stats_unavailable,
            ev.HostMetricsSampled: self._on_host,
            ev.ContainerGpuSampled: self._on_gpu,
            ev.DaemonUnreachable: self._on_daemon_unreachable,
            ev.DaemonRecovered: self._on_daemon_recovered,
            ev.LogSessionOpened: self._on_log_opened,
            ev.LogLineReceived: self._on_log_line,
            ev.ExecSessionOpened: self._on_exec_opened,
            ev.ExecOutput: self._on_exec_output,
            ev.LogOpenFailed: self._on_log_open_failed,
            ev.ExecOpenFailed: self._on_exec_open_failed,
            ev.SessionEnded: self._on_session_ended,
            ev.SelectionMoved: self._on_selection_moved,
            ev.SelectionJumped: self._on_selection_jumped,
            ev.FilterChanged: self._on_filter_changed,
            ev.StatusFilterCycled: self._on_status_filter_cycled,
            ev.ListViewModeCycled: self._on_list_view_cycled,
            ev.LogsScrolled: self._on_logs_scrolled,
            ev.LogsFollow: self._on_logs_follow,
            ev.HelpOpened: self._on_help_opened,
            ev.CreateModalOpened: self._on_create_opened,
            ev.CreateFieldEdited: self._on_create_field_edited,
            ev.CreateFormRejected: self._on_create_rejected,
            ev.ImagesListed: self._on_images_listed,
            ev.ModalClosed: self._on_modal_closed,
            ev.CommandStarted: self._on_command_started,
            ev.CommandSucceeded: self._on_command_succeeded,
            ev.CommandFailed: self._on_command_failed,
            ev.Tick: self._on_tick,
        }

    # --- Read side ---

    @property
    def state(self) -> ViewState:
        return self._state

    @property
    def version(self) -> int:
        return self._state.version

    def record(self, container_id: str) -> Optional[ContainerRecord]:
        return self._by_id.get(container_id)

    def visible(self) -> List[ContainerRecord]:
        st = self._state
        ft = st.filter_text.lower()
        items = [
            c for c in st.containers
            if st.status_filter.matches(c.state)
            and (not ft or ft in c.name.lower() or ft in c.image.lower())
        ]
        if st.status_filter.grouped:
            # Compose projects first, alphabetically; standalone containers last
            items.sort(key=lambda c: (c.project == "standalone", c.project, c.name, c.id))
        return items

    def selected_record(self) -> Optional[ContainerRecord]:
        if self._state.selected_id is None:
            return None
        return self._by_id.get(self._state.selected_id)

    def active_session_id(self) -> Optional[str]:
        nav = self._state.navigation
        if isinstance(nav, (LogsView, ExecView)):
            return nav.session.session_id
        return None

    def snapshot(self) -> ViewSnapshot:
        st = self._state
        items = self.visible()
        return ViewSnapshot(
            containers=tuple(
                replace(c, cpu_history=deque(c.cpu_history, maxlen=c.cpu_history.maxlen),
                        mem_history=deque(c.mem_history, maxlen=c.mem_history.maxlen))
                for c in items
            ),
            total=len(st.containers),
            selected_index=st.selected_index,
            selected_id=st.selected_id,
            list_view_mode=st.list_view_mode,
            status_filter=st.status_filter,
            filter_text=st.filter_text,
            host=st.host,
            navigation=copy.deepcopy(st.navigation),
            banner="; ".join(f"{origin}: {msg}" for origin, msg in sorted(st.daemon_errors.items())),
            status=st.status,
            busy=bool(st.pending_commands),
            version=st.version,
        )

    # --- Write side ---

    def apply(self, event: ev.Event) -> bool:
        """Apply one event. Returns True if the state changed."""
        handler = self._handlers.get(type(event))
        if handler is None:
            logger.debug(f"No merge rule for {type(event).__name__}, ignored")
            return False
        changed = bool(handler(event))
        if changed:
            self._state.version += 1
        return changed

    # --- Helpers ---

    def _label(self, container_id: Optional[str]) -> str:
        if not container_id:
            return ""
        rec = self._by_id.get(container_id)
        return rec.name if rec else container_id[:12]

    def _describe(self, action: str, container_id: Optional[str]) -> str:
        return f"{action} {self._label(container_id)}".strip()

    def _set_status(self, message: str) -> None:
        self._state.status = message
        self._state.status_at = self._clock

    def _sort(self) -> None:
        self._state.containers.sort(key=lambda c: (c.name, c.id))

    def _resolve_selection(self) -> None:
        st = self._state
        items = self.visible()
        if st.selected_id is not None and st.selected_id not in self._by_id:
            st.selected_id = None
        ids = [c.id for c in items]
        if st.selected_id in ids:
            st.selected_index = ids.index(st.selected_id)
        elif items:
            st.selected_index = max(0, min(st.selected_index, len(items) - 1))
            st.selected_id = items[st.selected_index].id
        else:
            st.selected_index = 0

    def _own(self, record: ContainerRecord) -> ContainerRecord:
        # Never share a record object with the producer that built it
        return replace(
            record,
            stats=None, previous_stats=None, rx_rate=None, tx_rate=None, stats_error="", vram_mb=None,
            cpu_history=deque(maxlen=self.history_samples),
            mem_history=deque(maxlen=self.history_samples),
            tombstoned_at=None,
        )

    def _merge_inventory(self, existing: ContainerRecord, incoming: ContainerRecord) -> bool:
        if existing.identity_fields() == incoming.identity_fields():
            return False
        renamed = existing.name != incoming.name
        was_running = existing.state.is_running
        existing.name = incoming.name
        existing.image = incoming.image
        existing.state = incoming.state
        existing.ports = incoming.ports
        existing.project = incoming.project
        existing.created = incoming.created
        if was_running and not existing.state.is_running:
            existing.clear_stats()
        if renamed:
            self._sort()
        return True

    def _drop_session_for(self, container_id: str, reason: str) -> bool:
        nav = self._state.navigation
        if isinstance(nav, (LogsView, ExecView)) and nav.session.container_id == container_id:
            self._state.navigation = ListView()
            self._set_status(f"{self._label(container_id)}: {reason}, session closed")
            return True
        return False

    # --- Inventory ---

    def _on_added(self, e: ev.ContainerAdded) -> bool:
        existing = self._by_id.get(e.record.id)
        if existing is not None:
            revived = existing.tombstoned_at is not None
            existing.tombstoned_at = None
            changed = self._merge_inventory(existing, e.record) or revived
        else:
            rec = self._own(e.record)
            self._by_id[rec.id] = rec
            self._state.containers.append(rec)
            self._sort()
            changed = True
        if changed:
            self._resolve_selection()
        return changed

    def _on_updated(self, e: ev.ContainerUpdated) -> bool:
        if e.record.id not in self._by_id:
            return self._on_added(ev.ContainerAdded(e.record))
        return self._on_added(e)

    def _on_removed(self, e: ev.ContainerRemoved) -> bool:
        rec = self._by_id.get(e.container_id)
        if rec is None or rec.tombstoned_at is not None:
            return False
        rec.tombstoned_at = e.observed_at
        rec.clear_stats("removed")
        self._drop_session_for(e.container_id, "container removed")
        return True

    def _purge_tombstones(self, now: float) -> bool:
        expired = [
            c for c in self._state.containers
            if c.tombstoned_at is not None and now - c.tombstoned_at >= self.tombstone_grace
        ]
        if not expired:
            return False
        for rec in expired:
            self._by_id.pop(rec.id, None)
        self._state.containers = [c for c in self._state.containers if c.id in self._by_id]
        self._resolve_selection()
        return True

    # --- Stats / host ---

    def _on_stats(self, e: ev.StatsSampled) -> bool:
        rec = self._by_id.get(e.container_id)
        if rec is None or rec.tombstoned_at is not None:
            return False
        prev = rec.stats
        sample = e.sample
        if prev is not None:
            elapsed = sample.timestamp - prev.timestamp
            if elapsed <= 0:
                # Out of order or duplicate; never rate against a newer sample
                return False
            rec.rx_rate = counter_rate(prev.rx_bytes, sample.rx_bytes, elapsed)
            rec.tx_rate = counter_rate(prev.tx_bytes, sample.tx_bytes, elapsed)
        rec.previous_stats = prev
        rec.stats = sample
        rec.stats_error = ""
        rec.cpu_history.append(sample.cpu_percent)
        rec.mem_history.append(sample.memory_percent)
        return True

    def _on_stats_unavailable(self, e: ev.StatsUnavailable) -> bool:
        rec = self._by_id.get(e.container_id)
        if rec is None or rec.tombstoned_at is not None:
            return False
        reason = e.reason or "unavailable"
        if rec.stats is None and rec.stats_error == reason:
            return False
        rec.clear_stats(reason)
        return True

    def _on_host(self, e: ev.HostMetricsSampled) -> bool:
        if self._state.host == e.metrics:
            return False
        self._state.host = e.metrics
        return True

    def _on_gpu(self, e: ev.ContainerGpuSampled) -> bool:
        usage = dict(e.usage)
        changed = False
        for rec in self._state.containers:
            vram = None if rec.tombstoned_at is not None else vram_for(usage, rec.id)
            if rec.vram_mb != vram:
                rec.vram_mb = vram
                changed = True
        return changed

    def _on_daemon_unreachable(self, e: ev.DaemonUnreachable) -> bool:
        message = e.message or "daemon unreachable"
        if self._state.daemon_errors.get(e.origin) == message:
            return False
        self._state.daemon_errors[e.origin] = message
        return True

    def _on_daemon_recovered(self, e: ev.DaemonRecovered) -> bool:
        return self._state.daemon_errors.pop(e.origin, None) is not None

    # --- Sessions ---

    def _on_log_opened(self, e: ev.LogSessionOpened) -> bool:
        nav = self._state.navigation
        if not isinstance(nav, (ListView, LogsView)):
            return False
        rec = self._by_id.get(e.container_id)
        if rec is None or rec.tombstoned_at is not None:
            return False
        self._state.navigation = LogsView(LogSessionState(
            session_id=e.session_id,
            container_id=e.container_id,
            lines=deque(maxlen=self.log_buffer_size),
        ))
        return True

    def _on_log_line(self, e: ev.LogLineReceived) -> bool:
        nav = self._state.navigation
        if not isinstance(nav, LogsView) or nav.session.session_id != e.session_id:
            return False
        session = nav.session
        if not session.follow and len(session.lines) == session.lines.maxlen:
            # Oldest line falls off; keep the same lines in view
            session.scroll = max(0, session.scroll - 1)
        session.lines.append(e.line)
        return True

    def _on_logs_scrolled(self, e: ev.LogsScrolled) -> bool:
        nav = self._state.navigation
        if not isinstance(nav, LogsView):
            return False
        session = nav.session
        max_offset = max(0, len(session.lines) - e.page_height)
        base = max_offset if session.follow else session.scroll
        new_offset = max(0, min(base + e.delta, max_offset))
        follow = new_offset >= max_offset
        if new_offset == session.scroll and follow == session.follow:
            return False
        session.scroll = new_offset
        session.follow = follow
        return True

    def _on_logs_follow(self, e: ev.LogsFollow) -> bool:
        nav = self._state.navigation
        if not isinstance(nav, LogsView) or nav.session.follow:
            return False
        nav.session.follow = True
        return True

    def _on_exec_opened(self, e: ev.ExecSessionOpened) -> bool:
        if not isinstance(self._state.navigation, ListView):
            return False
        rec = self._by_id.get(e.container_id)
        if rec is None or rec.tombstoned_at is not None:
            return False
        self._state.navigation = ExecView(ExecSessionState(
            session_id=e.session_id, container_id=e.container_id, shell=e.shell,
        ))
        return True

    def _on_exec_output(self, e: ev.ExecOutput) -> bool:
        nav = self._state.navigation
        if not isinstance(nav, ExecView) or nav.session.session_id != e.session_id or not e.data:
            return False
        output = nav.session.output
        output.extend(e.data)
        overflow = len(output) - self.exec_buffer_bytes
        if overflow > 0:
            del output[:overflow]
        return True

    def _on_log_open_failed(self, e: ev.LogOpenFailed) -> bool:
        self._set_status(f"Logs of {self._label(e.container_id)} failed: {e.reason}")
        return True

    def _on_exec_open_failed(self, e: ev.ExecOpenFailed) -> bool:
        self._set_status(f"Exec into {self._label(e.container_id)} failed: {e.reason}")
        return True

    def _on_session_ended(self, e: ev.SessionEnded) -> bool:
        if self.active_session_id() != e.session_id:
            return False
        self._state.navigation = ListView()
        self._set_status(f"{self._label(e.container_id)}: session {e.reason}")
        return True

    # --- User input ---

    def _on_selection_moved(self, e: ev.SelectionMoved) -> bool:
        if not isinstance(self._state.navigation, ListView):
            return False
        items = self.visible()
        if not items:
            return False
        st = self._state
        new_idx = max(0, min(st.selected_index + e.delta, len(items) - 1))
        if new_idx == st.selected_index and st.selected_id == items[new_idx].id:
            return False
        st.selected_index = new_idx
        st.selected_id = items[new_idx].id
        return True

    def _on_selection_jumped(self, e: ev.SelectionJumped) -> bool:
        delta = len(self._state.containers) if e.to_end else -len(self._state.containers)
        return self._on_selection_moved(ev.SelectionMoved(delta))

    def _on_filter_changed(self, e: ev.FilterChanged) -> bool:
        if e.text == self._state.filter_text:
            return False
        self._state.filter_text = e.text
        self._resolve_selection()
        return True

    def _on_status_filter_cycled(self, e: ev.StatusFilterCycled) -> bool:
        self._state.status_filter = self._state.status_filter.cycle()
        self._resolve_selection()
        return True

    def _on_list_view_cycled(self, e: ev.ListViewModeCycled) -> bool:
        if e.step == 0:
            return False
        self._state.list_view_mode = self._state.list_view_mode.cycle(e.step)
        return True

    def _on_help_opened(self, e: ev.HelpOpened) -> bool:
        if not isinstance(self._state.navigation, ListView):
            return False
        self._state.navigation = HelpModal()
        return True

    def _on_create_opened(self, e: ev.CreateModalOpened) -> bool:
        if not isinstance(self._state.navigation, ListView):
            return False
        self._state.navigation = CreateModal()
        return True

    def _on_create_field_edited(self, e: ev.CreateFieldEdited) -> bool:
        nav = self._state.navigation
        if not isinstance(nav, CreateModal) or e.field not in CREATE_FIELDS:
            return False
        if nav.form.values.get(e.field) == e.value and not nav.form.error:
            return False
        nav.form.values[e.field] = e.value
        nav.form.error = ""
        return True

    def _on_create_rejected(self, e: ev.CreateFormRejected) -> bool:
        nav = self._state.navigation
        if not isinstance(nav, CreateModal):
            return False
        nav.form.error = e.error
        return True

    def _on_images_listed(self, e: ev.ImagesListed) -> bool:
        nav = self._state.navigation
        if not isinstance(nav, CreateModal) or nav.form.images == list(e.images):
            return False
        nav.form.images = list(e.images)
        return True

    def _on_modal_closed(self, e: ev.ModalClosed) -> bool:
        if not isinstance(self._state.navigation, (HelpModal, CreateModal)):
            return False
        self._state.navigation = ListView()
        return True

    # --- Commands ---

    def _on_command_started(self, e: ev.CommandStarted) -> bool:
        self._state.pending_commands[e.command_id] = PendingCommand(e.command_id, e.action, e.container_id)
        self._set_status(f"{self._describe(e.action, e.container_id)}...")
        return True

    def _on_command_succeeded(self, e: ev.CommandSucceeded) -> bool:
        self._state.pending_commands.pop(e.command_id, None)
        self._set_status(e.message or f"{self._describe(e.action, e.container_id)}: done")
        return True

    def _on_command_failed(self, e: ev.CommandFailed) -> bool:
        self._state.pending_commands.pop(e.command_id, None)
        self._set_status(f"{self._describe(e.action, e.container_id)} failed: {e.error}")
        return True

    # --- Timer ---

    def _on_tick(self, e: ev.Tick) -> bool:
        self._clock = e.now
        changed = self._purge_tombstones(e.now)
        st = self._state
        if st.status and not st.pending_commands and e.now - st.status_at >= self.status_ttl:
            st.status = ""
            changed = True
        return changed
