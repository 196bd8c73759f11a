"""Textual-based UI for backplane."""

from __future__ import annotations

from typing import Optional

from rich.markup import escape as rich_escape
from rich.text import Text
from textual import events
from textual.app import App, ComposeResult
from textual.binding import Binding
from textual.containers import Vertical
from textual.screen import ModalScreen
from textual.widgets import Footer, Header, Static

from . import events as ev
from .backend import DockerBackend
from .config import AppConfig, config_manager
from .dispatcher import Dispatcher
from .model import (
    CREATE_FIELDS, ContainerRecord, ContainerState, CreateModal, ExecView, HelpModal, ListView,
    ListViewMode, LogsView, ViewSnapshot,
)
from .stats import format_bytes, format_rate, sparkline

EXEC_KEYS = {
    "enter": b"\r",
    "tab": b"\t",
    "backspace": b"\x7f",
    "up": b"\x1b[A",
    "down": b"\x1b[B",
    "right": b"\x1b[C",
    "left": b"\x1b[D",
    "home": b"\x1b[H",
    "end": b"\x1b[F",
    "delete": b"\x1b[3~",
    "ctrl+c": b"\x03",
    "ctrl+d": b"\x04",
    "ctrl+l": b"\x0c",
    "ctrl+z": b"\x1a",
}

HELP_TEXT = """\
LIST
  j/k, up/down   move selection        g/G     first / last
  h, left/right, tab  cycle columns (stats, network, details)
  enter, l       follow logs           e       exec shell
  s              start                 x       stop
  R              restart               d       remove
  p / P          pause / unpause       n       new container
  /              filter by name/image  f       status filter (all, groups, running, stopped)
  r              refresh now           ?       this help
  q              quit

LOGS
  j/k, pgup/pgdn scroll                G       follow tail
  esc            back to list

EXEC
  keys go to the shell                 esc     close session

CREATE
  tab/up/down    switch field          enter   create
  tab on image   browse local images   esc     cancel
"""


class ConfirmScreen(ModalScreen[bool]):
    def __init__(self, question: str) -> None:
        super().__init__()
        self.question = question

    def compose(self) -> ComposeResult:
        yield Vertical(
            Static("Confirm", classes="modal_title"),
            Static(rich_escape(self.question), classes="modal_body"),
            Static("[Enter/Y] Yes    [Esc/N] No", classes="modal_hint", markup=False),
            id="modal",
        )

    async def on_key(self, event: events.Key) -> None:
        if event.key in ("enter", "y", "Y"):
            self.dismiss(True)
        elif event.key in ("escape", "n", "N"):
            self.dismiss(False)
        event.stop()


class BackplaneApp(App[None]):
    TITLE = "backplane"
    SUB_TITLE = "Docker dashboard"

    CSS = """
    Screen {
      layout: vertical;
    }

    #host {
      height: 1;
      padding: 0 1;
      background: $surface;
      color: $text;
    }

    #banner {
      height: auto;
      padding: 0 1;
      background: $error;
      color: $text;
    }

    #body {
      height: 1fr;
      border: round $accent;
      padding: 0 1;
      overflow: hidden;
    }

    #status {
      height: 1;
      padding: 0 1;
      background: $panel;
      color: $text;
    }

    #modal {
      width: 70;
      height: auto;
      border: round $accent;
      background: $surface;
      padding: 1 2;
      align: center middle;
    }

    .modal_title {
      text-style: bold;
      margin-bottom: 1;
    }

    .modal_body {
      margin-bottom: 1;
    }

    .modal_hint {
      color: $text-muted;
    }
    """

    BINDINGS = [
        Binding("q", "quit", "Quit"),
        Binding("?", "help", "Help"),
        Binding("enter", "logs", "Logs"),
        Binding("e", "exec", "Exec"),
        Binding("/", "start_filter", "Filter"),
        Binding("n", "create", "New"),
    ]

    def __init__(self, config: Optional[AppConfig] = None, backend=None) -> None:
        super().__init__()
        self.config = config or config_manager.get_config()
        self.backend = backend or DockerBackend(stop_timeout=self.config.docker.stop_timeout)
        self.dispatcher = Dispatcher(self.backend, self.show_snapshot, self.config)
        self.snapshot: Optional[ViewSnapshot] = None
        self.is_filtering = False
        self.scroll_offset = 0
        self.create_field = 0
        # Typed text is tracked here; snapshots can lag behind fast typing
        self.filter_draft = ""
        self.create_draft = {name: "" for name in CREATE_FIELDS}
        # Highlighted entry while the image picker is open
        self.image_picker: Optional[int] = None
        self._exec_session: Optional[str] = None

    def compose(self) -> ComposeResult:
        yield Header(show_clock=True)
        yield Static("", id="host")
        yield Static("", id="banner")
        yield Static("", id="body")
        yield Static("", id="status")
        yield Footer()

    def on_mount(self) -> None:
        self.query_one("#banner", Static).display = False
        self.run_worker(self.dispatcher.run(), group="dispatcher", exclusive=True)

    async def action_quit(self) -> None:
        self.dispatcher.stop()
        await self.dispatcher.shutdown()
        self.exit()

    def on_resize(self, event: events.Resize) -> None:
        self._send_exec_size()
        self._render()

    def post(self, event: ev.Event) -> None:
        self.dispatcher.post(event)

    # --- Rendering ---

    def show_snapshot(self, snapshot: ViewSnapshot) -> None:
        self.snapshot = snapshot
        nav = snapshot.navigation
        if isinstance(nav, ExecView) and nav.session.session_id != self._exec_session:
            self._exec_session = nav.session.session_id
            self._send_exec_size()
        elif not isinstance(nav, ExecView):
            self._exec_session = None
        self._render()

    def _page_height(self) -> int:
        return max(1, self.query_one("#body", Static).size.height - 2)

    def _render(self) -> None:
        snap = self.snapshot
        if snap is None:
            return
        self.query_one("#host", Static).update(rich_escape(self._render_host(snap)))
        banner = self.query_one("#banner", Static)
        banner.display = bool(snap.banner)
        banner.update(rich_escape(f"Docker: {snap.banner}"))

        body = self.query_one("#body", Static)
        nav = snap.navigation
        if isinstance(nav, LogsView):
            body.border_title = rich_escape(f"logs: {self._name_of(snap, nav.session.container_id)}")
            body.update(rich_escape(self._render_logs(nav)))
        elif isinstance(nav, ExecView):
            body.border_title = rich_escape(f"exec: {self._name_of(snap, nav.session.container_id)} ({nav.session.shell})")
            body.update(self._render_exec(nav))
        elif isinstance(nav, CreateModal):
            body.border_title = "new container"
            body.update(self._render_create(nav))
        elif isinstance(nav, HelpModal):
            body.border_title = "help"
            body.update(rich_escape(HELP_TEXT))
        else:
            body.border_title = rich_escape(f"containers [{snap.list_view_mode.value}] ({len(snap.containers)}/{snap.total})")
            body.update(self._render_list(snap))
        self.query_one("#status", Static).update(rich_escape(self._render_status(snap)))

    def _name_of(self, snap: ViewSnapshot, container_id: str) -> str:
        for c in snap.containers:
            if c.id == container_id:
                return c.name
        return container_id[:12]

    def _render_host(self, snap: ViewSnapshot) -> str:
        host = snap.host
        if host is None:
            return "host: --"
        parts = [
            f"CPU {host.cpu_percent:5.1f}%",
            f"MEM {format_bytes(host.memory_used)}/{format_bytes(host.memory_total)} ({host.memory_percent:.0f}%)",
            f"DISK {format_bytes(host.disk_used)}/{format_bytes(host.disk_total)} ({host.disk_percent:.0f}%)",
        ]
        if host.gpu_memory_percent is not None:
            parts.append(f"GPU {host.gpu_memory_percent:.0f}%")
        return "  ".join(parts)

    def _header(self, mode: ListViewMode) -> str:
        if mode == ListViewMode.NETWORK:
            return f"{'NAME':24} {'STATE':10} {'RX/s':>10} {'TX/s':>10} {'RX':>9} {'TX':>9}  PORTS"
        if mode == ListViewMode.DETAILS:
            return f"{'NAME':24} {'ID':12} {'STATE':10} {'PROJECT':14} {'KIND':4}  IMAGE"
        return f"{'NAME':24} {'STATE':10} {'CPU%':>6} {'':10} {'MEM':>9} {'':10} {'VRAM':>6}  PORTS"

    def _row(self, mode: ListViewMode, c: ContainerRecord) -> str:
        state = "removed" if c.is_tombstoned else c.state.value
        ports = ", ".join(p.display() for p in c.ports)
        if mode == ListViewMode.NETWORK:
            rx = format_bytes(c.stats.rx_bytes) if c.stats else "--"
            tx = format_bytes(c.stats.tx_bytes) if c.stats else "--"
            return (f"{c.name[:24]:24} {state[:10]:10} {format_rate(c.rx_rate):>10} "
                    f"{format_rate(c.tx_rate):>10} {rx:>9} {tx:>9}  {ports}")
        if mode == ListViewMode.DETAILS:
            return f"{c.name[:24]:24} {c.short_id:12} {state[:10]:10} {c.project[:14]:14} {c.kind:4}  {c.image}"
        if c.stats is not None:
            cpu = f"{c.stats.cpu_percent:6.1f}"
            mem = format_bytes(c.stats.memory_used)
        else:
            cpu = f"{'--':>6}"
            mem = c.stats_error[:9] if c.stats_error and c.state == ContainerState.RUNNING else "--"
        vram = f"{c.vram_mb:.0f}M" if c.vram_mb is not None else "--"
        return (f"{c.name[:24]:24} {state[:10]:10} {cpu} {sparkline(c.cpu_history)} "
                f"{mem:>9} {sparkline(c.mem_history)} {vram:>6}  {ports}")

    def _window(self, containers, start: int, height: int, grouped: bool) -> list:
        """(index, record) rows from start, with (None, project) headers when grouped."""
        if not grouped:
            return list(enumerate(containers))[start:start + height]
        out = []
        project = None
        for idx in range(start, len(containers)):
            c = containers[idx]
            header = c.project != project
            if out and len(out) + (2 if header else 1) > height:
                break
            if header:
                project = c.project
                out.append((None, project))
            out.append((idx, c))
        return out

    def _render_list(self, snap: ViewSnapshot) -> str:
        list_height = max(1, self._page_height() - 1)
        if snap.selected_index < self.scroll_offset:
            self.scroll_offset = snap.selected_index
        elif snap.selected_index >= self.scroll_offset + list_height:
            self.scroll_offset = snap.selected_index - list_height + 1
        self.scroll_offset = max(0, min(self.scroll_offset, max(0, len(snap.containers) - list_height)))

        grouped = snap.status_filter.grouped
        window = self._window(snap.containers, self.scroll_offset, list_height, grouped)
        # Project headers take rows too; scroll until the selection fits
        while grouped and self.scroll_offset < snap.selected_index and \
                snap.selected_index not in {idx for idx, _ in window}:
            self.scroll_offset += 1
            window = self._window(snap.containers, self.scroll_offset, list_height, grouped)

        lines = [f"[bold]{rich_escape(self._header(snap.list_view_mode))}[/]"]
        for idx, item in window:
            if idx is None:
                lines.append(f"[bold]{rich_escape(item)}[/]")
                continue
            row = rich_escape(self._row(snap.list_view_mode, item))
            if idx == snap.selected_index:
                row = f"[reverse]{row}[/]"
            elif item.is_tombstoned:
                row = f"[dim]{row}[/]"
            lines.append(row)
        if not window:
            lines.append("(no containers)" if not snap.total else "(nothing matches the filter)")
        return "\n".join(lines)

    def _render_logs(self, nav: LogsView) -> str:
        lines = list(nav.session.lines)
        height = self._page_height()
        if nav.session.follow:
            window = lines[-height:]
        else:
            window = lines[nav.session.scroll:nav.session.scroll + height]
        if not window:
            return "(waiting for logs)"
        return "\n".join(window)

    def _render_exec(self, nav: ExecView) -> Text:
        text = bytes(nav.session.output).decode("utf-8", errors="replace")
        tail = "\n".join(text.splitlines()[-self._page_height():])
        return Text.from_ansi(tail)

    def _render_create(self, nav: CreateModal) -> str:
        form = nav.form
        hints = {
            "ports": "host:container, comma separated",
            "env": "KEY=value, comma separated",
            "volumes": "host:container, comma separated",
        }
        lines = []
        for idx, name in enumerate(CREATE_FIELDS):
            marker = ">" if idx == self.create_field else " "
            value = rich_escape(form.values.get(name, ""))
            hint = f"  [dim]{hints[name]}[/]" if name in hints else ""
            lines.append(f"{marker} {name:8} [b]{value}[/]{'_' if idx == self.create_field else ''}{hint}")
        if self.image_picker is not None:
            lines += ["", "[b]Select image[/]"]
            if not form.images:
                lines.append("  No images found. Pull an image first.")
            for idx, image in enumerate(form.images):
                entry = f"  {rich_escape(image)}"
                lines.append(f"[reverse]{entry}[/]" if idx == self.image_picker else entry)
            lines += ["", "[dim][Up/Down] Choose  [Enter] Use image  [Esc] Back[/]"]
            return "\n".join(lines)
        if form.error:
            lines += ["", f"[red]{rich_escape(form.error)}[/]"]
        if CREATE_FIELDS[self.create_field] == "image":
            lines += ["", "[dim][Tab] Browse images  [Down] Next field  [Enter] Create  [Esc] Cancel[/]"]
        else:
            lines += ["", "[dim][Tab] Next field  [Enter] Create  [Esc] Cancel[/]"]
        return "\n".join(lines)

    def _render_status(self, snap: ViewSnapshot) -> str:
        parts = []
        if self.is_filtering or snap.filter_text:
            parts.append(f"FILTER: {snap.filter_text}{'_' if self.is_filtering else ''}")
        parts.append(f"SHOW: {snap.status_filter.value}")
        if snap.busy:
            parts.append("working...")
        if snap.status:
            parts.append(snap.status)
        return "  ".join(parts)

    # --- Actions ---

    def _nav(self):
        return self.snapshot.navigation if self.snapshot else ListView()

    def _selected(self) -> Optional[ContainerRecord]:
        return self.snapshot.selected if self.snapshot else None

    def action_help(self) -> None:
        self.post(ev.HelpOpened())

    def action_logs(self) -> None:
        self.post(ev.OpenLogs())

    def action_exec(self) -> None:
        self.post(ev.OpenExec())

    def action_create(self) -> None:
        self.create_field = 0
        self.create_draft = {name: "" for name in CREATE_FIELDS}
        self.image_picker = None
        self.post(ev.CreateModalOpened())

    def action_start_filter(self) -> None:
        self.is_filtering = True
        self.filter_draft = self.snapshot.filter_text if self.snapshot else ""
        self._render()

    def _confirm_command(self, action: str, question: str) -> None:
        selected = self._selected()
        if selected is None or selected.is_tombstoned:
            return
        container_id = selected.id

        def done(confirmed: Optional[bool]) -> None:
            if confirmed:
                self.post(ev.RunCommand(action, container_id))

        self.push_screen(ConfirmScreen(question), done)

    def _send_exec_size(self) -> None:
        if self._exec_session is None:
            return
        body = self.query_one("#body", Static)
        rows, cols = body.size.height - 2, body.size.width - 4
        if rows > 0 and cols > 0:
            self.post(ev.ExecResize(rows, cols))

    async def on_key(self, event: events.Key) -> None:
        if len(self.screen_stack) > 1 or self.snapshot is None:
            return
        nav = self._nav()
        if isinstance(nav, ExecView):
            self._exec_key(event)
        elif isinstance(nav, LogsView):
            self._logs_key(event)
        elif isinstance(nav, CreateModal):
            self._create_key(event, nav)
        elif isinstance(nav, HelpModal):
            if event.key in ("escape", "question_mark", "q", "enter"):
                self.post(ev.ModalClosed())
            event.stop()
        elif self.is_filtering:
            self._filter_key(event)
        else:
            self._list_key(event)

    def _filter_key(self, event: events.Key) -> None:
        text = self.filter_draft
        if event.key == "escape":
            self.is_filtering = False
            text = ""
        elif event.key == "enter":
            self.is_filtering = False
        elif event.key == "backspace":
            text = text[:-1]
        elif event.character and event.character.isprintable():
            text += event.character
        self.filter_draft = text
        self.post(ev.FilterChanged(text))
        self._render()
        event.stop()

    def _list_key(self, event: events.Key) -> None:
        key = event.key
        char = event.character
        selected = self._selected()
        if key in ("down", "j"):
            self.post(ev.SelectionMoved(1))
        elif key in ("up", "k"):
            self.post(ev.SelectionMoved(-1))
        elif key == "pagedown":
            self.post(ev.SelectionMoved(self._page_height()))
        elif key == "pageup":
            self.post(ev.SelectionMoved(-self._page_height()))
        elif char == "g" or key == "home":
            self.post(ev.SelectionJumped(to_end=False))
        elif char == "G" or key == "end":
            self.post(ev.SelectionJumped(to_end=True))
        elif char == "l":
            self.post(ev.OpenLogs())
        elif key in ("right", "tab"):
            self.post(ev.ListViewModeCycled(1))
        elif key in ("left", "shift+tab") or char == "h":
            self.post(ev.ListViewModeCycled(-1))
        elif char == "f":
            self.post(ev.StatusFilterCycled())
        elif char == "r":
            self.post(ev.RefreshRequested())
        elif char == "s":
            self.post(ev.RunCommand("start"))
        elif char == "R":
            self.post(ev.RunCommand("restart"))
        elif char == "x":
            if selected is not None:
                self._confirm_command("stop", f"Stop container {selected.name}?")
        elif char == "d":
            if selected is not None:
                self._confirm_command("remove", f"Remove container {selected.name}? This cannot be undone.")
        elif char == "p":
            if selected is not None and selected.state == ContainerState.RUNNING:
                self.post(ev.RunCommand("pause"))
        elif char == "P":
            if selected is not None and selected.state == ContainerState.PAUSED:
                self.post(ev.RunCommand("unpause"))
        else:
            return
        event.stop()

    def _logs_key(self, event: events.Key) -> None:
        key = event.key
        page = self._page_height()
        if key == "escape":
            self.post(ev.CloseSession())
        elif key in ("down", "j"):
            self.post(ev.LogsScrolled(1, page))
        elif key in ("up", "k"):
            self.post(ev.LogsScrolled(-1, page))
        elif key == "pagedown":
            self.post(ev.LogsScrolled(page, page))
        elif key == "pageup":
            self.post(ev.LogsScrolled(-page, page))
        elif event.character == "g" or key == "home":
            self.post(ev.LogsScrolled(-10 ** 9, page))
        elif event.character == "G" or key == "end":
            self.post(ev.LogsFollow())
        else:
            return
        event.stop()

    def _exec_key(self, event: events.Key) -> None:
        if event.key == "escape":
            self.post(ev.CloseSession())
        elif event.key in EXEC_KEYS:
            self.post(ev.ExecInput(EXEC_KEYS[event.key]))
        elif event.character:
            self.post(ev.ExecInput(event.character.encode("utf-8")))
        else:
            return
        event.prevent_default()
        event.stop()

    def _picker_key(self, event: events.Key, images) -> None:
        if event.key == "escape":
            self.image_picker = None
        elif event.key == "enter":
            if images:
                self.create_draft["image"] = images[self.image_picker % len(images)]
                self.post(ev.CreateFieldEdited("image", self.create_draft["image"]))
            self.image_picker = None
        elif event.key in ("down", "j", "tab") and images:
            self.image_picker = (self.image_picker + 1) % len(images)
        elif event.key in ("up", "k", "shift+tab") and images:
            self.image_picker = (self.image_picker - 1) % len(images)
        self._render()
        event.prevent_default()
        event.stop()

    def _create_key(self, event: events.Key, nav: CreateModal) -> None:
        if self.image_picker is not None:
            self._picker_key(event, nav.form.images)
            return
        field = CREATE_FIELDS[self.create_field]
        value = self.create_draft.get(field, "")
        if event.key == "escape":
            self.post(ev.ModalClosed())
        elif event.key == "enter":
            self.post(ev.SubmitCreate())
        elif event.key == "tab" and field == "image":
            self.image_picker = 0
            self._render()
        elif event.key in ("tab", "down"):
            self.create_field = (self.create_field + 1) % len(CREATE_FIELDS)
            self._render()
        elif event.key in ("shift+tab", "up"):
            self.create_field = (self.create_field - 1) % len(CREATE_FIELDS)
            self._render()
        elif event.key == "backspace":
            self.create_draft[field] = value[:-1]
            self.post(ev.CreateFieldEdited(field, value[:-1]))
        elif event.character and event.character.isprintable():
            self.create_draft[field] = value + event.character
            self.post(ev.CreateFieldEdited(field, value + event.character))
        else:
            return
        event.prevent_default()
        event.stop()

    def check_action(self, action: str, parameters: tuple[object, ...]) -> bool:
        # If a modal screen is active, app-level bindings must not steal keys.
        if len(self.screen_stack) > 1:
            return False
        # Outside the list view (and while filtering) on_key owns every key.
        if self.is_filtering or not isinstance(self._nav(), ListView):
            return False
        return True


def run(config: Optional[AppConfig] = None) -> None:
    app = BackplaneApp(config)
    app.run()
