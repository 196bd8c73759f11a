"""
Data models for backplane.

This module defines the dataclasses that describe the container runtime as
seen by the dashboard, and the navigation variants of the view state.

Data Classes:
  - ContainerRecord: one container (identity, classification, lifecycle,
    ports) plus the dynamic data it owns (latest/previous stats sample,
    derived network rates, sparkline history, GPU memory, tombstone marker)
  - StatsSample: point-in-time CPU/memory/network counters of a container
  - HostMetrics: system-wide CPU/memory/disk/GPU snapshot
  - CreateSpec: parameters for creating a new container
  - ListView, LogsView, ExecView, CreateModal, HelpModal: navigation state
  - ViewState: the merged, render-ready aggregate owned by the store
  - ViewSnapshot: read-only copy of ViewState handed to the renderer

Key Points:
  - The active session lives inside the navigation variant, so a Logs or
    Exec view without a session cannot be constructed
  - Rates need exactly one prior sample, kept on the record itself so that
    purging a container drops its history too
"""

from collections import deque
from dataclasses import dataclass, field
from enum import Enum
from typing import Deque, Dict, List, Optional, Tuple, Union


class ContainerState(str, Enum):
    CREATED = "created"
    RUNNING = "running"
    PAUSED = "paused"
    RESTARTING = "restarting"
    REMOVING = "removing"
    EXITED = "exited"
    DEAD = "dead"
    UNKNOWN = "unknown"

    @classmethod
    def parse(cls, value: Optional[str]) -> "ContainerState":
        value = (value or "").strip().lower()
        if value == "stopped":
            return cls.EXITED
        try:
            return cls(value)
        except ValueError:
            return cls.UNKNOWN

    @property
    def is_running(self) -> bool:
        return self is ContainerState.RUNNING

    @property
    def is_active(self) -> bool:
        # Paused containers still hold memory
        return self in (ContainerState.RUNNING, ContainerState.PAUSED)


class ListViewMode(str, Enum):
    STATS = "stats"
    NETWORK = "network"
    DETAILS = "details"

    def cycle(self, step: int = 1) -> "ListViewMode":
        modes = list(ListViewMode)
        return modes[(modes.index(self) + step) % len(modes)]


class StatusFilter(str, Enum):
    ALL = "all"
    GROUPS = "groups"  # all, grouped by compose project
    RUNNING = "running"
    STOPPED = "stopped"

    def cycle(self) -> "StatusFilter":
        modes = list(StatusFilter)
        return modes[(modes.index(self) + 1) % len(modes)]

    def matches(self, state: ContainerState) -> bool:
        if self is StatusFilter.RUNNING:
            return state.is_running
        if self is StatusFilter.STOPPED:
            return not state.is_running
        return True

    @property
    def grouped(self) -> bool:
        return self is StatusFilter.GROUPS


@dataclass(frozen=True)
class PortBinding:
    container_port: int
    protocol: str = "tcp"
    host_port: Optional[int] = None
    host_ip: str = ""

    def display(self) -> str:
        if self.host_port is not None:
            return f"{self.host_port}:{self.container_port}/{self.protocol}"
        return f"{self.container_port}/{self.protocol}"


@dataclass(frozen=True)
class StatsSample:
    cpu_percent: float
    memory_used: int
    memory_limit: int
    rx_bytes: int
    tx_bytes: int
    timestamp: float

    @property
    def memory_percent(self) -> float:
        if self.memory_limit <= 0:
            return 0.0
        return self.memory_used / self.memory_limit * 100.0


@dataclass(frozen=True)
class HostMetrics:
    cpu_percent: float
    memory_used: int
    memory_total: int
    disk_used: int
    disk_total: int
    gpu_memory_percent: Optional[float] = None
    timestamp: float = 0.0

    @property
    def memory_percent(self) -> float:
        return self.memory_used / self.memory_total * 100.0 if self.memory_total else 0.0

    @property
    def disk_percent(self) -> float:
        return self.disk_used / self.disk_total * 100.0 if self.disk_total else 0.0


@dataclass
class ContainerRecord:
    id: str
    name: str
    image: str
    state: ContainerState = ContainerState.UNKNOWN
    ports: Tuple[PortBinding, ...] = ()
    project: str = "standalone"
    created: Optional[int] = None

    # Owned dynamic data, never part of inventory diffs
    stats: Optional[StatsSample] = None
    previous_stats: Optional[StatsSample] = None
    rx_rate: Optional[float] = None
    tx_rate: Optional[float] = None
    stats_error: str = ""
    vram_mb: Optional[float] = None
    cpu_history: Deque[float] = field(default_factory=lambda: deque(maxlen=30))
    mem_history: Deque[float] = field(default_factory=lambda: deque(maxlen=30))
    tombstoned_at: Optional[float] = None

    @property
    def short_id(self) -> str:
        return self.id[:12]

    @property
    def kind(self) -> str:
        """'web' when any port is published on the host, 'cli' otherwise."""
        return "web" if any(p.host_port is not None for p in self.ports) else "cli"

    @property
    def is_tombstoned(self) -> bool:
        return self.tombstoned_at is not None

    def identity_fields(self) -> tuple:
        """Inventory part of the record; two refreshes with equal values are no-ops."""
        return (self.id, self.name, self.image, self.state, self.ports, self.project, self.created)

    def clear_stats(self, reason: str = "") -> None:
        self.stats = None
        self.previous_stats = None
        self.rx_rate = None
        self.tx_rate = None
        self.stats_error = reason


@dataclass(frozen=True)
class CreateSpec:
    name: str
    image: str
    ports: Tuple[Tuple[int, int], ...] = ()  # (host, container)
    env: Tuple[str, ...] = ()
    volumes: Tuple[str, ...] = ()
    command: Optional[str] = None


# --- Navigation variants ---

@dataclass
class LogSessionState:
    session_id: str
    container_id: str
    lines: Deque[str] = field(default_factory=lambda: deque(maxlen=1000))
    scroll: int = 0
    follow: bool = True


@dataclass
class ExecSessionState:
    session_id: str
    container_id: str
    shell: str
    output: bytearray = field(default_factory=bytearray)
    alive: bool = True


CREATE_FIELDS = ("name", "image", "ports", "env", "volumes", "command")


@dataclass
class CreateForm:
    values: Dict[str, str] = field(default_factory=lambda: {f: "" for f in CREATE_FIELDS})
    error: str = ""
    # Local image tags offered by the picker
    images: List[str] = field(default_factory=list)

    def to_spec(self) -> CreateSpec:
        """
        Validate the form. Ports are "host:container" pairs, env and volumes
        comma separated. Raises ValueError with a user-facing message.
        """
        image = self.values.get("image", "").strip()
        if not image:
            raise ValueError("Image is required")
        ports = []
        for pair in _split_list(self.values.get("ports", "")):
            host, sep, container = pair.partition(":")
            if not sep:
                host = container = pair
            try:
                mapping = (int(host), int(container))
            except ValueError:
                raise ValueError(f"Invalid port mapping: {pair}")
            if not all(0 < p < 65536 for p in mapping):
                raise ValueError(f"Port out of range: {pair}")
            ports.append(mapping)
        env = _split_list(self.values.get("env", ""))
        for item in env:
            if "=" not in item:
                raise ValueError(f"Invalid env var (expected KEY=value): {item}")
        return CreateSpec(
            name=self.values.get("name", "").strip(),
            image=image,
            ports=tuple(ports),
            env=tuple(env),
            volumes=tuple(_split_list(self.values.get("volumes", ""))),
            command=self.values.get("command", "").strip() or None,
        )


def _split_list(raw: str) -> List[str]:
    return [part.strip() for part in raw.split(",") if part.strip()]


@dataclass
class ListView:
    name: str = "list"


@dataclass
class LogsView:
    session: LogSessionState
    name: str = "logs"


@dataclass
class ExecView:
    session: ExecSessionState
    name: str = "exec"


@dataclass
class CreateModal:
    form: CreateForm = field(default_factory=CreateForm)
    name: str = "create"


@dataclass
class HelpModal:
    name: str = "help"


Navigation = Union[ListView, LogsView, ExecView, CreateModal, HelpModal]


@dataclass
class PendingCommand:
    command_id: str
    action: str
    container_id: Optional[str]


@dataclass
class ViewState:
    containers: List[ContainerRecord] = field(default_factory=list)
    selected_id: Optional[str] = None
    selected_index: int = 0
    list_view_mode: ListViewMode = ListViewMode.STATS
    status_filter: StatusFilter = StatusFilter.ALL
    filter_text: str = ""
    host: Optional[HostMetrics] = None
    navigation: Navigation = field(default_factory=ListView)
    daemon_errors: Dict[str, str] = field(default_factory=dict)
    status: str = ""
    status_at: float = 0.0
    pending_commands: Dict[str, PendingCommand] = field(default_factory=dict)
    version: int = 0


@dataclass(frozen=True)
class ViewSnapshot:
    containers: Tuple[ContainerRecord, ...]
    total: int
    selected_index: int
    selected_id: Optional[str]
    list_view_mode: ListViewMode
    status_filter: StatusFilter
    filter_text: str
    host: Optional[HostMetrics]
    navigation: Navigation
    banner: str
    status: str
    busy: bool
    version: int

    @property
    def selected(self) -> Optional[ContainerRecord]:
        if 0 <= self.selected_index < len(self.containers):
            return self.containers[self.selected_index]
        return None
