"""
Events flowing through the dispatcher's channel.

Producers (pollers, session readers, command tasks) and the UI only ever
talk to the view state through these objects. Each event names its source;
events that only matter in their newest form (stats, host and GPU metrics)
expose a ``coalesce_key`` so the channel can drop stale pending copies.

Intent subclasses are requests for I/O (open a session, run a command).
The dispatcher executes them and feeds the outcome back as ordinary events;
the store never sees an intent.
"""

from dataclasses import dataclass
from typing import Hashable, Optional, Tuple

from .model import ContainerRecord, HostMetrics, StatsSample


@dataclass(frozen=True)
class Event:
    source = "ui"

    @property
    def coalesce_key(self) -> Optional[Hashable]:
        return None


# --- Inventory ---

@dataclass(frozen=True)
class ContainerAdded(Event):
    record: ContainerRecord
    source = "inventory"


@dataclass(frozen=True)
class ContainerUpdated(Event):
    record: ContainerRecord
    source = "inventory"


@dataclass(frozen=True)
class ContainerRemoved(Event):
    container_id: str
    observed_at: float
    source = "inventory"


# --- Stats / host ---

@dataclass(frozen=True)
class StatsSampled(Event):
    container_id: str
    sample: StatsSample
    source = "stats"

    @property
    def coalesce_key(self):
        return ("stats", self.container_id)


@dataclass(frozen=True)
class StatsUnavailable(Event):
    container_id: str
    reason: str = ""
    source = "stats"

    @property
    def coalesce_key(self):
        return ("stats", self.container_id)


@dataclass(frozen=True)
class HostMetricsSampled(Event):
    metrics: HostMetrics
    source = "host"

    @property
    def coalesce_key(self):
        return ("host",)


@dataclass(frozen=True)
class ContainerGpuSampled(Event):
    """VRAM in MB per container id, as seen on the host's GPUs."""
    usage: Tuple[Tuple[str, float], ...]
    source = "host"

    @property
    def coalesce_key(self):
        return ("gpu",)


@dataclass(frozen=True)
class DaemonUnreachable(Event):
    origin: str
    message: str = ""
    source = "health"


@dataclass(frozen=True)
class DaemonRecovered(Event):
    origin: str
    source = "health"


# --- Sessions ---

@dataclass(frozen=True)
class LogSessionOpened(Event):
    session_id: str
    container_id: str
    source = "session"


@dataclass(frozen=True)
class LogLineReceived(Event):
    session_id: str
    line: str
    source = "session"


@dataclass(frozen=True)
class ExecSessionOpened(Event):
    session_id: str
    container_id: str
    shell: str
    source = "session"


@dataclass(frozen=True)
class ExecOutput(Event):
    session_id: str
    data: bytes
    source = "session"


@dataclass(frozen=True)
class LogOpenFailed(Event):
    container_id: str
    reason: str
    source = "session"


@dataclass(frozen=True)
class ExecOpenFailed(Event):
    container_id: str
    reason: str
    source = "session"


@dataclass(frozen=True)
class SessionEnded(Event):
    session_id: str
    container_id: str
    reason: str = "ended"
    source = "session"


# --- User input ---

@dataclass(frozen=True)
class SelectionMoved(Event):
    delta: int


@dataclass(frozen=True)
class SelectionJumped(Event):
    to_end: bool


@dataclass(frozen=True)
class FilterChanged(Event):
    text: str


@dataclass(frozen=True)
class StatusFilterCycled(Event):
    pass


@dataclass(frozen=True)
class ListViewModeCycled(Event):
    step: int = 1


@dataclass(frozen=True)
class LogsScrolled(Event):
    delta: int
    page_height: int = 20


@dataclass(frozen=True)
class LogsFollow(Event):
    pass


@dataclass(frozen=True)
class HelpOpened(Event):
    pass


@dataclass(frozen=True)
class CreateModalOpened(Event):
    pass


@dataclass(frozen=True)
class CreateFieldEdited(Event):
    field: str
    value: str


@dataclass(frozen=True)
class CreateFormRejected(Event):
    error: str


@dataclass(frozen=True)
class ImagesListed(Event):
    images: Tuple[str, ...]
    source = "inventory"


@dataclass(frozen=True)
class ModalClosed(Event):
    pass


# --- Commands ---

@dataclass(frozen=True)
class CommandStarted(Event):
    command_id: str
    action: str
    container_id: Optional[str]
    source = "command"


@dataclass(frozen=True)
class CommandSucceeded(Event):
    command_id: str
    action: str
    container_id: Optional[str]
    message: str = ""
    source = "command"


@dataclass(frozen=True)
class CommandFailed(Event):
    command_id: str
    action: str
    container_id: Optional[str]
    error: str = ""
    source = "command"


@dataclass(frozen=True)
class Tick(Event):
    now: float
    source = "timer"


# --- Intents (dispatcher only) ---

@dataclass(frozen=True)
class Intent(Event):
    pass


@dataclass(frozen=True)
class OpenLogs(Intent):
    pass


@dataclass(frozen=True)
class OpenExec(Intent):
    shells: Tuple[str, ...] = ()


@dataclass(frozen=True)
class CloseSession(Intent):
    pass


@dataclass(frozen=True)
class ExecInput(Intent):
    data: bytes


@dataclass(frozen=True)
class ExecResize(Intent):
    rows: int
    cols: int


@dataclass(frozen=True)
class RunCommand(Intent):
    action: str
    container_id: Optional[str] = None


@dataclass(frozen=True)
class SubmitCreate(Intent):
    pass


@dataclass(frozen=True)
class RefreshRequested(Intent):
    pass
