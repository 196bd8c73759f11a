"""
Error taxonomy for backplane.

Every call into the container runtime may fail independently. The adapter
translates docker-py exceptions into these types so producers and the
dispatcher can degrade per source instead of crashing:

  - DaemonUnreachable: the daemon socket is down; global banner, retried
    on the next poll cycle.
  - ContainerGone: the container no longer exists; the record is tombstoned.
  - CommandFailed: a user command (start/stop/...) was rejected.
  - StreamInterrupted: a log or exec stream broke; the session just ends.
  - ExecError: an exec session could not be opened.
"""


class BackplaneError(Exception):
    """Base class for all backplane errors."""


class DaemonUnreachable(BackplaneError):
    """The container runtime could not be reached."""


class ContainerGone(BackplaneError):
    """The referenced container does not exist (anymore)."""

    def __init__(self, container_id: str, message: str = ""):
        super().__init__(message or f"Container {container_id[:12]} not found")
        self.container_id = container_id


class CommandFailed(BackplaneError):
    """A container command was rejected by the runtime."""


class StreamInterrupted(BackplaneError):
    """A log or exec stream ended unexpectedly."""


class ExecError(BackplaneError):
    """An exec session could not be opened."""


class NoShellAvailable(ExecError):
    def __init__(self, container_id: str, shells):
        self.container_id = container_id
        self.shells = list(shells)
        super().__init__(
            f"No usable shell in {container_id[:12]} (tried {', '.join(self.shells) or 'nothing'})"
        )


class SessionAlreadyActive(ExecError):
    def __init__(self, container_id: str):
        self.container_id = container_id
        super().__init__(f"An exec session is already attached to {container_id[:12]}")
