"""
Docker API wrapper: the runtime client adapter.

This module provides the only code in backplane that talks to the daemon,
via the docker-py library. It returns typed snapshots (ContainerRecord,
StatsSample, HostMetrics) or raw streams (LogStream, PtySession):

  - Inventory: list_containers(), list_images()
  - Monitoring: get_stats(), get_host_metrics(), get_container_gpu_usage()
  - Streams: stream_logs(), exec_create()
  - Actions: start, stop, restart, remove, pause, unpause, create

Every call is independently failable. Unlike a fail-safe wrapper that hides
errors behind empty defaults, the @docker_errors decorator translates
docker-py exceptions into backplane.errors types and re-raises them, so the
pollers can tell "daemon down" from "container gone" from "no containers".

Error Handling:
  - docker.errors.NotFound -> ContainerGone
  - docker.errors.APIError -> CommandFailed
  - connection problems (DockerException, OSError) -> DaemonUnreachable
  - client could not be created -> DaemonUnreachable, retried on next call

Dependencies:
  - docker>=7.0.0 (docker-py client, low-level APIClient for exec/logs)
  - psutil (host metrics, see hostinfo.py)
"""

import functools
import logging
import re
import socket
import time
from typing import Any, Callable, Dict, Iterator, List, Optional

import docker

from .errors import BackplaneError, CommandFailed, ContainerGone, DaemonUnreachable, StreamInterrupted
from .hostinfo import collect_host_metrics, container_gpu_memory
from .model import ContainerRecord, ContainerState, CreateSpec, HostMetrics, PortBinding, StatsSample
from .stats import sample_from_raw

logger = logging.getLogger(__name__)

_CONTROL_CHARS = re.compile(r"[\x00-\x08\x0b-\x1f\x7f]")


def docker_errors(func: Callable) -> Callable:
    """
    Decorator for Docker API methods that translates failures.

    The first positional argument, when present, is taken as the container
    id for ContainerGone.
    """
    @functools.wraps(func)
    def wrapper(self, *args, **kwargs) -> Any:
        target = args[0] if args and isinstance(args[0], str) else ""
        try:
            return func(self, *args, **kwargs)
        except BackplaneError:
            raise
        except docker.errors.NotFound as e:
            raise ContainerGone(target, str(e.explanation or e)) from e
        except docker.errors.APIError as e:
            logger.error(f"Docker operation failed in {func.__name__}: {e}")
            raise CommandFailed(str(e.explanation or e)) from e
        except (docker.errors.DockerException, OSError) as e:
            logger.warning(f"Docker daemon unreachable in {func.__name__}: {e}")
            self.client = None
            raise DaemonUnreachable(str(e)) from e
    return wrapper


def parse_ports(raw_ports: List[Dict[str, Any]]) -> tuple:
    """Port list from the container list API, IPv4/IPv6 duplicates merged."""
    seen = set()
    res = []
    for p in raw_ports or []:
        private = p.get('PrivatePort')
        if private is None:
            continue
        binding = PortBinding(
            container_port=int(private),
            protocol=p.get('Type') or 'tcp',
            host_port=int(p['PublicPort']) if p.get('PublicPort') else None,
            host_ip=p.get('IP', ''),
        )
        key = (binding.container_port, binding.protocol, binding.host_port)
        if key in seen:
            continue
        seen.add(key)
        res.append(binding)
    res.sort(key=lambda b: (b.container_port, b.protocol, b.host_port or 0))
    return tuple(res)


def record_from_summary(summary: Dict[str, Any]) -> ContainerRecord:
    names = summary.get('Names') or []
    name = names[0].lstrip('/') if names else summary.get('Id', '')[:12]
    labels = summary.get('Labels') or {}
    return ContainerRecord(
        id=summary.get('Id', ''),
        name=name,
        image=summary.get('Image', '') or 'unknown',
        state=ContainerState.parse(summary.get('State')),
        ports=parse_ports(summary.get('Ports')),
        project=labels.get('com.docker.compose.project', 'standalone'),
        created=summary.get('Created'),
    )


class LogStream:
    """Decoded, line-oriented view over a docker log stream."""

    def __init__(self, raw):
        self._raw = raw
        self._closed = False

    def __iter__(self) -> Iterator[str]:
        buffer = b""
        for chunk in self._raw:
            if self._closed:
                return
            if isinstance(chunk, str):
                chunk = chunk.encode('utf-8', errors='replace')
            buffer += chunk
            *lines, buffer = buffer.split(b"\n")
            for line in lines:
                yield clean_line(line)
        if buffer and not self._closed:
            yield clean_line(buffer)

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        try:
            self._raw.close()
        except Exception as e:
            logger.debug(f"Closing log stream: {e}")


def clean_line(raw: bytes) -> str:
    text = raw.decode('utf-8', errors='replace').rstrip("\r")
    return _CONTROL_CHARS.sub("", text)


class PtySession:
    """Raw socket attached to an exec'd process with a pseudo-terminal."""

    def __init__(self, api, exec_id: str, sock, shell: str):
        self._api = api
        self.exec_id = exec_id
        self.shell = shell
        self._sock = getattr(sock, '_sock', sock)
        self._closed = False

    def read(self, size: int = 4096) -> bytes:
        if self._closed:
            return b""
        try:
            return self._sock.recv(size)
        except OSError:
            return b""

    def write(self, data: bytes) -> None:
        if self._closed:
            raise BrokenPipeError("exec session closed")
        self._sock.sendall(data)

    def resize(self, rows: int, cols: int) -> None:
        try:
            self._api.exec_resize(self.exec_id, height=rows, width=cols)
        except (docker.errors.DockerException, OSError) as e:
            raise StreamInterrupted(f"resize failed: {e}") from e

    def exit_code(self) -> Optional[int]:
        try:
            return self._api.exec_inspect(self.exec_id).get('ExitCode')
        except Exception as e:
            logger.debug(f"exec_inspect failed: {e}")
            return None

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        try:
            self._sock.shutdown(socket.SHUT_RDWR)
        except OSError:
            pass
        try:
            self._sock.close()
        except OSError:
            pass


class DockerBackend:
    def __init__(self, stop_timeout: int = 10):
        self.stop_timeout = stop_timeout
        self.client = None
        try:
            self.client = docker.from_env()
        except Exception as e:
            logger.warning(f"Docker not available at startup: {e}")

    def _api(self):
        if self.client is None:
            # Retry on every call so a daemon that comes back is picked up
            try:
                self.client = docker.from_env()
            except docker.errors.DockerException as e:
                raise DaemonUnreachable(str(e)) from e
        return self.client.api

    @docker_errors
    def list_containers(self) -> List[ContainerRecord]:
        raw = self._api().containers(all=True)
        res = [record_from_summary(c) for c in raw]
        res.sort(key=lambda r: (r.name, r.id))
        return res

    @docker_errors
    def get_stats(self, container_id: str) -> StatsSample:
        raw = self._api().stats(container_id, stream=False)
        return sample_from_raw(raw, time.monotonic())

    def get_host_metrics(self) -> HostMetrics:
        return collect_host_metrics()

    def get_container_gpu_usage(self) -> Dict[str, float]:
        return container_gpu_memory()

    @docker_errors
    def list_images(self) -> List[str]:
        """Sorted local image tags, untagged images left out."""
        tags = set()
        for image in self._api().images():
            repo_tags = [t for t in (image.get('RepoTags') or []) if t != '<none>:<none>']
            if repo_tags:
                tags.add(repo_tags[0])
        return sorted(tags)

    @docker_errors
    def stream_logs(self, container_id: str, tail: int = 500) -> LogStream:
        raw = self._api().logs(container_id, stream=True, follow=True, stdout=True, stderr=True, tail=tail)
        return LogStream(raw)

    @docker_errors
    def exec_create(self, container_id: str, shell: str) -> PtySession:
        api = self._api()
        exec_id = api.exec_create(
            container_id, [shell], stdin=True, tty=True,
            environment={"TERM": "xterm-256color"},
        )['Id']
        sock = api.exec_start(exec_id, tty=True, socket=True)
        pty = PtySession(api, exec_id, sock, shell)
        # A missing shell exits right away with 126/127
        for _ in range(6):
            info = api.exec_inspect(exec_id)
            if info.get('Running'):
                return pty
            code = info.get('ExitCode')
            if code is not None and not info.get('Running'):
                if code != 0:
                    pty.close()
                    raise CommandFailed(f"{shell} exited with code {code}")
                break
            time.sleep(0.05)
        return pty

    # Actions
    @docker_errors
    def start(self, container_id: str) -> None:
        self._api().start(container_id)

    @docker_errors
    def stop(self, container_id: str) -> None:
        self._api().stop(container_id, timeout=self.stop_timeout)

    @docker_errors
    def restart(self, container_id: str) -> None:
        self._api().restart(container_id, timeout=self.stop_timeout)

    @docker_errors
    def remove(self, container_id: str) -> None:
        self._api().remove_container(container_id, force=True)

    @docker_errors
    def pause(self, container_id: str) -> None:
        self._api().pause(container_id)

    @docker_errors
    def unpause(self, container_id: str) -> None:
        self._api().unpause(container_id)

    @docker_errors
    def create(self, spec: CreateSpec) -> str:
        self._api()
        container = self.client.containers.create(
            spec.image,
            name=spec.name or None,
            command=spec.command or None,
            environment=list(spec.env) or None,
            ports={f"{c}/tcp": h for h, c in spec.ports} or None,
            volumes=list(spec.volumes) or None,
            restart_policy={"Name": "unless-stopped"},
            tty=True,
            stdin_open=True,
            detach=True,
        )
        container.start()
        return container.id
