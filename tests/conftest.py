"""Shared fakes: a scripted runtime backend, a blocking log stream and a fake pty."""

import asyncio
import queue
import time
from dataclasses import replace

import pytest

from backplane.config import AppConfig
from backplane.errors import CommandFailed, ContainerGone
from backplane.model import ContainerRecord, ContainerState, HostMetrics, PortBinding, StatsSample

_END = object()


def make_record(cid, name=None, state="running", image="nginx:latest", ports=()):
    return ContainerRecord(
        id=cid,
        name=name or cid,
        image=image,
        state=ContainerState.parse(state),
        ports=tuple(PortBinding(c, "tcp", h) for h, c in ports),
    )


def make_sample(ts, cpu=10.0, mem=100, limit=1000, rx=0, tx=0):
    return StatsSample(cpu_percent=cpu, memory_used=mem, memory_limit=limit, rx_bytes=rx, tx_bytes=tx, timestamp=ts)


class FakeLogStream:
    """Blocks like a followed docker log stream until fed, ended or closed."""

    def __init__(self, lines=()):
        self._queue = queue.Queue()
        self.closed = False
        for line in lines:
            self.feed(line)

    def feed(self, line):
        self._queue.put(line)

    def end(self):
        self._queue.put(_END)

    def __iter__(self):
        while True:
            item = self._queue.get()
            if item is _END or self.closed:
                return
            yield item

    def close(self):
        self.closed = True
        self._queue.put(_END)


class FakePty:
    def __init__(self, shell, write_delay=0.0):
        self.shell = shell
        self.write_delay = write_delay
        self._queue = queue.Queue()
        self.written = []
        self.sizes = []
        self.closed = False

    def feed(self, data):
        self._queue.put(data)

    def exit(self):
        self._queue.put(b"")

    def read(self, size=4096):
        if self.closed:
            return b""
        return self._queue.get()

    def write(self, data):
        if self.write_delay:
            time.sleep(self.write_delay)
        if self.closed:
            raise BrokenPipeError("closed")
        self.written.append(data)

    def resize(self, rows, cols):
        self.sizes.append((rows, cols))

    def close(self):
        self.closed = True
        self._queue.put(b"")


class FakeBackend:
    def __init__(self):
        self.containers = []
        self.stats = {}
        self.list_error = None
        self.command_error = None
        self.usable_shells = {"/bin/bash", "/bin/sh"}
        self.exec_attempts = []
        self.ptys = []
        self.log_streams = {}
        self.log_lines = {}
        self.log_delay = 0.0
        self.log_error = None
        self.write_delay = 0.0
        self.images = []
        self.images_error = None
        self.gpu_usage = {}
        self.calls = []
        self.host = HostMetrics(cpu_percent=12.5, memory_used=4, memory_total=16, disk_used=1, disk_total=10)

    def list_containers(self):
        if self.list_error is not None:
            raise self.list_error
        return [replace(c) for c in self.containers]

    def get_stats(self, container_id):
        value = self.stats.get(container_id)
        if isinstance(value, Exception):
            raise value
        if value is None:
            raise ContainerGone(container_id)
        return value

    def get_host_metrics(self):
        return self.host

    def get_container_gpu_usage(self):
        return dict(self.gpu_usage)

    def list_images(self):
        if self.images_error is not None:
            raise self.images_error
        return list(self.images)

    def stream_logs(self, container_id, tail=500):
        if self.log_delay:
            time.sleep(self.log_delay)
        if self.log_error is not None:
            raise self.log_error
        stream = FakeLogStream(self.log_lines.get(container_id, ()))
        self.log_streams.setdefault(container_id, []).append(stream)
        return stream

    def exec_create(self, container_id, shell):
        self.exec_attempts.append(shell)
        if shell not in self.usable_shells:
            raise CommandFailed(f"{shell} exited with code 127")
        pty = FakePty(shell, self.write_delay)
        self.ptys.append(pty)
        return pty

    def _command(self, action, *args):
        self.calls.append((action,) + args)
        if self.command_error is not None:
            raise self.command_error

    def start(self, container_id):
        self._command("start", container_id)

    def stop(self, container_id):
        self._command("stop", container_id)

    def restart(self, container_id):
        self._command("restart", container_id)

    def remove(self, container_id):
        self._command("remove", container_id)

    def pause(self, container_id):
        self._command("pause", container_id)

    def unpause(self, container_id):
        self._command("unpause", container_id)

    def create(self, spec):
        self._command("create", spec)
        return "f00dfeed" * 8


async def wait_until(predicate, timeout=2.0):
    """Yield to the loop (and reader threads) until predicate() holds."""
    deadline = time.monotonic() + timeout
    while not predicate():
        if time.monotonic() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.01)


@pytest.fixture
def backend():
    return FakeBackend()


@pytest.fixture
def config():
    cfg = AppConfig()
    cfg.refresh.render_interval = 0.01
    cfg.refresh.inventory_interval = 0.05
    cfg.refresh.stats_interval = 0.05
    cfg.refresh.host_interval = 0.05
    return cfg
