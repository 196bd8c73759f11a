import asyncio
import time

from backplane import events as ev
from backplane.dispatcher import Dispatcher
from backplane.errors import CommandFailed, ContainerGone
from backplane.model import CreateModal, ExecView, HelpModal, ListView, LogsView

from conftest import make_record


def scenario_runner(backend, config, scenario, clock=time.monotonic):
    renders = []

    async def main():
        dispatcher = Dispatcher(backend, renders.append, config, clock=clock)
        dispatcher.channel.bind(asyncio.get_running_loop())
        try:
            await scenario(dispatcher, renders)
        finally:
            await dispatcher.shutdown()

    asyncio.run(main())
    return renders


async def settle(dispatcher, predicate, timeout=2.0):
    deadline = time.monotonic() + timeout
    while not predicate():
        if time.monotonic() > deadline:
            raise AssertionError("dispatcher did not reach the expected state")
        await dispatcher.step()
        await asyncio.sleep(0)


async def seed(dispatcher, *records):
    for record in records:
        dispatcher.post(ev.ContainerAdded(record))
    await dispatcher.step()


def test_command_success_reports_and_refreshes(backend, config, mocker):
    async def scenario(d, renders):
        refresh = mocker.patch.object(d.sources, "request_refresh")
        await seed(d, make_record("a", "alpha"))
        d.post(ev.RunCommand("start", "a"))
        await settle(d, lambda: d.store.state.status == "start alpha: done")
        assert backend.calls == [("start", "a")]
        assert not d.store.state.pending_commands
        refresh.assert_called()

    scenario_runner(backend, config, scenario)


def test_command_failure_becomes_status(backend, config):
    backend.command_error = CommandFailed("conflict")

    async def scenario(d, renders):
        await seed(d, make_record("a", "alpha"))
        d.post(ev.RunCommand("stop"))
        await settle(d, lambda: "failed" in d.store.state.status)
        assert backend.calls == [("stop", "a")]
        assert d.store.state.status == "stop alpha failed: conflict"

    scenario_runner(backend, config, scenario)


def test_unknown_command_is_ignored(backend, config):
    async def scenario(d, renders):
        await seed(d, make_record("a"))
        d.post(ev.RunCommand("explode", "a"))
        await d.step()
        assert backend.calls == []
        assert not d.store.state.pending_commands

    scenario_runner(backend, config, scenario)


def test_logs_open_and_close(backend, config):
    backend.log_lines["a"] = ["hello"]

    async def scenario(d, renders):
        await seed(d, make_record("a"))
        d.post(ev.OpenLogs())
        await settle(d, lambda: isinstance(d.store.state.navigation, LogsView)
                     and list(d.store.state.navigation.session.lines) == ["hello"])

        d.post(ev.CloseSession())
        await settle(d, lambda: isinstance(d.store.state.navigation, ListView))
        assert d.sessions.handles() == []
        assert backend.log_streams["a"][0].closed

    scenario_runner(backend, config, scenario)


def test_container_removal_closes_its_session(backend, config):
    async def scenario(d, renders):
        await seed(d, make_record("a"))
        d.post(ev.OpenLogs())
        await settle(d, lambda: isinstance(d.store.state.navigation, LogsView))

        d.post(ev.ContainerRemoved("a", observed_at=time.monotonic()))
        await settle(d, lambda: not d.sessions.handles())
        assert isinstance(d.store.state.navigation, ListView)
        assert backend.log_streams["a"][0].closed

    scenario_runner(backend, config, scenario)


def test_session_opened_off_list_is_closed(backend, config):
    async def scenario(d, renders):
        await seed(d, make_record("a"))
        d.post(ev.HelpOpened())
        await d.step()
        handle = await d.sessions.open_logs("a")
        await settle(d, lambda: handle.ended)
        assert isinstance(d.store.state.navigation, HelpModal)

    scenario_runner(backend, config, scenario)


def test_exec_into_stopped_container_fails_closed(backend, config):
    async def scenario(d, renders):
        await seed(d, make_record("a", "alpha", state="exited"))
        d.post(ev.OpenExec())
        await settle(d, lambda: "not running" in d.store.state.status)
        assert isinstance(d.store.state.navigation, ListView)
        assert backend.exec_attempts == []

    scenario_runner(backend, config, scenario)


def test_exec_without_shell_reports_error(backend, config):
    backend.usable_shells = set()

    async def scenario(d, renders):
        await seed(d, make_record("a"))
        d.post(ev.OpenExec())
        await settle(d, lambda: "No usable shell" in d.store.state.status)
        assert isinstance(d.store.state.navigation, ListView)
        assert backend.exec_attempts == config.sessions.exec_shells

    scenario_runner(backend, config, scenario)


def test_exec_input_reaches_shell_in_order(backend, config):
    async def scenario(d, renders):
        await seed(d, make_record("a"))
        d.post(ev.OpenExec())
        await settle(d, lambda: isinstance(d.store.state.navigation, ExecView))
        for ch in b"ls\r":
            d.post(ev.ExecInput(bytes([ch])))
        pty = backend.ptys[0]
        await settle(d, lambda: b"".join(pty.written) == b"ls\r")

        pty.feed(b"file.txt\r\n")
        await settle(d, lambda: bytes(d.store.state.navigation.session.output) == b"file.txt\r\n")

        pty.exit()
        await settle(d, lambda: isinstance(d.store.state.navigation, ListView))
        assert d.sessions.active_exec is None

    scenario_runner(backend, config, scenario)


def test_create_form_validation_and_submit(backend, config):
    async def scenario(d, renders):
        d.post(ev.CreateModalOpened())
        d.post(ev.SubmitCreate())
        await settle(d, lambda: isinstance(d.store.state.navigation, CreateModal)
                     and d.store.state.navigation.form.error == "Image is required")

        d.post(ev.CreateFieldEdited("image", "redis:7"))
        d.post(ev.CreateFieldEdited("ports", "6380:6379"))
        d.post(ev.SubmitCreate())
        await settle(d, lambda: d.store.state.status.startswith("Created container"))
        assert isinstance(d.store.state.navigation, ListView)
        spec = backend.calls[0][1]
        assert spec.image == "redis:7"
        assert spec.ports == ((6380, 6379),)

    scenario_runner(backend, config, scenario)


def test_render_is_rate_limited(backend, config):
    config.refresh.render_interval = 0.25
    now = [100.0]

    async def scenario(d, renders):
        await seed(d, make_record("a"))
        assert len(renders) == 1

        d.post(ev.SelectionMoved(1))
        d.post(ev.ListViewModeCycled(1))
        await d.step()
        assert len(renders) == 1

        now[0] += 0.3
        await d.step()
        assert len(renders) == 2
        assert renders[-1].list_view_mode.value == "network"

    scenario_runner(backend, config, scenario, clock=lambda: now[0])


def test_run_renders_inventory_and_shuts_down(backend, config):
    backend.containers = [make_record("a", "alpha")]

    async def scenario(d, renders):
        task = asyncio.create_task(d.run())
        deadline = time.monotonic() + 2.0
        while not any(r.total == 1 for r in renders):
            assert time.monotonic() < deadline
            await asyncio.sleep(0.01)
        d.post(ev.OpenLogs())
        while not d.sessions.handles():
            assert time.monotonic() < deadline
            await asyncio.sleep(0.01)

        d.stop()
        await asyncio.wait_for(task, 2.0)
        assert not d.sources.running
        assert d.sessions.handles() == []

    scenario_runner(backend, config, scenario)


def test_removal_cascade_ends_session_exactly_once(backend, config, mocker):
    async def scenario(d, renders):
        await seed(d, make_record("a", "alpha"))
        d.post(ev.OpenLogs())
        await settle(d, lambda: isinstance(d.store.state.navigation, LogsView))
        apply = mocker.spy(d.store, "apply")

        d.post(ev.ContainerRemoved("a", observed_at=time.monotonic()))
        await settle(d, lambda: not d.sessions.handles())
        for _ in range(5):
            await d.step()
            await asyncio.sleep(0.01)

        ended = [c.args[-1] for c in apply.call_args_list if isinstance(c.args[-1], ev.SessionEnded)]
        assert [e.reason for e in ended] == ["container removed"]
        assert d.store.state.status == "alpha: container removed, session closed"

    scenario_runner(backend, config, scenario)


def test_log_open_failure_becomes_status(backend, config):
    backend.log_error = ContainerGone("a", "no such container")

    async def scenario(d, renders):
        await seed(d, make_record("a", "alpha"))
        d.post(ev.OpenLogs())
        await settle(d, lambda: d.store.state.status.startswith("Logs of alpha failed"))
        assert isinstance(d.store.state.navigation, ListView)
        assert d.sessions.handles() == []

    scenario_runner(backend, config, scenario)


def test_exec_input_follows_reopened_shell(backend, config):
    backend.write_delay = 0.3

    async def scenario(d, renders):
        await seed(d, make_record("a"))
        d.post(ev.OpenExec())
        await settle(d, lambda: isinstance(d.store.state.navigation, ExecView))
        first = d.store.state.navigation.session.session_id
        d.post(ev.ExecInput(b"a"))
        await d.step()
        await asyncio.sleep(0.02)

        # The first shell exits while its write is still in flight
        backend.ptys[0].exit()
        await settle(d, lambda: isinstance(d.store.state.navigation, ListView))
        d.post(ev.OpenExec())
        await settle(d, lambda: isinstance(d.store.state.navigation, ExecView)
                     and d.store.state.navigation.session.session_id != first)

        d.post(ev.ExecInput(b"b"))
        await settle(d, lambda: backend.ptys[1].written == [b"b"])

    scenario_runner(backend, config, scenario)


def test_create_modal_offers_local_images(backend, config):
    backend.images = ["nginx:latest", "redis:7"]

    async def scenario(d, renders):
        d.post(ev.CreateModalOpened())
        await settle(d, lambda: isinstance(d.store.state.navigation, CreateModal)
                     and d.store.state.navigation.form.images == ["nginx:latest", "redis:7"])

    scenario_runner(backend, config, scenario)


def test_image_listing_failure_leaves_picker_empty(backend, config):
    backend.images_error = CommandFailed("daemon said no")

    async def scenario(d, renders):
        d.post(ev.CreateModalOpened())
        await settle(d, lambda: isinstance(d.store.state.navigation, CreateModal))
        for _ in range(3):
            await d.step()
            await asyncio.sleep(0.01)
        assert d.store.state.navigation.form.images == []
        assert d.store.state.navigation.form.error == ""

    scenario_runner(backend, config, scenario)
