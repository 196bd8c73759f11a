from dataclasses import replace

from backplane import events as ev
from backplane.model import CreateForm, CreateModal, HostMetrics, ListViewMode
from backplane.store import ViewStateStore
from backplane.textual_app import EXEC_KEYS, BackplaneApp

from conftest import make_record, make_sample


def make_app(backend, config):
    return BackplaneApp(config, backend=backend)


def test_rows_per_list_view_mode(backend, config):
    app = make_app(backend, config)
    store = ViewStateStore(config)
    store.apply(ev.ContainerAdded(make_record("abcdef1234567890", "web", ports=((8080, 80),))))
    store.apply(ev.StatsSampled("abcdef1234567890", make_sample(1.0, cpu=12.5, mem=2048, rx=1024)))
    store.apply(ev.StatsSampled("abcdef1234567890", make_sample(2.0, cpu=12.5, mem=2048, rx=3072)))
    record = store.snapshot().containers[0]

    stats_row = app._row(ListViewMode.STATS, record)
    assert stats_row.startswith("web")
    assert "12.5" in stats_row
    assert "2.0KB" in stats_row
    assert "8080:80/tcp" in stats_row

    network_row = app._row(ListViewMode.NETWORK, record)
    assert "2.0KB/s" in network_row

    details_row = app._row(ListViewMode.DETAILS, record)
    assert "abcdef123456" in details_row
    assert "web " in details_row
    assert "nginx:latest" in details_row


def test_tombstoned_row_shows_removed(backend, config):
    app = make_app(backend, config)
    store = ViewStateStore(config)
    store.apply(ev.ContainerAdded(make_record("a", "gone")))
    store.apply(ev.ContainerRemoved("a", observed_at=1.0))
    row = app._row(ListViewMode.STATS, store.snapshot().containers[0])
    assert "removed" in row
    assert "--" in row


def test_host_line(backend, config):
    app = make_app(backend, config)
    store = ViewStateStore(config)
    assert app._render_host(store.snapshot()) == "host: --"
    store.apply(ev.HostMetricsSampled(HostMetrics(50.0, 512, 1024, 1, 4, gpu_memory_percent=10.0)))
    line = app._render_host(store.snapshot())
    assert "CPU  50.0%" in line
    assert "(50%)" in line
    assert "GPU 10%" in line


def test_headers_match_modes(backend, config):
    app = make_app(backend, config)
    assert "CPU%" in app._header(ListViewMode.STATS)
    assert "RX/s" in app._header(ListViewMode.NETWORK)
    assert "IMAGE" in app._header(ListViewMode.DETAILS)


def test_exec_keys_are_terminal_sequences():
    assert EXEC_KEYS["enter"] == b"\r"
    assert EXEC_KEYS["up"] == b"\x1b[A"
    assert EXEC_KEYS["ctrl+c"] == b"\x03"


def test_stats_row_shows_container_vram(backend, config):
    app = make_app(backend, config)
    record = make_record("a", "trainer")
    assert "VRAM" in app._header(ListViewMode.STATS)
    assert app._row(ListViewMode.STATS, record).split()[-1] == "--"
    record.vram_mb = 2048.0
    assert "2048M" in app._row(ListViewMode.STATS, record)


def test_grouped_window_adds_project_headers(backend, config):
    app = make_app(backend, config)
    containers = [
        replace(make_record("1", "cache"), project="blog"),
        replace(make_record("2", "db"), project="shop"),
        replace(make_record("3", "web"), project="shop"),
        make_record("4", "api"),
    ]
    window = app._window(containers, 0, 10, grouped=True)
    assert [(idx, item if idx is None else item.name) for idx, item in window] == [
        (None, "blog"), (0, "cache"), (None, "shop"), (1, "db"), (2, "web"), (None, "standalone"), (3, "api"),
    ]
    # A header never dangles at the bottom without its first row
    assert [idx for idx, _ in app._window(containers, 0, 3, grouped=True)] == [None, 0]
    assert [idx for idx, _ in app._window(containers, 1, 2, grouped=False)] == [1, 2]


def test_create_form_image_picker(backend, config):
    app = make_app(backend, config)
    form = CreateForm(images=["nginx:latest", "redis:7"])
    app.create_field = 1
    assert "Browse images" in app._render_create(CreateModal(form))

    app.image_picker = 1
    rendered = app._render_create(CreateModal(form))
    assert "[reverse]  redis:7[/]" in rendered
    assert "Select image" in rendered

    assert "No images found" in app._render_create(CreateModal(CreateForm()))
