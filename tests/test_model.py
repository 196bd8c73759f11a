import pytest

from backplane.model import ContainerState, CreateForm, ListViewMode, StatusFilter


def test_container_state_parse():
    assert ContainerState.parse("Running") == ContainerState.RUNNING
    assert ContainerState.parse("stopped") == ContainerState.EXITED
    assert ContainerState.parse(None) == ContainerState.UNKNOWN
    assert ContainerState.parse("weird") == ContainerState.UNKNOWN
    assert ContainerState.PAUSED.is_active
    assert not ContainerState.PAUSED.is_running


def test_status_filter_matches():
    assert StatusFilter.RUNNING.matches(ContainerState.RUNNING)
    assert not StatusFilter.RUNNING.matches(ContainerState.PAUSED)
    assert StatusFilter.STOPPED.matches(ContainerState.EXITED)
    assert StatusFilter.ALL.cycle() == StatusFilter.GROUPS
    assert StatusFilter.GROUPS.cycle() == StatusFilter.RUNNING
    assert StatusFilter.GROUPS.matches(ContainerState.EXITED)
    assert StatusFilter.GROUPS.grouped and not StatusFilter.ALL.grouped
    assert StatusFilter.STOPPED.cycle() == StatusFilter.ALL


def test_list_view_mode_cycle():
    assert ListViewMode.DETAILS.cycle() == ListViewMode.STATS
    assert ListViewMode.STATS.cycle(-1) == ListViewMode.DETAILS


def form(**values):
    f = CreateForm()
    f.values.update(values)
    return f


def test_create_form_parses_lists():
    spec = form(
        name=" cache ", image="redis:7", ports="6380:6379, 8080",
        env="A=1,B=two", volumes="/data:/data", command="redis-server --save 60 1",
    ).to_spec()
    assert spec.name == "cache"
    assert spec.ports == ((6380, 6379), (8080, 8080))
    assert spec.env == ("A=1", "B=two")
    assert spec.volumes == ("/data:/data",)
    assert spec.command == "redis-server --save 60 1"


def test_create_form_minimal():
    spec = form(image="alpine").to_spec()
    assert spec.name == ""
    assert spec.ports == ()
    assert spec.command is None


@pytest.mark.parametrize("values, message", [
    ({"image": ""}, "Image is required"),
    ({"image": "x", "ports": "web:80"}, "Invalid port mapping"),
    ({"image": "x", "ports": "70000:80"}, "Port out of range"),
    ({"image": "x", "env": "NOVALUE"}, "Invalid env var"),
])
def test_create_form_rejects_bad_input(values, message):
    with pytest.raises(ValueError, match=message):
        form(**values).to_spec()
