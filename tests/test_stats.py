import pytest

from backplane.stats import (
    counter_rate, cpu_percent, format_bytes, format_rate, network_totals, sample_from_raw, sparkline, vram_for,
)


def test_cpu_percent_scales_with_cores():
    raw = {
        "cpu_stats": {"cpu_usage": {"total_usage": 300, "percpu_usage": [1, 1, 1, 1]}, "system_cpu_usage": 1100},
        "precpu_stats": {"cpu_usage": {"total_usage": 100}, "system_cpu_usage": 100},
    }
    # 200/1000 of the machine on 4 cores
    assert cpu_percent(raw) == pytest.approx(80.0)


def test_cpu_percent_first_reading_is_zero():
    assert cpu_percent({"cpu_stats": {"cpu_usage": {"total_usage": 5}}, "precpu_stats": {}}) == 0.0
    assert cpu_percent({}) == 0.0


def test_network_totals_without_networks():
    assert network_totals({}) == (0, 0)
    assert network_totals({"networks": None}) == (0, 0)


def test_sample_from_raw_uses_given_timestamp():
    sample = sample_from_raw({"memory_stats": {"usage": 10, "limit": 0}}, 42.0)
    assert sample.timestamp == 42.0
    assert sample.memory_percent == 0.0


def test_counter_rate():
    assert counter_rate(100, 300, 2.0) == 100.0
    assert counter_rate(300, 100, 2.0) == 0.0
    assert counter_rate(100, 300, 0.0) == 0.0


def test_sparkline_pads_and_scales():
    assert sparkline([], width=4) == "    "
    line = sparkline([0.0, 50.0, 100.0], width=5)
    assert len(line) == 5
    assert line.startswith("  ")
    assert line[-1] == "█"
    assert line[2] == "▁"


def test_sparkline_keeps_newest_values():
    assert sparkline([100.0] * 3 + [0.0] * 10, width=10) == "▁" * 10


def test_format_bytes_and_rate():
    assert format_bytes(None) == "--"
    assert format_bytes(512) == "512B"
    assert format_bytes(2048) == "2.0KB"
    assert format_bytes(5 * 1024 ** 3) == "5.0GB"
    assert format_rate(None) == "--"
    assert format_rate(1024) == "1.0KB/s"


def test_vram_for_matches_full_or_short_ids():
    full = "abcdef012345" + "0" * 52
    assert vram_for({full: 256.0}, full) == 256.0
    assert vram_for({full[:12]: 128.0}, full) == 128.0
    assert vram_for({full: 64.0}, full[:12]) == 64.0
    assert vram_for({"": 1.0, "ffff": 2.0}, full) is None
