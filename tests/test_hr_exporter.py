"""Tests for hr_exporter: gauge updates from JSON lines, /metrics rendering, bind address parsing."""

import argparse
import asyncio
import io
import json
import os
import subprocess
import sys
from pathlib import Path

import pytest
from aiohttp import test_utils
from hrmon.gatt_hrm import HeartRateRecord
from hrmon.hr_exporter import HrGauges, make_app, parse_bind_addr, stdin_reader

PROJECT_ROOT = Path(__file__).resolve().parent.parent


def _line(**fields) -> str:
    return HeartRateRecord(**fields).to_json()


def test_record_sets_gauges():
    g = HrGauges()
    assert g.apply_line(_line(hr_measurement=72, contact=True, rr_intervals=(0.8, 0.75)))
    assert g.hr_rate == 72.0
    assert g.rr_interval == 0.75
    assert g.records == 1


def test_rr_gauge_kept_when_record_has_no_rr():
    g = HrGauges()
    g.apply_line(_line(hr_measurement=72, rr_intervals=(0.8,)))
    g.apply_line(_line(hr_measurement=74))
    assert g.hr_rate == 74.0
    assert g.rr_interval == 0.8


def test_no_contact_record_skipped():
    g = HrGauges()
    g.apply_line(_line(hr_measurement=70))
    assert not g.apply_line(_line(hr_measurement=0, contact=False))
    assert g.hr_rate == 70.0
    assert g.skipped_no_contact == 1


def test_unsupported_contact_is_not_skipped():
    """contact null means the sensor cannot tell; the value is still used."""
    g = HrGauges()
    assert g.apply_line(json.dumps({"hr_measurement": 65, "contact": None, "rr_intervals": []}))
    assert g.hr_rate == 65.0


def test_status_and_blank_lines_ignored():
    g = HrGauges()
    assert not g.apply_line("# connected 12:00:00")
    assert not g.apply_line("   ")
    assert g.records == 0
    assert g.malformed == 0


def test_malformed_lines_counted(caplog):
    g = HrGauges()
    assert not g.apply_line("{not json")
    assert not g.apply_line('{"hr_measurement": "fast"}')
    assert g.malformed == 2
    assert "Could not parse HR data" in caplog.text
    assert g.apply_line(_line(hr_measurement=60))
    assert g.hr_rate == 60.0


def test_render_omits_unset_gauges():
    text = HrGauges().render()
    assert "# TYPE hr_rate gauge" in text
    assert "\nhr_rate " not in text
    assert "\nrr_interval " not in text
    assert "hr_records_total 0" in text


def test_render_exposition_format():
    g = HrGauges()
    g.apply_line(_line(hr_measurement=72, rr_intervals=(0.5,)))
    g.apply_line(_line(hr_measurement=72, contact=False))
    g.apply_line("garbage")
    lines = g.render().splitlines()
    assert "hr_rate 72.0" in lines
    assert "rr_interval 0.5" in lines
    assert "hr_records_total 1" in lines
    assert 'hr_records_skipped_total{reason="no_contact"} 1' in lines
    assert 'hr_records_skipped_total{reason="malformed"} 1' in lines


def test_metrics_and_status_endpoints():
    async def scenario():
        app = make_app(read_stdin=False)
        async with test_utils.TestClient(test_utils.TestServer(app)) as client:
            await app["queue"].put(_line(hr_measurement=81, rr_intervals=(0.7,)))
            # let the consumer task drain the queue
            for _ in range(50):
                if app["gauges"].records:
                    break
                await asyncio.sleep(0.01)
            resp = await client.get("/metrics")
            assert resp.status == 200
            assert resp.headers["Content-Type"].startswith("text/plain")
            body = await resp.text()
            assert "hr_rate 81.0" in body.splitlines()
            assert "rr_interval 0.7" in body.splitlines()
            status = await (await client.get("/status")).json()
            assert status == {"stdin_lines": 0, "receiving": False}

    asyncio.run(scenario())


@pytest.mark.parametrize(
    "value, expected",
    [
        ("127.0.0.1:9100", ("127.0.0.1", 9100)),
        ("0.0.0.0:80", ("0.0.0.0", 80)),
        ("localhost:9100", ("localhost", 9100)),
        ("[::1]:9100", ("::1", 9100)),
    ],
)
def test_parse_bind_addr(value, expected):
    assert parse_bind_addr(value) == expected


@pytest.mark.parametrize("value", ["9100", ":9100", "host:", "host:port", "host:70000", "::1:9100"])
def test_parse_bind_addr_rejects(value):
    with pytest.raises(argparse.ArgumentTypeError):
        parse_bind_addr(value)


def test_cli_rejects_bad_bind_addr():
    result = subprocess.run(
        [sys.executable, "-m", "hrmon.hr_exporter", "not-an-address"],
        input="",
        capture_output=True,
        text=True,
        cwd=PROJECT_ROOT,
        env={**os.environ, "PYTHONPATH": str(PROJECT_ROOT)},
    )
    assert result.returncode == 2
    assert "HOST:PORT" in result.stderr


def test_stdin_reader_queues_lines_in_order():
    """Blank lines are dropped; everything else reaches the queue in input order."""
    record = _line(hr_measurement=70)
    stream = io.StringIO(f"# connected 12:00:00\n\n  {record}  \n")

    async def scenario():
        queue = asyncio.Queue()
        received_count = [0]
        loop = asyncio.get_running_loop()
        await loop.run_in_executor(None, stdin_reader, queue, loop, received_count, stream)
        lines = [await asyncio.wait_for(queue.get(), timeout=1) for _ in range(2)]
        return received_count[0], lines, queue.empty()

    count, lines, empty = asyncio.run(scenario())
    assert count == 2
    assert lines == ["# connected 12:00:00", record]
    assert empty
