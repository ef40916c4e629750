#!/usr/bin/env python3
"""
Read heart rate records (JSON lines from hr_getter -f json) on stdin and expose the
latest values as Prometheus gauges over HTTP.

Usage (as final stage of pipeline):
  python -m hrmon.hr_getter CD:30:22:D6:4F:70 -f json | python -m hrmon.hr_exporter 127.0.0.1:9100

Then scrape http://127.0.0.1:9100/metrics
"""

import argparse
import asyncio
import logging
import sys
import threading

try:
    from aiohttp import web
except ImportError:
    print("Install aiohttp: pip install aiohttp", file=sys.stderr)
    sys.exit(1)

from hrmon.gatt_hrm import HeartRateRecord
from hrmon.log import setup_logging

logger = logging.getLogger(__name__)

METRICS_CONTENT_TYPE = "text/plain; version=0.0.4; charset=utf-8"


def parse_bind_addr(value: str) -> tuple[str, int]:
    """'HOST:PORT' or '[V6HOST]:PORT' -> (host, port)."""
    host, sep, port_s = value.rpartition(":")
    if not sep or not host:
        raise argparse.ArgumentTypeError(f"Expected HOST:PORT, got {value!r}")
    if host.startswith("[") and host.endswith("]"):
        host = host[1:-1]
    elif ":" in host:
        raise argparse.ArgumentTypeError(f"IPv6 addresses must be bracketed, e.g. [::1]:9100, got {value!r}")
    try:
        port = int(port_s)
    except ValueError:
        raise argparse.ArgumentTypeError(f"Invalid port in {value!r}") from None
    if not 0 < port < 65536:
        raise argparse.ArgumentTypeError(f"Port out of range in {value!r}")
    return host, port


class HrGauges:
    """Latest-value gauges plus record counters, fed one stdin line at a time."""

    def __init__(self):
        self.hr_rate: float | None = None
        self.rr_interval: float | None = None
        self.records = 0
        self.skipped_no_contact = 0
        self.malformed = 0

    def apply_line(self, line: str) -> bool:
        """Update gauges from one input line. Returns True if the record was used."""
        line = line.strip()
        if not line or line.startswith("#"):
            return False
        try:
            record = HeartRateRecord.from_json(line)
        except ValueError as e:
            self.malformed += 1
            logger.warning("Could not parse HR data: %s", e)
            return False
        return self.apply_record(record)

    def apply_record(self, record: HeartRateRecord) -> bool:
        # contact None means the sensor does not report it; only an explicit False is skipped
        if record.contact is False:
            self.skipped_no_contact += 1
            logger.info("Skipping HR measurement without sensor contact")
            return False
        logger.debug("Setting data: %s", record)
        self.hr_rate = float(record.hr_measurement)
        if record.rr_intervals:
            self.rr_interval = record.rr_intervals[-1]
        self.records += 1
        return True

    def render(self) -> str:
        """Prometheus text exposition format. Gauges are omitted until first set."""
        lines = [
            "# HELP hr_rate Latest heart rate measurement (BPM)",
            "# TYPE hr_rate gauge",
        ]
        if self.hr_rate is not None:
            lines.append(f"hr_rate {self.hr_rate!r}")
        lines += [
            "# HELP rr_interval Latest RR-interval (seconds)",
            "# TYPE rr_interval gauge",
        ]
        if self.rr_interval is not None:
            lines.append(f"rr_interval {self.rr_interval!r}")
        lines += [
            "# HELP hr_records_total Heart rate records applied to the gauges",
            "# TYPE hr_records_total counter",
            f"hr_records_total {self.records}",
            "# HELP hr_records_skipped_total Input lines not applied to the gauges",
            "# TYPE hr_records_skipped_total counter",
            f'hr_records_skipped_total{{reason="no_contact"}} {self.skipped_no_contact}',
            f'hr_records_skipped_total{{reason="malformed"}} {self.malformed}',
        ]
        return "\n".join(lines) + "\n"


def stdin_reader(queue: asyncio.Queue, loop: asyncio.AbstractEventLoop, received_count: list, stream=None):
    """Run in thread: read lines from stdin, put into queue. received_count[0] = total lines."""
    stream = stream if stream is not None else sys.stdin
    for line in stream:
        line = line.strip()
        if not line:
            continue
        received_count[0] += 1
        asyncio.run_coroutine_threadsafe(queue.put(line), loop)
    logger.info("stdin closed; serving last values")


async def handle_metrics(request: web.Request) -> web.Response:
    body = request.app["gauges"].render()
    return web.Response(body=body.encode("utf-8"), headers={"Content-Type": METRICS_CONTENT_TYPE})


async def handle_status(request: web.Request) -> web.Response:
    """Return whether the exporter is receiving pipeline data (for debugging)."""
    n = request.app["stdin_count"][0]
    return web.json_response({"stdin_lines": n, "receiving": n > 0})


async def consume_queue(app: web.Application):
    queue = app["queue"]
    gauges = app["gauges"]
    while True:
        line = await queue.get()
        gauges.apply_line(line)


def make_app(read_stdin: bool = True) -> web.Application:
    app = web.Application()
    app["gauges"] = HrGauges()
    app["queue"] = asyncio.Queue()
    app["stdin_count"] = [0]  # mutable so stdin_reader can increment

    app.router.add_get("/metrics", handle_metrics)
    app.router.add_get("/status", handle_status)

    async def start_background_tasks(app):
        app["consume_task"] = asyncio.create_task(consume_queue(app))
        if read_stdin:
            loop = asyncio.get_running_loop()
            t = threading.Thread(
                target=stdin_reader,
                args=(app["queue"], loop, app["stdin_count"]),
                daemon=True,
            )
            t.start()

    async def stop_background_tasks(app):
        app["consume_task"].cancel()
        try:
            await app["consume_task"]
        except asyncio.CancelledError:
            pass

    app.on_startup.append(start_background_tasks)
    app.on_cleanup.append(stop_background_tasks)
    return app


def main():
    parser = argparse.ArgumentParser(description="Export heart rate records from stdin as Prometheus gauges")
    parser.add_argument("bind_addr", type=parse_bind_addr, help="HOST:PORT to serve /metrics on, e.g. 127.0.0.1:9100")
    parser.add_argument("-q", "--quiet", action="store_true", help="Only log warnings and errors")
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging, including every applied record")
    args = parser.parse_args()
    setup_logging(verbose=args.verbose, quiet=args.quiet)

    host, port = args.bind_addr
    logger.info("Exporter listening on http://%s:%d/metrics", host, port)
    web.run_app(make_app(), host=host, port=port, print=None)
    return 0


if __name__ == "__main__":
    sys.exit(main() or 0)
