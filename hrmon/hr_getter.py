#!/usr/bin/env python3
"""
Stream Heart Rate Measurement notifications from a BLE heart rate monitor to stdout.

Usage:
  python -m hrmon.hr_getter DEVICE [-f print|json] [-t 30]

DEVICE is a Bluetooth address (AA:BB:CC:DD:EE:FF, or the CoreBluetooth UUID on macOS);
anything else is looked up as the advertised device name.

Stdout: "# connected HH:MM:SS" when linked, then one line per notification:
  -f print: HeartRateRecord(hr=72, contact=True, energy_expended=None, rr=[0.812])
  -f json:  {"hr_measurement": 72, "hr_16bit": false, "contact": true, "energy_expended": null, "rr_intervals": [0.8125]}
Malformed notifications are logged to stderr and skipped; the stream keeps going.

By default the process reconnects if the BLE link drops (--reconnect-delay 5, --max-reconnects 0 = unlimited).
"""

import argparse
import asyncio
import logging
import re
import sys
import time
from datetime import datetime

try:
    from bleak import BleakClient, BleakScanner
except ImportError:
    print("Install bleak: pip install bleak", file=sys.stderr)
    sys.exit(1)

from hrmon.gatt_hrm import HeartRateRecord, HrmDecodeError, parse_hrm
from hrmon.log import setup_logging

logger = logging.getLogger(__name__)

# GATT Heart Rate Measurement characteristic (standard 16-bit UUID)
HRM_CHAR_UUID = "00002a37-0000-1000-8000-00805f9b34fb"

OUTPUT_FORMATS = ("print", "json")

_ADDRESS_RE = re.compile(
    r"^(?:[0-9A-Fa-f]{2}:){5}[0-9A-Fa-f]{2}$"
    r"|^[0-9A-Fa-f]{8}-(?:[0-9A-Fa-f]{4}-){3}[0-9A-Fa-f]{12}$"
)


def _ts():
    return f"[{datetime.now().strftime('%H:%M:%S')}] "


def _verbose(quiet: bool, msg: str, file=sys.stderr):
    if not quiet:
        print(_ts() + msg, file=file, flush=True)


def is_address(device: str) -> bool:
    return bool(_ADDRESS_RE.match(device))


def format_record(record: HeartRateRecord, fmt: str) -> str:
    if fmt == "json":
        return record.to_json()
    return str(record)


def _on_hrm(data: bytes, fmt: str, out=None) -> bool:
    """Decode one notification and print it. Returns False when the frame was malformed and skipped."""
    out = out if out is not None else sys.stdout
    logger.debug("Notification value: %s", data.hex(" "))
    try:
        record = parse_hrm(data)
    except HrmDecodeError as e:
        logger.error("Could not parse HR data: %s", e)
        return False
    try:
        print(format_record(record, fmt), file=out, flush=True)
    except BrokenPipeError:
        sys.exit(0)
    return True


async def _find_device(device: str, timeout: float, quiet: bool):
    """Resolve an address or advertised name to a BLEDevice. Returns None if not found."""
    if is_address(device):
        _verbose(quiet, f"Trying to find device with address {device}...")
        found = await BleakScanner.find_device_by_address(device, timeout=timeout)
    else:
        _verbose(quiet, f"Looking for device by name: {device!r}")
        found = await BleakScanner.find_device_by_name(device, timeout=timeout)
    if found is None:
        print(_ts() + f"Could not find {device!r} within {timeout:.0f}s.", file=sys.stderr)
        return None
    _verbose(quiet, f"Found device: {found.name} ({found.address})")
    return found


async def _run(
    device_name: str,
    fmt: str,
    connect_timeout: float,
    reconnect_delay: float,
    max_reconnects: int,
    count: int,
    quiet: bool,
) -> int:
    frames: asyncio.Queue = asyncio.Queue()
    received = [0]
    done = asyncio.Event()

    def callback(sender, data: bytearray):
        frames.put_nowait(bytes(data))

    async def drain_frames():
        # One frame at a time, in delivery order
        while True:
            data = await frames.get()
            if data is None:
                return
            received[0] += 1
            if received[0] == 1:
                print(_ts() + "Received first HRM packet.", file=sys.stderr, flush=True)
            _on_hrm(data, fmt)
            if count > 0 and received[0] >= count:
                done.set()
                return

    reconnect_count = 0
    while True:
        if reconnect_count > 0:
            print(_ts() + f"Waiting {reconnect_delay:.0f}s before reconnect...", file=sys.stderr)
            _verbose(quiet, f"Reconnect attempt {reconnect_count} (max={'unlimited' if max_reconnects <= 0 else max_reconnects})")
            await asyncio.sleep(reconnect_delay)

        device = await _find_device(device_name, connect_timeout, quiet)
        if device is None:
            if reconnect_count == 0:
                return 1
        else:
            print(_ts() + f"Connecting (timeout {connect_timeout:.0f}s)...", file=sys.stderr)
            drain_task = None
            try:
                async with BleakClient(device, timeout=connect_timeout) as client:
                    await client.start_notify(HRM_CHAR_UUID, callback)
                    print(f"# connected {datetime.now().strftime('%H:%M:%S')}", flush=True)
                    logger.info("Starting notification loop...")
                    connect_time = time.time()
                    no_data_msg_shown = False
                    drain_task = asyncio.create_task(drain_frames())
                    try:
                        while client.is_connected and not done.is_set():
                            await asyncio.sleep(1)
                            if not received[0] and (time.time() - connect_time) > 20 and not no_data_msg_shown:
                                no_data_msg_shown = True
                                print(_ts() + "No HRM notifications yet. Is the strap worn and the sensor awake?", file=sys.stderr)
                    finally:
                        frames.put_nowait(None)
                        await drain_task
                        drain_task = None
            except asyncio.CancelledError:
                raise
            except Exception as e:
                if drain_task is not None:
                    drain_task.cancel()
                    try:
                        await drain_task
                    except asyncio.CancelledError:
                        pass
                logger.warning("Connection lost: %s", e)
                logger.debug("Connection error details", exc_info=True)
            else:
                if done.is_set():
                    _verbose(quiet, f"Received {received[0]} notification(s), stopping.")
                    return 0
                logger.info("Notification session was terminated")
                if reconnect_delay <= 0:
                    return 0
            # Frames left behind by a cancelled drain belong to the dropped session
            while not frames.empty():
                frames.get_nowait()

        if reconnect_delay <= 0:
            print(_ts() + "Exiting (reconnect disabled).", file=sys.stderr)
            return 1
        reconnect_count += 1
        if max_reconnects > 0 and reconnect_count > max_reconnects:
            print(_ts() + f"Max reconnects ({max_reconnects}) reached. Exiting.", file=sys.stderr)
            return 1


def main():
    parser = argparse.ArgumentParser(description="Log a BLE heart rate monitor's measurements to stdout")
    parser.add_argument("device", type=str, help='Device address, e.g. "CD:30:22:D6:4F:70", or advertised name')
    parser.add_argument(
        "--format", "-f",
        choices=OUTPUT_FORMATS,
        default="print",
        help="Output format for each measurement: debug text or one JSON object per line (default print)",
    )
    parser.add_argument(
        "--connect-timeout", "-t",
        type=float,
        default=30.0,
        help="Seconds before giving up on finding/connecting to the device (default 30)",
    )
    parser.add_argument(
        "--reconnect-delay", "-r",
        type=float,
        default=5.0,
        help="Seconds to wait before reconnecting after a drop (default 5). Use 0 to disable auto-reconnect.",
    )
    parser.add_argument(
        "--max-reconnects", "-m",
        type=int,
        default=0,
        help="Max auto-reconnect attempts after a drop (default 0 = unlimited).",
    )
    parser.add_argument(
        "--count", "-n",
        type=int,
        default=0,
        help="Stop after N notifications (default 0 = run until interrupted).",
    )
    parser.add_argument("-q", "--quiet", action="store_true", help="Only log warnings and errors")
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging, including raw notification bytes")
    args = parser.parse_args()
    setup_logging(verbose=args.verbose, quiet=args.quiet)
    logger.debug("Running with configuration: %s", args)
    try:
        return asyncio.run(_run(
            args.device, args.format, args.connect_timeout, args.reconnect_delay,
            args.max_reconnects, args.count, args.quiet,
        ))
    except KeyboardInterrupt:
        print(_ts() + "Stopped.", file=sys.stderr)
        return 0


if __name__ == "__main__":
    sys.exit(main())
