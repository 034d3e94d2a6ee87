from __future__ import annotations

import argparse
import asyncio
import json
import sys
from pathlib import Path
from typing import List, Optional, Sequence

from pydantic import ValidationError

from .config import TransmitterConfig
from .constants import ExitCode, OutcomeStatus
from .elements import ElementRegistry, StaticDevice
from .errors import ConfigError, MediPiError
from .logging import MediPiLogger
from .models import DeviceData
from .orchestrator import SubmissionOrchestrator
from .status import StatusEvent


def _parse_args(argv: Optional[Sequence[str]]) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="medipi-transmit",
        description="Encrypt, sign and transmit device readings to the MediPi concentrator.",
    )
    parser.add_argument("--properties", required=True, help="MediPi .properties file")
    parser.add_argument(
        "--reading",
        action="append",
        default=[],
        metavar="TOKEN=FILE",
        help="Device reading as JSON (repeatable); order sets the upload order",
    )
    parser.add_argument(
        "--select",
        action="append",
        default=None,
        metavar="TOKEN",
        help="Only transmit these devices (repeatable); default is every device with data",
    )
    return parser.parse_args(argv)


def load_readings(arguments: List[str]) -> ElementRegistry:
    """Build a registry of StaticDevices from TOKEN=FILE.json arguments."""
    registry = ElementRegistry()
    for argument in arguments:
        token, sep, location = argument.partition("=")
        if not sep or not token or not location:
            raise ConfigError(f"Reading must look like TOKEN=FILE, got {argument!r}")
        try:
            raw = json.loads(Path(location).read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as exc:
            raise ConfigError(f"Cannot read reading for '{token}' from {location}: {exc}") from exc
        try:
            if isinstance(raw, dict) and "device_token" in raw:
                data = DeviceData.model_validate(raw)
            else:
                data = DeviceData(device_token=token, payload=raw if isinstance(raw, dict) else {"value": raw})
        except ValidationError as exc:
            raise ConfigError(f"Invalid reading for '{token}': {exc}") from exc
        try:
            registry.add(StaticDevice(token, data=data))
        except ValueError as exc:
            raise ConfigError(str(exc)) from exc
    return registry


def _print_messages(event: StatusEvent) -> None:
    if event.type != "message":
        return
    stream = sys.stderr if event.level == "error" else sys.stdout
    stream.write(f"{event.value}\n")
    stream.flush()


def main(argv: Optional[Sequence[str]] = None) -> int:
    """Main entry point."""
    return asyncio.run(async_main(argv))


async def async_main(argv: Optional[Sequence[str]] = None) -> int:
    args = _parse_args(argv)
    logger = MediPiLogger(component="cli")

    try:
        config = TransmitterConfig.from_properties_file(Path(args.properties))
        registry = load_readings(args.reading)
        orchestrator = SubmissionOrchestrator.from_config(config, registry, logger=logger)
    except MediPiError as exc:
        logger.error("Cannot start transmitter", error=str(exc), kind=exc.kind.value)
        return int(ExitCode.ERROR)

    orchestrator.status.subscribe(_print_messages)
    outcome = await orchestrator.run(args.select)

    if outcome.status == OutcomeStatus.SUCCEEDED:
        return int(ExitCode.SUCCESS)
    if outcome.status == OutcomeStatus.NOTHING_TO_SEND:
        return int(ExitCode.NOTHING_SENT)
    return int(ExitCode.FAILED)


if __name__ == "__main__":
    sys.exit(main())
