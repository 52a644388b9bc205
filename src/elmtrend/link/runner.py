from __future__ import annotations

import asyncio
import json
import logging
from pathlib import Path
from typing import Dict, List, Optional, Sequence

import typer

from ..history import FileStorage, SnapshotHistory, Storage
from ..predictive import Prediction, TrendAnalyzer, classify_voltage
from ..reporting import export_results
from .collector import SnapshotCollector
from .config import ElmConfig, load_config
from .decoder import TestRecord
from .diagnostics import (
    clear_dtcs,
    read_dtcs,
    read_freeze_frame,
    read_readiness,
    read_test_results,
    read_vehicle_info,
)
from .errors import CommandTimeout, ElmError, MalformedResponse, UnsupportedParameter
from .sampler import SAMPLER_PROFILES, PeriodicTicker, PollingSupervisor, build_sampler, profile_interval
from .scheduler import Clock
from .session import AdapterSession

logger = logging.getLogger(__name__)


class TelemetryHost:
    """Host-side orchestrator: one adapter session, its samplers and the trend pipeline."""

    def __init__(
        self,
        config: ElmConfig,
        session: Optional[AdapterSession] = None,
        storage: Optional[Storage] = None,
        profiles: Optional[Sequence[str]] = None,
        clock: Optional[Clock] = None,
    ):
        self.config = config
        self.clock = clock or Clock()
        self.session = session or AdapterSession(config, clock=self.clock)
        self.storage = storage if storage is not None else FileStorage(config.history.directory)
        self.history = SnapshotHistory(config.history.capacity, self.storage)
        self.analyzer = TrendAnalyzer(config.thresholds, config.history.min_snapshots, self.storage)
        self.test_results: List[TestRecord] = []
        names = [name.lower() for name in (profiles or config.polling.profiles)]
        unknown = [name for name in names if name not in SAMPLER_PROFILES]
        if unknown:
            raise ValueError(f"Unknown sampler profile(s) {unknown}. Expected one of {list(SAMPLER_PROFILES)}")
        self.active_views = set(names)
        self.samplers: Dict[str, PollingSupervisor] = {
            name: build_sampler(
                name,
                self.session.send_command,
                max_errors=config.polling.max_errors,
                malformed_counts_as_failure=config.polling.malformed_counts_as_failure,
                timeout_ms=config.polling.command_timeout_ms,
                is_active=lambda name=name: name in self.active_views,
                is_connected=lambda: self.session.connected,
            )
            for name in names
        }
        self.collector = SnapshotCollector(
            self.history,
            self.samplers,
            test_results=lambda: self.test_results,
            is_connected=lambda: self.session.connected,
        )
        self._tickers: List[PeriodicTicker] = []

    def set_active(self, name: str, active: bool) -> None:
        if active:
            self.active_views.add(name)
        else:
            self.active_views.discard(name)

    async def start(self, transport_kind: Optional[str] = None) -> None:
        self.history.load()
        self.analyzer.load()
        await self.session.connect(transport_kind)
        for sampler in self.samplers.values():
            sampler.reset()
        await self.refresh_test_results()
        for name, sampler in self.samplers.items():
            self._tickers.append(PeriodicTicker(name, profile_interval(name), sampler.tick, self.clock))
        self._tickers.append(
            PeriodicTicker("collector", self.config.history.collection_interval_s, self.collector.tick, self.clock)
        )
        for ticker in self._tickers:
            ticker.start()
        logger.info("Polling started: %s", ", ".join(self.samplers))

    async def refresh_test_results(self) -> List[TestRecord]:
        try:
            self.test_results = await read_test_results(self.session.send_command)
        except (UnsupportedParameter, MalformedResponse, CommandTimeout) as exc:
            logger.info("Mode 06 test results unavailable: %s", exc)
            self.test_results = []
        return self.test_results

    async def stop(self) -> None:
        for ticker in self._tickers:
            await ticker.stop()
        self._tickers = []
        await self.session.disconnect()
        try:
            self.history.save()
        except OSError as exc:
            logger.warning("Could not persist snapshots: %s", exc)

    async def run(self, duration: Optional[float] = None, transport_kind: Optional[str] = None) -> None:
        await self.start(transport_kind)
        loop = asyncio.get_running_loop()
        started = loop.time()
        interval = max(float(self.config.polling.stats_log_interval), 1.0)
        try:
            while self.session.connected:
                if duration is not None:
                    remaining = duration - (loop.time() - started)
                    if remaining <= 0:
                        break
                    await asyncio.sleep(min(interval, remaining))
                else:
                    await asyncio.sleep(interval)
                self.emit_stats()
            if not self.session.connected:
                logger.warning("Adapter connection lost, stopping")
        finally:
            await self.stop()
            self.emit_stats()

    def emit_stats(self) -> None:
        sched = self.session.scheduler.stats()
        logger.info(
            "sent=%d completed=%d timeouts=%d expired=%d unsolicited=%d snapshots=%d",
            sched.get("sent", 0),
            sched.get("completed", 0),
            sched.get("timeouts", 0),
            sched.get("expired", 0),
            sched.get("unsolicited", 0),
            len(self.history),
        )
        for name, sampler in self.samplers.items():
            stats = sampler.stats()
            logger.info(
                "%s: cycles=%d failed=%d skipped_busy=%d supported=%d disabled=%s",
                name,
                stats["cycles"],
                stats["failed_cycles"],
                stats["skipped_busy"],
                stats["supported"],
                sampler.disabled,
            )

    def battery_status(self) -> str:
        for sampler in self.samplers.values():
            voltage = sampler.latest_value("BATTERY")
            if voltage is not None:
                return classify_voltage(voltage)
        return classify_voltage(None)

    def run_analysis(self) -> List[Prediction]:
        return self.analyzer.analyze(self.history)


def _configure_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def _build_config(
    config_path: Optional[Path],
    transport: Optional[str],
    port: Optional[str],
    baudrate: Optional[int],
    address: Optional[str],
    override: Optional[List[str]],
) -> ElmConfig:
    overrides: List[str] = []
    if transport:
        overrides.append(f"link.transport={transport}")
    if port:
        overrides.append(f"link.port={port}")
    if baudrate:
        overrides.append(f"link.baudrate={baudrate}")
    if address:
        overrides.append(f"link.address={address}")
    try:
        cfg = load_config(config_path, overrides + (override or []))
        kind = cfg.link.transport_kind
    except ValueError as exc:
        raise typer.BadParameter(str(exc)) from exc
    if kind == "ble" and not cfg.link.address:
        raise typer.BadParameter("BLE transport requires --address", param_hint="--address")
    return cfg


async def _with_session(cfg: ElmConfig, action):
    session = AdapterSession(cfg)
    await session.connect()
    try:
        return await action(session)
    finally:
        await session.disconnect()


async def _scan_section(label: str, request):
    try:
        return await request
    except (CommandTimeout, UnsupportedParameter, MalformedResponse) as exc:
        logger.warning("%s unavailable: %s", label, exc)
        return None


def _run_session(cfg: ElmConfig, action):
    try:
        return asyncio.run(_with_session(cfg, action))
    except (ElmError, ImportError) as exc:
        typer.echo(f"[error] connection failed: {exc}", err=True)
        raise typer.Exit(code=1) from exc


app = typer.Typer(add_completion=False, help="ELM327 adapter utilities.")


@app.command()
def run(
    transport: Optional[str] = typer.Option(None, "--transport", "-t", help="Transport kind: serial|ble."),
    port: Optional[str] = typer.Option(None, "--port", "-p", help="Serial device path."),
    baudrate: Optional[int] = typer.Option(None, "--baud", help="Serial baudrate (default 38400)."),
    address: Optional[str] = typer.Option(None, "--address", help="BLE adapter address."),
    config_path: Optional[Path] = typer.Option(None, "--config", "-c", help="JSON config file."),
    profile: Optional[List[str]] = typer.Option(
        None,
        "--profile",
        "-P",
        help=f"Sampler profile to enable (repeatable): {'|'.join(SAMPLER_PROFILES)}.",
    ),
    duration: Optional[float] = typer.Option(None, "--duration", help="Stop after N seconds (default: until Ctrl+C)."),
    report_dir: Optional[Path] = typer.Option(None, "--report", help="Write a prediction report here when done."),
    override: Optional[List[str]] = typer.Option(
        None,
        "--set",
        help="Override config keys, e.g. --set adapter.min_command_delay_ms=200",
    ),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Debug logging."),
):
    """Connect, poll the selected samplers and collect snapshots for trend analysis."""

    _configure_logging(verbose)
    cfg = _build_config(config_path, transport, port, baudrate, address, override)
    try:
        host = TelemetryHost(cfg, profiles=profile or None)
    except ValueError as exc:
        raise typer.BadParameter(str(exc), param_hint="--profile") from exc
    try:
        asyncio.run(host.run(duration))
    except KeyboardInterrupt:
        logger.info("Stopping host (Ctrl+C)")
    except (ElmError, ImportError) as exc:
        typer.echo(f"[error] connection failed: {exc}", err=True)
        raise typer.Exit(code=1) from exc

    predictions = host.run_analysis()
    typer.echo(f"Snapshots: {len(host.history)}  Battery: {host.battery_status()}")
    for pred in predictions:
        typer.echo(f"[{pred.severity.value}] {pred.component}: {pred.message} ({pred.timeframe})")
    if report_dir is not None:
        export_results(predictions, host.history, report_dir, test_results=host.test_results)
        typer.echo(f"Report written to {report_dir}")


@app.command()
def scan(
    transport: Optional[str] = typer.Option(None, "--transport", "-t", help="Transport kind: serial|ble."),
    port: Optional[str] = typer.Option(None, "--port", "-p", help="Serial device path."),
    baudrate: Optional[int] = typer.Option(None, "--baud", help="Serial baudrate (default 38400)."),
    address: Optional[str] = typer.Option(None, "--address", help="BLE adapter address."),
    config_path: Optional[Path] = typer.Option(None, "--config", "-c", help="JSON config file."),
    out: Optional[Path] = typer.Option(None, "--out", help="Save the scan as JSON."),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Debug logging."),
):
    """Read VIN, trouble codes, readiness, freeze frame and Mode 06 results."""

    _configure_logging(verbose)
    cfg = _build_config(config_path, transport, port, baudrate, address, None)

    async def action(session: AdapterSession) -> dict:
        send = session.send_command
        result: dict = {"adapterVersion": session.adapter_version}
        vehicle = await _scan_section("Vehicle info", read_vehicle_info(send))
        result["vehicle"] = vehicle.as_dict() if vehicle is not None else {}
        result["dtcs"] = await _scan_section("Trouble codes", read_dtcs(send))
        readiness = await _scan_section("Readiness", read_readiness(send))
        result["readiness"] = readiness.as_dict() if readiness is not None else None
        freeze = await _scan_section("Freeze frame", read_freeze_frame(send))
        result["freezeFrame"] = freeze.values if freeze is not None and freeze.available else None
        tests = await _scan_section("Mode 06", read_test_results(send))
        result["testResults"] = [record.as_dict() for record in tests or []]
        return result

    result = _run_session(cfg, action)
    vehicle = result["vehicle"]
    typer.echo(f"Adapter: ELM327 {result['adapterVersion'] or '(no banner)'}")
    typer.echo(f"VIN: {vehicle.get('vin') or 'n/a'}")
    if result["dtcs"] is None:
        typer.echo("Trouble codes: n/a")
    else:
        typer.echo(f"Trouble codes: {', '.join(result['dtcs']) or 'none'}")
    if result["readiness"] is not None:
        readiness = result["readiness"]
        typer.echo(f"MIL: {'ON' if readiness['milOn'] else 'off'} ({readiness['dtcCount']} stored)")
    if result["freezeFrame"] is not None:
        typer.echo(f"Freeze frame: {len(result['freezeFrame'])} value(s)")
    typer.echo(f"Mode 06 tests: {len(result['testResults'])}")
    if out is not None:
        out.parent.mkdir(parents=True, exist_ok=True)
        out.write_text(json.dumps(result, indent=2), encoding="utf-8")
        typer.echo(f"Saved scan to {out}")


@app.command("clear-codes")
def clear_codes(
    transport: Optional[str] = typer.Option(None, "--transport", "-t", help="Transport kind: serial|ble."),
    port: Optional[str] = typer.Option(None, "--port", "-p", help="Serial device path."),
    address: Optional[str] = typer.Option(None, "--address", help="BLE adapter address."),
    config_path: Optional[Path] = typer.Option(None, "--config", "-c", help="JSON config file."),
    yes: bool = typer.Option(False, "--yes", "-y", help="Do not ask for confirmation."),
):
    """Clear stored trouble codes and freeze frame data (Mode 04)."""

    _configure_logging(False)
    cfg = _build_config(config_path, transport, port, None, address, None)
    if not yes:
        typer.confirm("Clear all trouble codes? Readiness monitors will reset.", abort=True)

    async def action(session: AdapterSession) -> bool:
        try:
            return await clear_dtcs(session.send_command)
        except CommandTimeout as exc:
            logger.warning("Clear request timed out: %s", exc)
            return False

    if _run_session(cfg, action):
        typer.echo("Trouble codes cleared")
    else:
        typer.echo("Adapter did not acknowledge the clear request")
        raise typer.Exit(code=1)
