# -*- coding: utf-8 -*-
"""CLI commands for recording, device diagnostics and the pre-check."""

from __future__ import annotations

import logging
import threading
import time
from pathlib import Path

import typer

from mediacapture.config import ConfigError, build_session, load_config
from mediacapture.constants import APP_NAME, DEFAULT_AUDIO_CHANNELS, DEFAULT_AUDIO_SAMPLE_RATE
from mediacapture.core.precheck import Precheck, format_precheck_report
from mediacapture.errors import CaptureError, InvalidState, UploadFailed
from mediacapture.models.session_event import ERROR, STATE_CHANGED, TICK, SessionEvent
from mediacapture.models.states import CaptureMode, SessionState
from mediacapture.pipeline import devices
from mediacapture.pipeline.level_meter import compute_level
from mediacapture.utils.logger import setup_session_logging

app = typer.Typer(help="Record camera or screen with microphone audio")
logger = logging.getLogger(__name__)


def _level_bar(level: float, width: int = 40) -> str:
    filled = int(round(max(0.0, min(100.0, level)) / 100.0 * width))
    return "#" * filled + "-" * (width - filled)


def _load(settings: Path | None) -> dict:
    try:
        return load_config(settings)
    except ConfigError as exc:
        typer.echo(f"Invalid settings: {exc}", err=True)
        raise typer.Exit(code=2)


def _stop_on_interrupt(session) -> None:
    """Stop on Ctrl+C. A recording that finished on its own meanwhile is kept."""
    try:
        session.stop_recording()
    except InvalidState as exc:
        logger.debug("Stop after interrupt ignored: %s", exc)
    except CaptureError as exc:
        logger.debug("Stop after interrupt failed: %s", exc)


@app.command()
def record(
    mode: str = typer.Option("camera", help="camera, screen or screen_with_camera"),
    max_duration: int = typer.Option(0, help="Maximum seconds (0 = use settings)"),
    output_dir: Path = typer.Option(None, help="Directory for the exported recording"),
    upload: bool = typer.Option(False, help="Upload the recording after stopping"),
    settings: Path = typer.Option(None, help="Path to settings.json"),
) -> None:
    """Record until Ctrl+C or the maximum duration, then export (and optionally upload)."""
    try:
        capture_mode = CaptureMode.parse(mode)
    except ValueError as exc:
        raise typer.BadParameter(str(exc), param_hint="--mode")
    setup_session_logging(Path.cwd(), APP_NAME)
    config = _load(settings)
    config["capture"]["mode"] = capture_mode.value
    if max_duration > 0:
        config["recording"]["max_duration_seconds"] = int(max_duration)
    if output_dir is not None:
        config["export"]["directory"] = str(output_dir)

    session = build_session(config)
    finished = threading.Event()

    def on_event(event: SessionEvent) -> None:
        if event.kind == TICK:
            typer.echo(f"\rREC {event.payload['elapsed']:>4}s / {int(session.max_duration_seconds)}s", nl=False)
        elif event.kind == STATE_CHANGED and event.state in {SessionState.PREVIEW, SessionState.ERROR}:
            finished.set()
        elif event.kind == ERROR:
            logger.debug("Session error event: %s", event.payload.get("kind"))

    session.add_listener(on_event)
    try:
        typer.echo(f"Requesting devices for mode '{session.mode.value}'...")
        if session.start_recording().result() is not SessionState.RECORDING:
            error = session.last_error
            typer.echo(f"Could not start recording ({error.kind}): {error}", err=True)
            raise typer.Exit(code=1)
        typer.echo("Recording. Press Ctrl+C to stop.")
        try:
            while not finished.wait(0.25):
                pass
        except KeyboardInterrupt:
            _stop_on_interrupt(session)
        typer.echo("")

        if session.state is not SessionState.PREVIEW:
            error = session.last_error
            typer.echo(f"Recording failed ({error.kind if error else 'unknown'}): {error}", err=True)
            raise typer.Exit(code=1)

        artifact = session.artifact
        path = session.export()
        typer.echo(f"Saved {artifact.size} bytes ({artifact.duration:.1f}s, {artifact.media_type}) to {path}")

        if upload:
            try:
                locator = session.upload().result()
            except UploadFailed as exc:
                typer.echo(f"Upload failed: {exc}", err=True)
                raise typer.Exit(code=1)
            typer.echo(f"Uploaded: {locator}")
    except CaptureError as exc:
        typer.echo(f"{exc.kind}: {exc}", err=True)
        raise typer.Exit(code=1)
    finally:
        session.close()


@app.command()
def precheck(
    mode: str = typer.Option(None, help="Mode to check (default: from settings)"),
    settings: Path = typer.Option(None, help="Path to settings.json"),
) -> None:
    """Check libraries, devices, upload destination and disk space."""
    config = _load(settings)
    results = Precheck().run(config, mode=mode)
    typer.echo(format_precheck_report(results))
    if not all(item["passed"] for item in results):
        raise typer.Exit(code=1)


@app.command(name="devices")
def list_devices(
    max_cameras: int = typer.Option(3, help="Number of camera indices to probe"),
) -> None:
    """List audio inputs and probe camera indices."""
    capabilities = devices.capture_capabilities()
    typer.echo("Capabilities:")
    for key, value in capabilities.items():
        typer.echo(f"  {key}: {'yes' if value else 'no'}")

    typer.echo("\nAudio inputs:")
    inputs = devices.list_audio_inputs()
    if not inputs:
        typer.echo("  (none)")
    for item in inputs:
        typer.echo(f"  [{item['index']}] {item['name']} ({item['channels']} ch, {item['default_samplerate']:.0f} Hz)")

    typer.echo("\nCameras:")
    for index in range(max(0, max_cameras)):
        result = devices.probe_camera(index, timeout_seconds=0.5)
        typer.echo(f"  [{index}] {'ok' if result['ok'] else 'unavailable'}: {result['message']}")


@app.command()
def level(
    seconds: float = typer.Option(10.0, help="How long to show the meter"),
    microphone: int = typer.Option(None, help="Input device index (default device if omitted)"),
) -> None:
    """Show a live microphone level meter."""
    if devices.sd is None:
        typer.echo("sounddevice is not installed.", err=True)
        raise typer.Exit(code=1)
    try:
        track = devices.MicrophoneAudioTrack(microphone, DEFAULT_AUDIO_SAMPLE_RATE, DEFAULT_AUDIO_CHANNELS)
    except Exception as exc:
        typer.echo(f"Microphone could not be opened: {exc}", err=True)
        raise typer.Exit(code=1)
    try:
        deadline = time.monotonic() + max(0.1, seconds)
        while time.monotonic() < deadline:
            value = compute_level(track.window(256))
            typer.echo(f"\r[{_level_bar(value)}] {value:5.1f}", nl=False)
            time.sleep(1.0 / 30)
    except KeyboardInterrupt:
        pass
    finally:
        track.stop()
        typer.echo("")


if __name__ == "__main__":
    app()
