"""Unified CLI for voice-rtc using Click."""

import logging
import sys

import click
from loguru import logger

from voice_rtc.config import get_config
from voice_rtc.exceptions import CaptureUnavailable, ChannelUnavailable
from voice_rtc.rtc_relay import run_relay
from voice_rtc.rtc_voice import run_voice_client


@click.group()
@click.option(
    "--log-level",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False),
    default=None,
    help="Log level. Overrides config file and VOICE_RTC_LOG_LEVEL.",
)
def cli(log_level):
    level = (log_level or get_config().effective_log_level).upper()
    logging.basicConfig(level=getattr(logging, level))
    logger.remove()
    logger.add(sys.stderr, level=level)


@cli.command()
@click.option("--host", default=None, help="Host to bind to (default from config: localhost).")
@click.option("--port", type=int, default=None, help="Port to listen on (default from config: 8080).")
@click.option("--path", default=None, help="Only accept WebSocket connections on this path.")
def relay(host, port, path):
    """Run the voice signaling relay.

    The relay keeps room membership and forwards offers, answers and ICE
    candidates between participants. It never carries audio.

    Examples:

        voice-rtc relay

        voice-rtc relay --host 0.0.0.0 --port 9000
    """
    run_relay(host=host, port=port, path=path)


@cli.command()
@click.option("--room", "-r", "room_id", required=True, help="Room to join.")
@click.option("--user", "-u", "user_id", default=None, help="User id to join as (random if omitted).")
@click.option("--url", default=None, help="Relay WebSocket URL. Overrides VOICE_RTC_SIGNALING_WS.")
@click.option("--capture-device", default=None, help="FFmpeg input device, e.g. 'default' or 'hw:0'.")
@click.option("--capture-format", default=None, help="FFmpeg input format, e.g. 'pulse' or 'alsa'.")
@click.option("--playback-device", default=None, help="FFmpeg output device or file for remote audio.")
@click.option("--playback-format", default=None, help="FFmpeg output format, e.g. 'pulse' or 'wav'.")
@click.option("--muted", is_flag=True, default=False, help="Join with the microphone muted.")
def join(room_id, user_id, url, capture_device, capture_format, playback_device, playback_format, muted):
    """Join a voice room and stay until interrupted.

    Opens the microphone, connects to the relay and keeps one direct audio
    link to every other participant.

    Example:

        voice-rtc join --room r1 --user alice
    """
    try:
        run_voice_client(
            room_id=room_id,
            user_id=user_id,
            url=url,
            capture_device=capture_device,
            capture_format=capture_format,
            playback_device=playback_device,
            playback_format=playback_format,
            muted=muted,
        )
    except CaptureUnavailable as e:
        logger.error(f"Microphone unavailable: {e}")
        sys.exit(1)
    except ChannelUnavailable as e:
        logger.error(f"Relay unavailable: {e}")
        sys.exit(1)


@cli.command(name="config")
def show_config():
    """Show the effective configuration."""
    config = get_config()
    click.echo(f"Environment:      {config.environment}")
    click.echo(f"Signaling URL:    {config.get_websocket_url()}")
    click.echo(f"ICE servers:      {', '.join(config.ice_servers) or '(none)'}")
    click.echo(f"Relay bind:       {config.relay_host}:{config.relay_port}{config.relay_path or ''}")
    click.echo(f"Capture:          {config.audio.capture_device} ({config.audio.capture_format})")
    click.echo(f"Playback:         {config.audio.playback_device or '(discard)'}")
    click.echo(f"Log level:        {config.effective_log_level}")


if __name__ == "__main__":
    cli()
