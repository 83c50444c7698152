"""Entry point for joining a voice room from the command line."""

import asyncio
import logging

from voice_rtc.client.audio import AudioCapture, AudioSink
from voice_rtc.client.session import ClientSession
from voice_rtc.config import get_config

STATUS_INTERVAL = 10  # seconds


async def _participate(session: ClientSession, muted: bool = False):
    await session.start()
    if muted:
        session.mute()

    try:
        while True:
            await asyncio.sleep(STATUS_INTERVAL)
            states = session.manager.states() if session.manager else {}
            logging.info(
                f"{session.user_id} in {session.room_id}: "
                f"{len(states)} link(s) {states} muted={session.muted}"
            )
    finally:
        await session.stop()


def run_voice_client(
    room_id: str,
    user_id: str = None,
    url: str = None,
    capture_device: str = None,
    capture_format: str = None,
    playback_device: str = None,
    playback_format: str = None,
    muted: bool = False,
):
    """Join a room and stay until interrupted.

    Args:
        room_id: Room to join.
        user_id: User id to join as. Random if omitted.
        url: Relay WebSocket URL. Config value if omitted.
        capture_device: FFmpeg input device. Overrides config [audio].
        capture_format: FFmpeg input format. Overrides config [audio].
        playback_device: FFmpeg output device or file. Overrides config [audio].
        playback_format: FFmpeg output format. Overrides config [audio].
        muted: Join with the microphone muted.

    Raises:
        CaptureUnavailable: The microphone cannot be opened.
        ChannelUnavailable: The relay cannot be reached.
    """
    audio = get_config().audio
    capture_device = capture_device or audio.capture_device
    capture_format = capture_format or audio.capture_format
    playback_device = playback_device or audio.playback_device
    playback_format = playback_format or audio.playback_format

    session = ClientSession(
        room_id=room_id,
        user_id=user_id,
        url=url,
        capture_factory=lambda: AudioCapture(capture_device, capture_format),
        sink_factory=lambda remote_user: AudioSink(playback_device, playback_format),
    )

    try:
        asyncio.run(_participate(session, muted=muted))
    except KeyboardInterrupt:
        logging.info("Voice client interrupted by user. Leaving room...")
    finally:
        logging.info("Voice client exiting...")
