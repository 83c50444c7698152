"""Audio capture and playback for voice-rtc.

``AudioCapture`` opens the microphone once and hands every peer link its own
subscription through ``MediaRelay``. Muting swaps captured frames for silence
at the source, so established links keep their tracks and nothing is
renegotiated.

``AudioSink`` plays one remote track. With no output device configured it
consumes the track into a ``MediaBlackhole`` so the connection keeps flowing.

Device names and formats are passed straight to FFmpeg (through PyAV), e.g.
``("default", "pulse")`` on Linux, ``(":0", "avfoundation")`` on macOS,
``("audio=Microphone", "dshow")`` on Windows.
"""

import logging
from typing import Dict, Optional

import av
from aiortc import MediaStreamTrack
from aiortc.contrib.media import MediaBlackhole, MediaPlayer, MediaRecorder, MediaRelay

from voice_rtc.exceptions import CaptureUnavailable

logger = logging.getLogger(__name__)


def silence_like(frame: av.AudioFrame) -> av.AudioFrame:
    """Return a zeroed copy of ``frame`` with the same format and timing."""
    silent = av.AudioFrame(format=frame.format.name, layout=frame.layout.name, samples=frame.samples)
    for plane in silent.planes:
        plane.update(bytes(plane.buffer_size))
    silent.pts = frame.pts
    silent.sample_rate = frame.sample_rate
    silent.time_base = frame.time_base
    return silent


class MuteableAudioTrack(MediaStreamTrack):
    """Pass-through audio track that emits silence while muted."""

    kind = "audio"

    def __init__(self, source: MediaStreamTrack):
        super().__init__()
        self.source = source
        self.muted = False

    async def recv(self):
        frame = await self.source.recv()
        if self.muted:
            return silence_like(frame)
        return frame

    def stop(self):
        super().stop()
        self.source.stop()


class AudioCapture:
    """Local microphone handle.

    Attributes:
        device: FFmpeg input device name.
        format: FFmpeg input format (e.g. "pulse", "alsa", "avfoundation").
        track: Mute-able source track, set while open.
    """

    def __init__(
        self,
        device: str = "default",
        format: Optional[str] = "pulse",
        options: Optional[Dict[str, str]] = None,
    ):
        self.device = device
        self.format = format
        self.options = options or {}
        self.track: Optional[MuteableAudioTrack] = None
        self._player: Optional[MediaPlayer] = None
        self._relay: Optional[MediaRelay] = None

    @property
    def is_open(self) -> bool:
        return self.track is not None

    @property
    def muted(self) -> bool:
        return self.track is not None and self.track.muted

    @muted.setter
    def muted(self, value: bool):
        if self.track is not None:
            self.track.muted = value

    def open(self) -> None:
        """Open the capture device.

        Raises:
            CaptureUnavailable: The device cannot be opened or has no audio.
        """
        if self.is_open:
            return

        try:
            player = MediaPlayer(self.device, format=self.format, options=self.options)
        except Exception as e:
            raise CaptureUnavailable(f"Cannot open audio device {self.device!r}: {e}") from e

        if player.audio is None:
            # Stopping the only track releases the container
            if player.video is not None:
                player.video.stop()
            raise CaptureUnavailable(f"Audio device {self.device!r} has no audio stream")

        self._player = player
        self._relay = MediaRelay()
        self.track = MuteableAudioTrack(player.audio)
        logger.info(f"Opened audio capture {self.device} ({self.format})")

    def subscribe(self) -> Optional[MediaStreamTrack]:
        """Return a new track fed from the capture, for one peer link."""
        if self.track is None:
            return None
        return self._relay.subscribe(self.track)

    def close(self) -> None:
        """Release the capture device. Safe to call more than once."""
        if self.track is not None:
            self.track.stop()
            logger.info(f"Released audio capture {self.device}")
        self.track = None
        self._player = None
        self._relay = None


class AudioSink:
    """Playback target for one remote peer's audio."""

    def __init__(self, device: Optional[str] = None, format: Optional[str] = None):
        """
        Args:
            device: FFmpeg output device or file path. None discards audio.
            format: FFmpeg output format (e.g. "pulse", "alsa", "wav").
        """
        self.device = device
        self.format = format
        self._recorder = None

    @property
    def attached(self) -> bool:
        return self._recorder is not None

    async def attach(self, track: MediaStreamTrack) -> None:
        """Start playing ``track``, replacing any previous one."""
        if self._recorder is not None:
            await self.detach()

        if self.device:
            recorder = MediaRecorder(self.device, format=self.format)
        else:
            recorder = MediaBlackhole()
        recorder.addTrack(track)
        await recorder.start()
        self._recorder = recorder

    async def detach(self) -> None:
        """Stop playback. Safe to call when nothing is attached."""
        recorder, self._recorder = self._recorder, None
        if recorder is not None:
            await recorder.stop()
