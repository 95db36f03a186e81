from __future__ import annotations

import asyncio
import io
import json
import logging
from typing import Callable, Protocol
from urllib.parse import urlparse

import requests

from .settings import PlaybackSettings

try:  # pragma: no cover - optional dependency
    import simpleaudio as _simpleaudio  # type: ignore
except Exception:  # pragma: no cover - optional dependency
    _simpleaudio = None

logger = logging.getLogger(__name__)

DEFAULT_ENGINE_URL = "http://127.0.0.1:50021"
DEFAULT_SPEAKER = 2
# VoiceVox pitchScale is an offset around 0; 0.15 is the top of its usable range.
_PITCH_SPAN = 0.15


class SpeechCancelled(Exception):
    """Raised by ``speak`` when the utterance was aborted through ``cancel``."""


class UtteranceError(RuntimeError):
    """Raised when an utterance could not be synthesized or played."""


class VoiceVoxError(RuntimeError):
    """Raised when the VoiceVox engine returns an unexpected response."""


class VoiceVoxUnavailableError(ConnectionError):
    """Raised when the VoiceVox engine is unreachable."""


class SpeechBackend(Protocol):
    async def speak(self, text: str, settings: PlaybackSettings) -> None:
        ...

    def cancel(self) -> None:
        ...


class PlayHandle(Protocol):
    def is_playing(self) -> bool:
        ...

    def stop(self) -> None:
        ...


def normalize_base_url(base_url: str) -> str:
    trimmed = base_url.strip()
    if not trimmed:
        raise ValueError("VoiceVox base URL cannot be empty.")
    if "://" not in trimmed:
        trimmed = f"http://{trimmed}"
    parsed = urlparse(trimmed)
    if parsed.scheme not in {"http", "https"}:
        raise ValueError(f"Unsupported VoiceVox URL scheme: {parsed.scheme}")
    if not parsed.hostname:
        raise ValueError(f"Invalid VoiceVox base URL: {base_url}")
    if parsed.port is None:
        trimmed = parsed._replace(netloc=f"{parsed.netloc}:50021").geturl()
    return trimmed.rstrip("/")


def speaker_for_voice(voice: str | None, default: int) -> int:
    if voice is None:
        return default
    try:
        return int(voice)
    except ValueError:
        logger.debug("Ignoring non-numeric VoiceVox speaker %r", voice)
        return default


def pitch_scale_for(pitch: float) -> float:
    return round((pitch - 1.0) * _PITCH_SPAN, 4)


class VoiceVoxClient:
    """
    Thin wrapper around the VoiceVox HTTP API.
    """

    def __init__(
        self,
        base_url: str = DEFAULT_ENGINE_URL,
        speaker_id: int = DEFAULT_SPEAKER,
        timeout: float = 30.0,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.speaker_id = speaker_id
        self.timeout = timeout
        self._session = requests.Session()

    def build_audio_query(self, text: str, *, speaker: int | None = None) -> dict:
        speaker_id = self.speaker_id if speaker is None else speaker
        try:
            query_resp = self._session.post(
                f"{self.base_url}/audio_query",
                params={"text": text, "speaker": speaker_id},
                timeout=self.timeout,
            )
        except requests.RequestException as exc:
            raise VoiceVoxUnavailableError(
                f"Failed to contact VoiceVox engine at {self.base_url}"
            ) from exc

        if query_resp.status_code != 200:
            raise VoiceVoxError(
                f"/audio_query failed with status {query_resp.status_code}: {query_resp.text}"
            )

        try:
            return query_resp.json()
        except json.JSONDecodeError as exc:
            raise VoiceVoxError("VoiceVox returned invalid JSON for /audio_query") from exc

    def synthesize_from_query(self, query_payload: dict, *, speaker: int | None = None) -> bytes:
        speaker_id = self.speaker_id if speaker is None else speaker
        try:
            synth_resp = self._session.post(
                f"{self.base_url}/synthesis",
                params={"speaker": speaker_id},
                json=query_payload,
                timeout=self.timeout,
            )
        except requests.RequestException as exc:
            raise VoiceVoxUnavailableError(
                f"Failed to contact VoiceVox engine during synthesis at {self.base_url}"
            ) from exc

        if synth_resp.status_code != 200:
            raise VoiceVoxError(
                f"/synthesis failed with status {synth_resp.status_code}: {synth_resp.text}"
            )

        return synth_resp.content

    def synthesize_wav(self, text: str, settings: PlaybackSettings | None = None) -> bytes:
        """
        Generate WAV audio bytes for the provided text via VoiceVox.
        """
        settings = settings or PlaybackSettings()
        speaker = speaker_for_voice(settings.voice, self.speaker_id)
        query_payload = self.build_audio_query(text, speaker=speaker)
        query_payload["speedScale"] = float(settings.rate)
        query_payload["pitchScale"] = pitch_scale_for(settings.pitch)
        return self.synthesize_from_query(query_payload, speaker=speaker)

    def close(self) -> None:
        self._session.close()


def _play_with_simpleaudio(wav_bytes: bytes) -> PlayHandle:
    if _simpleaudio is None:
        raise UtteranceError(
            "Audio playback requires simpleaudio; install readaloud[live]."
        )
    wave_obj = _simpleaudio.WaveObject.from_wave_file(io.BytesIO(wav_bytes))
    return wave_obj.play()


class VoiceVoxSpeaker:
    """
    Speech backend that synthesizes with VoiceVox and plays the WAV locally.

    Each ``speak`` call captures a token; ``cancel`` bumps it and stops the
    current play object, so the pending call raises SpeechCancelled at its
    next check.
    """

    def __init__(
        self,
        client: VoiceVoxClient,
        *,
        poll_interval: float = 0.05,
        player: Callable[[bytes], PlayHandle] | None = None,
    ) -> None:
        self.client = client
        self.poll_interval = poll_interval
        self._player = player or _play_with_simpleaudio
        self._token = 0
        self._handle: PlayHandle | None = None

    def _check(self, token: int) -> None:
        if token != self._token:
            raise SpeechCancelled()

    async def speak(self, text: str, settings: PlaybackSettings) -> None:
        token = self._token
        try:
            wav_bytes = await asyncio.to_thread(self.client.synthesize_wav, text, settings)
        except (VoiceVoxError, VoiceVoxUnavailableError) as exc:
            self._check(token)
            raise UtteranceError(str(exc)) from exc
        self._check(token)
        handle = self._player(wav_bytes)
        self._handle = handle
        try:
            while handle.is_playing():
                await asyncio.sleep(self.poll_interval)
                self._check(token)
            self._check(token)
        finally:
            if self._handle is handle:
                self._handle = None
            if handle.is_playing():
                handle.stop()

    def cancel(self) -> None:
        self._token += 1
        handle = self._handle
        self._handle = None
        if handle is not None:
            handle.stop()

    def close(self) -> None:
        self.cancel()
        self.client.close()
