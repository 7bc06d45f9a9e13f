"""Audio transcription for audio cards.

Downloads the audio blob and sends it to the OpenAI transcription endpoint
as a direct multipart upload; when that fails the same bytes go through
the OpenAI SDK. Transcription never aborts enrichment: every failure ends
in a None transcript.
"""

import logging
from typing import Optional

import httpx
import openai

from card_enrichment.core.exceptions import FetchError, TranscriptionError
from card_enrichment.core.http_client import create_client, fetch_bytes

logger = logging.getLogger(__name__)

TRANSCRIPTION_URL = "https://api.openai.com/v1/audio/transcriptions"
DEFAULT_TRANSCRIPTION_MODEL = "gpt-4o-mini-transcribe"
DEFAULT_AUDIO_MIME = "audio/webm"

# Upload timeout (seconds); long recordings take a while to upload
TRANSCRIPTION_TIMEOUT = 300.0

_EXTENSIONS = {
    "ogg": "ogg",
    "oga": "ogg",
    "mp3": "mp3",
    "mpeg": "mp3",
    "mpga": "mp3",
    "wav": "wav",
    "x-wav": "wav",
    "wave": "wav",
    "m4a": "m4a",
    "x-m4a": "m4a",
    "mp4": "m4a",
    "webm": "webm",
}


def extension_for_mime(mime_type: Optional[str]) -> str:
    """Pick the upload file extension for an audio MIME type.

    The transcription API infers the container from the file name, so the
    extension must match the bytes. Unknown types fall back to mp3.
    """
    if not mime_type:
        return "mp3"
    subtype = mime_type.split(";")[0].strip().lower().rsplit("/", 1)[-1]
    return _EXTENSIONS.get(subtype, "mp3")


class AudioTranscriber:
    """Turns audio blobs into text.

    Attributes:
        model: Transcription model name.
    """

    def __init__(
        self,
        api_key: str,
        model: str = DEFAULT_TRANSCRIPTION_MODEL,
        client: Optional[openai.AsyncOpenAI] = None,
    ):
        self._api_key = api_key
        self.model = model
        self._client = client or openai.AsyncOpenAI(api_key=api_key)

    async def transcribe(
        self, audio_url: str, mime_hint: Optional[str] = None
    ) -> Optional[str]:
        """Transcribe the audio at `audio_url`.

        Args:
            audio_url: Fetchable URL of the audio blob.
            mime_hint: MIME type recorded on the card, preferred over the
                download's content-type header.

        Returns:
            The transcript text, or None when every path failed or the
            audio contained no speech.
        """
        try:
            audio, content_type = await fetch_bytes(audio_url)
        except FetchError as e:
            logger.warning("Could not download audio for transcription: %s", e)
            return None

        mime_type = mime_hint or content_type or DEFAULT_AUDIO_MIME
        mime_type = mime_type.split(";")[0].strip()
        file_name = f"audio.{extension_for_mime(mime_type)}"

        try:
            text = await self._transcribe_direct(audio, file_name, mime_type)
        except TranscriptionError as e:
            logger.info("Direct transcription failed, falling back to SDK: %s", e)
            try:
                text = await self._transcribe_sdk(audio, file_name, mime_type)
            except TranscriptionError as sdk_error:
                logger.warning("Transcription failed: %s", sdk_error)
                return None

        text = text.strip()
        return text or None

    async def _transcribe_direct(
        self, audio: bytes, file_name: str, mime_type: str
    ) -> str:
        """Multipart POST to the transcription endpoint."""
        headers = {"Authorization": f"Bearer {self._api_key}"}
        try:
            async with create_client(
                timeout=httpx.Timeout(TRANSCRIPTION_TIMEOUT), accept="application/json"
            ) as client:
                response = await client.post(
                    TRANSCRIPTION_URL,
                    headers=headers,
                    data={"model": self.model},
                    files={"file": (file_name, audio, mime_type)},
                )
                response.raise_for_status()
                payload = response.json()
        except httpx.HTTPStatusError as e:
            raise TranscriptionError(
                f"Transcription API error: HTTP {e.response.status_code}"
            )
        except (httpx.RequestError, ValueError) as e:
            raise TranscriptionError(f"Transcription request failed: {e}")

        text = payload.get("text") if isinstance(payload, dict) else None
        if not isinstance(text, str):
            raise TranscriptionError("Transcription response has no text")
        return text

    async def _transcribe_sdk(
        self, audio: bytes, file_name: str, mime_type: str
    ) -> str:
        """Same upload through the OpenAI SDK."""
        try:
            result = await self._client.audio.transcriptions.create(
                model=self.model,
                file=(file_name, audio, mime_type),
            )
        except openai.OpenAIError as e:
            raise TranscriptionError(f"OpenAI SDK transcription failed: {e}")
        return result.text or ""
