"""
ElevenLabs speech client: speech-to-text and text-to-speech.

Both directions follow the LLM client's convention of returning ``None``
instead of raising; the conversation pipeline owns the fallback policy.
"""

import httpx
import logging
from typing import Optional
from urllib.parse import quote
from .config import get_settings

logger = logging.getLogger(__name__)

AUDIO_MIME = "audio/mpeg"


class SpeechClient:
    def __init__(self):
        self.settings = get_settings()
        self.api_key = self.settings.elevenlabs_api_key
        self.base_url = self.settings.elevenlabs_base_url.rstrip("/")
        self.stt_model_id = self.settings.stt_model_id
        self.tts_model_id = self.settings.tts_model_id
        self.output_format = self.settings.tts_output_format
        self.stt_timeout = float(self.settings.stt_timeout)
        self.tts_timeout = float(self.settings.tts_timeout)

    async def transcribe(
        self,
        audio: bytes,
        filename: str = "audio.ogg",
        content_type: str = "audio/ogg",
        language: Optional[str] = None
    ) -> Optional[str]:
        """
        Transcribe one uploaded clip.

        Returns:
            Recognized text, or None on failure or when nothing was recognized
        """
        data = {
            "model_id": self.stt_model_id,
            "diarize": "false",
            "num_speakers": "1",
            "timestamps_granularity": "none",
            "tag_audio_events": "false",
        }
        if language:
            data["language_code"] = language

        try:
            async with httpx.AsyncClient(timeout=self.stt_timeout) as client:
                response = await client.post(
                    f"{self.base_url}/speech-to-text",
                    headers={"xi-api-key": self.api_key or ""},
                    data=data,
                    files={"file": (filename, audio, content_type)}
                )
            if not response.is_success:
                logger.warning(f"STT error: {response.status_code} - {response.text[:300]}")
                return None
            body = response.json()
            text = (body.get("text") or body.get("transcript") or "").strip()
            return text or None
        except httpx.TimeoutException:
            logger.warning(f"STT call timed out after {self.stt_timeout}s")
            return None
        except Exception as e:
            logger.warning(f"STT call failed: {e}")
            return None

    async def synthesize(self, text: str, voice_id: str) -> Optional[bytes]:
        """Render text with the given voice; None on failure"""
        payload = {
            "text": text,
            "voice_settings": {"stability": 0.5, "similarity_boost": 0.75},
            "model_id": self.tts_model_id,
            "output_format": self.output_format,
        }
        try:
            async with httpx.AsyncClient(timeout=self.tts_timeout) as client:
                response = await client.post(
                    f"{self.base_url}/text-to-speech/{quote(voice_id, safe='')}",
                    headers={
                        "xi-api-key": self.api_key or "",
                        "Content-Type": "application/json",
                    },
                    json=payload
                )
            if not response.is_success:
                logger.error(f"TTS error: {response.status_code} - {response.text[:300]}")
                return None
            audio = response.content
            return audio or None
        except httpx.TimeoutException:
            logger.warning(f"TTS call timed out after {self.tts_timeout}s")
            return None
        except Exception as e:
            logger.error(f"TTS call failed: {e}")
            return None


_client: Optional[SpeechClient] = None


def get_speech_client() -> SpeechClient:
    """Get or create the global speech client"""
    global _client
    if _client is None:
        _client = SpeechClient()
    return _client
