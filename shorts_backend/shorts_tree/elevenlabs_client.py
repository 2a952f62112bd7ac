import os, httpx, logging
from .errors import ProviderError

logger = logging.getLogger(__name__)

# Voice names that belong to OpenAI; ElevenLabs needs a voice id instead
OPENAI_VOICES = {"alloy", "ash", "ballad", "coral", "echo", "fable", "nova", "onyx", "sage", "shimmer", "verse"}

# ElevenLabs output format per requested container
_OUTPUT_FORMATS = {
    "mp3": "mp3_44100_128",
    "pcm": "pcm_24000",
    "opus": "opus_48000_64",
}

def is_elevenlabs_model(model: str) -> bool:
    return model.startswith("eleven_")

def _voice_id(voice: str) -> str:
    if voice and voice not in OPENAI_VOICES:
        return voice
    vid = os.getenv("ELEVENLABS_VOICE_ID", "")
    if not vid:
        raise ProviderError("ELEVENLABS_VOICE_ID is not set; please configure your .env", provider="elevenlabs")
    return vid

def _headers():
    api_key = os.getenv("ELEVENLABS_API_KEY", "")
    if not api_key:
        raise ProviderError("ELEVENLABS_API_KEY is not set; please configure your .env", provider="elevenlabs")
    return {
        "xi-api-key": api_key,
        "Content-Type": "application/json"
    }

async def tts_to_bytes(model: str, text: str, voice: str, speed: float = 1.0, fmt: str = "mp3") -> bytes:
    payload = {
        "text": text,
        "model_id": model,
        "voice_settings": {"stability": 0.5, "similarity_boost": 0.75, "speed": speed},
    }
    url = f"https://api.elevenlabs.io/v1/text-to-speech/{_voice_id(voice)}"
    params = {"output_format": _OUTPUT_FORMATS.get(fmt, _OUTPUT_FORMATS["mp3"])}
    logger.info(f"Requesting audio from ElevenLabs ({model}, {len(text.split())} words)")

    try:
        async with httpx.AsyncClient(timeout=60) as client:
            r = await client.post(url, headers=_headers(), params=params, json=payload)
            r.raise_for_status()
            return r.content
    except httpx.HTTPStatusError as e:
        logger.error(f"ElevenLabs request failed {e.response.status_code}: {e.response.text}")
        raise ProviderError(f"ElevenLabs request failed {e.response.status_code}", provider="elevenlabs",
                            status_code=e.response.status_code, response_body=e.response.text) from e
    except httpx.HTTPError as e:
        logger.error(f"ElevenLabs transport error: {e}")
        raise ProviderError(f"ElevenLabs request failed: {e}", provider="elevenlabs") from e
