import os, logging
from typing import Optional

import openai

from .errors import ProviderError
from .models import GeneratedImage

logger = logging.getLogger(__name__)

_client = None

# Only dall-e-3 accepts the style parameter
_STYLE_MODELS = {"dall-e-3"}

def _get_client():
    global _client
    if _client is None:
        api_key = os.getenv("OPENAI_API_KEY", "")
        if not api_key:
            raise ProviderError("OPENAI_API_KEY is not set; please configure your .env", provider="openai")
        _client = openai.AsyncOpenAI(api_key=api_key)
    return _client

def _provider_error(what: str, e: openai.APIError) -> ProviderError:
    status = getattr(e, "status_code", None)
    body = None
    response = getattr(e, "response", None)
    if response is not None:
        body = response.text
    return ProviderError(f"OpenAI {what} failed: {e.message}", provider="openai", status_code=status, response_body=body)

async def generate_text(model: str, system_message: Optional[str], prompt: str,
                        temperature: float = 0.7, max_tokens: int = 2000) -> str:
    logger.info(f"Calling OpenAI chat completions with model {model}")
    messages = []
    if system_message:
        messages.append({"role": "system", "content": system_message})
    messages.append({"role": "user", "content": prompt})
    try:
        resp = await _get_client().chat.completions.create(
            model=model,
            messages=messages,
            temperature=temperature,
            max_tokens=max_tokens,
        )
    except openai.APIError as e:
        logger.error(f"OpenAI chat completion failed: {e}")
        raise _provider_error("chat completion", e) from e
    content = resp.choices[0].message.content or ""
    logger.info(f"Received {len(content)} characters from OpenAI")
    return content

async def generate_image(model: str, prompt: str, size: str, quality: str, style: Optional[str] = None) -> GeneratedImage:
    logger.info(f"Requesting image from OpenAI ({model}, {size}, {quality})")
    kwargs = {"model": model, "prompt": prompt, "n": 1, "size": size, "quality": quality}
    if style and model in _STYLE_MODELS:
        kwargs["style"] = style
    try:
        resp = await _get_client().images.generate(**kwargs)
    except openai.APIError as e:
        logger.error(f"OpenAI image generation failed: {e}")
        raise _provider_error("image generation", e) from e
    image = resp.data[0]
    if getattr(image, "revised_prompt", None):
        logger.info(f"OpenAI revised prompt: {image.revised_prompt[:80]}...")
    if not image.url:
        raise ProviderError("OpenAI image generation returned no URL", provider="openai")
    return GeneratedImage(url=image.url, revised_prompt=getattr(image, "revised_prompt", None))

async def synthesize_speech(model: str, text: str, voice: str, speed: float, fmt: str) -> bytes:
    logger.info(f"Requesting speech from OpenAI (model={model}, voice={voice}, speed={speed})")
    try:
        resp = await _get_client().audio.speech.create(
            model=model,
            input=text,
            voice=voice,
            speed=speed,
            response_format=fmt,
        )
    except openai.APIError as e:
        logger.error(f"OpenAI speech synthesis failed: {e}")
        raise _provider_error("speech synthesis", e) from e
    return resp.content

_AUDIO_MARKERS = ("tts", "whisper", "audio", "realtime", "transcribe")

def _model_category(model_id: str) -> str:
    mid = model_id.lower()
    if mid.startswith(("o1", "o3", "o4")) or "gpt-3.5" in mid or "gpt-4" in mid or "gpt-5" in mid or "chatgpt" in mid:
        return "audio" if any(m in mid for m in _AUDIO_MARKERS) else "chat"
    if "dall-e" in mid or "gpt-image" in mid:
        return "image"
    if any(m in mid for m in _AUDIO_MARKERS):
        return "audio"
    if "embedding" in mid:
        return "embedding"
    return "other"

async def list_models() -> dict:
    """OpenAI models usable by the account, grouped by the stage they fit."""
    try:
        page = await _get_client().models.list()
    except openai.APIError as e:
        logger.error(f"OpenAI model listing failed: {e}")
        raise _provider_error("model listing", e) from e
    models = {"chat": [], "image": [], "audio": [], "embedding": [], "other": []}
    for m in page.data:
        models[_model_category(m.id)].append({"id": m.id, "created": m.created, "owned_by": m.owned_by})
    for group in models.values():
        group.sort(key=lambda item: item["id"])
    logger.info(f"Listed {sum(len(g) for g in models.values())} OpenAI models")
    return models
