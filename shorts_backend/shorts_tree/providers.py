"""
Capability contracts for generation providers and the default routing to
concrete adapters.

    text(model, system_message, prompt, temperature, max_tokens) -> str
    image(model, prompt, size, quality, style) -> GeneratedImage (URL + revised prompt)
    speech(model, text, voice, speed, fmt) -> audio bytes

Every callable raises ProviderError on failure.
"""
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional

from . import elevenlabs_client, llm, replicate_client
from .models import GeneratedImage

TextProvider = Callable[[str, Optional[str], str, float, int], Awaitable[str]]
ImageProvider = Callable[[str, str, str, str, Optional[str]], Awaitable[GeneratedImage]]
SpeechProvider = Callable[[str, str, str, float, str], Awaitable[bytes]]


@dataclass
class Providers:
    text: TextProvider
    image: ImageProvider
    speech: SpeechProvider


async def route_image(model: str, prompt: str, size: str, quality: str, style: Optional[str] = None) -> GeneratedImage:
    if replicate_client.is_replicate_model(model):
        url = await replicate_client.create_and_wait_image(model, prompt, size)
        return GeneratedImage(url=url)
    return await llm.generate_image(model, prompt, size, quality, style)


async def route_speech(model: str, text: str, voice: str, speed: float, fmt: str) -> bytes:
    if elevenlabs_client.is_elevenlabs_model(model):
        return await elevenlabs_client.tts_to_bytes(model, text, voice, speed, fmt)
    return await llm.synthesize_speech(model, text, voice, speed, fmt)


def default_providers() -> Providers:
    return Providers(text=llm.generate_text, image=route_image, speech=route_speech)
