"""Shared fixtures and fakes for the shorts tree test suite."""

import asyncio
import os
from typing import Callable, Dict, List, Optional, Sequence, Tuple

import httpx
import pytest

from shorts_tree.errors import ProviderError
from shorts_tree.executor import ExecutionContext, load_tree
from shorts_tree.models import GeneratedImage
from shorts_tree.providers import Providers
from shorts_tree.storage import ArtifactStore, write_bytes


# ---------------------------------------------------------------------------
# Fake artifact store: no network for image downloads
# ---------------------------------------------------------------------------

class FakeStore(ArtifactStore):
    def __init__(self, base_dir: str, fail_downloads: bool = False, fail_audio: bool = False):
        super().__init__(base_dir)
        self.fail_downloads = fail_downloads
        self.fail_audio = fail_audio

    async def save_image_from_url(self, url: str, filename: str) -> str:
        if self.fail_downloads:
            raise httpx.ConnectError("offline")
        path = os.path.join(self.images_dir, filename)
        write_bytes(path, b"\x89PNG fake")
        return path

    def save_audio(self, data: bytes, filename: str) -> str:
        if self.fail_audio:
            raise OSError("disk full")
        return super().save_audio(data, filename)


# ---------------------------------------------------------------------------
# Fake providers recording every call
# ---------------------------------------------------------------------------

def default_responder(prompt: str, system_message: Optional[str]) -> str:
    """SCRIPT prompts yield scenes, PLAN prompts yield caption + image prompt."""
    if prompt.startswith("SCRIPT"):
        return "Scene one text---Scene two text---Scene three text---Scene four text"
    if prompt.startswith("PLAN"):
        body = prompt.split(":", 1)[1].strip()
        return f"Caption for {body}===IMAGE===Image of {body}"
    return f"echo: {prompt}"


class FakeProviders:
    def __init__(
        self,
        responder: Callable[[str, Optional[str]], str] = default_responder,
        fail_text_on: Sequence[str] = (),
        fail_image_on: Sequence[str] = (),
        gate: Optional[asyncio.Event] = None,
    ):
        self.responder = responder
        self.fail_text_on = tuple(fail_text_on)
        self.fail_image_on = tuple(fail_image_on)
        self.gate = gate
        self.calls: List[Tuple[str, str]] = []

    async def text(self, model, system_message, prompt, temperature, max_tokens):
        self.calls.append(("text", prompt))
        if self.gate is not None:
            await self.gate.wait()
        if any(marker in prompt for marker in self.fail_text_on):
            raise ProviderError("text provider exploded", provider="fake", status_code=500)
        return self.responder(prompt, system_message)

    async def image(self, model, prompt, size, quality, style):
        self.calls.append(("image", prompt))
        if any(marker in prompt for marker in self.fail_image_on):
            raise ProviderError("image provider exploded", provider="fake", status_code=400)
        return GeneratedImage(url=f"https://img.example/{abs(hash(prompt))}.png", revised_prompt=f"revised: {prompt}")

    async def speech(self, model, text, voice, speed, fmt):
        self.calls.append(("speech", text))
        return b"ID3 fake audio"

    def bundle(self) -> Providers:
        return Providers(text=self.text, image=self.image, speech=self.speech)

    def prompts(self, kind: str) -> List[str]:
        return [p for k, p in self.calls if k == kind]


# ---------------------------------------------------------------------------
# Template builders
# ---------------------------------------------------------------------------

def dynamic_template(**overrides) -> Dict:
    template = {
        "nodes": [
            {
                "id": "root",
                "name": "Script",
                "prompt_template": "SCRIPT: {root}",
                "output_separator": "---",
                "dynamic": True,
            }
        ],
        "node_templates": {
            "planning": {
                "prompt_template": "PLAN {sceneNum}: {parent}",
                "output_separator": "===IMAGE===",
            },
            "image": {"params": {"kind": "image"}, "prompt_template": "{parent}"},
            "audio": {"params": {"kind": "speech"}, "prompt_template": "{parent}"},
        },
    }
    template.update(overrides)
    return template


def static_template() -> Dict:
    return {
        "nodes": [
            {"id": "root", "prompt_template": "IDEAS {input}", "output_separator": "---"},
            {"id": "child1", "parent_id": "root", "parent_output_index": 0, "prompt_template": "More on {parent}"},
            {"id": "child2", "parent_id": "root", "parent_output_index": 1, "prompt_template": "More on {parent}"},
            {"id": "child3", "parent_id": "root", "parent_output_index": 2, "prompt_template": "More on {parent}"},
        ]
    }


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------

@pytest.fixture()
def store(tmp_path):
    return FakeStore(str(tmp_path / "generated"))


@pytest.fixture()
def providers():
    return FakeProviders()


@pytest.fixture()
def make_context(store):
    """Factory building an ExecutionContext from a template dict."""

    def _factory(template: Dict, initial_input: str = "", fakes: Optional[FakeProviders] = None,
                 artifact_store: Optional[ArtifactStore] = None) -> ExecutionContext:
        graph = load_tree(template, initial_input)
        return ExecutionContext(
            graph=graph,
            providers=(fakes or FakeProviders()).bundle(),
            store=artifact_store or store,
        )

    return _factory


_RealAsyncClient = httpx.AsyncClient


@pytest.fixture()
def mock_http(monkeypatch):
    """Route every httpx.AsyncClient through a handler; returns the request log."""
    requests = []

    def install(handler):
        def recording(request):
            requests.append(request)
            return handler(request)

        def factory(*args, **kwargs):
            kwargs["transport"] = httpx.MockTransport(recording)
            return _RealAsyncClient(*args, **kwargs)

        monkeypatch.setattr(httpx, "AsyncClient", factory)
        return requests

    return install
