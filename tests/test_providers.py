import sys
from types import SimpleNamespace

import pytest
import requests

from lorastudio.captioning.providers import (
    JoyCaptionProvider,
    LmStudioProvider,
    OllamaProvider,
    OpenAICompatibleProvider,
    create_provider,
)
from lorastudio.errors import InvalidArgument


class FakeClient:
    def __init__(self, content="elf, smiling", models=("llava",)):
        self.calls = []
        self.content = content
        self.chat = SimpleNamespace(completions=SimpleNamespace(create=self._create))
        self.models = SimpleNamespace(list=lambda: SimpleNamespace(data=[SimpleNamespace(id=m) for m in models]))

    def _create(self, **kwargs):
        self.calls.append(kwargs)
        message = SimpleNamespace(content=self.content)
        return SimpleNamespace(choices=[SimpleNamespace(message=message)])


def _factory(client, seen=None):
    def make(base_url, api_key, timeout):
        if seen is not None:
            seen.append((base_url, api_key, timeout))
        return client

    return make


def test_openai_compatible_generate(tmp_path, make_image) -> None:
    img = make_image(tmp_path / "a.png")
    client = FakeClient(content="  elf, smiling \n")
    seen = []
    provider = LmStudioProvider(client_factory=_factory(client, seen), timeout=30)

    result = provider.generate(img, "http://localhost:1234/", "llava", "Describe.")

    assert result.success and result.caption == "elf, smiling"
    assert seen == [("http://localhost:1234/v1", "lm-studio", 30)]
    call = client.calls[0]
    assert call["model"] == "llava"
    text, image = call["messages"][0]["content"]
    assert text == {"type": "text", "text": "Describe."}
    assert image["image_url"]["url"].startswith("data:image/png;base64,")


def test_client_is_reused_per_endpoint(tmp_path, make_image) -> None:
    img = make_image(tmp_path / "a.png")
    seen = []
    provider = OpenAICompatibleProvider(client_factory=_factory(FakeClient(), seen))
    provider.generate(img, "http://host:8000/v1", "m", "p")
    provider.generate(img, "http://host:8000/v1", "m", "p")
    assert len(seen) == 1


def test_generate_failures_are_results(tmp_path, make_image) -> None:
    img = make_image(tmp_path / "a.png")
    provider = OpenAICompatibleProvider(client_factory=_factory(FakeClient(content="   ")))

    assert not provider.generate(img, "", "", "p").success
    empty = provider.generate(img, "", "m", "p")
    assert not empty.success and "empty" in empty.error
    missing = provider.generate(tmp_path / "missing.png", "", "m", "p")
    assert not missing.success


def test_openai_model_listing() -> None:
    provider = OpenAICompatibleProvider(client_factory=_factory(FakeClient(models=("a", "b"))))
    status = provider.test_connection("http://host:8000")
    assert status.connected and status.models == ["a", "b"]


def test_ollama_lists_models_from_tags_endpoint(monkeypatch) -> None:
    calls = []

    def fake_get(url, timeout):
        calls.append((url, timeout))
        payload = {"models": [{"name": "llava:13b"}, {"name": "moondream"}]}
        return SimpleNamespace(ok=True, status_code=200, json=lambda: payload)

    monkeypatch.setattr(requests, "get", fake_get)
    status = OllamaProvider().test_connection("http://localhost:11434/v1")

    assert calls == [("http://localhost:11434/api/tags", 10)]
    assert status.connected and status.models == ["llava:13b", "moondream"]


def test_ollama_connection_errors(monkeypatch) -> None:
    def refused(url, timeout):
        raise requests.ConnectionError("refused")

    monkeypatch.setattr(requests, "get", refused)
    status = OllamaProvider().test_connection("")
    assert not status.connected and "refused" in status.error

    monkeypatch.setattr(requests, "get", lambda url, timeout: SimpleNamespace(ok=False, status_code=500))
    assert OllamaProvider().test_connection("").error == "Ollama returned status: 500"


@pytest.mark.parametrize(
    "payload",
    [
        [{"name": "llava"}],
        {"models": "llava"},
        {"models": {"name": "llava"}},
    ],
)
def test_ollama_unexpected_tags_shape(monkeypatch, payload) -> None:
    monkeypatch.setattr(
        requests, "get", lambda url, timeout: SimpleNamespace(ok=True, status_code=200, json=lambda: payload)
    )
    status = OllamaProvider().test_connection("")
    assert not status.connected
    assert "models" in status.error


def test_ollama_ignores_malformed_model_entries(monkeypatch) -> None:
    payload = {"models": [{"name": "llava"}, "moondream", {"size": 1}, {"name": None}]}
    monkeypatch.setattr(
        requests, "get", lambda url, timeout: SimpleNamespace(ok=True, status_code=200, json=lambda: payload)
    )
    status = OllamaProvider().test_connection("")
    assert status.connected and status.models == ["llava"]


JOY_SCRIPT = """
import argparse, sys
parser = argparse.ArgumentParser()
parser.add_argument("--image")
parser.add_argument("--mode")
parser.add_argument("--low-vram", action="store_true")
args = parser.parse_args()
if args.mode == "explode":
    print("model failed to load", file=sys.stderr)
    sys.exit(2)
print(f"{args.mode}, low_vram={args.low_vram}")
"""


@pytest.fixture
def joy_script(tmp_path):
    script = tmp_path / "joy.py"
    script.write_text(JOY_SCRIPT, encoding="utf-8")
    return script


def test_joycaption_subprocess(tmp_path, make_image, joy_script) -> None:
    img = make_image(tmp_path / "a.png")
    provider = JoyCaptionProvider(python_path=sys.executable, script_path=str(joy_script), low_vram=True)

    assert provider.command(img)[-1] == "--low-vram"
    result = provider.generate(img, "", "", "ignored prompt")
    assert result.success and result.caption == "descriptive, low_vram=True"
    assert provider.generate(img, "", "booru", "p").caption.startswith("booru")


def test_joycaption_failures(tmp_path, make_image, joy_script) -> None:
    img = make_image(tmp_path / "a.png")
    provider = JoyCaptionProvider(python_path=sys.executable, script_path=str(joy_script))
    failed = provider.generate(img, "", "explode", "p")
    assert not failed.success and failed.error == "model failed to load"

    missing = JoyCaptionProvider(python_path=str(tmp_path / "no-python"), script_path=str(joy_script))
    assert not missing.generate(img, "", "", "p").success


def test_create_provider() -> None:
    assert isinstance(create_provider("LM_Studio"), LmStudioProvider)
    assert isinstance(create_provider("joycaption", mode="booru"), JoyCaptionProvider)
    with pytest.raises(InvalidArgument):
        create_provider("gpt-vision")
