"""Caption provider gateway.

A provider turns ``(image, endpoint, model, prompt)`` into a caption string.
Failures are returned, not raised: one bad item must never abort a batch, so
connection errors, timeouts and bad responses all come back as
``CaptionResult(success=False, error=...)``.  Each provider owns a bounded
timeout; the orchestrator imposes none of its own.

Backends:
  - ``lm_studio`` / ``openai``: OpenAI-compatible ``/v1/chat/completions`` with
    the image inlined as a base64 data URL.
  - ``ollama``: same wire shape at ``:11434/v1``; model list from ``/api/tags``.
  - ``joycaption``: a local Python process printing the caption on stdout.
"""
from __future__ import annotations

import base64
import logging
import mimetypes
import subprocess
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Union

import openai
import requests
from openai import OpenAI

from lorastudio.errors import InvalidArgument

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 120.0
LM_STUDIO_BASE_URL = "http://localhost:1234"
OLLAMA_BASE_URL = "http://localhost:11434/v1"


@dataclass
class CaptionResult:
    success: bool
    caption: str = ""
    error: Optional[str] = None

    @classmethod
    def ok(cls, caption: str) -> "CaptionResult":
        return cls(success=True, caption=caption)

    @classmethod
    def fail(cls, error: str) -> "CaptionResult":
        return cls(success=False, error=error)


@dataclass
class ConnectionStatus:
    connected: bool
    models: List[str] = field(default_factory=list)
    error: Optional[str] = None


class CaptionProvider(ABC):
    name = "base"
    default_endpoint = ""

    @abstractmethod
    def generate(self, image_path: Union[str, Path], endpoint: str, model: str, prompt: str) -> CaptionResult:
        raise NotImplementedError

    def test_connection(self, endpoint: str) -> ConnectionStatus:
        return ConnectionStatus(connected=True)


def image_data_url(image_path: Union[str, Path]) -> str:
    path = Path(image_path)
    mime = mimetypes.guess_type(path.name)[0] or "image/png"
    b64 = base64.b64encode(path.read_bytes()).decode("utf-8")
    return f"data:{mime};base64,{b64}"


def build_messages(prompt: str, data_url: str) -> List[Dict[str, Any]]:
    return [
        {
            "role": "user",
            "content": [
                {"type": "text", "text": prompt},
                {"type": "image_url", "image_url": {"url": data_url}},
            ],
        }
    ]


def _openai_client(base_url: str, api_key: str, timeout: float) -> Any:
    return OpenAI(base_url=base_url, api_key=api_key, timeout=timeout, max_retries=0)


class OpenAICompatibleProvider(CaptionProvider):
    name = "openai"
    default_endpoint = "http://localhost:8000/v1"

    def __init__(
        self,
        *,
        api_key: str = "not-needed",
        timeout: float = DEFAULT_TIMEOUT,
        temperature: float = 0.7,
        max_tokens: Optional[int] = 512,
        client_factory: Callable[[str, str, float], Any] = _openai_client,
    ):
        self.api_key = api_key
        self.timeout = timeout
        self.temperature = temperature
        self.max_tokens = max_tokens
        self._client_factory = client_factory
        self._clients: Dict[str, Any] = {}
        self._clients_lock = threading.Lock()

    def base_url(self, endpoint: str) -> str:
        base = (endpoint or self.default_endpoint).strip().rstrip("/")
        return base if base.endswith("/v1") else f"{base}/v1"

    def _client(self, endpoint: str) -> Any:
        base = self.base_url(endpoint)
        with self._clients_lock:
            client = self._clients.get(base)
            if client is None:
                client = self._client_factory(base, self.api_key, self.timeout)
                self._clients[base] = client
        return client

    def generate(self, image_path: Union[str, Path], endpoint: str, model: str, prompt: str) -> CaptionResult:
        if not model:
            return CaptionResult.fail("No model selected")
        try:
            data_url = image_data_url(image_path)
        except OSError as exc:
            return CaptionResult.fail(f"Cannot read image {image_path}: {exc}")

        kwargs: Dict[str, Any] = {
            "model": model,
            "messages": build_messages(prompt, data_url),
            "temperature": self.temperature,
        }
        if self.max_tokens:
            kwargs["max_tokens"] = self.max_tokens

        logger.debug("Captioning %s with %s at %s", image_path, model, self.base_url(endpoint))
        try:
            response = self._client(endpoint).chat.completions.create(**kwargs)
        except openai.APITimeoutError:
            return CaptionResult.fail(f"{self.name}: request timed out after {self.timeout:.0f}s")
        except openai.APIConnectionError as exc:
            return CaptionResult.fail(f"{self.name}: connection failed: {exc}")
        except openai.APIStatusError as exc:
            return CaptionResult.fail(f"{self.name}: server returned {exc.status_code}: {exc.message}")
        except openai.APIError as exc:
            return CaptionResult.fail(f"{self.name}: {exc}")

        try:
            content = response.choices[0].message.content
        except (AttributeError, IndexError) as exc:
            return CaptionResult.fail(f"{self.name}: malformed response: {exc}")
        caption = (content or "").strip()
        if not caption:
            return CaptionResult.fail(f"{self.name}: empty response")
        return CaptionResult.ok(caption)

    def test_connection(self, endpoint: str) -> ConnectionStatus:
        try:
            page = self._client(endpoint).models.list()
        except openai.APIError as exc:
            return ConnectionStatus(connected=False, error=f"Connection failed: {exc}")
        return ConnectionStatus(connected=True, models=[m.id for m in page.data])


class LmStudioProvider(OpenAICompatibleProvider):
    name = "lm_studio"
    default_endpoint = LM_STUDIO_BASE_URL

    def __init__(self, **kwargs: Any):
        kwargs.setdefault("api_key", "lm-studio")
        super().__init__(**kwargs)


class OllamaProvider(OpenAICompatibleProvider):
    name = "ollama"
    default_endpoint = OLLAMA_BASE_URL

    def __init__(self, **kwargs: Any):
        kwargs.setdefault("api_key", "ollama")
        super().__init__(**kwargs)

    def tags_url(self, endpoint: str) -> str:
        base = (endpoint or self.default_endpoint).strip().rstrip("/")
        if base.endswith("/v1"):
            base = base[: -len("/v1")].rstrip("/")
        return f"{base}/api/tags"

    def test_connection(self, endpoint: str) -> ConnectionStatus:
        url = self.tags_url(endpoint)
        try:
            response = requests.get(url, timeout=10)
        except requests.RequestException as exc:
            return ConnectionStatus(connected=False, error=f"Connection failed: {exc}")
        if not response.ok:
            return ConnectionStatus(connected=False, error=f"Ollama returned status: {response.status_code}")
        try:
            payload = response.json()
        except ValueError as exc:
            return ConnectionStatus(connected=False, error=f"Bad response from {url}: {exc}")
        models = payload.get("models") if isinstance(payload, dict) else None
        if models is None and isinstance(payload, dict):
            models = []
        if not isinstance(models, list):
            return ConnectionStatus(connected=False, error=f"Bad response from {url}: expected a \"models\" list")
        names = [m["name"] for m in models if isinstance(m, dict) and isinstance(m.get("name"), str)]
        return ConnectionStatus(connected=True, models=names)


class JoyCaptionProvider(CaptionProvider):
    """Runs JoyCaption as a subprocess, one image per call.

    ``endpoint`` is unused; a non-empty ``model`` overrides the caption mode.
    The prompt is not forwarded: JoyCaption picks its instruction from the mode.
    """

    name = "joycaption"

    def __init__(
        self,
        *,
        python_path: str = "python",
        script_path: Optional[str] = None,
        mode: str = "descriptive",
        low_vram: bool = False,
        timeout: float = 600.0,
    ):
        self.python_path = python_path
        self.script_path = script_path
        self.mode = mode
        self.low_vram = low_vram
        self.timeout = timeout

    def command(self, image_path: Union[str, Path], mode: Optional[str] = None) -> List[str]:
        cmd = [self.python_path]
        cmd += [self.script_path] if self.script_path else ["-m", "joycaption"]
        cmd += ["--image", str(image_path), "--mode", mode or self.mode]
        if self.low_vram:
            cmd.append("--low-vram")
        return cmd

    def generate(self, image_path: Union[str, Path], endpoint: str, model: str, prompt: str) -> CaptionResult:
        cmd = self.command(image_path, mode=model or None)
        try:
            completed = subprocess.run(
                cmd,
                capture_output=True,
                text=True,
                encoding="utf-8",
                errors="replace",
                timeout=self.timeout,
            )
        except FileNotFoundError as exc:
            return CaptionResult.fail(f"Failed to start JoyCaption: {exc}")
        except subprocess.TimeoutExpired:
            return CaptionResult.fail(f"JoyCaption timed out after {self.timeout:.0f}s")
        except OSError as exc:
            return CaptionResult.fail(f"Failed to start JoyCaption: {exc}")

        if completed.returncode != 0:
            stderr = (completed.stderr or "").strip()
            return CaptionResult.fail(stderr or f"JoyCaption exited with code: {completed.returncode}")
        caption = (completed.stdout or "").strip()
        if not caption:
            return CaptionResult.fail("JoyCaption returned no caption")
        return CaptionResult.ok(caption)


PROVIDERS = {
    "lm_studio": LmStudioProvider,
    "ollama": OllamaProvider,
    "openai": OpenAICompatibleProvider,
    "joycaption": JoyCaptionProvider,
}


def create_provider(name: str = "lm_studio", **kwargs: Any) -> CaptionProvider:
    key = (name or "").strip().lower()
    try:
        cls = PROVIDERS[key]
    except KeyError:
        raise InvalidArgument(f"Unsupported caption provider: {name}") from None
    return cls(**kwargs)

