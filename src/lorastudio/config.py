"""Optional YAML/JSON settings file for the command line.

Example::

    log_level: INFO
    provider:
      name: ollama
      endpoint: http://localhost:11434/v1
      model: llava:13b
    batch:
      concurrency: 2
      prompt: Write a short caption for this image.
    export:
      trigger_word: elf
      kohya_repeats: 10
"""
from __future__ import annotations

import json
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

import yaml

from lorastudio.captioning.batch import DEFAULT_CONCURRENCY
from lorastudio.captioning.providers import DEFAULT_TIMEOUT, PROVIDERS
from lorastudio.data.hashing import CHUNK_SIZE
from lorastudio.errors import InvalidArgument, IoFailure, NotFound

DEFAULT_PROMPT = (
    "Write a concise caption for this image as comma-separated tags, "
    "covering subject, clothing, pose, setting and lighting."
)


@dataclass
class ProviderConfig:
    name: str = "lm_studio"
    endpoint: str = ""
    model: str = ""
    timeout: float = DEFAULT_TIMEOUT
    api_key: Optional[str] = None
    python_path: str = "python"
    script_path: Optional[str] = None
    mode: str = "descriptive"
    low_vram: bool = False

    def provider_kwargs(self) -> Dict[str, Any]:
        if self.name == "joycaption":
            return {
                "python_path": self.python_path,
                "script_path": self.script_path,
                "mode": self.mode,
                "low_vram": self.low_vram,
                "timeout": self.timeout,
            }
        kwargs: Dict[str, Any] = {"timeout": self.timeout}
        if self.api_key:
            kwargs["api_key"] = self.api_key
        return kwargs


@dataclass
class BatchConfig:
    concurrency: int = DEFAULT_CONCURRENCY
    prompt: str = DEFAULT_PROMPT
    ratings: List[str] = field(default_factory=list)
    only_uncaptioned: bool = False


@dataclass
class ExportConfig:
    trigger_word: str = ""
    sequential_naming: bool = False
    kohya_repeats: int = 10
    caption_format: str = "txt"


@dataclass
class HashingConfig:
    workers: Optional[int] = None
    chunk_size: int = CHUNK_SIZE


@dataclass
class StudioConfig:
    provider: ProviderConfig = field(default_factory=ProviderConfig)
    batch: BatchConfig = field(default_factory=BatchConfig)
    export: ExportConfig = field(default_factory=ExportConfig)
    hashing: HashingConfig = field(default_factory=HashingConfig)
    log_level: str = "INFO"
    log_file: Optional[str] = None


def _section(cls, data: Any, name: str):
    if data is None:
        return cls()
    if not isinstance(data, dict):
        raise InvalidArgument(f"Config section '{name}' must be a mapping")
    known = {f.name for f in fields(cls)}
    unknown = sorted(set(data) - known)
    if unknown:
        raise InvalidArgument(f"Unknown keys in config section '{name}': {', '.join(unknown)}")
    return cls(**data)


class ConfigLoader:
    def __init__(self, path: Union[str, Path]):
        self.path = Path(path).expanduser()

    def load(self) -> StudioConfig:
        if not self.path.is_file():
            raise NotFound(f"Config file not found: {self.path}")
        try:
            with self.path.open("r", encoding="utf-8") as f:
                if self.path.suffix.lower() in {".yaml", ".yml"}:
                    data = yaml.safe_load(f)
                else:
                    data = json.load(f)
        except OSError as exc:
            raise IoFailure(f"Cannot read config {self.path}: {exc}") from exc
        except (yaml.YAMLError, ValueError) as exc:
            raise InvalidArgument(f"Malformed config {self.path}: {exc}") from exc
        return self.from_dict(data or {})

    def from_dict(self, data: Dict[str, Any]) -> StudioConfig:
        if not isinstance(data, dict):
            raise InvalidArgument(f"Config {self.path} must be a mapping")
        cfg = StudioConfig(
            provider=_section(ProviderConfig, data.get("provider"), "provider"),
            batch=_section(BatchConfig, data.get("batch"), "batch"),
            export=_section(ExportConfig, data.get("export"), "export"),
            hashing=_section(HashingConfig, data.get("hashing"), "hashing"),
            log_level=str(data.get("log_level", "INFO")),
            log_file=data.get("log_file"),
        )

        cfg.provider.name = cfg.provider.name.strip().lower()
        if cfg.provider.name not in PROVIDERS:
            raise InvalidArgument(f"Unsupported caption provider: {cfg.provider.name}")
        if cfg.batch.concurrency < 1:
            raise InvalidArgument(f"batch.concurrency must be at least 1, got {cfg.batch.concurrency}")

        base_dir = self.path.parent

        def _abspath(relative_path: Optional[str]) -> Optional[str]:
            if not relative_path:
                return relative_path
            p = Path(relative_path).expanduser()
            if not p.is_absolute():
                p = (base_dir / p).resolve()
            return str(p)

        cfg.provider.script_path = _abspath(cfg.provider.script_path)
        cfg.log_file = _abspath(cfg.log_file)
        return cfg


def load_config(path: Optional[Union[str, Path]] = None) -> StudioConfig:
    if path is None:
        return StudioConfig()
    return ConfigLoader(path).load()
