"""Prompt templates and the effective-prompt builder used for every caption request."""
from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Iterable, Optional, Sequence

from lorastudio.errors import InvalidArgument

NAME_PLACEHOLDER = "{name}"
LENGTH_PLACEHOLDER = "{length}"


@dataclass(frozen=True)
class PromptTemplate:
    id: str
    name: str
    prompt: str


@dataclass(frozen=True)
class ExtraOption:
    id: str
    text: str


DEFAULT_PROMPT_TEMPLATES = (
    PromptTemplate(
        "descriptive",
        "Descriptive",
        "Write a {length} detailed description for this image.",
    ),
    PromptTemplate(
        "training",
        "Training caption",
        "Write a {length} caption for this image suitable for training a text-to-image model. "
        "Describe {name}, the setting, lighting and composition.",
    ),
    PromptTemplate(
        "booru",
        "Booru tags",
        "Write a comma-separated list of booru-style tags for this image.",
    ),
)

DEFAULT_EXTRA_OPTIONS = (
    ExtraOption("no_text", "Do not mention any text that is in the image."),
    ExtraOption("no_resolution", "Do not mention the image's resolution."),
    ExtraOption("lighting", "Include information about lighting."),
    ExtraOption("camera_angle", "Include information about camera angle."),
    ExtraOption("refer_name", "If there is a person or character in the image, refer to them as {name}."),
    ExtraOption("no_ambiguity", "Do not use any ambiguous language."),
)


def _collapse(text: str) -> str:
    return re.sub(r"\s+", " ", text).strip()


def substitute_name(text: str, character_name: str) -> str:
    value = character_name.strip() or "the character"
    return text.replace(NAME_PLACEHOLDER, value)


def substitute_length(text: str, length: Optional[str]) -> str:
    return _collapse(text.replace(LENGTH_PLACEHOLDER, length or ""))


def template_by_id(template_id: str, templates: Iterable[PromptTemplate] = DEFAULT_PROMPT_TEMPLATES) -> PromptTemplate:
    for template in templates:
        if template.id == template_id:
            return template
    raise InvalidArgument(f"Unknown prompt template: {template_id}")


def build_effective_prompt(
    base_prompt: str,
    *,
    word_count: Optional[int] = None,
    length: Optional[str] = None,
    character_name: str = "",
    extra_option_ids: Sequence[str] = (),
    extra_options: Iterable[ExtraOption] = DEFAULT_EXTRA_OPTIONS,
) -> str:
    """Final prompt sent to the provider for single and batch captioning."""
    prompt = substitute_length(base_prompt.strip(), length)
    prompt = substitute_name(prompt, character_name)

    if word_count is not None and word_count > 0:
        prompt += f" Keep it within {word_count} words."

    selected = [o for o in extra_options if o.id in set(extra_option_ids)]
    if selected:
        prompt += " " + " ".join(substitute_name(o.text, character_name) for o in selected)

    prompt = _collapse(prompt)
    if not prompt:
        raise InvalidArgument("Prompt is empty")
    return prompt


def validate_prompt(prompt: str) -> str:
    cleaned = _collapse(prompt or "")
    if not cleaned:
        raise InvalidArgument("Prompt is empty")
    return cleaned
