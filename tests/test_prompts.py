import pytest

from lorastudio.captioning.prompts import (
    build_effective_prompt,
    substitute_name,
    template_by_id,
    validate_prompt,
)
from lorastudio.errors import InvalidArgument


def test_placeholders_and_word_limit() -> None:
    prompt = build_effective_prompt(
        "Write a {length} caption describing {name}.",
        word_count=40,
        length="short",
        character_name="Aria",
    )
    assert prompt == "Write a short caption describing Aria. Keep it within 40 words."


def test_missing_length_collapses_whitespace() -> None:
    prompt = build_effective_prompt(template_by_id("descriptive").prompt)
    assert prompt == "Write a detailed description for this image."


def test_extra_options_in_catalog_order() -> None:
    prompt = build_effective_prompt("Describe.", extra_option_ids=["refer_name", "no_text"])
    assert prompt == (
        "Describe. Do not mention any text that is in the image. "
        "If there is a person or character in the image, refer to them as the character."
    )


def test_name_default() -> None:
    assert substitute_name("{name} smiles", "  ") == "the character smiles"


def test_empty_prompts_rejected() -> None:
    with pytest.raises(InvalidArgument):
        build_effective_prompt("   ")
    with pytest.raises(InvalidArgument):
        validate_prompt("")
    with pytest.raises(InvalidArgument):
        template_by_id("nope")
