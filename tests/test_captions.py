import pytest

from lorastudio.data import captions
from lorastudio.errors import InvalidArgument, IoFailure, NotFound


def test_parse_tags_trims_and_drops_empties() -> None:
    assert captions.parse_tags(" a, ,b ,, c ") == ["a", "b", "c"]
    assert captions.parse_tags("") == []


def test_write_and_read_back(tmp_path, make_image) -> None:
    img = make_image(tmp_path / "a.png")
    written = captions.write_tags(img, ["elf", " red dress ", "", "forest"])
    assert written == ["elf", "red dress", "forest"]
    assert (tmp_path / "a.txt").read_text(encoding="utf-8") == "elf, red dress, forest"
    assert captions.read_tags(img) == written


def test_missing_and_empty_sidecar_both_mean_no_caption(tmp_path, make_image) -> None:
    img = make_image(tmp_path / "a.png")
    missing = captions.read_caption(img)
    assert not missing.exists and missing.tags == []

    captions.write_tags(img, [])
    empty = captions.read_caption(img)
    assert empty.exists
    assert empty.tags == []


def test_read_strips_byte_order_mark(tmp_path, make_image) -> None:
    img = make_image(tmp_path / "a.png")
    (tmp_path / "a.txt").write_bytes(b"\xef\xbb\xbfelf, smiling")
    assert captions.read_tags(img) == ["elf", "smiling"]


def test_invalid_utf8_sidecar_is_an_io_failure(tmp_path, make_image) -> None:
    img = make_image(tmp_path / "a.png")
    (tmp_path / "a.txt").write_bytes(b"\xff\xfeelf, \x80smiling")
    with pytest.raises(IoFailure) as excinfo:
        captions.read_caption(img)
    assert excinfo.value.kind == "io_failure"


def test_add_tag_is_case_insensitive_noop(tmp_path, make_image) -> None:
    img = make_image(tmp_path / "a.png")
    captions.write_tags(img, ["Elf", "forest"])
    assert captions.add_tag(img, "elf") == ["Elf", "forest"]
    assert captions.add_tag(img, "night") == ["Elf", "forest", "night"]
    assert captions.add_tag(img, "masterpiece", front=True)[0] == "masterpiece"


def test_add_empty_tag_rejected(tmp_path, make_image) -> None:
    img = make_image(tmp_path / "a.png")
    with pytest.raises(InvalidArgument):
        captions.add_tag(img, "  ")
    assert not (tmp_path / "a.txt").exists()


def test_remove_tag(tmp_path, make_image) -> None:
    img = make_image(tmp_path / "a.png")
    captions.write_tags(img, ["Elf", "forest"])
    assert captions.remove_tag(img, "ELF") == ["forest"]
    assert captions.remove_tag(tmp_path / "other.png", "elf") == []


def test_replace_in_tags() -> None:
    tags = ["red dress", "elf"]
    assert captions.replace_in_tags(tags, "Red Dress", "blue dress") == ["blue dress", "elf"]
    assert captions.replace_in_tags(["red dress", "red hair"], "red", "blue", whole_tag=False) == [
        "blue dress",
        "blue hair",
    ]
    assert captions.replace_in_tags(["a", "b"], "a", "b") == ["b"]
    assert captions.replace_in_tags(["a", "b"], "a", "") == ["b"]
    with pytest.raises(InvalidArgument):
        captions.replace_in_tags(tags, " ", "x")


def test_clear_all_captions(dataset) -> None:
    assert captions.clear_all_captions(dataset) == 3
    for sidecar in (dataset / "a.txt", dataset / "b.txt", dataset / "sub" / "c.txt"):
        assert sidecar.read_text(encoding="utf-8") == ""


def test_delete_image_removes_sidecar(dataset) -> None:
    captions.delete_image(dataset / "a.png")
    assert not (dataset / "a.png").exists()
    assert not (dataset / "a.txt").exists()
    with pytest.raises(NotFound):
        captions.delete_image(dataset / "a.png")
