import json

import pytest

from lorastudio.data.ratings import RatingStore, load_ratings, ratings_path, set_rating
from lorastudio.data.schema import Rating
from lorastudio.errors import InvalidArgument


def test_set_and_persist(tmp_path) -> None:
    store = RatingStore(tmp_path)
    assert store.get("a.png") is Rating.NONE
    assert store.set("a.png", "good") is Rating.GOOD
    assert store.set("sub\\c.jpg", Rating.NEEDS_EDIT) is Rating.NEEDS_EDIT

    data = json.loads(ratings_path(tmp_path).read_text(encoding="utf-8"))
    assert data == {"version": 1, "ratings": {"a.png": "good", "sub/c.jpg": "needs_edit"}}

    reloaded = load_ratings(tmp_path)
    assert reloaded.get("a.png") is Rating.GOOD
    assert reloaded.get("sub/c.jpg") is Rating.NEEDS_EDIT


def test_setting_none_removes_key(tmp_path) -> None:
    set_rating(tmp_path, "a.png", "bad")
    set_rating(tmp_path, "a.png", Rating.NONE)
    assert load_ratings(tmp_path).all() == {}


def test_unknown_rating_rejected(tmp_path) -> None:
    with pytest.raises(InvalidArgument):
        RatingStore(tmp_path).set("a.png", "excellent")
    with pytest.raises(InvalidArgument):
        RatingStore(tmp_path).set("", "good")


def test_lookup_tolerates_legacy_keys(tmp_path) -> None:
    path = ratings_path(tmp_path)
    path.parent.mkdir()
    payload = {
        "ratings": {
            "Sub\\C.JPG": "bad",
            f"{tmp_path.as_posix()}/a.png": "good",
            "b.png": "needs-edit",
        }
    }
    path.write_text(json.dumps(payload), encoding="utf-8")

    store = load_ratings(tmp_path)
    assert store.get("sub/c.jpg") is Rating.BAD
    assert store.get("a.png") is Rating.GOOD
    assert store.get("b.png") is Rating.NEEDS_EDIT


def test_set_replaces_case_variant_keys(tmp_path) -> None:
    path = ratings_path(tmp_path)
    path.parent.mkdir()
    path.write_text(json.dumps({"ratings": {"A.PNG": "bad"}}), encoding="utf-8")
    store = load_ratings(tmp_path)
    store.set("a.png", "good")
    assert store.all() == {"a.png": Rating.GOOD}


def test_corrupt_file_reads_as_empty(tmp_path) -> None:
    path = ratings_path(tmp_path)
    path.parent.mkdir()
    path.write_text("{not json", encoding="utf-8")
    assert load_ratings(tmp_path).all() == {}


@pytest.mark.parametrize(
    "raw",
    [
        json.dumps({"version": 1, "ratings": ["a.png"]}).encode("utf-8"),
        json.dumps(["a.png", "good"]).encode("utf-8"),
        b"\xff\xfe{\x80}",
    ],
)
def test_wrong_shape_or_encoding_reads_as_empty(tmp_path, raw) -> None:
    path = ratings_path(tmp_path)
    path.parent.mkdir()
    path.write_bytes(raw)

    store = load_ratings(tmp_path)
    assert store.all() == {}
    assert store.get("a.png") is Rating.NONE
    store.set("a.png", "bad")
    assert json.loads(path.read_text(encoding="utf-8"))["ratings"] == {"a.png": "bad"}
