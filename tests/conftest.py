import logging
from pathlib import Path

import pytest
from PIL import Image


def save_image(path: Path, color=(255, 0, 0), size=(8, 8)) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    Image.new("RGB", size, color).save(path)
    return path


@pytest.fixture
def make_image():
    return save_image


@pytest.fixture
def dataset(tmp_path: Path) -> Path:
    """Three images, two captioned, one in a subfolder."""
    root = tmp_path / "elf_set"
    save_image(root / "a.png", (255, 0, 0))
    (root / "a.txt").write_text("elf, red dress", encoding="utf-8")
    save_image(root / "b.png", (0, 255, 0))
    save_image(root / "sub" / "c.jpg", (0, 0, 255))
    (root / "sub" / "c.txt").write_text("elf, forest", encoding="utf-8")
    return root


@pytest.fixture(autouse=True)
def _reset_lorastudio_logging():
    yield
    logger = logging.getLogger("lorastudio")
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()
