import io

import pytest
from PIL import Image


@pytest.fixture
def make_image():
    """Factory: encoded image bytes of the given format and size."""

    def _make(fmt: str = "PNG", size: tuple[int, int] = (16, 10), color=(200, 30, 30)) -> bytes:
        buf = io.BytesIO()
        Image.new("RGB", size, color).save(buf, format=fmt)
        return buf.getvalue()

    return _make
