from __future__ import annotations

import json
import sys
import threading
import time
from io import BytesIO
from pathlib import Path

import pytest
from PIL import Image

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from common.job_schema import TransformResult
from common.storage import BlobStore


def make_png(color: tuple[int, int, int] = (255, 0, 0), size: tuple[int, int] = (8, 8)) -> bytes:
    out = BytesIO()
    Image.new("RGB", size, color).save(out, format="PNG")
    return out.getvalue()


class FakeStylizer:
    """Stands in for the image API; records call order and concurrency."""

    def __init__(self, outcomes=None, slow_inputs=(), slow_seconds: float = 0.3):
        self.outcomes = list(outcomes or [])
        self.slow_inputs = set(slow_inputs)
        self.slow_seconds = slow_seconds
        self.calls: list[bytes] = []
        self.active = 0
        self.max_active = 0
        self._lock = threading.Lock()

    def transform(self, subject_image, style_images=None, instructions=None):
        with self._lock:
            self.calls.append(subject_image)
            self.active += 1
            self.max_active = max(self.max_active, self.active)
            outcome = self.outcomes.pop(0) if self.outcomes else None
        try:
            if subject_image in self.slow_inputs:
                time.sleep(self.slow_seconds)
            else:
                time.sleep(0.01)
            if isinstance(outcome, Exception):
                raise outcome
            return TransformResult(image=outcome or make_png((0, 0, 255)), content_type="image/png")
        finally:
            with self._lock:
                self.active -= 1


class FakeResponse:
    def __init__(self, status_code: int = 200, body=None, content: bytes = b""):
        self.status_code = status_code
        self._body = body
        self.text = json.dumps(body) if body is not None else content.decode("latin-1")
        self.content = content

    @property
    def ok(self) -> bool:
        return self.status_code < 400

    def json(self):
        if self._body is None:
            raise ValueError("no json body")
        return self._body


@pytest.fixture()
def png_bytes() -> bytes:
    return make_png()


@pytest.fixture()
def local_store(tmp_path: Path) -> BlobStore:
    return BlobStore(backend="local", local_dir=tmp_path / "store")
