import base64
import binascii
import logging
from io import BytesIO
from pathlib import Path
from typing import Optional, Sequence

import requests
from PIL import Image, ImageOps, UnidentifiedImageError

from common.config import (
    IMAGE_API_TIMEOUT_SECONDS,
    MAX_INPUT_SIDE,
    OPENAI_API_KEY,
    OPENAI_BASE_URL,
    OPENAI_MODEL,
    STYLE_REF_DIR,
)
from common.errors import NoImageReturnedError, ParseError, RateLimitedError, UpstreamError
from common.job_schema import TransformResult

logger = logging.getLogger(__name__)

STYLE_REF_PATTERN = "style_ref_*.png"

DEFAULT_INSTRUCTIONS = " ".join([
    "Redraw the FIRST image (the real person photo) as a polished character illustration.",
    "Copy the visual style from the style reference images provided:",
    "same outline thickness, flat fills, simple cel shading with one shadow tone,",
    "same head/body proportion, same facial style.",
    "Keep the person's identity, hairstyle, clothing colors, and pose recognizable from the first photo.",
    "Return ONLY the final character illustration on a plain white background, no text, no watermark.",
    "Output as a clean PNG, square framing.",
])

_CONTENT_TYPES = {
    "PNG": "image/png",
    "JPEG": "image/jpeg",
    "WEBP": "image/webp",
    "GIF": "image/gif",
}


def to_data_url(data: bytes, content_type: str = "image/png") -> str:
    return f"data:{content_type};base64,{base64.b64encode(data).decode('ascii')}"


def sniff_content_type(data: bytes) -> str:
    """Content type of an encoded image; raises NoImageReturnedError if it does not decode."""
    if not data:
        raise NoImageReturnedError("image payload is empty")
    try:
        with Image.open(BytesIO(data)) as img:
            img.verify()
            fmt = img.format
    except (UnidentifiedImageError, OSError, SyntaxError) as e:
        raise NoImageReturnedError(f"image payload does not decode: {e}") from e
    return _CONTENT_TYPES.get(fmt or "", f"image/{(fmt or 'octet-stream').lower()}")


def normalize_photo(data: bytes, max_side: int = MAX_INPUT_SIDE) -> bytes:
    """Upright RGB PNG no larger than max_side; undecodable input is passed through."""
    try:
        with Image.open(BytesIO(data)) as img:
            img = ImageOps.exif_transpose(img)
            img = img.convert("RGB")
            img.thumbnail((max_side, max_side))
            out = BytesIO()
            img.save(out, format="PNG")
    except (UnidentifiedImageError, OSError) as e:
        logger.warning("Could not normalize photo (%d bytes), sending as-is: %s", len(data), e)
        return data
    return out.getvalue()


def load_style_images(style_dir: Path) -> list[bytes]:
    paths = sorted(Path(style_dir).glob(STYLE_REF_PATTERN))
    if not paths:
        logger.warning("No style references matching %s in %s", STYLE_REF_PATTERN, style_dir)
    return [p.read_bytes() for p in paths]


def _b64_bytes(value) -> Optional[bytes]:
    if not isinstance(value, str) or not value:
        return None
    if value.startswith("data:"):
        value = value.partition(",")[2]
    try:
        return base64.b64decode(value, validate=True)
    except (ValueError, binascii.Error):
        return None


def decode_image_payload(body) -> bytes:
    """Pull the generated image out of an upstream response body.

    Known shapes, tried in order:
      output[*] {"type": "image_generation_call", "result": <b64>}
      output[*].content[*] {"image": <b64>} or {"image_base64": <b64>}
      data[*] {"b64_json": <b64>}
    """
    if not isinstance(body, dict):
        raise ParseError(f"expected a JSON object, got {type(body).__name__}")

    candidates = []
    for item in body.get("output") or []:
        if not isinstance(item, dict):
            continue
        if item.get("type") == "image_generation_call":
            candidates.append(item.get("result"))
        for part in item.get("content") or []:
            if isinstance(part, dict):
                candidates.append(part.get("image") or part.get("image_base64"))
    for item in body.get("data") or []:
        if isinstance(item, dict):
            candidates.append(item.get("b64_json"))

    for candidate in candidates:
        blob = _b64_bytes(candidate)
        if blob:
            return blob
    raise ParseError(f"no image in response (keys: {sorted(body)})")


def _is_rate_limited(status_code: int, body) -> bool:
    if status_code == 429:
        return True
    error = body.get("error") if isinstance(body, dict) else None
    if isinstance(error, dict):
        tag = f"{error.get('code') or ''} {error.get('type') or ''}"
        return "rate_limit" in tag
    return False


class Stylizer:
    """Turns a visitor photo into an illustration in the booth's house style."""

    def __init__(
        self,
        api_key: Optional[str] = OPENAI_API_KEY,
        model: str = OPENAI_MODEL,
        base_url: str = OPENAI_BASE_URL,
        style_dir: Path = STYLE_REF_DIR,
        timeout: float = IMAGE_API_TIMEOUT_SECONDS,
    ):
        self.api_key = api_key
        self.model = model
        self.base_url = base_url.rstrip("/")
        self.style_dir = Path(style_dir)
        self.timeout = timeout
        self._style_images: Optional[list[bytes]] = None

    @property
    def style_images(self) -> list[bytes]:
        if self._style_images is None:
            self._style_images = load_style_images(self.style_dir)
        return self._style_images

    def build_request(self, subject_image: bytes, style_images: Sequence[bytes], instructions: str) -> dict:
        content = [{"type": "input_image", "image_url": to_data_url(subject_image)}]
        content += [{"type": "input_image", "image_url": to_data_url(img)} for img in style_images]
        content.append({"type": "input_text", "text": instructions})
        return {
            "model": self.model,
            "input": [{"role": "user", "content": content}],
            "tools": [{"type": "image_generation"}],
            "tool_choice": {"type": "image_generation"},
        }

    def transform(
        self,
        subject_image: bytes,
        style_images: Optional[Sequence[bytes]] = None,
        instructions: Optional[str] = None,
    ) -> TransformResult:
        if not self.api_key:
            raise UpstreamError("OPENAI_API_KEY env var is missing")
        if style_images is None:
            style_images = self.style_images
        payload = self.build_request(subject_image, style_images, instructions or DEFAULT_INSTRUCTIONS)

        try:
            resp = requests.post(
                f"{self.base_url}/responses",
                headers={
                    "Authorization": f"Bearer {self.api_key}",
                    "Content-Type": "application/json",
                },
                json=payload,
                timeout=self.timeout,
            )
        except requests.RequestException as e:
            raise UpstreamError(f"image request failed: {e}") from e

        try:
            body = resp.json()
        except ValueError:
            body = None

        if _is_rate_limited(resp.status_code, body):
            logger.warning("Image API rate limited (status=%s)", resp.status_code)
            raise RateLimitedError(f"rate limited by image API (status {resp.status_code})")
        if resp.status_code != 200:
            snippet = resp.text[:400]
            logger.error("Image API non-200 status=%s body=%s", resp.status_code, snippet)
            raise UpstreamError(f"image API returned {resp.status_code}: {snippet}")
        if body is None:
            raise ParseError("image API returned a non-JSON body")

        image = decode_image_payload(body)
        return TransformResult(image=image, content_type=sniff_content_type(image))
