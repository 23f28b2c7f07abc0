from __future__ import annotations

import base64
from io import BytesIO
from unittest.mock import patch

import pytest
import requests
from PIL import Image

from common.config import TRANSFORM_TIMEOUT_SECONDS
from common.errors import NoImageReturnedError, ParseError, RateLimitedError, UpstreamError
from common.stylizer import (
    DEFAULT_INSTRUCTIONS,
    Stylizer,
    decode_image_payload,
    normalize_photo,
    sniff_content_type,
)
from conftest import FakeResponse, make_png


def _b64(data: bytes) -> str:
    return base64.b64encode(data).decode("ascii")


@pytest.fixture()
def stylizer(tmp_path) -> Stylizer:
    (tmp_path / "style_ref_1.png").write_bytes(make_png((10, 10, 10)))
    (tmp_path / "style_ref_2.png").write_bytes(make_png((20, 20, 20)))
    (tmp_path / "notes.txt").write_text("not a reference")
    return Stylizer(api_key="sk-test", model="gpt-test", base_url="https://api.example/v1/", style_dir=tmp_path)


# ---------- decoder ----------

def test_decode_image_generation_call() -> None:
    png = make_png()
    body = {"output": [
        {"type": "reasoning", "summary": []},
        {"type": "image_generation_call", "result": _b64(png)},
    ]}
    assert decode_image_payload(body) == png


def test_decode_message_content_image() -> None:
    png = make_png()
    body = {"output": [{"type": "message", "content": [{"type": "output_text", "text": "hi"}, {"image": _b64(png)}]}]}
    assert decode_image_payload(body) == png


def test_decode_images_api_shape() -> None:
    png = make_png()
    assert decode_image_payload({"data": [{"b64_json": _b64(png)}]}) == png


def test_decode_accepts_data_url() -> None:
    png = make_png()
    body = {"data": [{"b64_json": f"data:image/png;base64,{_b64(png)}"}]}
    assert decode_image_payload(body) == png


@pytest.mark.parametrize("body", [
    {},
    {"output": [{"type": "message", "content": [{"type": "output_text", "text": "I can't do that"}]}]},
    {"data": [{"b64_json": "***not base64***"}]},
    ["not", "a", "dict"],
])
def test_decode_total_failure_is_parse_error(body) -> None:
    with pytest.raises(ParseError):
        decode_image_payload(body)


def test_parse_error_counts_as_no_image_returned() -> None:
    assert issubclass(ParseError, NoImageReturnedError)
    assert issubclass(NoImageReturnedError, UpstreamError)


# ---------- image helpers ----------

def test_sniff_content_type() -> None:
    assert sniff_content_type(make_png()) == "image/png"
    out = BytesIO()
    Image.new("RGB", (4, 4)).save(out, format="JPEG")
    assert sniff_content_type(out.getvalue()) == "image/jpeg"


def test_sniff_rejects_garbage() -> None:
    with pytest.raises(NoImageReturnedError):
        sniff_content_type(b"definitely not an image")
    with pytest.raises(NoImageReturnedError):
        sniff_content_type(b"")


def test_normalize_photo_bounds_size_and_encodes_png() -> None:
    big = make_png(size=(2000, 1000))
    normalized = normalize_photo(big, max_side=512)

    with Image.open(BytesIO(normalized)) as img:
        assert img.format == "PNG"
        assert img.size == (512, 256)
        assert img.mode == "RGB"


def test_normalize_photo_passes_through_undecodable_bytes() -> None:
    assert normalize_photo(b"\x89PNG broken", max_side=512) == b"\x89PNG broken"


# ---------- client ----------

def test_transform_sends_subject_then_style_refs(stylizer: Stylizer) -> None:
    png = make_png((0, 255, 0))
    resp = FakeResponse(200, {"output": [{"type": "image_generation_call", "result": _b64(png)}]})

    with patch("requests.post", return_value=resp) as mock_post:
        result = stylizer.transform(b"subject-bytes")

    assert result.image == png
    assert result.content_type == "image/png"
    assert mock_post.call_args.args[0] == "https://api.example/v1/responses"
    assert mock_post.call_args.kwargs["headers"]["Authorization"] == "Bearer sk-test"
    payload = mock_post.call_args.kwargs["json"]
    assert payload["model"] == "gpt-test"
    content = payload["input"][0]["content"]
    assert [part["type"] for part in content] == ["input_image", "input_image", "input_image", "input_text"]
    assert content[0]["image_url"] == f"data:image/png;base64,{_b64(b'subject-bytes')}"
    assert content[-1]["text"] == DEFAULT_INSTRUCTIONS
    assert payload["tools"] == [{"type": "image_generation"}]


def test_transform_with_explicit_style_and_instructions(stylizer: Stylizer) -> None:
    resp = FakeResponse(200, {"data": [{"b64_json": _b64(make_png())}]})
    with patch("requests.post", return_value=resp) as mock_post:
        stylizer.transform(b"subject", style_images=[], instructions="Make it blue")

    content = mock_post.call_args.kwargs["json"]["input"][0]["content"]
    assert len(content) == 2
    assert content[1]["text"] == "Make it blue"


def test_status_429_is_rate_limited(stylizer: Stylizer) -> None:
    resp = FakeResponse(429, {"error": {"message": "Rate limit reached", "type": "requests"}})
    with patch("requests.post", return_value=resp):
        with pytest.raises(RateLimitedError):
            stylizer.transform(b"subject")


def test_rate_limit_error_code_is_rate_limited(stylizer: Stylizer) -> None:
    resp = FakeResponse(400, {"error": {"code": "rate_limit_exceeded", "message": "tpm"}})
    with patch("requests.post", return_value=resp):
        with pytest.raises(RateLimitedError):
            stylizer.transform(b"subject")


def test_server_error_is_upstream_error(stylizer: Stylizer) -> None:
    with patch("requests.post", return_value=FakeResponse(500, {"error": {"message": "boom"}})):
        with pytest.raises(UpstreamError) as info:
            stylizer.transform(b"subject")
    assert not isinstance(info.value, RateLimitedError)


def test_transport_error_is_upstream_error(stylizer: Stylizer) -> None:
    with patch("requests.post", side_effect=requests.Timeout):
        with pytest.raises(UpstreamError):
            stylizer.transform(b"subject")


def test_success_without_image_is_no_image_returned(stylizer: Stylizer) -> None:
    body = {"output": [{"type": "message", "content": [{"type": "output_text", "text": "Sorry"}]}]}
    with patch("requests.post", return_value=FakeResponse(200, body)):
        with pytest.raises(NoImageReturnedError):
            stylizer.transform(b"subject")


def test_non_json_success_is_parse_error(stylizer: Stylizer) -> None:
    with patch("requests.post", return_value=FakeResponse(200, content=b"<html>")):
        with pytest.raises(ParseError):
            stylizer.transform(b"subject")


def test_missing_api_key_fails_before_any_request(tmp_path) -> None:
    with patch("requests.post") as mock_post:
        with pytest.raises(UpstreamError):
            Stylizer(api_key=None, style_dir=tmp_path).transform(b"subject")
    mock_post.assert_not_called()


def test_style_images_are_loaded_once(stylizer: Stylizer) -> None:
    first = stylizer.style_images
    (stylizer.style_dir / "style_ref_3.png").write_bytes(make_png())
    assert stylizer.style_images is first
    assert len(first) == 2


def test_http_timeout_stays_under_queue_timeout(tmp_path) -> None:
    assert Stylizer(api_key="sk-test", style_dir=tmp_path).timeout < TRANSFORM_TIMEOUT_SECONDS
