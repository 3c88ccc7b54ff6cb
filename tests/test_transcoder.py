from io import BytesIO
import random
import struct

from PIL import Image
import pytest

from conftest import make_image_bytes
from resize_service.errors import CorruptDataError, EncodeError, ErrorKind, UnsupportedFormatError
from resize_service.models import DecodedImage, OutputFormat
from resize_service.transcoder import Transcoder, compute_target_size, decode, encode, resize


def _noise_png(width: int, height: int) -> bytes:
    rng = random.Random(0)
    raw = bytes(rng.getrandbits(8) for _ in range(width * height * 3))
    buf = BytesIO()
    Image.frombytes("RGB", (width, height), raw).save(buf, format="PNG")
    return buf.getvalue()


def test_decode_returns_rgb_buffer():
    decoded = decode(make_image_bytes(64, 32))
    assert decoded.size == (64, 32)
    assert decoded.image.mode == "RGB"


def test_decode_flattens_alpha_onto_white():
    buf = BytesIO()
    Image.new("RGBA", (4, 4), (0, 0, 0, 0)).save(buf, format="PNG")
    decoded = decode(buf.getvalue())
    assert decoded.image.mode == "RGB"
    assert decoded.image.getpixel((0, 0)) == (255, 255, 255)


def test_decode_converts_grayscale():
    decoded = decode(make_image_bytes(10, 10, mode="L", color=128))
    assert decoded.image.mode == "RGB"


def test_decode_rejects_unknown_format():
    with pytest.raises(UnsupportedFormatError) as info:
        decode(b"definitely not an image")
    assert info.value.kind is ErrorKind.UNSUPPORTED_FORMAT
    assert not info.value.retryable


def test_decode_rejects_empty_input():
    with pytest.raises(CorruptDataError):
        decode(b"")


def test_decode_rejects_truncated_image():
    data = _noise_png(120, 120)
    with pytest.raises(CorruptDataError) as info:
        decode(data[: len(data) // 2])
    assert not info.value.retryable


def _bmp_with_bad_header() -> bytes:
    # File header followed by an info-header length larger than the file.
    return b"BM" + struct.pack("<IHHI", 26, 0, 0, 26) + struct.pack("<I", 99) + b"\x00" * 8


def test_decode_rejects_broken_header():
    with pytest.raises(CorruptDataError) as info:
        decode(_bmp_with_bad_header())
    assert info.value.kind is ErrorKind.CORRUPT_DATA
    assert not info.value.retryable


@pytest.mark.parametrize(
    "width,expected",
    [(100, (100, 50)), (500, (500, 250)), (1000, (1000, 500))],
)
def test_resize_keeps_aspect_ratio(width, expected):
    decoded = decode(make_image_bytes(2000, 1000))
    assert resize(decoded, width).size == expected


@pytest.mark.parametrize(
    "source,target",
    [((640, 480), 100), ((333, 777), 120), ((1001, 997), 500), ((17, 3), 40), ((4000, 3), 7)],
)
def test_resized_height_within_one_pixel(source, target):
    decoded = DecodedImage(image=Image.new("RGB", source))
    out = resize(decoded, target)
    assert out.width == target
    assert abs(out.height - round(source[1] * target / source[0])) <= 1
    assert out.height >= 1


def test_resize_does_not_mutate_source():
    decoded = decode(make_image_bytes(300, 200))
    resize(decoded, 30)
    assert decoded.size == (300, 200)


def test_compute_target_size_rejects_non_positive_width():
    with pytest.raises(ValueError):
        compute_target_size((10, 10), 0)


def test_encode_jpeg_is_deterministic():
    decoded = resize(decode(make_image_bytes(400, 300)), 200)
    first = encode(decoded, OutputFormat.JPEG)
    second = encode(decoded, OutputFormat.JPEG)
    assert first[:2] == b"\xff\xd8"
    assert first == second
    assert Image.open(BytesIO(first)).size == (200, 150)


def test_encode_failure_is_encode_error():
    # JPEG cannot store an alpha channel; decode() never hands this out.
    broken = DecodedImage(image=Image.new("RGBA", (4, 4)))
    with pytest.raises(EncodeError) as info:
        encode(broken, OutputFormat.JPEG)
    assert info.value.kind is ErrorKind.ENCODE_ERROR


def test_transcoder_uses_configured_quality():
    decoded = decode(_noise_png(64, 64))
    low = Transcoder(quality=10).encode(decoded, OutputFormat.JPEG)
    high = Transcoder(quality=95).encode(decoded, OutputFormat.JPEG)
    assert len(low) < len(high)
