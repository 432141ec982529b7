import io

import pytest
from PIL import Image

from config import ImageLimits
from errors import ValidationError
from services.validation import ScanTarget, StructuralValidator, detect_mime, is_polyglot

from conftest import noise_jpeg, noise_png


def _target(tmp_path, data, mime, name):
    path = tmp_path / "upload.bin"
    path.write_bytes(data)
    return ScanTarget(path, len(data), mime, name)


def _reason(validator, target):
    with pytest.raises(ValidationError) as exc:
        validator.validate(target)
    return exc.value.reason


@pytest.fixture
def validator():
    return StructuralValidator(ImageLimits())


def test_detect_mime_by_signature():
    assert detect_mime(b"\xff\xd8\xff\xe0rest") == "image/jpeg"
    assert detect_mime(b"\x89PNG\r\n\x1a\nrest") == "image/png"
    assert detect_mime(b"RIFF\x00\x00\x00\x00WEBPVP8 ") == "image/webp"
    assert detect_mime(b"\x00\x00\x00\x1cftypavif") == "image/avif"
    assert detect_mime(b"<svg") is None


def test_polyglot_needs_script_and_container_marker():
    assert is_polyglot(b"\x89PNG <?PHP echo 1; ?> %PDF-1.4")
    assert not is_polyglot(b"\x89PNG <?php")
    assert not is_polyglot(b"%PDF-1.4 only")


def test_accepts_noisy_jpeg(validator, tmp_path):
    detected = validator.validate(_target(tmp_path, noise_jpeg(), "image/jpeg", "me.JPEG"))
    assert detected.extension == "jpg"


def test_declared_mime_must_match_signature(validator, tmp_path):
    target = _target(tmp_path, noise_png(), "image/jpeg", "me.jpg")
    assert _reason(validator, target) == "mime_mismatch"


def test_extension_must_match_signature(validator, tmp_path):
    target = _target(tmp_path, noise_png(), "image/png", "me.jpg")
    assert _reason(validator, target) == "extension_mismatch"


def test_disallowed_extension(validator, tmp_path):
    target = _target(tmp_path, b"PK\x03\x04", "application/zip", "bundle.zip")
    assert _reason(validator, target) == "extension_not_allowed"


def test_too_small_dimensions(validator, tmp_path):
    target = _target(tmp_path, noise_jpeg(64, 64), "image/jpeg", "tiny.jpg")
    assert _reason(validator, target) == "dimensions_too_small"


def test_flat_image_trips_decompression_ratio(validator, tmp_path):
    buf = io.BytesIO()
    Image.new("RGB", (2048, 2048), (255, 255, 255)).save(buf, "PNG")
    target = _target(tmp_path, buf.getvalue(), "image/png", "flat.png")
    assert _reason(validator, target) == "decompression_bomb"


def test_truncated_image_is_undecodable(validator, tmp_path):
    data = noise_png()[:200]
    target = _target(tmp_path, data, "image/png", "cut.png")
    assert _reason(validator, target) == "undecodable"


def test_size_limit(tmp_path):
    validator = StructuralValidator(ImageLimits(max_bytes=10))
    target = _target(tmp_path, noise_jpeg(), "image/jpeg", "big.jpg")
    with pytest.raises(ValidationError) as exc:
        validator.validate(target)
    assert exc.value.code == "upload_too_large"
