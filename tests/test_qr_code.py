import io

import pytest
from PIL import Image

from patlog import qr_code


def test_certificate_url():
    assert qr_code.certificate_url('abc123def456', 'http://pat.test/') == 'http://pat.test/c/abc123def456'


def test_certificate_url_uses_configured_base():
    assert qr_code.certificate_url('abc123def456') == 'http://pat.test/c/abc123def456'


def test_png_is_square():
    img = Image.open(io.BytesIO(qr_code.generate_qr_png('abc123def456', size=240)))
    assert img.format == 'PNG'
    assert img.size == (240, 240)


def test_encoder_failure(monkeypatch):
    def boom(*args, **kwargs):
        raise RuntimeError('encoder exploded')

    monkeypatch.setattr(qr_code.qrcode, 'QRCode', boom)
    with pytest.raises(qr_code.QrCodeError):
        qr_code.generate_qr_png('abc123def456')


@pytest.mark.parametrize('size', [240, 250, 361])
def test_modules_are_whole_pixels(size):
    img = Image.open(io.BytesIO(qr_code.generate_qr_png('abc123def456', size=size))).convert('L')
    assert img.size == (size, size)
    assert {value for _, value in img.getcolors()} <= {0, 255}

    # Top edge of the upper-left finder pattern is seven dark modules wide
    pixels = img.load()
    top = next(y for y in range(size) if any(pixels[x, y] == 0 for x in range(size)))
    left = next(x for x in range(size) if pixels[x, top] == 0)
    run = 0
    while pixels[left + run, top] == 0:
        run += 1
    assert run % 7 == 0
