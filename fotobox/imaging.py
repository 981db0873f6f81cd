"""Thumbnails and QR codes for captured photos."""
import cv2
import numpy as np

JPEG_QUALITY = 80


def make_thumbnail(photo_path, thumb_path, width=400):
    """Write a JPEG thumbnail no wider than `width`, keeping aspect ratio."""
    img = cv2.imdecode(np.fromfile(photo_path, dtype=np.uint8), cv2.IMREAD_COLOR)
    if img is None:
        raise ValueError(f"Cannot decode image: {photo_path}")

    h, w = img.shape[:2]
    if w > width:
        height = max(1, round(h * width / w))
        img = cv2.resize(img, (width, height), interpolation=cv2.INTER_AREA)

    ok, buffer = cv2.imencode(".jpg", img, [cv2.IMWRITE_JPEG_QUALITY, JPEG_QUALITY])
    if not ok:
        raise ValueError(f"Cannot encode thumbnail for {photo_path}")
    buffer.tofile(thumb_path)
    return thumb_path


def write_qr_code(text, path, scale=8, margin=1):
    """Render `text` as a black-on-white QR code PNG."""
    encoder = cv2.QRCodeEncoder.create()
    qr = encoder.encode(text)
    if qr is None or qr.size == 0:
        raise ValueError(f"Cannot encode QR code for {text!r}")

    img = cv2.resize(qr, None, fx=scale, fy=scale, interpolation=cv2.INTER_NEAREST)
    pad = margin * scale
    img = cv2.copyMakeBorder(img, pad, pad, pad, pad, cv2.BORDER_CONSTANT, value=255)
    if not cv2.imwrite(path, img):
        raise OSError(f"Cannot write QR code to {path}")
    return path
