"""Pillow/numpy helpers shared by the mask, crop and composite stages."""

import base64
import binascii
import io

import numpy as np
from PIL import Image, ImageFilter, UnidentifiedImageError

from .errors import InputError
from .models.geometry import NORMALIZED_SCALE, AbsoluteBox, ImageDimensions


def decode_base64_image(data: str) -> bytes:
    """Decode a base64 string, with or without a ``data:`` URL prefix."""
    if data.startswith("data:"):
        _, data = data.split(",", 1)
    try:
        return base64.b64decode(data, validate=False)
    except (binascii.Error, ValueError) as e:
        raise InputError(f"Invalid base64 image data: {e}") from e


def open_image(data: bytes) -> Image.Image:
    try:
        image = Image.open(io.BytesIO(data))
        image.load()
    except (UnidentifiedImageError, OSError) as e:
        raise InputError(f"Cannot decode image: {e}") from e
    return image


def image_dimensions(data: bytes) -> ImageDimensions:
    image = open_image(data)
    return ImageDimensions(width=image.width, height=image.height)


def encode_png(image: Image.Image) -> bytes:
    output = io.BytesIO()
    image.save(output, format="PNG")
    return output.getvalue()


def mask_intensity(image: Image.Image) -> np.ndarray:
    """Per-pixel mask strength 0-255, honouring transparency when present."""
    if image.mode in ("RGBA", "LA", "PA") or (image.mode == "P" and "transparency" in image.info):
        rgba = image.convert("RGBA")
        luminance = np.asarray(rgba.convert("L"), dtype=np.float32)
        alpha = np.asarray(rgba.getchannel("A"), dtype=np.float32)
        return (luminance * alpha / 255.0).astype(np.uint8)
    return np.asarray(image.convert("L"), dtype=np.uint8)


def paint_local_mask(
    raster: bytes,
    box_2d: list[float],
    dimensions: ImageDimensions,
) -> np.ndarray:
    """Resample a worker's local mask onto a full-size canvas at its own box."""
    y_min, x_min, y_max, x_max = box_2d
    width, height = dimensions.width, dimensions.height
    x0 = int(np.floor(x_min / NORMALIZED_SCALE * width))
    y0 = int(np.floor(y_min / NORMALIZED_SCALE * height))
    box_w = int(np.ceil((x_max - x_min) / NORMALIZED_SCALE * width))
    box_h = int(np.ceil((y_max - y_min) / NORMALIZED_SCALE * height))
    if box_w <= 0 or box_h <= 0:
        raise ValueError(f"box_2d has non-positive size: {box_2d}")

    local = Image.fromarray(mask_intensity(open_image(raster)))
    local = local.resize((box_w, box_h), Image.Resampling.BILINEAR)

    canvas = Image.new("L", (width, height), 0)
    canvas.paste(local, (x0, y0))
    return np.asarray(canvas, dtype=np.uint8)


def feather(binary: np.ndarray, radius: float) -> np.ndarray:
    """Soften a binary mask with a (separable) Gaussian blur."""
    image = Image.fromarray(binary.astype(np.uint8) * 255)
    if radius > 0:
        image = image.filter(ImageFilter.GaussianBlur(radius=radius))
    return np.asarray(image, dtype=np.uint8)


def crop_image(data: bytes, box: AbsoluteBox) -> bytes:
    image = open_image(data)
    return encode_png(image.crop(box.as_pil_box()))


def composite_patch(
    source: bytes,
    patch: bytes,
    box: AbsoluteBox,
    mask: bytes | None = None,
) -> bytes:
    """Paste ``patch`` into ``source`` at ``box``, blended through ``mask``.

    ``mask`` is a full-size grayscale image; only its part under ``box`` is
    used. Without a mask the patch replaces the box outright.
    """
    base = open_image(source).convert("RGB")
    tile = open_image(patch).convert("RGB").resize((box.width, box.height), Image.Resampling.LANCZOS)
    if mask is None:
        base.paste(tile, (box.x, box.y))
    else:
        full_mask = open_image(mask).convert("L")
        if full_mask.size != base.size:
            full_mask = full_mask.resize(base.size, Image.Resampling.BILINEAR)
        base.paste(tile, (box.x, box.y), full_mask.crop(box.as_pil_box()))
    return encode_png(base)
