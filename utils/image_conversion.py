import numpy as np
import torch
from PIL import Image, ImageDraw, ImageFont

"""
Turn device tensors into displayable Pillow images.
Supported: float32 or uint8 tensors [C, H, W] with 1 (grayscale) or 3 (RGB) channels,
and 1x1 tensors with any channel count (class probabilities), drawn as a strip of cells.
Anything else becomes a red labeled placeholder instead of an error.
"""

CELL_SIZE = 44

def _format_name(tensor: torch.Tensor) -> str:
    if tensor.dtype == torch.float32:
        return 'Float32'
    if tensor.dtype == torch.uint8:
        return 'Unorm8'
    return str(tensor.dtype).replace('torch.', '').capitalize()

def clamp_to_bytes(values: np.ndarray) -> np.ndarray:
    """clamp floats to [0, 255] and truncate to uint8"""
    return np.clip(values, 0.0, 255.0).astype(np.uint8)

def to_image(tensor: torch.Tensor, scale: float = 1.0) -> Image.Image:
    """
    Converts a [C, H, W] (or [H, W]) tensor to a Pillow image.
    Float values are multiplied by `scale` before clamping, uint8 values are copied as they are.
    """
    data = tensor.detach()
    if data.dim() == 2:
        data = data.unsqueeze(0)
    if data.dim() != 3:
        return placeholder(tensor)

    channels, height, width = data.shape
    is_float = data.dtype == torch.float32
    is_unorm8 = data.dtype == torch.uint8
    # channels last, as the image libraries expect
    pixels = data.cpu().permute(1, 2, 0).numpy()

    if is_float and channels in (1, 3):
        pixels = clamp_to_bytes(pixels * scale)
    elif is_unorm8 and channels in (1, 3):
        pixels = np.ascontiguousarray(pixels)
    elif (is_float or is_unorm8) and width == 1 and height == 1:
        values = pixels.reshape(-1).astype(np.float32)
        if is_unorm8:
            values = values / 255.0
        return draw_cells(values)
    else:
        return placeholder(tensor)

    if channels == 3:
        return Image.fromarray(pixels)
    return Image.fromarray(pixels[:, :, 0])

def draw_cells(values: np.ndarray, cell_size: int = CELL_SIZE) -> Image.Image:
    """
    One cell per value: green for positive, red for negative, opacity = |value| clamped to 1.
    The index of the largest value is written below its cell.
    """
    n = len(values)
    image = Image.new('RGBA', (cell_size * n, cell_size * n), (0, 0, 0, 0))
    draw = ImageDraw.Draw(image, 'RGBA')
    best = int(np.argmax(values))
    font = _font(cell_size)
    for i, value in enumerate(values):
        v = float(np.clip(value, -1.0, 1.0))
        color = (255, 0, 0) if v < 0 else (0, 255, 0)
        box = [i * cell_size, 0, (i + 1) * cell_size - 1, cell_size - 1]
        draw.rectangle(box, fill=color + (int(255 * abs(v)),))
        if i == best:
            draw.text((i * cell_size, cell_size), str(i), fill=(255, 255, 255, 255), font=font)
        draw.rectangle(box, outline=(255, 255, 255, 128))
    return image

def placeholder(tensor: torch.Tensor) -> Image.Image:
    """Labeled stand-in for tensors we cannot render, e.g. '2Float32?'."""
    shape = tuple(tensor.shape)
    channels = shape[0] if len(shape) == 3 else '?'
    height, width = (shape[-2], shape[-1]) if len(shape) >= 2 else (1, 1)
    if width == 1 and height == 1:
        width = height = CELL_SIZE
    image = Image.new('RGB', (max(width, 1), max(height, 1)), (255, 255, 255))
    ImageDraw.Draw(image).text((0, 0), f"{channels}{_format_name(tensor)}?", fill=(255, 0, 0), font=_font(8))
    return image

def _font(size: int):
    return ImageFont.load_default(size=size)
