"""Decode the embedded texture lump of a BSP file.

Each texture is stored as a `miptex` record: a 16-byte name, the dimensions, then offsets to
four successive mipmap levels of 8-bit palette indices. Only the full-size level is kept,
:py:func:`build_mipmaps_rgba` can regenerate the rest after conversion to RGBA.

Textures stored in an external WAD archive are still listed in the lump, but with no pixel
data (or no record at all). These produce entries with empty :py:attr:`BSPTexture.indices`,
so texture indexes still line up with the texinfo references.
"""
from typing import TYPE_CHECKING, Final, List, Tuple, Union
import struct

import attrs

from bsptools import logger, palette as palette_mod
from bsptools.binformat import SIZE_INT, read_fixed_str


if TYPE_CHECKING:
    from PIL.Image import Image as PIL_Image


__all__ = [
    'BSPTexture', 'decode_miptex_lump', 'indexed_to_rgba',
    'apply_gamma_rgba', 'swizzle_rgba', 'tint_rgba', 'make_checker_rgba', 'build_mipmaps_rgba',
]

LOGGER = logger.get_logger(__name__)

ST_MIPTEX: Final = struct.Struct('<16s2I4I')
NAME_SIZE: Final = 16
TRANSPARENT_INDEX: Final = 255
CHANNELS: Final = 'RGBA'
CHECKER_DARK: Final = 60
CHECKER_LIGHT: Final = 200


@attrs.define(eq=False)
class BSPTexture:
    """A texture embedded in the BSP, as 8-bit indices into the palette."""
    name: str = ''
    width: int = 0
    height: int = 0
    #: The full-size mip level, ``width * height`` bytes in rows. Empty if not embedded.
    indices: bytes = attrs.field(default=b'', repr=lambda data: f'<{len(data)} bytes>')

    @property
    def is_external(self) -> bool:
        """If true, the pixel data is stored outside the BSP."""
        return not self.indices

    @property
    def size(self) -> Tuple[int, int]:
        """The dimensions of the texture."""
        return self.width, self.height

    def to_PIL(self, palette: bytes) -> 'PIL_Image':
        """Convert the texture into a PIL image.

        Requires Pillow to be installed.
        """
        from PIL.Image import frombuffer
        if self.is_external:
            raise ValueError(f'Texture "{self.name}" has no pixel data!')
        return frombuffer(
            'RGBA',
            (self.width, self.height),
            bytes(indexed_to_rgba(self, palette)),
            'raw',
            'RGBA',
            0,
            1,
        ).copy()


def _read_texture(data: memoryview, index: int, offset: int) -> BSPTexture:
    """Decode a single miptex record, starting at the offset in the lump."""
    size = len(data)
    if offset <= 0 or offset >= size:
        LOGGER.debug('Texture #{} has offset {}, treating as external.', index, offset)
        return BSPTexture()
    if offset + ST_MIPTEX.size > size:
        LOGGER.warning('Texture #{} header at {} overruns the lump!', index, offset)
        return BSPTexture()

    name_raw, width, height, *mip_offsets = ST_MIPTEX.unpack_from(data, offset)
    tex = BSPTexture(
        read_fixed_str(name_raw, 0, NAME_SIZE),
        width,
        height,
    )
    pixel_count = width * height
    level0 = mip_offsets[0]
    if pixel_count <= 0:
        return tex
    if level0 == 0:
        LOGGER.debug('Texture "{}" has no embedded pixels, stored in a WAD.', tex.name)
    elif offset + level0 + pixel_count <= size:
        start = offset + level0
        tex.indices = bytes(data[start:start + pixel_count])
    else:
        LOGGER.warning(
            'Texture "{}" ({}x{}) pixel data overruns the lump, ignoring.',
            tex.name, width, height,
        )
    return tex


def decode_miptex_lump(data: Union[bytes, memoryview]) -> List[BSPTexture]:
    """Decode the textures lump.

    This is a count, then that many offsets relative to the start of the lump. Problems with
    individual textures are not fatal, they just produce blank entries.
    """
    view = memoryview(data)
    if len(view) < SIZE_INT:
        return []
    [count] = struct.unpack_from('<i', view, 0)
    if count < 0 or SIZE_INT * (count + 1) > len(view):
        LOGGER.warning('Texture lump claims {} textures, ignoring lump.', count)
        return []
    offsets = struct.unpack_from(f'<{count}i', view, SIZE_INT)
    return [
        _read_texture(view, index, offset)
        for index, offset in enumerate(offsets)
    ]


def indexed_to_rgba(
    texture: BSPTexture,
    palette: bytes,
    transparent_index: int = TRANSPARENT_INDEX,
    premultiply: bool = False,
    gamma: float = 1.0,
) -> bytearray:
    """Convert the palette indices of a texture into RGBA pixels.

    :param palette: The 768-byte palette. If invalid, indices are shown as greyscale instead.
    :param transparent_index: Pixels with this index get an alpha of zero. Quake uses 255.
    :param premultiply: Multiply colours by the alpha value.
    :param gamma: Gamma-correct the colours, see :py:func:`bsptools.palette.apply_gamma`.
    """
    pixels = texture.indices
    if not pixels or texture.width == 0 or texture.height == 0:
        return bytearray()

    if palette_mod.is_valid(palette):
        colors = bytes(palette)
    else:
        # Greyscale, still readable.
        colors = bytes(value for value in range(256) for _ in range(3))
    colors = palette_mod.apply_gamma(colors, gamma)

    rgba = bytearray(len(pixels) * 4)
    rgba[0::4] = pixels.translate(colors[0::3])
    rgba[1::4] = pixels.translate(colors[1::3])
    rgba[2::4] = pixels.translate(colors[2::3])
    alpha = bytearray(b'\xFF' * 256)
    if 0 <= transparent_index < 256:
        alpha[transparent_index] = 0
    rgba[3::4] = pixels.translate(alpha)

    if premultiply:
        for i in range(3, len(rgba), 4):
            if rgba[i] == 0:
                rgba[i - 3:i] = b'\0\0\0'
    return rgba


def _pixel_end(rgba: bytearray) -> int:
    """The length of the buffer, ignoring any partial pixel at the end."""
    return len(rgba) - len(rgba) % 4


def apply_gamma_rgba(rgba: bytearray, gamma: float) -> None:
    """Gamma-correct an RGBA buffer in place, leaving alpha untouched.

    See :py:func:`bsptools.palette.gamma_table` for the curve used.
    """
    table = palette_mod.gamma_table(gamma)
    if table is palette_mod.IDENTITY_TABLE:
        return
    end = _pixel_end(rgba)
    for channel in range(3):
        rgba[channel:end:4] = rgba[channel:end:4].translate(table)


def swizzle_rgba(rgba: bytearray, order: str) -> None:
    """Reorder the channels of an RGBA buffer in place.

    The order is four letters from ``RGBA`` in any case, naming the source channel for each
    output channel. ``BGRA`` swaps red and blue, ``RRRA`` makes a greyscale image from red.
    Anything else leaves the buffer unchanged.
    """
    if len(order) != 4:
        return
    mapping = [CHANNELS.find(char.upper()) for char in order]
    if -1 in mapping:
        LOGGER.debug('Invalid swizzle "{}", ignoring.', order)
        return
    end = _pixel_end(rgba)
    channels = [bytes(rgba[channel:end:4]) for channel in range(4)]
    for dest, src in enumerate(mapping):
        rgba[dest:end:4] = channels[src]


def tint_rgba(rgba: bytearray, red: float, green: float, blue: float) -> None:
    """Multiply the colour channels of an RGBA buffer in place. Alpha is unchanged.

    Negative factors are treated as zero, and results are clamped to 255.
    """
    end = _pixel_end(rgba)
    for channel, factor in enumerate((red, green, blue)):
        factor = max(0.0, factor)
        table = bytes([palette_mod.clamp_byte(value * factor) for value in range(256)])
        rgba[channel:end:4] = rgba[channel:end:4].translate(table)


def make_checker_rgba(width: int, height: int, cell: int = 8) -> bytearray:
    """Produce an opaque grey checkerboard, to stand in for missing textures.

    The image is at least 2x2, with squares ``cell`` pixels wide. The top-left square is dark.
    """
    width = max(2, width)
    height = max(2, height)
    cell = max(1, cell)
    dark = bytes((CHECKER_DARK, CHECKER_DARK, CHECKER_DARK, 255))
    light = bytes((CHECKER_LIGHT, CHECKER_LIGHT, CHECKER_LIGHT, 255))
    rgba = bytearray()
    for y in range(height):
        for x in range(width):
            rgba += light if (x // cell + y // cell) % 2 else dark
    return rgba


def build_mipmaps_rgba(
    rgba: Union[bytes, bytearray],
    width: int,
    height: int,
    max_levels: int = 0,
) -> List[bytearray]:
    """Generate a mipmap chain from an RGBA image, using a 2x2 box filter.

    Each level halves both dimensions (stopping at 1), sampling the edge pixel again where the
    previous level has an odd size. Level 0 is a copy of the original image.

    :param max_levels: The maximum number of levels to produce, or 0 to continue down to 1x1.
    :returns: The levels, or an empty list if the image is empty or smaller than its size.
    """
    size = width * height * 4
    if width <= 0 or height <= 0 or len(rgba) < size:
        return []
    levels = [bytearray(rgba[:size])]
    while (max_levels == 0 or len(levels) < max_levels) and (width > 1 or height > 1):
        src = levels[-1]
        new_width = max(1, width // 2)
        new_height = max(1, height // 2)
        dest = bytearray(new_width * new_height * 4)
        for y in range(new_height):
            rows = (min(2 * y, height - 1), min(2 * y + 1, height - 1))
            for x in range(new_width):
                cols = (min(2 * x, width - 1), min(2 * x + 1, width - 1))
                samples = [(row * width + col) * 4 for row in rows for col in cols]
                pos = (y * new_width + x) * 4
                for channel in range(4):
                    dest[pos + channel] = sum(src[ind + channel] for ind in samples) // 4
        levels.append(dest)
        width, height = new_width, new_height
    return levels
