"""Reads, writes and manipulates 256-colour palettes.

Quake-style palettes are simply 256 RGB triplets, 768 bytes in total. They are stored on disk
either raw (``palette.lmp``), or as a `JASC-PAL` text file which paint programs understand.

None of these functions raise on bad input. Palettes of the wrong size are ignored, producing a
default result (black, an unmodified palette, a zeroed remap table), and failures to read or
write files are logged and reported through the return value.
"""
from typing import Final, Optional, Tuple, Union
import math

from bsptools import AtomicWriter, StringPath, logger


__all__ = [
    'PALETTE_SIZE', 'PALETTE_COLORS',
    'is_valid', 'normalize',
    'load_lmp', 'save_lmp', 'save_lmp_relaxed',
    'load_jasc', 'save_jasc',
    'clamp_byte', 'get_color', 'gamma_table', 'apply_gamma', 'apply_brightness_contrast',
    'find_nearest', 'build_remap_table', 'apply_remap',
]

LOGGER = logger.get_logger(__name__)

PALETTE_COLORS: Final = 256
PALETTE_SIZE: Final = PALETTE_COLORS * 3
JASC_HEADER: Final = ('JASC-PAL', '0100', str(PALETTE_COLORS))
GAMMA_EPSILON: Final = 1e-5
IDENTITY_TABLE: Final = bytes(range(256))

Buffer = Union[bytes, bytearray, memoryview]
RGB = Tuple[int, int, int]


def is_valid(rgb: Buffer) -> bool:
    """Check if this buffer is exactly the size of a palette."""
    return len(rgb) == PALETTE_SIZE


def normalize(rgb: Buffer) -> bytes:
    """Force a buffer to be the size of a palette, by truncating or padding with black."""
    data = bytes(rgb[:PALETTE_SIZE])
    return data + bytes(PALETTE_SIZE - len(data))


def clamp_byte(value: float) -> int:
    """Round a 0-255 float to the nearest byte value. NaN becomes zero."""
    if not value >= 0.0:
        return 0
    if value > 255.0:
        return 255
    return int(value + 0.5)


def load_lmp(path: StringPath) -> Optional[bytes]:
    """Load a raw ``.lmp`` palette, which must be exactly 768 bytes long.

    :returns: The palette, or :py:data:`None` if it could not be read.
    """
    try:
        with open(path, 'rb') as f:
            data = f.read()
    except OSError as exc:
        LOGGER.warning('Could not read palette "{}": {}', path, exc)
        return None
    if not is_valid(data):
        LOGGER.warning(
            'Palette "{}" is {} bytes, expected {}!',
            path, len(data), PALETTE_SIZE,
        )
        return None
    return data


def _write_lmp(path: StringPath, rgb: bytes) -> bool:
    try:
        with AtomicWriter(path, is_bytes=True) as f:
            f.write(rgb)
    except OSError as exc:
        LOGGER.warning('Could not write palette "{}": {}', path, exc)
        return False
    return True


def save_lmp(path: StringPath, rgb: Buffer) -> bool:
    """Write a palette to a raw ``.lmp`` file.

    The palette must be exactly 768 bytes, use :py:func:`save_lmp_relaxed` to fix the size
    automatically.
    """
    if not is_valid(rgb):
        LOGGER.warning('Refusing to save {}-byte palette to "{}".', len(rgb), path)
        return False
    return _write_lmp(path, bytes(rgb))


def save_lmp_relaxed(path: StringPath, rgb: Buffer) -> bool:
    """Write a palette to a raw ``.lmp`` file, truncating or padding it to 768 bytes first."""
    if not is_valid(rgb):
        LOGGER.debug('Normalising {}-byte palette before saving.', len(rgb))
    return _write_lmp(path, normalize(rgb))


def load_jasc(path: StringPath) -> Optional[bytes]:
    """Load a `JASC-PAL` text palette.

    The file must start with the three lines ``JASC-PAL``, ``0100`` and ``256``, followed by
    256 colours, each three whitespace-separated integers. Values are clamped to 0-255.

    :returns: The palette, or :py:data:`None` if the file is missing or malformed.
    """
    try:
        with open(path, encoding='utf8', errors='replace') as f:
            text = f.read()
    except OSError as exc:
        LOGGER.warning('Could not read palette "{}": {}', path, exc)
        return None

    lines = text.splitlines()
    if len(lines) < 3 or tuple(line.strip() for line in lines[:3]) != JASC_HEADER:
        LOGGER.warning('"{}" does not have a JASC-PAL header.', path)
        return None

    values = ' '.join(lines[3:]).split()
    if len(values) < PALETTE_SIZE:
        LOGGER.warning('"{}" has only {} colour values, expected {}.', path, len(values), PALETTE_SIZE)
        return None
    palette = bytearray(PALETTE_SIZE)
    for i, value in enumerate(values[:PALETTE_SIZE]):
        try:
            palette[i] = min(255, max(0, int(value)))
        except ValueError:
            LOGGER.warning('Invalid colour value {!r} in "{}".', value, path)
            return None
    return bytes(palette)


def save_jasc(path: StringPath, rgb: Buffer) -> bool:
    """Write a palette as a `JASC-PAL` text file."""
    if not is_valid(rgb):
        LOGGER.warning('Refusing to save {}-byte palette to "{}".', len(rgb), path)
        return False
    try:
        with AtomicWriter(path) as f:
            for line in JASC_HEADER:
                f.write(line + '\n')
            for i in range(0, PALETTE_SIZE, 3):
                f.write(f'{rgb[i]} {rgb[i + 1]} {rgb[i + 2]}\n')
    except OSError as exc:
        LOGGER.warning('Could not write palette "{}": {}', path, exc)
        return False
    return True


def get_color(rgb: Buffer, index: int) -> RGB:
    """Fetch a single colour from the palette, or black if the index or palette is invalid."""
    if not is_valid(rgb) or not 0 <= index < PALETTE_COLORS:
        return (0, 0, 0)
    base = index * 3
    return (rgb[base], rgb[base + 1], rgb[base + 2])


def gamma_table(gamma: float) -> bytes:
    """Build a 256-entry lookup table applying ``out = (in/255) ** (1/gamma) * 255``.

    A gamma of 1, or one which is infinite or NaN, gives the identity table.
    """
    if not math.isfinite(gamma) or abs(gamma - 1.0) <= GAMMA_EPSILON:
        return IDENTITY_TABLE
    inv = 1.0 / max(gamma, 1e-6)
    return bytes([
        clamp_byte(math.pow(value / 255.0, inv) * 255.0)
        for value in range(256)
    ])


def apply_gamma(rgb: Buffer, gamma: float) -> bytes:
    """Gamma-correct every channel of the palette, using :py:func:`gamma_table`.

    A gamma of 1, or one which is infinite or NaN, returns the palette unchanged.
    """
    if not is_valid(rgb):
        return bytes(rgb)
    return bytes(rgb).translate(gamma_table(gamma))


def apply_brightness_contrast(rgb: Buffer, brightness: float, contrast: float) -> bytes:
    """Adjust the brightness and contrast of a palette.

    Both parameters range from 0 to 1, with 0.5 meaning no change. Contrast scales around
    mid-grey, so mid-tones stay anchored, then the brightness offset is applied.
    """
    if not is_valid(rgb):
        return bytes(rgb)
    bright = (brightness - 0.5) * 2.0
    cont = (contrast - 0.5) * 2.0

    table = bytearray(256)
    for value in range(256):
        level = value / 255.0
        level = (level - 0.5) * (1.0 + cont) + 0.5
        level += bright * 0.5
        level = min(1.0, max(0.0, level))
        table[value] = int(level * 255.0 + 0.5)
    return bytes(rgb).translate(table)


def find_nearest(rgb: Buffer, r: int, g: int, b: int) -> int:
    """Find the palette index closest to this colour.

    Distance is measured as squared euclidean distance in RGB space, and ties go to the lowest
    index. An invalid palette always gives index 0.
    """
    if not is_valid(rgb):
        return 0
    best_ind = 0
    best_dist = -1
    for ind in range(PALETTE_COLORS):
        base = ind * 3
        dr = rgb[base] - r
        dg = rgb[base + 1] - g
        db = rgb[base + 2] - b
        dist = dr * dr + dg * dg + db * db
        if best_dist < 0 or dist < best_dist:
            best_dist = dist
            best_ind = ind
            if dist == 0:
                break
    return best_ind


def build_remap_table(src: Buffer, dest: Buffer) -> bytes:
    """Build a table mapping each index in ``src`` to the closest colour in ``dest``.

    The result is 256 bytes long, and all zeros if either palette is invalid.
    """
    if not is_valid(src) or not is_valid(dest):
        return bytes(PALETTE_COLORS)
    return bytes([
        find_nearest(dest, src[base], src[base + 1], src[base + 2])
        for base in range(0, PALETTE_SIZE, 3)
    ])


def apply_remap(indices: Buffer, table: Buffer) -> bytes:
    """Recolour an 8-bit index buffer using a remap table.

    Only the indices change, the raster layout is untouched. Tables that are not 256 entries
    leave the data as-is.
    """
    if len(table) != PALETTE_COLORS:
        return bytes(indices)
    return bytes(indices).translate(bytes(table))
