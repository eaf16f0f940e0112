"""Helpers for performing tests.

These build BSP files in memory, using their own copies of the record layouts so they check
the decoder rather than agreeing with it.
"""
from typing import Dict, Iterable, List, Mapping, Optional, Sequence, Tuple
import struct

from bsptools.binformat import write_array
from bsptools.bsp import LUMPS, Map


Vec3 = Tuple[float, float, float]
HEADER_SIZE = 4 + 15 * 8


def build_bsp(lumps: Mapping[LUMPS, bytes], version: int = 29) -> bytes:
    """Assemble a BSP file from the data for each lump, in index order."""
    header = bytearray(struct.pack('<i', version))
    body = bytearray()
    for lump in LUMPS:
        data = lumps.get(lump, b'')
        header += struct.pack('<ii', HEADER_SIZE + len(body), len(data))
        body += data
        # Lumps are padded to 4 bytes.
        body += bytes(-len(body) % 4)
    return bytes(header + body)


def set_lump(data: bytes, lump: LUMPS, offset: int, size: int) -> bytes:
    """Overwrite the header entry for a lump."""
    buf = bytearray(data)
    struct.pack_into('<ii', buf, 4 + 8 * lump.value, offset, size)
    return bytes(buf)


def vertex_lump(verts: Iterable[Vec3]) -> bytes:
    """Pack vertices."""
    return write_array('<f', [axis for vert in verts for axis in vert])


def edge_lump(edges: Iterable[Tuple[int, int]]) -> bytes:
    """Pack edges."""
    return write_array('<H', [ind for edge in edges for ind in edge])


def surfedge_lump(surfedges: Sequence[int]) -> bytes:
    """Pack surfedges."""
    return write_array('<i', surfedges)


def face_record(
    firstedge: int, numedges: int,
    texinfo: int = 0,
    lightofs: int = -1,
    planenum: int = 0, side: int = 0,
    styles: bytes = b'\x00\xff\xff\xff',
) -> bytes:
    """Pack a single face."""
    return struct.pack('<hhihh4Bi', planenum, side, firstedge, numedges, texinfo, *styles, lightofs)


def texinfo_record(
    s: Tuple[float, float, float, float] = (1.0, 0.0, 0.0, 0.0),
    t: Tuple[float, float, float, float] = (0.0, 1.0, 0.0, 0.0),
    miptex: int = 0,
    flags: int = 0,
) -> bytes:
    """Pack a single texinfo. The default projects X and Y directly."""
    return struct.pack('<8f2i', *s, *t, miptex, flags)


def model_record(
    mins: Vec3, maxs: Vec3,
    firstface: int = 0, numfaces: int = 0,
    origin: Vec3 = (0.0, 0.0, 0.0),
) -> bytes:
    """Pack a single brush model."""
    return struct.pack('<9f4i3i', *mins, *maxs, *origin, 0, -1, -1, -1, 0, firstface, numfaces)


def plane_record(normal: Vec3, dist: float, kind: int = 0) -> bytes:
    """Pack a single plane."""
    return struct.pack('<4fi', *normal, dist, kind)


def miptex_record(name: str, width: int, height: int, pixels: Optional[bytes] = None) -> bytes:
    """Pack a miptex record.

    If pixels are provided, they're used for the first mip level and the smaller levels are
    filled with zeros. Otherwise the offsets are zero, like a texture stored in a WAD.
    """
    name_raw = name.encode('ascii')
    if pixels is None:
        return struct.pack('<16s2I4I', name_raw, width, height, 0, 0, 0, 0)
    offsets: List[int] = []
    data = bytearray()
    for level in range(4):
        offsets.append(40 + len(data))
        if level == 0:
            data += pixels
        else:
            data += bytes((width >> level) * (height >> level))
    return struct.pack('<16s2I4I', name_raw, width, height, *offsets) + bytes(data)


def texture_lump(records: Sequence[Optional[bytes]]) -> bytes:
    """Build the texture lump. ``None`` entries produce an offset of -1."""
    offset = 4 + 4 * len(records)
    offsets: List[int] = []
    body = bytearray()
    for rec in records:
        if rec is None:
            offsets.append(-1)
        else:
            offsets.append(offset + len(body))
            body += rec
    return write_array('<i', [len(records)] + offsets) + bytes(body)


def quad_lumps(
    size: float = 64.0,
    lighting: Optional[bytes] = None,
    lightofs: int = 0,
) -> Dict[LUMPS, bytes]:
    """Produce the lumps for a map with a single square face on the XY plane.

    The texinfo projects world units directly onto a 64x64 texture, so with the default size
    the lightmap is 5x5 luxels.
    """
    if lighting is None:
        lighting = bytes(range(25))
    return {
        LUMPS.ENTITIES: b'{\n"classname" "worldspawn"\n"wad" "gfx/base.wad"\n}\n\0',
        LUMPS.PLANES: plane_record((0.0, 0.0, 1.0), 0.0, 2),
        LUMPS.TEXTURES: texture_lump([
            miptex_record('floor01', 64, 64, bytes(i % 256 for i in range(64 * 64))),
        ]),
        LUMPS.VERTEXES: vertex_lump([
            (0.0, 0.0, 0.0), (size, 0.0, 0.0),
            (size, size, 0.0), (0.0, size, 0.0),
        ]),
        LUMPS.TEXINFO: texinfo_record(),
        LUMPS.FACES: face_record(0, 4, lightofs=lightofs),
        LUMPS.LIGHTING: lighting,
        # Edge 0 is never used, since it can't be negated.
        LUMPS.EDGES: edge_lump([(0, 0), (0, 1), (1, 2), (2, 3), (3, 0)]),
        LUMPS.SURFEDGES: surfedge_lump([1, 2, 3, 4]),
        LUMPS.MODELS: model_record((0.0, 0.0, 0.0), (size, size, 0.0), 0, 1),
    }


def quad_map(
    size: float = 64.0,
    lighting: Optional[bytes] = None,
    lightofs: int = 0,
) -> Map:
    """Parse the single-quad map."""
    return Map.parse(build_bsp(quad_lumps(size, lighting, lightofs)), '<quad>')


def grey_palette() -> bytes:
    """A palette where each index is a shade of grey matching its value."""
    return bytes(value for value in range(256) for _ in range(3))


def red_palette() -> bytes:
    """The grey palette, but with pure red at index 37."""
    pal = bytearray(grey_palette())
    pal[37 * 3:38 * 3] = b'\xff\x00\x00'
    return bytes(pal)
