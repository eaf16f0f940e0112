"""Read Quake-style (version 29) BSP files.

The file starts with a header listing the location of 15 "lumps", each holding an array of
fixed-size records, or an opaque blob. Geometry lumps are decoded eagerly into
:py:class:`Map`, then :py:func:`load_bsp` triangulates the faces into meshes and packs the
per-face lightmaps into a single atlas.
"""
from typing import Any, Callable, Dict, Final, Iterable, Iterator, List, Optional, Tuple, Union
from enum import Enum, Flag
from io import BytesIO
import os
import struct

import attrs

from bsptools import StringPath, logger, palette as palette_mod
from bsptools.binformat import iter_records, read_array, struct_read
from bsptools.lightmap import AtlasConfig, LightmapAtlas, build_lightmaps
from bsptools.mesh import Mesh, build_meshes
from bsptools.miptex import BSPTexture, decode_miptex_lump


__all__ = [
    'LUMPS', 'BSP29_VERSION', 'HEADER_SIZE',
    'BSPError', 'BSPIOError', 'LumpBoundsError', 'MalformedLumpError',
    'Lump', 'read_lump_table',
    'Vertex', 'Edge', 'Face', 'TexInfo', 'TexFlags', 'Plane', 'Model',
    'Map', 'load_bsp',
]

LOGGER = logger.get_logger(__name__)

BSP29_VERSION: Final = 29
HEADER_VERSION: Final = '<i'  # Version number, before the lump list.
HEADER_LUMP: Final = '<ii'  # Offset and size for each lump.
LUMP_COUNT: Final = 15
HEADER_SIZE: Final = struct.calcsize(HEADER_VERSION) + LUMP_COUNT * struct.calcsize(HEADER_LUMP)

ST_VERTEX: Final = struct.Struct('<3f')
ST_EDGE: Final = struct.Struct('<2H')
ST_SURFEDGE: Final = struct.Struct('<i')
ST_FACE: Final = struct.Struct('<hhihh4Bi')
ST_TEXINFO: Final = struct.Struct('<8f2i')
ST_PLANE: Final = struct.Struct('<4fi')
ST_MODEL: Final = struct.Struct('<9f4i3i')


class LUMPS(Enum):
    """All the lumps in a BSP file.

    The values represent the order lumps appear in the index.
    """
    ENTITIES = 0  #: self.entities
    PLANES = 1  #: self.planes
    TEXTURES = 2  #: self.textures
    VERTEXES = 3  #: self.vertices
    VISIBILITY = 4
    NODES = 5
    TEXINFO = 6  #: self.texinfo
    FACES = 7  #: self.faces
    LIGHTING = 8  #: self.lighting
    CLIPNODES = 9
    LEAFS = 10
    MARKSURFACES = 11
    EDGES = 12  #: self.edges
    SURFEDGES = 13  #: self.surfedges
    MODELS = 14  #: self.models


assert len(LUMPS) == LUMP_COUNT


class BSPError(ValueError):
    """Raised when a BSP file cannot be loaded."""
    def __init__(self, message: str, filename: Optional[str] = None) -> None:
        super().__init__(message)
        self.message = message
        self.filename = filename

    def __str__(self) -> str:
        if self.filename:
            return f'{self.filename}: {self.message}'
        return self.message


class BSPIOError(BSPError):
    """The file could not be read, or is too short to contain the header."""


class LumpBoundsError(BSPError):
    """A lump's offset and size point outside the file."""
    def __init__(
        self, lump: LUMPS, offset: int, size: int, file_size: int,
        filename: Optional[str] = None,
    ) -> None:
        super().__init__(
            f'{lump.name} lump at {offset} with {size} bytes '
            f'lies outside the {file_size}-byte file!',
            filename,
        )
        self.lump = lump
        self.offset = offset
        self.size = size


class MalformedLumpError(BSPError):
    """A geometry lump is not a whole number of records."""
    def __init__(
        self, lump: LUMPS, size: int, record_size: int,
        filename: Optional[str] = None,
    ) -> None:
        super().__init__(
            f'{lump.name} lump is {size} bytes, '
            f'not a multiple of the {record_size}-byte record size!',
            filename,
        )
        self.lump = lump
        self.size = size
        self.record_size = record_size


def _add_unknown_bits(ns: Dict[str, Any]) -> None:
    """Add dummy members for the unused bits of a 32-bit flag enum.

    It should be called at the end of the class body, with the namespace from locals().
    """
    used_bits = 0
    for value in ns.values():
        if isinstance(value, int):
            used_bits |= value
    for i in range(32):
        if not used_bits & (1 << i):
            ns[f"_BIT_{i}"] = 1 << i


class TexFlags(Flag):
    """Flags set on texinfo."""
    NONE = 0
    SPECIAL = 0x1  #: Sky or liquid, not lightmapped.
    MISSING = 0x2  #: Texture was not found when compiling, used by some compilers.

    # Unknown bits, so any combination can be represented.
    _add_unknown_bits(locals())


@attrs.define(eq=False, repr=False)
class Lump:
    """An entry in the lump table of a BSP file."""
    type: LUMPS
    offset: int
    size: int

    def __repr__(self) -> str:
        return f'<BSP Lump {self.type.name!r}, {self.size} bytes @ {self.offset}>'

    def view(self, data: Union[bytes, memoryview], filename: Optional[str] = None) -> memoryview:
        """Return the section of the file containing this lump.

        :raises LumpBoundsError: If the lump doesn't fit inside the file.
        """
        if self.offset < 0 or self.size < 0 or self.offset + self.size > len(data):
            raise LumpBoundsError(self.type, self.offset, self.size, len(data), filename)
        return memoryview(data)[self.offset:self.offset + self.size]


def read_lump_table(data: bytes, filename: Optional[str] = None) -> Tuple[int, Dict[LUMPS, Lump]]:
    """Parse the file header, returning the version and the lump table."""
    if len(data) < HEADER_SIZE:
        raise BSPIOError(
            f'File is {len(data)} bytes, too small for the {HEADER_SIZE}-byte header!',
            filename,
        )
    file = BytesIO(data)
    [version] = struct_read(HEADER_VERSION, file)
    lumps: Dict[LUMPS, Lump] = {}
    for lump_id in LUMPS:
        offset, size = struct_read(HEADER_LUMP, file)
        lumps[lump_id] = Lump(lump_id, offset, size)
    return version, lumps


@attrs.frozen
class Vertex:
    """A position in the map."""
    x: float
    y: float
    z: float

    def __iter__(self) -> Iterator[float]:
        yield self.x
        yield self.y
        yield self.z


@attrs.frozen
class Edge:
    """A pair of vertex indexes. Faces refer to these via surfedges."""
    v0: int
    v1: int


@attrs.define(eq=False)
class Plane:
    """A plane, referenced by faces and nodes."""
    normal: Vertex
    dist: float
    type: int


@attrs.define(eq=False)
class TexInfo:
    """Texture positioning information.

    The S and T vectors are dotted with the position, then the fourth component added to give
    coordinates in texture pixels.
    """
    s: Tuple[float, float, float, float]
    t: Tuple[float, float, float, float]
    miptex: int
    flags: TexFlags = TexFlags.NONE

    def project(self, pos: Iterable[float]) -> Tuple[float, float]:
        """Compute the texture-space coordinates for this position."""
        x, y, z = pos
        s = self.s
        t = self.t
        return (
            x * s[0] + y * s[1] + z * s[2] + s[3],
            x * t[0] + y * t[1] + z * t[2] + t[3],
        )


@attrs.define(eq=False)
class Face:
    """A polygon in the map.

    The vertices are found by walking ``numedges`` surfedges starting from ``firstedge``.
    """
    planenum: int
    side: int
    firstedge: int
    numedges: int
    texinfo: int
    #: Lightstyles used by this face, 255 for unused slots.
    styles: bytes = b'\xff\xff\xff\xff'
    #: Offset into the lighting lump, or -1 if this face has no lightmap.
    lightofs: int = -1

    @property
    def has_lightmap(self) -> bool:
        """Check if the face points at lighting data."""
        return self.lightofs >= 0


@attrs.define(eq=False)
class Model:
    """A brush model. The first is always the world, the rest are used by brush entities."""
    mins: Vertex
    maxs: Vertex
    origin: Vertex
    headnodes: Tuple[int, int, int, int]
    visleafs: int
    firstface: int
    numfaces: int


@attrs.define(eq=False)
class Map:
    """A loaded BSP file.

    After :py:func:`load_bsp` returns, ``meshes[i]`` is the triangulated version of
    ``faces[i]``, and ``lightmap_atlas.rects[i]`` describes its lightmap.
    """
    filename: str = '<memory>'
    version: int = BSP29_VERSION
    lumps: Dict[LUMPS, Lump] = attrs.field(factory=dict, repr=False)
    entities: str = attrs.field(default='', repr=False)
    planes: List[Plane] = attrs.field(factory=list, repr=False)
    vertices: List[Vertex] = attrs.field(factory=list, repr=False)
    edges: List[Edge] = attrs.field(factory=list, repr=False)
    surfedges: List[int] = attrs.field(factory=list, repr=False)
    faces: List[Face] = attrs.field(factory=list, repr=False)
    texinfo: List[TexInfo] = attrs.field(factory=list, repr=False)
    models: List[Model] = attrs.field(factory=list, repr=False)
    textures: List[BSPTexture] = attrs.field(factory=list, repr=False)
    lighting: bytes = attrs.field(default=b'', repr=False)
    #: The 768-byte palette, if one was loaded.
    palette: bytes = attrs.field(default=b'', repr=False)
    meshes: List[Mesh] = attrs.field(factory=list, repr=False)
    lightmap_atlas: LightmapAtlas = attrs.field(factory=LightmapAtlas, repr=False)

    @classmethod
    def read(cls, filename: StringPath) -> 'Map':
        """Read and decode the given file. Meshes and lightmaps are not built."""
        name = os.fspath(filename)
        try:
            with open(filename, 'rb') as f:
                data = f.read()
        except OSError as exc:
            raise BSPIOError(f'Could not read file: {exc}', name) from exc
        return cls.parse(data, name)

    @classmethod
    def parse(cls, data: bytes, filename: str = '<memory>') -> 'Map':
        """Decode a BSP file from a buffer."""
        version, lumps = read_lump_table(data, filename)
        if version != BSP29_VERSION:
            # Some derived formats use a different number, but are still compatible.
            LOGGER.warning(
                'Unsupported BSP version {}, expected {}. Attempting to continue.',
                version, BSP29_VERSION,
            )
        bsp = cls(filename, version, lumps)

        def view(lump: LUMPS) -> memoryview:
            return lumps[lump].view(data, filename)

        def records(lump: LUMPS, fmt: struct.Struct) -> Iterator[Tuple[Any, ...]]:
            lump_data = view(lump)
            try:
                return iter_records(fmt, lump_data)
            except ValueError:
                raise MalformedLumpError(lump, len(lump_data), fmt.size, filename) from None

        bsp.vertices = [Vertex(x, y, z) for x, y, z in records(LUMPS.VERTEXES, ST_VERTEX)]
        bsp.edges = [Edge(v0, v1) for v0, v1 in records(LUMPS.EDGES, ST_EDGE)]
        bsp.surfedges = bsp._read_surfedges(view(LUMPS.SURFEDGES))
        bsp.faces = [
            Face(planenum, side, firstedge, numedges, texinfo, bytes(styles), lightofs)
            for (
                planenum, side,
                firstedge, numedges,
                texinfo,
                *styles,
                lightofs,
            ) in records(LUMPS.FACES, ST_FACE)
        ]
        bsp.texinfo = [
            TexInfo(
                (sx, sy, sz, so),
                (tx, ty, tz, to),
                miptex, TexFlags(flags & 0xFFFFFFFF),
            )
            for (
                sx, sy, sz, so,
                tx, ty, tz, to,
                miptex, flags,
            ) in records(LUMPS.TEXINFO, ST_TEXINFO)
        ]

        # These aren't needed to draw the map, so just discard them if damaged.
        bsp.planes = bsp._read_optional(LUMPS.PLANES, view(LUMPS.PLANES), ST_PLANE, bsp._read_plane)
        bsp.models = bsp._read_optional(LUMPS.MODELS, view(LUMPS.MODELS), ST_MODEL, bsp._read_model)

        # Truncation here is tolerated, faces overrunning it are handled when building the atlas.
        bsp.lighting = bytes(view(LUMPS.LIGHTING))
        bsp.entities = bytes(view(LUMPS.ENTITIES)).rstrip(b'\0').decode('latin-1')
        bsp.textures = decode_miptex_lump(view(LUMPS.TEXTURES))

        LOGGER.info(
            'Parsed: verts={} faces={} edges={} surfedges={} texinfos={} textures={}',
            len(bsp.vertices), len(bsp.faces), len(bsp.edges),
            len(bsp.surfedges), len(bsp.texinfo), len(bsp.textures),
        )
        return bsp

    def _read_surfedges(self, data: memoryview) -> List[int]:
        if len(data) % ST_SURFEDGE.size != 0:
            raise MalformedLumpError(LUMPS.SURFEDGES, len(data), ST_SURFEDGE.size, self.filename)
        return read_array('<i', bytes(data))

    def _read_optional(
        self,
        lump: LUMPS,
        data: memoryview,
        fmt: struct.Struct,
        func: Callable[[Tuple[Any, ...]], Any],
    ) -> List[Any]:
        """Parse a lump which isn't required for rendering, logging if it is damaged."""
        try:
            return [func(rec) for rec in iter_records(fmt, data)]
        except ValueError:
            LOGGER.warning(
                '{} lump is {} bytes, not a multiple of {}. Ignoring.',
                lump.name, len(data), fmt.size,
            )
            return []

    @staticmethod
    def _read_plane(rec: Tuple[Any, ...]) -> Plane:
        x, y, z, dist, typ = rec
        return Plane(Vertex(x, y, z), dist, typ)

    @staticmethod
    def _read_model(rec: Tuple[Any, ...]) -> Model:
        (
            min_x, min_y, min_z, max_x, max_y, max_z,
            pos_x, pos_y, pos_z,
            head0, head1, head2, head3,
            visleafs, first_face, num_faces,
        ) = rec
        return Model(
            Vertex(min_x, min_y, min_z), Vertex(max_x, max_y, max_z),
            Vertex(pos_x, pos_y, pos_z),
            (head0, head1, head2, head3),
            visleafs, first_face, num_faces,
        )

    @property
    def world(self) -> Optional[Model]:
        """The model for the static world, if present."""
        return self.models[0] if self.models else None

    def bounds(self) -> Tuple[Vertex, Vertex]:
        """Compute the bounding box of all vertices."""
        if not self.vertices:
            return Vertex(0.0, 0.0, 0.0), Vertex(0.0, 0.0, 0.0)
        xs = [vert.x for vert in self.vertices]
        ys = [vert.y for vert in self.vertices]
        zs = [vert.z for vert in self.vertices]
        return Vertex(min(xs), min(ys), min(zs)), Vertex(max(xs), max(ys), max(zs))

    def texture_for(self, face: Face) -> Optional[BSPTexture]:
        """Look up the texture a face uses, if it is valid."""
        if not 0 <= face.texinfo < len(self.texinfo):
            return None
        ind = self.texinfo[face.texinfo].miptex
        if 0 <= ind < len(self.textures):
            return self.textures[ind]
        return None


def load_bsp(
    filename: StringPath,
    palette: Optional[StringPath] = None,
    *,
    meshes: bool = True,
    lightmaps: bool = True,
    atlas_config: AtlasConfig = AtlasConfig(),
) -> Map:
    """Load a BSP file, then build the meshes and lightmap atlas.

    :param palette: If set, a ``palette.lmp`` file to load. Failing to read it is not fatal.
    :param meshes: Triangulate the faces.
    :param lightmaps: Pack the lightmaps into an atlas, and add their UVs to the meshes.
        Requires meshes to be built.
    :raises BSPError: If the file is unreadable, or the geometry is damaged.
    """
    with logger.context(os.path.basename(os.fspath(filename))):
        bsp = Map.read(filename)
        if palette is not None:
            rgb = palette_mod.load_lmp(palette)
            if rgb is not None:
                bsp.palette = rgb
        if meshes:
            bsp.meshes = build_meshes(bsp)
            if lightmaps:
                bsp.lightmap_atlas = build_lightmaps(bsp, atlas_config)
    return bsp
