"""Pack the per-face lightmaps of a BSP into a single atlas.

Quake stores lighting as one brightness byte per "luxel", a 16x16 unit block of texture space.
Each lit face has a small grid of these, sized from the extents of the face in texture space.
We pack all those grids into a single RGBA image, then give every mesh vertex a second UV
pointing into that image.

Any failure here is not fatal. The meshes still get the extra UVs (set to zero) so they
always have the same layout, and the faces are simply drawn fullbright.
"""
from typing import TYPE_CHECKING, Callable, Final, List, Optional, Sequence, Tuple
from array import array
import abc
import math

import attrs

from bsptools import logger
from bsptools.mesh import STRIDE_BASE, STRIDE_LIGHTMAPPED, Mesh, face_loop


if TYPE_CHECKING:
    from PIL.Image import Image as PIL_Image

    from bsptools.bsp import Map, TexInfo


__all__ = [
    'AtlasConfig', 'AtlasOverflowError',
    'Packer', 'ShelfPacker',
    'FaceLightmap', 'LightmapRect', 'LightmapAtlas',
    'face_extents', 'choose_atlas_size', 'build_lightmaps',
]

LOGGER = logger.get_logger(__name__)

#: Size of a luxel in texture pixels.
LUXEL_SIZE: Final = 16


class AtlasOverflowError(Exception):
    """Raised if the lightmaps cannot fit in the largest allowed atlas."""
    def __init__(self, width: int, height: int, max_size: int) -> None:
        super().__init__(
            f'Lightmaps do not fit in a {width}x{height} atlas, '
            f'exceeding the maximum of {max_size}!'
        )
        self.width = width
        self.height = height
        self.max_size = max_size


@attrs.define
class Packer(abc.ABC):
    """Allocates space for rectangles inside a fixed-size area.

    Packers are used once, rectangles are placed in order and never removed.
    """
    width: int
    height: int

    @abc.abstractmethod
    def place(self, width: int, height: int) -> Optional[Tuple[int, int]]:
        """Allocate a rectangle, returning the position or None if it does not fit."""
        raise NotImplementedError


@attrs.define
class ShelfPacker(Packer):
    """Places rectangles left to right in rows ("shelves").

    Each shelf is as tall as the tallest rectangle in it. When a rectangle would overrun the
    right edge a new shelf is started below. This wastes a fair bit of space, but Quake lightmaps
    are small and similarly sized.
    """
    x: int = attrs.field(default=0, init=False)
    y: int = attrs.field(default=0, init=False)
    shelf_height: int = attrs.field(default=0, init=False)

    def place(self, width: int, height: int) -> Optional[Tuple[int, int]]:
        """Allocate a rectangle, returning the position or None if it does not fit."""
        if width > self.width or height > self.height:
            return None
        if self.x + width > self.width:
            self.y += self.shelf_height
            self.x = 0
            self.shelf_height = 0
        if self.y + height > self.height:
            return None
        pos = (self.x, self.y)
        self.x += width
        self.shelf_height = max(self.shelf_height, height)
        return pos


def _positive(inst: object, attrib: 'attrs.Attribute[int]', value: int) -> None:
    """Validate the value is a positive integer."""
    if not isinstance(value, int):
        raise TypeError(f'{attrib.name} should be an int, not {value!r}!')
    if value <= 0:
        raise ValueError(f'{attrib.name} must be positive, not {value}!')


@attrs.frozen
class AtlasConfig:
    """Options controlling how lightmaps are packed."""
    #: The atlas starts as a square of this size.
    start_size: int = attrs.field(default=1024, validator=_positive)
    #: If either dimension needs to grow past this, lightmaps are disabled.
    max_size: int = attrs.field(default=8192, validator=_positive)
    #: Texture pixels per luxel.
    luxel_size: int = attrs.field(default=LUXEL_SIZE, validator=_positive)
    #: Called with the atlas size to produce the packer to use.
    packer: Callable[[int, int], Packer] = ShelfPacker

    @max_size.validator
    def _check_max(self, attrib: 'attrs.Attribute[int]', value: int) -> None:
        if value < self.start_size:
            raise ValueError(f'max_size ({value}) is smaller than start_size ({self.start_size})!')


@attrs.frozen
class FaceLightmap:
    """The luxel grid for a single face."""
    width: int
    height: int
    #: Texture-space position of the first luxel, snapped to the luxel grid.
    s_min: float
    t_min: float

    @property
    def area(self) -> int:
        """The number of luxels."""
        return self.width * self.height


@attrs.define
class LightmapRect:
    """The location of a face's lightmap inside the atlas.

    If ``valid`` is false, the face has no lightmap and should be drawn fullbright.
    """
    x: int = 0
    y: int = 0
    w: int = 0
    h: int = 0
    #: Offset into the lighting lump the data came from.
    lightofs: int = -1
    valid: bool = False


@attrs.define(eq=False)
class LightmapAtlas:
    """All the lightmaps in a map, packed into an RGBA image.

    An atlas with zero size means lighting is unavailable.
    """
    width: int = 0
    height: int = 0
    rgba: bytearray = attrs.field(factory=bytearray, repr=False)
    #: One rect for each face in the map.
    rects: List[LightmapRect] = attrs.field(factory=list, repr=False)

    @property
    def is_empty(self) -> bool:
        """Check if this atlas has no image."""
        return self.width == 0 or self.height == 0

    def to_PIL(self) -> 'PIL_Image':
        """Convert the atlas into a PIL image.

        Requires Pillow to be installed.
        """
        from PIL.Image import frombuffer
        if self.is_empty:
            raise ValueError('Lightmap atlas is empty!')
        return frombuffer(
            'RGBA',
            (self.width, self.height),
            bytes(self.rgba),
            'raw',
            'RGBA',
            0,
            1,
        ).copy()


def _texinfo_for(bsp: 'Map', face_index: int) -> 'Optional[TexInfo]':
    ind = bsp.faces[face_index].texinfo
    if 0 <= ind < len(bsp.texinfo):
        return bsp.texinfo[ind]
    return None


def face_extents(bsp: 'Map', index: int, luxel: int = LUXEL_SIZE) -> Optional[FaceLightmap]:
    """Compute the size of a face's lightmap.

    The texture-space bounds of the face are expanded outward to whole luxels, then the
    size is ``extent / luxel + 1`` in each axis.

    :returns: The lightmap, or None if the face is degenerate or has an infinite extent.
    """
    texinfo = _texinfo_for(bsp, index)
    if texinfo is None:
        return None
    loop = face_loop(bsp, bsp.faces[index])
    if len(loop) < 3 or any(not 0 <= vert < len(bsp.vertices) for vert in loop):
        return None

    s_min = t_min = math.inf
    s_max = t_max = -math.inf
    for vert in loop:
        s, t = texinfo.project(bsp.vertices[vert])
        s_min = min(s_min, s)
        s_max = max(s_max, s)
        t_min = min(t_min, t)
        t_max = max(t_max, t)
    if not all(map(math.isfinite, (s_min, s_max, t_min, t_max))):
        LOGGER.warning('Face {} has non-finite texture coordinates, leaving it unlit.', index)
        return None

    s_min = math.floor(s_min / luxel) * luxel
    t_min = math.floor(t_min / luxel) * luxel
    s_max = math.ceil(s_max / luxel) * luxel
    t_max = math.ceil(t_max / luxel) * luxel

    return FaceLightmap(
        max(1, int(s_max - s_min) // luxel + 1),
        max(1, int(t_max - t_min) // luxel + 1),
        float(s_min), float(t_min),
    )


def _fits(config: AtlasConfig, width: int, height: int, sizes: Sequence[Tuple[int, int]]) -> bool:
    packer = config.packer(width, height)
    return all(packer.place(w, h) is not None for w, h in sizes)


def choose_atlas_size(
    sizes: Sequence[Tuple[int, int]],
    config: AtlasConfig = AtlasConfig(),
) -> Tuple[int, int]:
    """Find the atlas dimensions needed to hold all these rectangles.

    This starts with a square, then repeatedly doubles the smaller dimension (the width if
    equal) until everything fits.

    :raises AtlasOverflowError: If either dimension would need to exceed the maximum size.
    """
    width = height = config.start_size
    while not _fits(config, width, height, sizes):
        if width <= height:
            width *= 2
        else:
            height *= 2
        if width > config.max_size or height > config.max_size:
            raise AtlasOverflowError(width, height, config.max_size)
        LOGGER.debug('Growing lightmap atlas to {}x{}', width, height)
    return width, height


def _widen(mesh: Mesh, secondary: Callable[[float, float, float], Tuple[float, float]]) -> None:
    """Rebuild the vertex buffer with secondary UVs, computed from each position."""
    stride = mesh.stride
    old = mesh.vertices
    new: 'array[float]' = array('f')
    for i in range(0, len(old), stride):
        x, y, z, u0, v0 = old[i:i + STRIDE_BASE]
        u1, v1 = secondary(x, y, z)
        new.extend((x, y, z, u0, v0, u1, v1))
    mesh.vertices = new
    mesh.stride = STRIDE_LIGHTMAPPED


def _no_lightmap(x: float, y: float, z: float) -> Tuple[float, float]:
    return 0.0, 0.0


def _fullbright(bsp: 'Map') -> LightmapAtlas:
    """Give every mesh zeroed lightmap UVs, and produce an empty atlas."""
    for mesh in bsp.meshes:
        _widen(mesh, _no_lightmap)
    return LightmapAtlas(rects=[LightmapRect() for _ in bsp.faces])


def build_lightmaps(bsp: 'Map', config: AtlasConfig = AtlasConfig()) -> LightmapAtlas:
    """Build the lightmap atlas, and add the lightmap UVs to the meshes.

    The meshes must already be built, with one per face. Only the first light style of each
    face is used.
    """
    if not bsp.faces:
        return _fullbright(bsp)
    if len(bsp.meshes) != len(bsp.faces):
        LOGGER.warning(
            'Have {} meshes for {} faces, skipping lightmaps.',
            len(bsp.meshes), len(bsp.faces),
        )
        return _fullbright(bsp)

    luxel = config.luxel_size
    lighting = bsp.lighting
    extents: List[Optional[FaceLightmap]] = []
    total_area = 0
    for face_ind, face in enumerate(bsp.faces):
        bsp.meshes[face_ind].face_index = face_ind
        info = None
        if 0 <= face.lightofs < len(lighting):
            info = face_extents(bsp, face_ind, luxel)
        if info is not None:
            total_area += info.area
        extents.append(info)

    if total_area == 0:
        LOGGER.info('No lightmaps found, leaving map fullbright.')
        return _fullbright(bsp)

    sizes = [(info.width, info.height) for info in extents if info is not None]
    try:
        width, height = choose_atlas_size(sizes, config)
    except AtlasOverflowError as exc:
        LOGGER.warning('{} Disabling lightmaps.', exc)
        return _fullbright(bsp)

    packer = config.packer(width, height)
    rects: List[LightmapRect] = []
    for face, info in zip(bsp.faces, extents):
        pos = packer.place(info.width, info.height) if info is not None else None
        if info is None or pos is None:
            rects.append(LightmapRect())
        else:
            rects.append(LightmapRect(pos[0], pos[1], info.width, info.height, face.lightofs, True))

    rgba = bytearray(b'\xFF' * (width * height * 4))
    truncated = 0
    for rect in rects:
        if not rect.valid:
            continue
        ofs = rect.lightofs
        if ofs + rect.w * rect.h > len(lighting):
            # The buffer starts white, and valid rects don't overlap.
            truncated += 1
            continue
        for row in range(rect.h):
            luxels = lighting[ofs + row * rect.w:ofs + (row + 1) * rect.w]
            start = ((rect.y + row) * width + rect.x) * 4
            end = start + rect.w * 4
            rgba[start:end:4] = luxels
            rgba[start + 1:end:4] = luxels
            rgba[start + 2:end:4] = luxels
    if truncated:
        LOGGER.warning('{} faces have lighting past the end of the lump, using white.', truncated)

    for face_ind, mesh in enumerate(bsp.meshes):
        rect = rects[face_ind]
        info = extents[face_ind]
        texinfo = _texinfo_for(bsp, face_ind)
        if not rect.valid or info is None or texinfo is None:
            _widen(mesh, _no_lightmap)
            continue

        def secondary(
            x: float, y: float, z: float,
            rect: LightmapRect = rect, info: FaceLightmap = info, texinfo: 'TexInfo' = texinfo,
        ) -> Tuple[float, float]:
            """Map a position onto the centre of its luxel in the atlas."""
            s, t = texinfo.project((x, y, z))
            return (
                (rect.x + (s - info.s_min) / luxel + 0.5) / width,
                (rect.y + (t - info.t_min) / luxel + 0.5) / height,
            )
        _widen(mesh, secondary)

    LOGGER.info('Built {}x{} lightmap atlas for {} faces.', width, height, len(bsp.faces))
    return LightmapAtlas(width, height, rgba, rects)
