"""Triangulate BSP faces into flat vertex buffers.

Each face produces exactly one :py:class:`Mesh`, so ``meshes[i]`` always belongs to
``faces[i]``. Faces are convex, so a simple fan around the first vertex is sufficient.
"""
from typing import TYPE_CHECKING, Final, Iterator, List, Tuple
from array import array

import attrs

from bsptools import logger


if TYPE_CHECKING:
    from bsptools.bsp import Face, Map


__all__ = ['Mesh', 'face_loop', 'build_meshes', 'STRIDE_BASE', 'STRIDE_LIGHTMAPPED']

LOGGER = logger.get_logger(__name__)

#: Floats per vertex: position + texture UV.
STRIDE_BASE: Final = 5
#: Floats per vertex once the lightmap UVs are added.
STRIDE_LIGHTMAPPED: Final = 7


def _float_array() -> 'array[float]':
    return array('f')


@attrs.define(eq=False)
class Mesh:
    """A triangle list for a single face.

    The vertices are stored flat, ``stride`` floats each: ``x y z u0 v0`` and then
    ``u1 v1`` once lightmaps have been built.
    """
    #: Index into the map's textures, or -1 if the face doesn't have a valid one.
    texture_index: int = -1
    #: Which face this was built from, assigned when building lightmaps.
    face_index: int = -1
    vertices: 'array[float]' = attrs.field(factory=_float_array, repr=False)
    stride: int = STRIDE_BASE

    @property
    def vertex_count(self) -> int:
        """The number of vertices in the buffer."""
        return len(self.vertices) // self.stride

    @property
    def triangle_count(self) -> int:
        """The number of triangles in the buffer."""
        return self.vertex_count // 3

    @property
    def is_empty(self) -> bool:
        """Degenerate faces produce empty meshes."""
        return not self.vertices

    def iter_vertices(self) -> Iterator[Tuple[float, ...]]:
        """Yield each vertex as a tuple of ``stride`` floats."""
        stride = self.stride
        verts = self.vertices
        for i in range(0, len(verts), stride):
            yield tuple(verts[i:i + stride])


def face_loop(bsp: 'Map', face: 'Face') -> List[int]:
    """Find the vertex indexes for a face, in winding order.

    Positive surfedges use the first vertex of the edge, negative ones refer to the edge
    in reverse and so use the second.
    """
    loop: List[int] = []
    surfedges = bsp.surfedges
    edges = bsp.edges
    for i in range(face.firstedge, face.firstedge + face.numedges):
        if not 0 <= i < len(surfedges):
            LOGGER.warning('Surfedge {} out of range ({} total)!', i, len(surfedges))
            break
        ind = surfedges[i]
        if abs(ind) >= len(edges):
            LOGGER.warning('Edge {} out of range ({} total)!', abs(ind), len(edges))
            break
        if ind >= 0:
            loop.append(edges[ind].v0)
        else:
            loop.append(edges[-ind].v1)
    return loop


def build_meshes(bsp: 'Map') -> List[Mesh]:
    """Triangulate every face in the map.

    Degenerate faces, with less than three vertices, produce an empty mesh to keep the
    indexes matching.
    """
    meshes: List[Mesh] = []
    degenerate = 0
    verts = bsp.vertices
    for face_ind, face in enumerate(bsp.faces):
        mesh = Mesh()
        meshes.append(mesh)

        loop = face_loop(bsp, face)
        if any(not 0 <= vert < len(verts) for vert in loop):
            LOGGER.warning('Face {} references a missing vertex!', face_ind)
            loop = []
        if len(loop) < 3:
            degenerate += 1
            LOGGER.debug('Face {} is degenerate, with {} vertices.', face_ind, len(loop))
            continue

        if not 0 <= face.texinfo < len(bsp.texinfo):
            LOGGER.warning('Face {} has invalid texinfo {}!', face_ind, face.texinfo)
            degenerate += 1
            continue
        texinfo = bsp.texinfo[face.texinfo]

        width = height = 1.0
        tex = bsp.texture_for(face)
        if tex is not None:
            mesh.texture_index = texinfo.miptex
            # Avoid dividing by zero for textures we don't know the size of.
            if tex.width > 0:
                width = float(tex.width)
            if tex.height > 0:
                height = float(tex.height)

        # Compute each corner once, the fan reuses them.
        corners: List[Tuple[float, float, float, float, float]] = []
        for vert_ind in loop:
            pos = verts[vert_ind]
            s, t = texinfo.project(pos)
            corners.append((pos.x, pos.y, pos.z, s / width, 1.0 - t / height))

        buffer = mesh.vertices
        first = corners[0]
        for i in range(1, len(corners) - 1):
            buffer.extend(first)
            buffer.extend(corners[i])
            buffer.extend(corners[i + 1])

    if degenerate:
        LOGGER.info('{} of {} faces were degenerate.', degenerate, len(bsp.faces))
    return meshes
