"""Test packing lightmaps into an atlas."""
from random import Random
from typing import List, Optional, Tuple
import math

from dirty_equals import HasAttributes, IsInstance
import pytest

from bsptools.bsp import Face, Map, Vertex
from bsptools.lightmap import (
    AtlasConfig, AtlasOverflowError, LightmapAtlas, LightmapRect, Packer, ShelfPacker,
    build_lightmaps, choose_atlas_size, face_extents,
)
from bsptools.mesh import Mesh, build_meshes
from helpers import quad_map


def meshed_quad(
    size: float = 64.0,
    lighting: Optional[bytes] = None,
    lightofs: int = 0,
) -> Map:
    """Produce the quad map, with meshes built."""
    bsp = quad_map(size, lighting, lightofs)
    bsp.meshes = build_meshes(bsp)
    return bsp


def pixel(atlas: LightmapAtlas, x: int, y: int) -> Tuple[int, int, int, int]:
    """Fetch a pixel from the atlas."""
    ind = (y * atlas.width + x) * 4
    r, g, b, a = atlas.rgba[ind:ind + 4]
    return r, g, b, a


def test_shelf_packer() -> None:
    """Test the exact placement behaviour."""
    packer = ShelfPacker(10, 10)
    assert packer.place(4, 3) == (0, 0)
    assert packer.place(4, 5) == (4, 0)
    # Doesn't fit on this row, move down by the tallest.
    assert packer.place(4, 2) == (0, 5)
    assert packer.place(6, 1) == (4, 5)
    # Too large, even for an empty packer.
    assert packer.place(11, 1) is None
    assert packer.place(1, 11) is None
    # Fits horizontally, but not enough room below.
    assert packer.place(10, 4) is None


def test_shelf_packer_exact_fit() -> None:
    """Rectangles can fill the whole area."""
    packer = ShelfPacker(8, 8)
    assert [packer.place(4, 4) for _ in range(4)] == [(0, 0), (4, 0), (0, 4), (4, 4)]
    assert packer.place(1, 1) is None


@pytest.mark.parametrize('seed', range(8))
def test_packer_no_overlap(seed: int) -> None:
    """Placed rectangles stay inside the area and never overlap."""
    rand = Random(seed)
    packer = ShelfPacker(256, 256)
    placed: List[Tuple[int, int, int, int]] = []
    for _ in range(400):
        w = rand.randint(1, 40)
        h = rand.randint(1, 40)
        pos = packer.place(w, h)
        if pos is not None:
            placed.append((pos[0], pos[1], w, h))
    assert placed
    for x, y, w, h in placed:
        assert 0 <= x and x + w <= 256
        assert 0 <= y and y + h <= 256
    for i, (x1, y1, w1, h1) in enumerate(placed):
        for x2, y2, w2, h2 in placed[i + 1:]:
            assert x1 + w1 <= x2 or x2 + w2 <= x1 or y1 + h1 <= y2 or y2 + h2 <= y1


def test_config_validation() -> None:
    """Test the configuration is checked."""
    assert AtlasConfig() == HasAttributes(start_size=1024, max_size=8192, luxel_size=16)
    with pytest.raises(ValueError):
        AtlasConfig(start_size=0)
    with pytest.raises(ValueError):
        AtlasConfig(luxel_size=-16)
    with pytest.raises(ValueError):
        AtlasConfig(start_size=2048, max_size=1024)
    with pytest.raises(TypeError):
        AtlasConfig(start_size=1.5)  # type: ignore


@pytest.mark.parametrize('size, expected', [
    (64.0, (5, 5, 0.0, 0.0)),
    (40.0, (4, 4, 0.0, 0.0)),
    (16.0, (2, 2, 0.0, 0.0)),
    (1.0, (2, 2, 0.0, 0.0)),
])
def test_face_extents(size: float, expected: Tuple[int, int, float, float]) -> None:
    """Bounds are expanded to whole luxels, plus one."""
    bsp = quad_map(size)
    info = face_extents(bsp, 0)
    assert info is not None
    assert (info.width, info.height, info.s_min, info.t_min) == expected
    assert info.area == expected[0] * expected[1]


def test_face_extents_negative() -> None:
    """Negative coordinates round away from zero."""
    bsp = quad_map()
    bsp.texinfo[0].s = (1.0, 0.0, 0.0, -8.0)
    bsp.texinfo[0].t = (0.0, 1.0, 0.0, -64.0)
    info = face_extents(bsp, 0)
    assert info == HasAttributes(width=6, height=5, s_min=-16.0, t_min=-64.0)


def test_face_extents_luxel_size() -> None:
    """The luxel size can be changed."""
    assert face_extents(quad_map(), 0, 8) == HasAttributes(width=9, height=9)


def test_face_extents_degenerate() -> None:
    """Degenerate faces have no lightmap."""
    bsp = quad_map()
    bsp.faces[0].numedges = 2
    assert face_extents(bsp, 0) is None
    bsp.faces[0].numedges = 4
    bsp.faces[0].texinfo = 3
    assert face_extents(bsp, 0) is None


@pytest.mark.parametrize('value', [math.inf, -math.inf], ids=['inf', 'neg_inf'])
def test_face_extents_infinite(caplog: pytest.LogCaptureFixture, value: float) -> None:
    """Faces stretching to infinity are left unlit, instead of failing the whole map."""
    bsp = quad_map()
    bsp.vertices[0] = Vertex(value, 0.0, 0.0)
    assert face_extents(bsp, 0) is None
    assert 'Face 0 has non-finite texture coordinates' in caplog.text

    bsp.meshes = build_meshes(bsp)
    atlas = build_lightmaps(bsp)
    assert_fullbright(bsp, atlas)


def test_choose_atlas_size() -> None:
    """Test growing the atlas."""
    assert choose_atlas_size([]) == (1024, 1024)
    assert choose_atlas_size([(5, 5)] * 100) == (1024, 1024)

    config = AtlasConfig(start_size=16, max_size=64)
    assert choose_atlas_size([(16, 16)], config) == (16, 16)
    # Width grows first, then height.
    assert choose_atlas_size([(16, 16)] * 2, config) == (32, 16)
    assert choose_atlas_size([(16, 16)] * 3, config) == (32, 32)
    assert choose_atlas_size([(16, 16)] * 5, config) == (64, 32)
    assert choose_atlas_size([(64, 64)], config) == (64, 64)


def test_choose_atlas_overflow() -> None:
    """Test exceeding the maximum size."""
    config = AtlasConfig(start_size=16, max_size=64)
    with pytest.raises(AtlasOverflowError) as exc_info:
        choose_atlas_size([(100, 1)], config)
    assert exc_info.value == HasAttributes(width=128, height=64, max_size=64)


def test_build_quad() -> None:
    """Test building the atlas for a single face."""
    bsp = meshed_quad()
    atlas = build_lightmaps(bsp)
    assert (atlas.width, atlas.height) == (1024, 1024)
    assert len(atlas.rgba) == 1024 * 1024 * 4
    assert atlas.rects == [LightmapRect(0, 0, 5, 5, 0, True)]

    # The lighting bytes are copied as greyscale.
    for y in range(5):
        for x in range(5):
            lux = y * 5 + x
            assert pixel(atlas, x, y) == (lux, lux, lux, 255)
    # The rest is white.
    assert pixel(atlas, 5, 0) == (255, 255, 255, 255)
    assert pixel(atlas, 0, 5) == (255, 255, 255, 255)
    assert pixel(atlas, 1023, 1023) == (255, 255, 255, 255)

    [mesh] = bsp.meshes
    assert mesh.face_index == 0
    assert mesh.stride == 7
    assert mesh.vertex_count == 6
    verts = list(mesh.iter_vertices())
    # Primary UVs are unchanged.
    assert verts[0][:5] == pytest.approx((0.0, 0.0, 0.0, 0.0, 1.0))
    assert verts[1][:5] == pytest.approx((64.0, 0.0, 0.0, 1.0, 1.0))
    # Secondary UVs sample the luxel centres.
    assert verts[0][5:] == pytest.approx((0.5 / 1024, 0.5 / 1024))
    assert verts[1][5:] == pytest.approx((4.5 / 1024, 0.5 / 1024))
    assert verts[2][5:] == pytest.approx((4.5 / 1024, 4.5 / 1024))
    assert verts[5][5:] == pytest.approx((0.5 / 1024, 4.5 / 1024))


def test_build_multiple() -> None:
    """Faces without lightmaps are skipped when packing."""
    bsp = quad_map()
    bsp.faces += [
        Face(0, 0, 0, 4, 0, lightofs=-1),
        Face(0, 0, 0, 4, 0, lightofs=0),
        Face(0, 0, 0, 2, 0, lightofs=0),  # Degenerate.
    ]
    bsp.meshes = build_meshes(bsp)
    atlas = build_lightmaps(bsp, AtlasConfig(start_size=8, max_size=32))
    assert (atlas.width, atlas.height) == (16, 8)
    assert atlas.rects == [
        LightmapRect(0, 0, 5, 5, 0, True),
        LightmapRect(),
        LightmapRect(5, 0, 5, 5, 0, True),
        LightmapRect(),
    ]
    assert [mesh.face_index for mesh in bsp.meshes] == [0, 1, 2, 3]
    assert [mesh.stride for mesh in bsp.meshes] == [7, 7, 7, 7]
    for vert in bsp.meshes[1].iter_vertices():
        assert vert[5:] == (0.0, 0.0)
    # Second copy is offset in the atlas.
    assert list(bsp.meshes[2].iter_vertices())[0][5:] == pytest.approx((5.5 / 16, 0.5 / 8))
    assert pixel(atlas, 6, 0) == (1, 1, 1, 255)


def test_build_valid_rects_in_bounds() -> None:
    """Valid rects lie inside the atlas, and don't overlap."""
    bsp = quad_map()
    bsp.faces += [Face(0, 0, 0, 4, 0, lightofs=0) for _ in range(30)]
    bsp.meshes = build_meshes(bsp)
    atlas = build_lightmaps(bsp, AtlasConfig(start_size=16, max_size=64))
    rects = [rect for rect in atlas.rects if rect.valid]
    assert len(rects) == 31
    for rect in rects:
        assert 0 <= rect.x and rect.x + rect.w <= atlas.width
        assert 0 <= rect.y and rect.y + rect.h <= atlas.height
    for i, a in enumerate(rects):
        for b in rects[i + 1:]:
            assert a.x + a.w <= b.x or b.x + b.w <= a.x or a.y + a.h <= b.y or b.y + b.h <= a.y
    for mesh in bsp.meshes:
        for vert in mesh.iter_vertices():
            assert 0.0 <= vert[5] <= 1.0
            assert 0.0 <= vert[6] <= 1.0


def assert_fullbright(bsp: Map, atlas: LightmapAtlas) -> None:
    """Check the map was left without lightmaps."""
    assert atlas.is_empty
    assert atlas.rgba == bytearray()
    assert atlas.rects == [LightmapRect()] * len(bsp.faces)
    for mesh in bsp.meshes:
        assert mesh.stride == 7
        for vert in mesh.iter_vertices():
            assert vert[5:] == (0.0, 0.0)


@pytest.mark.parametrize('lightofs, lighting', [
    (-1, None),
    (25, None),
    (0, b''),
], ids=['unlit', 'past_end', 'no_lighting'])
def test_build_no_lighting(lightofs: int, lighting: Optional[bytes]) -> None:
    """If no faces have lighting, it's fullbright."""
    bsp = meshed_quad(lighting=lighting, lightofs=lightofs)
    atlas = build_lightmaps(bsp)
    assert_fullbright(bsp, atlas)
    assert bsp.meshes[0].vertex_count == 6
    assert bsp.meshes[0].face_index == 0


def test_build_overflow(caplog: pytest.LogCaptureFixture) -> None:
    """If lightmaps are too large, it's fullbright."""
    bsp = meshed_quad(size=512.0)
    atlas = build_lightmaps(bsp, AtlasConfig(start_size=16, max_size=32))
    assert_fullbright(bsp, atlas)
    assert 'Disabling lightmaps' in caplog.text


def test_build_mismatch(caplog: pytest.LogCaptureFixture) -> None:
    """If meshes don't match the faces, it's fullbright."""
    bsp = meshed_quad()
    bsp.meshes.append(Mesh())
    atlas = build_lightmaps(bsp)
    assert_fullbright(bsp, atlas)
    assert 'Have 2 meshes for 1 faces' in caplog.text

    bsp.meshes = []
    assert_fullbright(bsp, build_lightmaps(bsp))


def test_build_no_faces(caplog: pytest.LogCaptureFixture) -> None:
    """A map without faces quietly has no lightmaps."""
    bsp = Map()
    atlas = build_lightmaps(bsp)
    assert atlas.is_empty
    assert atlas.rects == []
    assert 'meshes for' not in caplog.text


def test_build_truncated_lighting(caplog: pytest.LogCaptureFixture) -> None:
    """Faces with lighting past the end of the lump are white."""
    bsp = meshed_quad(lighting=bytes(10))
    atlas = build_lightmaps(bsp)
    assert atlas.rects == [LightmapRect(0, 0, 5, 5, 0, True)]
    for y in range(5):
        for x in range(5):
            assert pixel(atlas, x, y) == (255, 255, 255, 255)
    assert 'past the end' in caplog.text


def test_custom_packer() -> None:
    """The packer can be swapped out."""
    class NoRoom(Packer):
        """Never has space."""
        def place(self, width: int, height: int) -> Optional[Tuple[int, int]]:
            return None

    bsp = meshed_quad()
    atlas = build_lightmaps(bsp, AtlasConfig(start_size=16, max_size=64, packer=NoRoom))
    assert_fullbright(bsp, atlas)


def test_rebuild() -> None:
    """Building twice replaces the lightmap UVs."""
    bsp = meshed_quad()
    build_lightmaps(bsp)
    first = list(bsp.meshes[0].vertices)
    build_lightmaps(bsp)
    assert bsp.meshes[0].stride == 7
    assert list(bsp.meshes[0].vertices) == first


def test_atlas_to_pil() -> None:
    """Test converting the atlas to an image."""
    pytest.importorskip('PIL')
    atlas = build_lightmaps(meshed_quad())
    img = atlas.to_PIL()
    assert img.size == (1024, 1024)
    assert img.getpixel((1, 0)) == (1, 1, 1, 255)
    assert img.getpixel((100, 100)) == (255, 255, 255, 255)
    with pytest.raises(ValueError):
        LightmapAtlas().to_PIL()


def test_empty_atlas() -> None:
    """The default atlas is empty."""
    assert LightmapAtlas() == IsInstance(LightmapAtlas) & HasAttributes(
        width=0, height=0, rects=[], is_empty=True,
    )
