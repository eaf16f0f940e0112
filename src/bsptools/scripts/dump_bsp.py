"""Load a BSP file, and print a summary of its contents.

Optionally this can also save the lightmap atlas as an image, or convert the palette
into a JASC-PAL file for use in paint programs.
"""
from typing import List, Optional
from collections import Counter
import argparse
import sys

from bsptools import palette as palette_mod
from bsptools.bsp import BSPError, Map, load_bsp
from bsptools.logger import init_logging


def summarise(bsp: Map) -> List[str]:
    """Produce the lines describing the map."""
    mins, maxs = bsp.bounds()
    lines = [
        f'{bsp.filename}: BSP version {bsp.version}',
        f'  Vertices:   {len(bsp.vertices)}',
        f'  Edges:      {len(bsp.edges)}',
        f'  Surfedges:  {len(bsp.surfedges)}',
        f'  Faces:      {len(bsp.faces)}',
        f'  Texinfo:    {len(bsp.texinfo)}',
        f'  Models:     {len(bsp.models)}',
        f'  Lighting:   {len(bsp.lighting)} bytes',
        f'  Entities:   {len(bsp.entities)} characters',
        f'  Bounds:     ({mins.x:g} {mins.y:g} {mins.z:g}) - ({maxs.x:g} {maxs.y:g} {maxs.z:g})',
    ]
    external = sum(1 for tex in bsp.textures if tex.is_external)
    lines.append(f'  Textures:   {len(bsp.textures)} ({external} external)')
    for tex in bsp.textures:
        if tex.name:
            lines.append(f'    {tex.name:<16} {tex.width}x{tex.height}')

    triangles = sum(mesh.triangle_count for mesh in bsp.meshes)
    empty = sum(1 for mesh in bsp.meshes if mesh.is_empty)
    strides = Counter(mesh.stride for mesh in bsp.meshes)
    lines.append(
        f'  Meshes:     {len(bsp.meshes)} ({empty} empty), {triangles} triangles, '
        'stride ' + ', '.join(map(str, sorted(strides)))
    )
    atlas = bsp.lightmap_atlas
    if atlas.is_empty:
        lines.append('  Lightmaps:  none, fullbright')
    else:
        valid = sum(1 for rect in atlas.rects if rect.valid)
        lines.append(f'  Lightmaps:  {atlas.width}x{atlas.height} atlas, {valid} faces lit')
    return lines


def main(args: List[str]) -> int:
    """Main script."""
    parser = argparse.ArgumentParser(description=__doc__)
    parser.add_argument(
        "bsp",
        help="the BSP file to load.",
    )
    parser.add_argument(
        "-p", "--palette",
        help="a palette.lmp file, used to export the palette.",
    )
    parser.add_argument(
        "--no-lightmaps",
        help="skip building the lightmap atlas.",
        action='store_false',
        dest='lightmaps',
    )
    parser.add_argument(
        "--atlas",
        help="save the lightmap atlas to this image file. Requires Pillow.",
        metavar='IMAGE',
    )
    parser.add_argument(
        "--export-palette",
        help="write the palette as a JASC-PAL file.",
        metavar='PAL',
    )
    result = parser.parse_args(args)

    try:
        bsp = load_bsp(result.bsp, result.palette, lightmaps=result.lightmaps)
    except BSPError as exc:
        print(f'Could not load BSP: {exc}', file=sys.stderr)
        return 1

    for line in summarise(bsp):
        print(line)

    if result.atlas:
        if bsp.lightmap_atlas.is_empty:
            print('No lightmap atlas to save.', file=sys.stderr)
        else:
            bsp.lightmap_atlas.to_PIL().save(result.atlas)
            print(f'Saved atlas to {result.atlas}')

    if result.export_palette:
        if not palette_mod.is_valid(bsp.palette):
            print('No palette loaded, use --palette.', file=sys.stderr)
            return 1
        if not palette_mod.save_jasc(result.export_palette, bsp.palette):
            return 1
        print(f'Saved palette to {result.export_palette}')
    return 0


def cli(args: Optional[List[str]] = None) -> None:
    """Entry point for the console script."""
    init_logging(main_logger=__name__)
    sys.exit(main(sys.argv[1:] if args is None else args))


if __name__ == '__main__':
    cli()
