"""Decode Quake-style BSP v29 levels into drawable data.

The main entry point is :py:func:`bsptools.bsp.load_bsp`, which produces a
:py:class:`~bsptools.bsp.Map` containing the decoded geometry, the embedded
textures, triangulated meshes and a packed lightmap atlas.
"""
from typing import TYPE_CHECKING, Generic, Optional, Type, TypeVar, Union, overload
from typing_extensions import Literal, TypeAlias
from pathlib import Path
from types import TracebackType
import io
import itertools as _itertools
import os as _os


__version__: str
if not TYPE_CHECKING:
    try:
        from importlib.metadata import version as _get_version
        __version__ = _get_version('bsptools')
    except Exception:  # Not installed, running from a checkout.
        __version__ = '<unknown>'

__all__ = [
    '__version__',
    'StringPath', 'AtomicWriter',
    'Map', 'load_bsp',
    'BSPError', 'BSPIOError', 'LumpBoundsError', 'MalformedLumpError',
    'AtlasConfig',

    # Submodules:
    'binformat', 'bsp', 'lightmap', 'logger', 'mesh', 'miptex', 'palette',  # pyright: ignore
]

# Pathlike can only be subscripted in 3.9+
StringPath: TypeAlias = Union[str, '_os.PathLike[str]']
IOKindT = TypeVar('IOKindT', io.BufferedWriter, io.TextIOWrapper)


class AtomicWriter(Generic[IOKindT]):
    """Atomically overwrite a file.

    Use as a context manager - the returned temporary file
    should be written to. When cleanly exiting, the file will be transferred.
    If an exception occurs in the body, the temporary data will be discarded.
    """
    filename: Path
    encoding: str
    _temp_name: Optional[Path]
    is_bytes: bool
    temp: Optional[IOKindT]

    @overload
    def __init__(
        self: 'AtomicWriter[io.BufferedWriter]', filename: StringPath,
        is_bytes: Literal[True],
    ) -> None: ...

    @overload
    def __init__(
        self: 'AtomicWriter[io.TextIOWrapper]', filename: StringPath,
        is_bytes: Literal[False] = False, encoding: str = 'utf8',
    ) -> None: ...

    def __init__(
        self,
        filename: StringPath,
        is_bytes: bool = False,
        encoding: str = 'utf8',
    ) -> None:
        self.filename = Path(filename)
        self.encoding = encoding
        self._temp_name = None
        self.is_bytes = is_bytes
        self.temp = None

    def make_tempfile(self) -> None:
        """Create the temporary file object, next to the destination."""
        if self.temp is not None:
            self.temp.close()
            Path(self.temp.name).unlink()

        self.filename.parent.mkdir(parents=True, exist_ok=True)

        for i in _itertools.count(start=1):
            self._temp_name = self.filename.with_name(f'{self.filename.name}.tmp_{i}')
            try:
                if self.is_bytes:
                    self.temp = self._temp_name.open('xb')  # type: ignore
                else:
                    # Palette text files always use \n, regardless of platform.
                    self.temp = self._temp_name.open(  # type: ignore
                        'xt', encoding=self.encoding, newline='\n',
                    )
                break
            except FileExistsError:
                pass

    def __enter__(self) -> IOKindT:
        self.make_tempfile()
        assert self.temp is not None
        return self.temp.__enter__()

    def __exit__(
        self,
        exc_type: Optional[Type[BaseException]],
        exc_value: Optional[BaseException],
        tback: Optional[TracebackType],
    ) -> None:
        if self.temp is not None:
            self.temp.__exit__(exc_type, exc_value, tback)
            self.temp = None
        if self._temp_name is None:
            return None
        if exc_type is not None:
            try:
                self._temp_name.unlink()
            except FileNotFoundError:
                pass
        else:
            self._temp_name.replace(self.filename)

        return None  # Don't cancel the exception.


# Import these, so people can reference 'bsptools.Map' instead of 'bsptools.bsp.Map'.
# Should be done after other code, so everything's initialised.
# isort: off
from bsptools.bsp import (
    Map, load_bsp,
    BSPError, BSPIOError, LumpBoundsError, MalformedLumpError,
)
from bsptools.lightmap import AtlasConfig
