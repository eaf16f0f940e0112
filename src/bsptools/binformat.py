"""
The binformat module :mod:`binformat` contains functionality for handling binary formats, \
esentially expanding on :external:mod:`struct`'s functionality.

All record formats used by this package are little-endian with explicit field widths,
so decoding never depends on the host's byte order or structure packing.
"""
from typing import IO, Any, Collection, Final, Iterator, List, Mapping, Tuple, Union
from struct import Struct
import functools


__all__ = [
    'SIZES',
    'SIZE_CHAR', 'SIZE_FLOAT', 'SIZE_INT', 'SIZE_SHORT',
    'struct_read', 'read_array', 'write_array',
    'iter_records', 'read_fixed_str',
]

SIZES: Final[Mapping[str, int]] = {
    fmt: Struct('<' + fmt).size
    for fmt in 'cbB?hHiIlLqQfd'
}
SIZE_CHAR: Final = 1
SIZE_SHORT: Final = 2
SIZE_INT: Final = 4
SIZE_FLOAT: Final = 4

assert SIZE_CHAR == SIZES['b']
assert SIZE_SHORT == SIZES['h']
assert SIZE_INT == SIZES['i']
assert SIZE_FLOAT == SIZES['f']

_cached_struct = functools.lru_cache()(Struct)


def struct_read(fmt: Union[Struct, str], file: IO[bytes]) -> Tuple[Any, ...]:
    """Read a structure from the file, automatically computing the required number of bytes."""
    if not isinstance(fmt, Struct):
        fmt = _cached_struct(fmt)
    return fmt.unpack(file.read(fmt.size))


def _split_format(fmt: Union[str, Struct]) -> Tuple[str, str]:
    """Split an array format into the endianness prefix and the item character."""
    if isinstance(fmt, Struct):
        # Turn it back into its original format string so we can figure out what it held.
        fmt = fmt.format
    if len(fmt) == 2:
        return fmt[0], fmt[1]
    else:
        return '', fmt


def read_array(fmt: Union[str, Struct], data: bytes) -> List[int]:
    """Read a buffer containing a stream of integers.

    The format string should be one of the integer format characters, optionally prefixed by an
    endianness indicator. As many integers as possible will then be read from the data.
    """
    endianness, fmt = _split_format(fmt)
    try:
        item_size = SIZES[fmt]
    except KeyError:
        raise ValueError(f'Unknown format character {fmt!r}!') from None
    count = len(data) // item_size
    return list(Struct(endianness + fmt * count).unpack_from(data))


def write_array(fmt: Union[str, Struct], data: Collection[Any]) -> bytes:
    """Build a packed array of numbers.

    The format string should be one of the format characters, optionally prefixed by an
    endianness indicator. The values in the data will then be packed into a bytes buffer and returned.
    """
    endianness, fmt = _split_format(fmt)
    return Struct(endianness + fmt * len(data)).pack(*data)


def iter_records(fmt: Union[str, Struct], data: Union[bytes, memoryview]) -> Iterator[Tuple[Any, ...]]:
    """Unpack a buffer made up of consecutive fixed-size records.

    Unlike :external:py:func:`struct.iter_unpack`, the size check happens before any records are
    produced, so a misaligned buffer never yields partial results.

    :raises ValueError: If the buffer size is not a multiple of the record size.
    """
    if not isinstance(fmt, Struct):
        fmt = _cached_struct(fmt)
    if len(data) % fmt.size != 0:
        raise ValueError(
            f'Buffer of {len(data)} bytes is not a multiple '
            f'of the {fmt.size}-byte record size!'
        )
    if not data:
        return iter(())
    return fmt.iter_unpack(data)


def read_fixed_str(
    data: Union[bytes, memoryview],
    offset: int, size: int,
    encoding: str = 'ascii',
) -> str:
    """Read a string stored in a fixed-size, null-padded field.

    Everything after the first null is discarded, compilers often leave garbage there.
    Undecodable bytes are replaced instead of raising.
    """
    raw = bytes(data[offset:offset + size])
    end = raw.find(b'\0')
    if end != -1:
        raw = raw[:end]
    return raw.decode(encoding, 'replace')
