"""Logging helpers shared by the other modules.

Messages are formatted with :external:py:meth:`str.format()` instead of ``%``::

    LOGGER = logger.get_logger(__name__)
    LOGGER.info('Parsed {} faces', len(faces))

and a block of messages can be tagged with the map currently being processed, using
:py:func:`context`.
"""
from typing import (
    TYPE_CHECKING, Any, Callable, Dict, Generator, Mapping, Optional, Tuple, Type,
    Union, cast,
)
from pathlib import Path
from types import TracebackType
import contextlib
import contextvars
import logging
import os
import sys

from bsptools import StringPath


__all__ = ['LoggerAdapter', 'get_handler', 'get_logger', 'init_logging', 'context']

CTX_STACK: 'contextvars.ContextVar[Tuple[str, ...]]' = contextvars.ContextVar(
    'bsptools_logger', default=(),
)
DEBUG_ENV = 'BSPTOOLS_DEBUG'
#: The number of older log files kept by :py:func:`get_handler`.
LOG_BACKUPS = 5

SHORT_FORMAT = '[{levelname[0]}]{bsptools_context} {module}.{funcName}(): {message}'
LONG_FORMAT = '[{levelname}]{bsptools_context} {module}.{funcName}(): {message}'


class LogMessage:
    """A message which is only formatted when a handler needs the text."""
    __slots__ = ['fmt', 'args', 'kwargs']

    def __init__(self, fmt: str, args: Tuple[object, ...], kwargs: Dict[str, object]) -> None:
        self.fmt = fmt
        self.args = args
        self.kwargs = kwargs

    def __str__(self) -> str:
        """Format the message, and mark out continuation lines."""
        # Without arguments, braces are left alone.
        if self.args or self.kwargs:
            self.fmt = self.fmt.format(*self.args, **self.kwargs)
            self.args = ()
            self.kwargs = {}
        if '\n' not in self.fmt:
            return self.fmt

        lines = self.fmt.split('\n')
        if lines[-1].isspace():
            del lines[-1]
        # Renders as:
        # first
        #  | second
        #  |___
        return '\n | '.join(lines) + '\n |___\n'


_SysExcInfoType = Union[
    Tuple[Type[BaseException], BaseException, Optional[TracebackType]],
    Tuple[None, None, None]
]
if TYPE_CHECKING:  # Only generic in stubs.
    _AdapterBase = logging.LoggerAdapter[logging.Logger]
else:
    _AdapterBase = logging.LoggerAdapter


class LoggerAdapter(_AdapterBase):
    """Wraps a logger to use str.format(), and add the current context."""
    logger: logging.Logger

    def __init__(self, logger: logging.Logger) -> None:
        super().__init__(logger, extra={})

    def log(
        self,
        level: int,
        msg: Any,
        *args: Any,
        exc_info: Union[None, bool, _SysExcInfoType, BaseException] = None,
        stack_info: bool = False,
        extra: Optional[Mapping[str, object]] = None,
        stacklevel: int = 0,
        **kwargs: Any,
    ) -> None:
        """Log a message, passing ``args`` and ``kwargs`` to :external:py:meth:`str.format()`."""
        if not self.isEnabledFor(level):
            return
        ctx = CTX_STACK.get()
        new_extra = {} if extra is None else dict(extra)
        new_extra['bsptools_context'] = f' ({", ".join(ctx)})' if ctx else ''

        # Skip over the adapter's own frames, so the caller is reported.
        if sys.version_info >= (3, 10):
            stacklevel += 2

        # noinspection PyProtectedMember
        self.logger._log(
            level,
            LogMessage(str(msg), args, kwargs),
            (),
            extra=new_extra,
            exc_info=exc_info,
            stack_info=stack_info,
            stacklevel=stacklevel,
        )

    def __getattr__(self, attr: str) -> Any:
        """Delegate unknown methods to the logger."""
        return getattr(self.logger, attr)


class Formatter(logging.Formatter):
    """Formats records which weren't produced by our adapter, like those from libraries."""
    def format(self, record: logging.LogRecord) -> str:
        """Ensure a default context is set in the record."""
        record.__dict__.setdefault('bsptools_context', '')
        return super().format(record)


def get_handler(filename: StringPath, backups: int = LOG_BACKUPS) -> logging.FileHandler:
    """Shift older logs up by one, then open a fresh file handler.

    ``maps.log`` is renamed to ``maps.1.log``, that to ``maps.2.log``, and so on. Logs past the
    number of backups are deleted.
    """
    path = Path(filename)
    ext = ''.join(path.suffixes)
    stem = path.name[:len(path.name) - len(ext)]

    def numbered(ind: int) -> Path:
        return path.with_name(f'{stem}.{ind}{ext}') if ind else path

    try:
        numbered(backups).unlink(missing_ok=True)
        for ind in reversed(range(backups)):
            if numbered(ind).exists():
                numbered(ind).rename(numbered(ind + 1))
    except PermissionError:
        # Another process is holding one of the logs, write to the first free name instead.
        ind = 1
        while numbered(ind).exists():
            ind += 1
        return logging.FileHandler(numbered(ind), mode='x', encoding='utf8')
    return logging.FileHandler(path, mode='w', encoding='utf8')


def init_logging(
    filename: Optional[StringPath] = None,
    main_logger: str = '',
    *,
    error: Optional[Callable[[BaseException], object]] = None,
) -> logging.Logger:
    """Set up the logging handlers, and return a logger to use.

    Info messages and below go to stdout, warnings and errors to stderr. Debug messages are only
    shown if the ``BSPTOOLS_DEBUG`` environment variable is ``1``. This also sets
    :py:func:`sys.excepthook`, so uncaught exceptions are logged.

    :param filename: If this is set, all logs will be written to this file as well, with older
        logs kept as numbered backups.
    :param main_logger: The name of the logger to return, inside the ``bsptools`` hierarchy.
    :param error: A function to call when uncaught exceptions are thrown.
    """
    logger = logging.getLogger()
    logger.setLevel(logging.DEBUG)

    if filename is not None:
        os.makedirs(os.path.dirname(os.path.abspath(filename)), exist_ok=True)
        file_handler = get_handler(filename)
        file_handler.setLevel(logging.DEBUG)
        # Written to disk, so put in the full level name.
        file_handler.setFormatter(Formatter(LONG_FORMAT, style='{'))
        logger.addHandler(file_handler)

    short_format = Formatter(SHORT_FORMAT, style='{')
    if sys.stdout is not None:
        stdout_handler = logging.StreamHandler(sys.stdout)
        stdout_handler.setLevel(
            logging.DEBUG if os.environ.get(DEBUG_ENV, '0') == '1' else logging.INFO
        )
        stdout_handler.setFormatter(short_format)
        if sys.stderr is not None:
            # Warnings are shown on stderr instead.
            stdout_handler.addFilter(lambda record: record.levelno < logging.WARNING)
        logger.addHandler(stdout_handler)

    if sys.stderr is not None:
        stderr_handler = logging.StreamHandler(sys.stderr)
        stderr_handler.setLevel(logging.WARNING)
        stderr_handler.setFormatter(short_format)
        logger.addHandler(stderr_handler)

    old_except_handler = sys.excepthook

    def except_handler(
        exc_type: Type[BaseException],
        exc_value: BaseException,
        exc_tb: Optional[TracebackType],
    ) -> None:
        """Log uncaught exceptions."""
        if isinstance(exc_value, SystemExit):
            return
        logger.error('Uncaught Exception:', exc_info=(exc_type, exc_value, exc_tb))
        if error is not None:
            error(exc_value)
        if old_except_handler is not sys.__excepthook__:
            old_except_handler(exc_type, exc_value, exc_tb)

    sys.excepthook = except_handler

    if main_logger:
        return get_logger(main_logger)
    return cast(logging.Logger, LoggerAdapter(logger))


def get_logger(name: str = '') -> logging.Logger:
    """Get the named logger, wrapped to use :external:py:meth:`str.format()`.

    Loggers are placed inside the ``bsptools`` namespace, unless they are already inside it.
    """
    if not name:
        name = 'bsptools'
    elif name != 'bsptools' and not name.startswith('bsptools.'):
        name = 'bsptools.' + name
    return cast(logging.Logger, LoggerAdapter(logging.getLogger(name)))


@contextlib.contextmanager
def context(name: str) -> Generator[str, None, None]:
    """Include this name in any messages logged inside the block.

    Contexts can be nested, each name is shown in order.
    """
    token = CTX_STACK.set(CTX_STACK.get() + (name,))
    try:
        yield name
    finally:
        CTX_STACK.reset(token)
