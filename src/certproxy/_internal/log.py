"""Logging utilities for certproxy.

`pre_arg_parse_setup` installs a quiet terminal handler and buffers every
record in memory until the command line is parsed. `post_arg_parse_setup`
then adds the rotating log file in ``logs_dir``, flushes the buffered
records to it and sets the terminal verbosity requested by the user.

The default terminal verbosity is WARNING, each ``-v`` lowers it by one
level. The log file always receives DEBUG records.

"""
import functools
import logging
import logging.handlers
import os
import sys
import traceback
from types import TracebackType
from typing import IO
from typing import Optional

from certproxy import configuration
from certproxy import errors
from certproxy import util
from certproxy._internal import constants

# Logging format
CLI_FMT = "%(message)s"
FILE_FMT = "%(asctime)s:%(levelname)s:%(threadName)s:%(name)s:%(message)s"


logger = logging.getLogger(__name__)


def pre_arg_parse_setup() -> None:
    """Setup logging before command line arguments are parsed.

    Terminal logging is set to `.constants.QUIET_LOGGING_LEVEL`, and
    records are buffered in memory for the log file configured later.

    """
    memory_handler = MemoryHandler()

    stream_handler = ColoredStreamHandler()
    stream_handler.setFormatter(logging.Formatter(CLI_FMT))
    stream_handler.setLevel(constants.QUIET_LOGGING_LEVEL)

    root_logger = logging.getLogger()
    root_logger.setLevel(logging.DEBUG)  # send all records to handlers
    root_logger.addHandler(memory_handler)
    root_logger.addHandler(stream_handler)

    util.atexit_register(logging.shutdown)
    sys.excepthook = functools.partial(
        except_hook, debug='--debug' in sys.argv, log_path=None)


def post_arg_parse_setup(config: configuration.NamespaceConfig) -> None:
    """Setup logging after command line arguments are parsed.

    :param certproxy.configuration.NamespaceConfig config: Configuration object

    """
    file_handler, file_path = setup_log_file_handler(config, constants.LOG_FILE, FILE_FMT)

    root_logger = logging.getLogger()
    memory_handler = stderr_handler = None
    for handler in root_logger.handlers:
        if isinstance(handler, ColoredStreamHandler):
            stderr_handler = handler
        elif isinstance(handler, MemoryHandler):
            memory_handler = handler
    msg = 'Previously configured logging handlers have been removed!'
    assert memory_handler is not None and stderr_handler is not None, msg

    root_logger.addHandler(file_handler)
    root_logger.removeHandler(memory_handler)
    memory_handler.setTarget(file_handler)
    memory_handler.flush(force=True)
    memory_handler.close()

    if config.quiet:
        level = constants.QUIET_LOGGING_LEVEL
    else:
        level = max(logging.DEBUG, constants.DEFAULT_LOGGING_LEVEL - config.verbose_count * 10)
    stderr_handler.setLevel(level)
    logger.debug('Root logging level set at %d', level)

    sys.excepthook = functools.partial(except_hook, debug=config.debug, log_path=file_path)


def setup_log_file_handler(config: configuration.NamespaceConfig, logfile: str,
                           fmt: str) -> tuple[logging.Handler, str]:
    """Setup file debug logging.

    :param certproxy.configuration.NamespaceConfig config: Configuration object
    :param str logfile: basename for the log file
    :param str fmt: logging format string

    :returns: file handler and absolute path to the log file
    :rtype: tuple

    """
    util.make_or_verify_dir(config.logs_dir, 0o700, config.strict_permissions)
    log_file_path = os.path.join(config.logs_dir, logfile)
    try:
        handler = logging.handlers.RotatingFileHandler(
            log_file_path, maxBytes=2 ** 20,
            backupCount=config.max_log_backups)
    except OSError as error:
        raise errors.Error(util.PERM_ERR_FMT.format(error))
    # rotate on each invocation so every run starts a fresh file
    if config.max_log_backups:
        handler.doRollover()
    handler.setLevel(logging.DEBUG)
    handler.setFormatter(logging.Formatter(fmt=fmt))
    return handler, log_file_path


class ColoredStreamHandler(logging.StreamHandler):
    """Sends colored logging output to a stream.

    If the specified stream is not a tty, the class works like the
    standard `logging.StreamHandler`.

    :ivar bool colored: True if output should be colored
    :ivar int red_level: The level at which to output in red

    """
    def __init__(self, stream: Optional[IO] = None) -> None:
        super().__init__(stream)
        self.colored = (sys.stderr.isatty() if stream is None else
                        stream.isatty())
        self.red_level = logging.WARNING

    def format(self, record: logging.LogRecord) -> str:
        out = super().format(record)
        if self.colored and record.levelno >= self.red_level:
            return ''.join((util.ANSI_SGR_RED, out, util.ANSI_SGR_RESET))
        return out


class MemoryHandler(logging.handlers.MemoryHandler):
    """Buffers logging messages in memory until the buffer is flushed.

    This differs from `logging.handlers.MemoryHandler` in that flushing
    only happens when flush(force=True) is called.

    """
    def __init__(self, target: Optional[logging.Handler] = None,
                 capacity: int = 10000) -> None:
        # capacity doesn't matter because shouldFlush() is overridden
        super().__init__(capacity, target=target)

    def close(self) -> None:
        """Close the memory handler, but don't set the target to None."""
        target = getattr(self, 'target')
        super().close()
        self.target = target

    def flush(self, force: bool = False) -> None:  # pylint: disable=arguments-differ
        """Flush the buffer if force=True, otherwise do nothing."""
        if force:
            super().flush()

    def shouldFlush(self, record: logging.LogRecord) -> bool:
        return False


def except_hook(exc_type: type[BaseException], exc_value: BaseException,
                trace: Optional[TracebackType], debug: bool,
                log_path: Optional[str]) -> None:
    """Logs fatal exceptions and exits with a nonzero status.

    If debug is True, the full traceback is shown to the user, otherwise
    it only goes to the log file.

    :param type exc_type: type of the raised exception
    :param BaseException exc_value: raised exception
    :param traceback trace: traceback of where the exception was raised
    :param bool debug: True if the traceback should be shown to the user
    :param str log_path: path to the log file, if it is set up yet

    """
    exc_info = (exc_type, exc_value, trace)
    if debug or not issubclass(exc_type, Exception):
        if exc_type is KeyboardInterrupt:
            logger.error('Exiting due to user request.')
            sys.exit(1)
        logger.error('Exiting abnormally:', exc_info=exc_info)
    else:
        logger.debug('Exiting abnormally:', exc_info=exc_info)
        if issubclass(exc_type, errors.Error):
            logger.error(str(exc_value))
        else:
            logger.error('An unexpected error occurred:')
            output = traceback.format_exception_only(exc_type, exc_value)
            logger.error(''.join(output).rstrip())
    if log_path:
        sys.exit(f"See the logfile {log_path} or re-run certproxy with -v for more details.")
    sys.exit(1)
