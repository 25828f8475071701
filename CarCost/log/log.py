import collections
import logging
import sys
import threading

from PySide6.QtCore import QtMsgType, qInstallMessageHandler

from ..core.signals import signals

LOG_LEVEL = logging.DEBUG
LOG_FORMAT = '[%(asctime)s] <%(module)s> %(levelname)s:  %(message)s'
LOG_DATEFMT = '%Y-%m-%d %H:%M:%S'

# Records kept by the tank before the oldest are dropped
TANK_SIZE = 50_000

LEVELS = (
    logging.DEBUG,
    logging.INFO,
    logging.WARNING,
    logging.ERROR,
    logging.CRITICAL,
)


def set_logging_level(level):
    """
    Sets the logging level of the root logger and of its handlers.

    Args:
        level (int): The logging level to set. Should be one of the standard logging levels.
    """
    if not isinstance(level, int) or isinstance(level, bool):
        raise ValueError('Logging level must be an integer.')
    if level not in LEVELS:
        raise ValueError('Invalid logging level. Use one of the standard logging levels, e.g., logging.DEBUG.')

    root_logger = logging.getLogger()
    root_logger.setLevel(level)
    for handler in root_logger.handlers:
        handler.setLevel(level)


def qt_message_handler(mode, context, message):
    """
    Routes Qt's own messages (thread and signal warnings included) into Python logging.
    """
    logger = logging.getLogger('Qt')
    message = message.strip()

    if mode == QtMsgType.QtDebugMsg:
        logger.debug(message)
    elif mode == QtMsgType.QtInfoMsg:
        logger.info(message)
    elif mode == QtMsgType.QtWarningMsg:
        logger.warning(message)
    elif mode == QtMsgType.QtCriticalMsg:
        logger.error(message)
    elif mode == QtMsgType.QtFatalMsg:
        logger.critical(message)
        sys.exit(1)


def setup_logging(enable_stream_handler=True, enable_qt_handler=True, log_level=LOG_LEVEL):
    """
    Configures the root logger and installs the Qt message handler.

    Args:
        enable_stream_handler (bool): Also print records to stdout.
        enable_qt_handler (bool): Route Qt's own messages through Python logging.
        log_level (int): Level applied to the root logger and every handler.
    """
    root_logger = logging.getLogger()
    root_logger.setLevel(log_level)

    # Clear all handlers to avoid formatting conflicts
    root_logger.handlers.clear()

    formatter = logging.Formatter(fmt=LOG_FORMAT, datefmt=LOG_DATEFMT)

    if enable_stream_handler:
        stream_handler = logging.StreamHandler(sys.stdout)
        stream_handler.setFormatter(formatter)
        stream_handler.setLevel(log_level)
        root_logger.addHandler(stream_handler)

    tank_handler = TankHandler()
    tank_handler.setFormatter(formatter)
    tank_handler.setLevel(log_level)
    root_logger.addHandler(tank_handler)

    if enable_qt_handler:
        qInstallMessageHandler(qt_message_handler)


def get_tank():
    """
    Returns the TankHandler installed on the root logger, or None.
    """
    return next(
        (h for h in logging.getLogger().handlers if isinstance(h, TankHandler)),
        None
    )


class TankHandler(logging.Handler):
    """
    Stores formatted log messages in a bounded in-memory tank.

    Sync runs log every push, pull and failure. The sync engine marks the tank
    when a run starts and attaches the lines logged since to the run's result,
    so callers can show what a sync did without reading stdout.

    Attributes:
        tank (collections.deque[tuple[int, str]]): (level, formatted message) pairs.
    """

    def __init__(self, maxlen=TANK_SIZE):
        super().__init__()
        self.tank = collections.deque(maxlen=maxlen)
        self._count = 0
        self._count_lock = threading.Lock()

    def emit(self, record):
        try:
            message = self.format(record)
            with self._count_lock:
                self.tank.append((record.levelno, message))
                self._count += 1
            if record.levelno >= logging.ERROR:
                signals.showLogs.emit()
        except (Exception, KeyboardInterrupt):
            self.handleError(record)

    def mark(self):
        """
        Returns a position in the stream of records, for use with :meth:`since`.
        """
        with self._count_lock:
            return self._count

    def since(self, mark, level=logging.NOTSET):
        """
        Returns the messages stored after ``mark`` that are still in the tank.

        Args:
            mark (int): A value returned by :meth:`mark`.
            level (int, optional): The minimum logging level.

        Returns:
            list[str]: The formatted messages, oldest first.
        """
        with self._count_lock:
            new = min(self._count - mark, len(self.tank))
            records = list(self.tank)[len(self.tank) - new:] if new > 0 else []
        return [msg for lvl, msg in records if lvl >= level]

    def get_logs(self, level=logging.NOTSET):
        """
        Returns the stored log messages filtered by a minimum logging level.

        Args:
            level (int, optional): The minimum logging level. Defaults to logging.NOTSET.

        Returns:
            list[str]: Formatted log messages with a level >= the specified level.
        """
        with self._count_lock:
            records = list(self.tank)
        return [msg for lvl, msg in records if lvl >= level]

    def clear_logs(self):
        """
        Clears all the stored log messages from the tank.
        """
        with self._count_lock:
            self.tank.clear()
