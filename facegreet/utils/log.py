"""Logging setup shared by the package and the CLI."""

import logging
import os
import sys

from contextlib import contextmanager

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

logging.basicConfig(level=logging.INFO, format=LOG_FORMAT)

# Loggers whose level the CLI controls.
_ROOT_LOGGERS = ("facegreet", "face_greeter")


def get_logger(name):
    return logging.getLogger(name)


def set_level(level) -> None:
    """Set the level of the package and CLI loggers ("DEBUG", "INFO", logging.WARNING, ...)."""
    if isinstance(level, str):
        name = level.upper()
        level = logging.getLevelName(name)
        if not isinstance(level, int):
            raise ValueError(f"unknown log level {name!r}")
    for name in _ROOT_LOGGERS:
        logging.getLogger(name).setLevel(level)


@contextmanager
def silence_native_output():
    """Point FD 1 and FD 2 at /dev/null for the duration of the block.

    onnxruntime and insightface print their banners from native code, straight
    to the process file descriptors, so redirecting sys.stdout is not enough.
    Python-level buffers are flushed first so nothing already printed is lost.
    """
    for stream in (sys.stdout, sys.stderr):
        if stream is not None:
            stream.flush()
    saved = [os.dup(fd) for fd in (1, 2)]
    devnull = os.open(os.devnull, os.O_WRONLY)
    try:
        for fd in (1, 2):
            os.dup2(devnull, fd)
        yield
    finally:
        for fd, old in zip((1, 2), saved):
            os.dup2(old, fd)
            os.close(old)
        os.close(devnull)
