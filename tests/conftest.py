"""Shared pytest fixtures."""

import logging
import os
import socket

import pytest

from relaycat.logging_config import reset_error_stats


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    """Isolate tests from RELAYCAT_* settings in the outer environment."""
    for name in list(os.environ):
        if name.startswith("RELAYCAT_"):
            monkeypatch.delenv(name)


@pytest.fixture(autouse=True)
def clean_error_stats():
    reset_error_stats()
    yield
    reset_error_stats()


def _free_port(kind: int) -> int:
    with socket.socket(socket.AF_INET, kind) as sock:
        sock.bind(("127.0.0.1", 0))
        return sock.getsockname()[1]


@pytest.fixture
def tcp_port() -> int:
    """A currently unused TCP port on 127.0.0.1."""
    return _free_port(socket.SOCK_STREAM)


@pytest.fixture
def udp_port() -> int:
    """A currently unused UDP port on 127.0.0.1."""
    return _free_port(socket.SOCK_DGRAM)


@pytest.fixture(autouse=True)
def restore_package_logger():
    """Undo handlers installed by setup_logging() during a test."""
    logger = logging.getLogger("relaycat")
    saved = (list(logger.handlers), logger.level, logger.propagate)
    yield
    for handler in list(logger.handlers):
        if handler not in saved[0]:
            logger.removeHandler(handler)
            handler.close()
    logger.setLevel(saved[1])
    logger.propagate = saved[2]
