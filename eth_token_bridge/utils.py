"""Misc helpers."""

import logging
import os
from pathlib import Path

import coloredlogs
from eth_typing import HexAddress, HexStr
from web3 import Web3


def setup_console_logging(
    default_log_level="warning",
    simplified_logging=False,
    log_file: str | Path = None,
) -> logging.Logger:
    """Set up coloured log output.

    - Helper function to have nicer logging output in scripts.
    - Tune down some noisy dependency library logging
    - ``LOG_LEVEL`` environment variable overrides the default level

    :param log_file:
        Output both console and this log file.

    :return:
        Root logger
    """

    level = os.environ.get("LOG_LEVEL", default_log_level).upper()
    numeric_level = getattr(logging, level, None)
    assert numeric_level, f"No level: {level}"

    if simplified_logging:
        fmt = "%(message)s"
    else:
        fmt = "%(asctime)s %(name)-44s %(message)s"
    date_fmt = "%H:%M:%S"

    coloredlogs.install(level=numeric_level, fmt=fmt, datefmt=date_fmt)

    if log_file:
        log_file = Path(log_file)
        log_file.parent.mkdir(parents=True, exist_ok=True)

        # The file is always logged with INFO level and
        # env var controls only terminal output
        file_handler = logging.FileHandler(log_file, mode="w", encoding="utf-8")
        file_handler.setLevel(min(logging.INFO, numeric_level))
        file_handler.setFormatter(logging.Formatter(fmt, date_fmt))
        root = logging.getLogger()
        root.setLevel(min(logging.INFO, numeric_level))
        root.addHandler(file_handler)

    # Mute noise
    logging.getLogger("web3.providers.HTTPProvider").setLevel(logging.WARNING)
    logging.getLogger("web3.RequestManager").setLevel(logging.WARNING)
    logging.getLogger("urllib3.connectionpool").setLevel(logging.WARNING)
    return logging.getLogger()


def addr(address: str | HexAddress | HexStr) -> HexAddress:
    """Convert an address string to a checksummed HexAddress."""
    return HexAddress(Web3.to_checksum_address(address))


def is_zero_address(address: str | None) -> bool:
    """Unset slots are read back from contracts as the zero address."""
    return address is None or int(address, 16) == 0


def none_if_zero(address: str | None) -> HexAddress | None:
    """Map the zero address to ``None`` for optional roles."""
    if is_zero_address(address):
        return None
    return addr(address)


def same_address(a: str | None, b: str | None) -> bool:
    """Case insensitive address comparison."""
    if a is None or b is None:
        return a is b
    return a.lower() == b.lower()
