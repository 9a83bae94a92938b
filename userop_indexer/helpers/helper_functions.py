"""
This file contains some auxiliary functions
"""
from __future__ import annotations
import sys
import logging
import random

from hexbytes import HexBytes
from web3 import Web3


def get_logger(filename: str | None = None) -> logging.Logger:
    """
    get_logger() returns a logger object that can write to a file, terminal or only file if needed.
    """
    logger = logging.getLogger()
    logger.setLevel(logging.INFO)

    # Clear any existing handlers to avoid duplicate logs
    if logger.hasHandlers():
        logger.handlers.clear()

    formatter = logging.Formatter("%(levelname)s - %(message)s")

    # Handler for stdout (INFO and lower)
    stdout_handler = logging.StreamHandler(sys.stdout)
    stdout_handler.setLevel(logging.INFO)
    stdout_handler.setFormatter(formatter)

    # ERROR and above logs will not be logged to stdout
    stdout_handler.addFilter(lambda record: record.levelno < logging.ERROR)

    # Handler for stderr (ERROR and higher)
    stderr_handler = logging.StreamHandler(sys.stderr)
    stderr_handler.setLevel(logging.ERROR)
    stderr_handler.setFormatter(formatter)

    logger.addHandler(stdout_handler)
    logger.addHandler(stderr_handler)

    if filename:
        file_handler = logging.FileHandler(filename + ".log", mode="a")
        file_handler.setLevel(logging.INFO)
        file_handler.setFormatter(formatter)
        logger.addHandler(file_handler)

    return logger


def get_web3_instance(node_url: str | None) -> Web3:
    """
    returns a Web3 instance connected to the given node.
    """
    if not node_url:
        raise ValueError("Node URL not found in environment variables.")
    return Web3(Web3.HTTPProvider(node_url))


def to_hex(value: str | bytes) -> str:
    """Convert HexBytes, bytes or a hex string to a lowercase 0x-prefixed string."""
    if isinstance(value, str):
        value = value.lower()
        return value if value.startswith("0x") else "0x" + value
    return HexBytes(value).to_0x_hex()


def backoff_delay(
    attempt: int, base_delay: float, max_delay: float, jitter: float = 0.0
) -> float:
    """
    Exponential backoff for the given (1-based) attempt, capped at max_delay.
    Jitter is added before capping, so the cap is never exceeded.
    """
    if attempt <= 0:
        return 0.0
    # exponent is capped so long outages cannot overflow the float
    delay = base_delay * (2 ** min(attempt - 1, 32))
    if jitter > 0:
        delay += random.uniform(0, jitter)
    return min(delay, max_delay)
