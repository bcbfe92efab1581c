import logging
from collections.abc import Iterable, Iterator
from typing import TypeVar

from iam.core import config

T = TypeVar("T")

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"

_handler: logging.Handler | None = None


def get_logger(name: str) -> logging.Logger:
    """Return a module logger sharing one stream handler under the `iam` root."""
    global _handler
    root = logging.getLogger("iam")
    if _handler is None:
        _handler = logging.StreamHandler()
        _handler.setFormatter(logging.Formatter(LOG_FORMAT))
        root.addHandler(_handler)
        root.setLevel(config.LOG_LEVEL)
    if name == "__main__" or not name.startswith("iam"):
        name = f"iam.{name}"
    return logging.getLogger(name)


def chunked(items: Iterable[T], size: int) -> Iterator[list[T]]:
    """Split items into lists of at most `size` elements."""
    if size < 1:
        raise ValueError("chunk size must be positive")
    batch: list[T] = []
    for item in items:
        batch.append(item)
        if len(batch) == size:
            yield batch
            batch = []
    if batch:
        yield batch
