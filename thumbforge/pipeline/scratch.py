"""
Per-attempt scratch directories for downloaded reference assets.

Each generation attempt gets its own directory under SCRATCH_ROOT (or the
system temp dir), so one attempt's cleanup can never touch another's
in-flight files.  The directory is removed on every normal exit path;
a hard crash between write and cleanup can still leave it behind.
"""

import logging
import shutil
import tempfile
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Awaitable, Callable, Optional, TypeVar

from .. import config

logger = logging.getLogger(__name__)

T = TypeVar("T")

SCRATCH_PREFIX = "thumb_"


def scratch_root() -> Path:
    root = Path(config.SCRATCH_ROOT) if config.SCRATCH_ROOT else Path(tempfile.gettempdir())
    root.mkdir(parents=True, exist_ok=True)
    return root


def _remove(directory: Path, root: Path) -> None:
    # Only ever delete our own directories under the root
    resolved = directory.resolve()
    if resolved.parent != root.resolve() or not resolved.name.startswith(SCRATCH_PREFIX):
        logger.error(f"Refusing to remove {resolved}: not a scratch directory under {root}")
        return
    try:
        shutil.rmtree(resolved)
    except FileNotFoundError:
        pass
    except OSError as e:
        logger.warning(f"Scratch cleanup failed for {resolved}: {e}")


@asynccontextmanager
async def scratch_dir(attempt_id: str = "", root: Optional[Path] = None):
    """Yield a fresh directory; delete it and everything in it on exit."""
    base = root or scratch_root()
    directory = Path(tempfile.mkdtemp(prefix=f"{SCRATCH_PREFIX}{attempt_id[:8]}_", dir=base))
    logger.debug(f"Scratch dir acquired: {directory}")
    try:
        yield directory
    finally:
        _remove(directory, base)
        logger.debug(f"Scratch dir released: {directory}")


async def with_scratch_dir(
    fn: Callable[[Path], Awaitable[T]],
    attempt_id: str = "",
    root: Optional[Path] = None,
) -> T:
    async with scratch_dir(attempt_id, root) as directory:
        return await fn(directory)
