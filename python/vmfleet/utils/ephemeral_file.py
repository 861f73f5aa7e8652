"""
vmfleet/utils/ephemeral_file.py

Provides an async context manager for ephemeral files (by default in `/dev/shm`,
so private keys never touch persistent disk). It supports:

1) **Single-file mode**: Create one ephemeral file path, yield that path (as a string).
2) **Multi-file mode**: Reserve several file names inside one ephemeral directory,
   yield a dict of file name -> ephemeral path.

Everything is removed on exit, whether or not the body raised.
"""

import os
import shutil
import tempfile
from contextlib import asynccontextmanager
from typing import AsyncGenerator, Dict, List, Optional, Union

DEFAULT_PARENT_DIR = "/dev/shm"


def _parent_dir(requested: Optional[str]) -> Optional[str]:
    """
    Return the requested parent dir, or /dev/shm when it exists, else None so
    tempfile picks the platform default.
    """
    if requested is not None:
        return requested
    return DEFAULT_PARENT_DIR if os.path.isdir(DEFAULT_PARENT_DIR) else None


@asynccontextmanager
async def ephemeral_manager(
    *,
    single_file_name: Optional[str] = None,
    file_names: Optional[List[str]] = None,
    prefix: str = "vmfleet-",
    parent_dir: Optional[str] = None,
) -> AsyncGenerator[Union[str, Dict[str, str]], None]:
    """
    An async context manager for ephemeral files.

    Args:
        single_file_name: The ephemeral filename if you only want one file.
        file_names: Several filenames to reserve in the same ephemeral directory.
        prefix: Prefix for the ephemeral directory name.
        parent_dir: Where to create the ephemeral directory. Defaults to `/dev/shm`
            when available.

    Yields:
        str or Dict[str, str], depending on the mode.

    Raises:
        ValueError: If both single_file_name and file_names are provided, or neither is.
    """
    if (single_file_name is None) == (file_names is None):
        raise ValueError("Must provide exactly one of 'single_file_name' or 'file_names'.")

    ephemeral_dir = tempfile.mkdtemp(dir=_parent_dir(parent_dir), prefix=prefix)
    os.chmod(ephemeral_dir, 0o700)

    try:
        if single_file_name is not None:
            yield os.path.join(ephemeral_dir, single_file_name)
        else:
            assert file_names is not None
            yield {name: os.path.join(ephemeral_dir, name) for name in file_names}
    finally:
        shutil.rmtree(ephemeral_dir, ignore_errors=True)
