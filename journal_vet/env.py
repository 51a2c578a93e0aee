"""`.env` loading for the journal-vet service and CLI."""

from __future__ import annotations

import os
from pathlib import Path
from typing import Iterable, Union

from dotenv import find_dotenv, load_dotenv

PathLike = Union[str, Path]

ENV_FILE_VARIABLE = "JOURNAL_VET_ENV_FILE"

_loaded: set[Path] = set()


def _candidates(extra_paths: Iterable[PathLike] | None) -> list[Path]:
    paths = [Path(p).expanduser() for p in extra_paths or ()]
    configured = os.getenv(ENV_FILE_VARIABLE)
    if configured:
        paths.append(Path(configured).expanduser())
    found = find_dotenv(usecwd=True)
    if found:
        paths.append(Path(found))
    return paths


def load_env(*, override: bool = False, extra_paths: Iterable[PathLike] | None = None) -> bool:
    """Load settings from `.env` files.

    Files are read in order: ``extra_paths``, the file named by
    ``JOURNAL_VET_ENV_FILE``, then the nearest `.env` above the working
    directory. Each file is read at most once per process unless
    ``override`` is set; earlier files win because existing variables are
    kept.

    Returns:
        ``True`` if any file was loaded by this call.
    """

    loaded_any = False
    for path in _candidates(extra_paths):
        if not path.is_file():
            continue
        resolved = path.resolve()
        if resolved in _loaded and not override:
            continue
        _loaded.add(resolved)
        loaded_any = load_dotenv(resolved, override=override) or loaded_any
    return loaded_any


__all__ = ["load_env", "ENV_FILE_VARIABLE"]
