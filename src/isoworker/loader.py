"""Module loader capability: resolve a target to a locator and execute it.

The worker depends only on the ``ModuleLoader`` protocol: ``execute()``
returns when the target ran to completion and raises on any failure
(missing file, syntax error, exception at top level).

``ScriptLoader`` runs a Python source file as ``__main__``, the way
``python path/to/file.py`` would. A file without top-level ``await`` runs
on a worker thread with no running event loop, so it can start its own with
``asyncio.run()``. A file with top-level ``await`` runs on the caller's loop
and may leave tasks running there after it returns.
"""

from __future__ import annotations

import ast
import asyncio
from collections.abc import Iterator
import contextlib
import inspect
from pathlib import Path
import sys
import types
from typing import Protocol
from urllib.parse import urlparse
from urllib.request import url2pathname


class ModuleLoader(Protocol):
    """Loads and runs a unit of code identified by a locator."""

    async def execute(self, locator: str) -> None:
        """Run the code at *locator*, raising on any failure."""
        ...


def resolve_locator(target_path: str, cwd: str | None = None) -> str:
    """Resolve a target path to a canonical ``file://`` locator.

    Relative paths are resolved against *cwd* (or the current directory).
    Locators that already use the ``file`` scheme are normalized.

    Args:
        target_path: Filesystem path or ``file://`` URL.
        cwd: Directory used for relative paths.

    Returns:
        An absolute ``file://`` URL.
    """
    if target_path.startswith("file:"):
        path = locator_to_path(target_path)
    else:
        path = Path(target_path).expanduser()
        if not path.is_absolute():
            path = Path(cwd or Path.cwd()) / path
    return path.resolve().as_uri()


def locator_to_path(locator: str) -> Path:
    """Convert a ``file://`` locator back to a filesystem path.

    Raises:
        ValueError: If the locator does not use the ``file`` scheme.
    """
    parsed = urlparse(locator)
    if parsed.scheme != "file":
        msg = f"Unsupported locator scheme: {locator!r}"
        raise ValueError(msg)
    return Path(url2pathname(parsed.path))


@contextlib.contextmanager
def _as_main(module: types.ModuleType, directory: Path) -> Iterator[None]:
    """Temporarily install *module* as ``__main__`` with its directory on ``sys.path``."""
    saved_main = sys.modules.get("__main__")
    sys.modules["__main__"] = module
    entry = str(directory)
    sys.path.insert(0, entry)
    try:
        yield
    finally:
        with contextlib.suppress(ValueError):
            sys.path.remove(entry)
        if saved_main is not None:
            sys.modules["__main__"] = saved_main
        else:
            sys.modules.pop("__main__", None)


class ScriptLoader:
    """Executes a Python source file as ``__main__``, with top-level ``await``."""

    async def execute(self, locator: str) -> None:
        path = locator_to_path(locator)
        source = path.read_bytes()
        code = compile(
            source,
            str(path),
            "exec",
            flags=ast.PyCF_ALLOW_TOP_LEVEL_AWAIT,
            dont_inherit=True,
        )

        module = types.ModuleType("__main__")
        module.__file__ = str(path)
        module.__builtins__ = __builtins__  # type: ignore[attr-defined]

        with _as_main(module, path.parent):
            if code.co_flags & inspect.CO_COROUTINE:
                await types.FunctionType(code, module.__dict__)()
            else:
                # No running loop in the worker thread, so the file may call
                # asyncio.run() itself.
                await asyncio.to_thread(exec, code, module.__dict__)
