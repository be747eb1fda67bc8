"""
Durable store primitives over a directory on disk.

Paths handed to the store are relative to its root (the workspace data
directory). Small documents are overwritten atomically by writing a sibling
``.tmp`` file and renaming it over the target; on POSIX the rename is atomic
when both live on the same filesystem.

Every primitive runs under the retry policy, so transient OS errors
(``EBUSY``, ``EAGAIN``, ``ETIMEDOUT`` by default) are retried locally. Errors
that survive are raised as :class:`~taskweave.exceptions.FileSystemError`.

Concurrency Model:
    The store is stateless. Callers that need a read-modify-write sequence
    to be ordered (the repositories) hold their own ``asyncio.Lock``. There
    is no cross-process locking: one writer process per workspace is
    assumed.

Example:
    >>> store = FileStore(".taskweave")
    >>> await store.write("state.json", "{}")
    >>> await store.read("state.json")
    '{}'
"""

from __future__ import annotations

import asyncio
import errno
import shutil
from collections.abc import Awaitable, Callable
from pathlib import Path
from typing import Protocol, TypeVar

import aiofiles
import aiofiles.os
import structlog

from taskweave.exceptions import FileSystemError
from taskweave.resilience.retry import RetryConfig, with_retry

log = structlog.get_logger(__name__)

T = TypeVar("T")


class DurableStore(Protocol):
    """Named-path storage used by the repositories."""

    async def exists(self, path: str) -> bool: ...

    async def read(self, path: str) -> str: ...

    async def write(self, path: str, content: str) -> None: ...

    async def append(self, path: str, content: str) -> None: ...

    async def remove(self, path: str) -> None: ...

    async def list(self, path: str) -> list[str]: ...

    async def copy(self, src: str, dest: str) -> None: ...

    async def ensure_dir(self, path: str) -> None: ...


class FileStore:
    """:class:`DurableStore` backed by the local filesystem.

    Attributes:
        root: Directory all store paths are resolved against.
    """

    def __init__(self, root: str | Path, retry_config: RetryConfig | None = None) -> None:
        self.root = Path(root)
        self.retry_config = retry_config or RetryConfig()

    def resolve(self, path: str) -> Path:
        """Absolute location of a store path.

        Raises:
            FileSystemError: If the path escapes the store root.
        """
        resolved = (self.root / path).resolve()
        root = self.root.resolve()
        if resolved != root and root not in resolved.parents:
            raise FileSystemError("Path escapes the store root", path=path)
        return resolved

    async def exists(self, path: str) -> bool:
        target = self.resolve(path)
        return await self._run("exists", path, lambda: aiofiles.os.path.exists(target))

    async def read(self, path: str) -> str:
        target = self.resolve(path)

        async def _read() -> str:
            async with aiofiles.open(target, encoding="utf-8") as f:
                return await f.read()

        return await self._run("read", path, _read)

    async def write(self, path: str, content: str) -> None:
        target = self.resolve(path)

        async def _write() -> None:
            target.parent.mkdir(parents=True, exist_ok=True)
            tmp_path = target.with_name(f"{target.name}.tmp")
            async with aiofiles.open(tmp_path, "w", encoding="utf-8") as f:
                await f.write(content)
            # Atomic rename - safe on POSIX when same filesystem
            tmp_path.replace(target)

        await self._run("write", path, _write)

    async def append(self, path: str, content: str) -> None:
        target = self.resolve(path)

        async def _append() -> None:
            target.parent.mkdir(parents=True, exist_ok=True)
            async with aiofiles.open(target, "a", encoding="utf-8") as f:
                await f.write(content)

        await self._run("append", path, _append)

    async def remove(self, path: str) -> None:
        """Remove a file or directory tree. Missing paths are ignored."""
        target = self.resolve(path)

        async def _remove() -> None:
            if target.is_dir():
                await asyncio.to_thread(shutil.rmtree, target)
            else:
                target.unlink(missing_ok=True)

        await self._run("remove", path, _remove)

    async def list(self, path: str) -> list[str]:
        """Names of the entries in a directory, sorted. Missing dirs list empty."""
        target = self.resolve(path)

        async def _list() -> list[str]:
            if not target.is_dir():
                return []
            return sorted(await aiofiles.os.listdir(target))

        return await self._run("list", path, _list)

    async def copy(self, src: str, dest: str) -> None:
        """Copy a file or directory tree to ``dest``."""
        source = self.resolve(src)
        target = self.resolve(dest)

        async def _copy() -> None:
            target.parent.mkdir(parents=True, exist_ok=True)
            if source.is_dir():
                await asyncio.to_thread(shutil.copytree, source, target, dirs_exist_ok=True)
            else:
                await asyncio.to_thread(shutil.copy2, source, target)

        await self._run("copy", src, _copy)

    async def ensure_dir(self, path: str) -> None:
        target = self.resolve(path)

        async def _ensure() -> None:
            target.mkdir(parents=True, exist_ok=True)

        await self._run("ensure_dir", path, _ensure)

    async def _run(self, op_name: str, path: str, operation: Callable[[], Awaitable[T]]) -> T:
        try:
            return await with_retry(operation, self.retry_config, name=f"store.{op_name}")
        except OSError as e:
            os_code = errno.errorcode.get(e.errno) if e.errno is not None else None
            log.error("store_operation_failed", operation=op_name, path=path, os_code=os_code)
            raise FileSystemError(f"Store {op_name} failed: {e.strerror or e}", path=path, os_code=os_code) from e
