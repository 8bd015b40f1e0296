"""
Persistence of finished images.

The generation worker depends only on the ``OutputSink`` protocol: write
bytes under a unique name and get back a reference the kiosk can open.
``FilesystemOutputSink`` writes into a local directory that the
application serves as static files; another sink (object storage, for
instance) can be swapped in at the lifespan without touching the worker.
"""

import asyncio
import datetime
import os
import pathlib
import tempfile
import typing

import structlog

import photobooth.exceptions

logger = structlog.get_logger()


class OutputSink(typing.Protocol):
    async def write(self, data: bytes, name: str, content_type: str) -> str: ...

    async def delete_files_older_than(self, cutoff: datetime.datetime) -> list[str]: ...

    def check_health(self) -> bool: ...


class FilesystemOutputSink:
    """
    Writes outputs into ``directory`` and returns ``{public_url_prefix}/{name}``.

    Files are written to a temporary name and renamed into place, so the
    static file server never exposes a partially written image.
    """

    def __init__(self, directory: pathlib.Path | str, public_url_prefix: str = "/outputs") -> None:
        self._directory = pathlib.Path(directory)
        self._public_url_prefix = public_url_prefix.rstrip("/")

    @property
    def directory(self) -> pathlib.Path:
        return self._directory

    def ensure_directory(self) -> None:
        self._directory.mkdir(parents=True, exist_ok=True)

    async def write(self, data: bytes, name: str, content_type: str) -> str:
        """
        Persist ``data`` as ``name`` and return its public reference.

        Raises:
            OutputPersistenceError: When the name is not a plain file name
                or the write fails.
        """
        if not name or pathlib.PurePath(name).name != name or name.startswith("."):
            raise photobooth.exceptions.OutputPersistenceError(
                detail="The output name is not a plain file name.",
            )

        try:
            await asyncio.to_thread(self._write_atomically, data, name)
        except OSError as write_error:
            logger.error(
                "output_write_failed",
                output_name=name,
                directory=str(self._directory),
                error=str(write_error),
            )
            raise photobooth.exceptions.OutputPersistenceError() from write_error

        logger.info("output_written", output_name=name, content_type=content_type, output_bytes=len(data))
        return f"{self._public_url_prefix}/{name}"

    def _write_atomically(self, data: bytes, name: str) -> None:
        self.ensure_directory()
        file_descriptor, temporary_path = tempfile.mkstemp(dir=self._directory, prefix=".partial-")
        try:
            with os.fdopen(file_descriptor, "wb") as temporary_file:
                temporary_file.write(data)
            os.replace(temporary_path, self._directory / name)
        except BaseException:
            pathlib.Path(temporary_path).unlink(missing_ok=True)
            raise

    async def delete_files_older_than(self, cutoff: datetime.datetime) -> list[str]:
        """
        Delete output files last modified before ``cutoff``.

        Returns the names that were deleted.  Files that vanish or cannot
        be removed mid-sweep are skipped and logged.
        """
        return await asyncio.to_thread(self._delete_files_older_than, cutoff.timestamp())

    def _delete_files_older_than(self, cutoff_timestamp: float) -> list[str]:
        if not self._directory.is_dir():
            return []

        deleted_names: list[str] = []
        for output_path in self._directory.iterdir():
            try:
                if not output_path.is_file() or output_path.stat().st_mtime >= cutoff_timestamp:
                    continue
                output_path.unlink()
            except OSError as deletion_error:
                logger.warning("output_deletion_failed", output_name=output_path.name, error=str(deletion_error))
                continue
            deleted_names.append(output_path.name)
        return deleted_names

    def check_health(self) -> bool:
        """Report whether the output directory exists and is writable."""
        return self._directory.is_dir() and os.access(self._directory, os.W_OK)
