"""Zip archive filesystem.

APKs are zip containers. Patch output only touches a handful of entries, so
instead of re-zipping a whole decoded tree this module opens the original APK
as a small mutable filesystem:

- The entry table is read from the zip's central directory on open.
- Mutations (deletes, imports, writes, compression changes) only update the
  table; untouched entries keep pointing at the original file.
- ``close()`` streams the table into a temporary sibling file and atomically
  replaces the original. An archive with no pending changes is left as is.
- Untouched entries are copied raw: compressed bytes, CRC, sizes, method and
  extra fields are the original ones. Only entries that were re-stored,
  imported or written are encoded again.

Use it as a context manager. A block that raises discards pending changes, so
the file on disk is exactly what it was before the block.
"""

from dataclasses import dataclass
import functools
import logging
import os
import pathlib
import shutil
import struct
import tempfile
import time
from typing import BinaryIO, Iterable
import zipfile
import zlib

from apk_repack.errors import RepackError


class ArchiveError(RepackError):
    """Raised when an archive cannot be opened or an archive operation fails."""


@dataclass(slots=True)
class _Entry:
    """One row of the archive entry table.

    Exactly one content source is set for file entries; directory entries
    have none.

    :ivar info: Zip metadata the entry will be written with.
    :ivar origin: Entry name in the source zip (unmodified content).
    :ivar file: Local file providing the content (imported entries).
    :ivar data: In-memory content (written entries).
    :ivar raw: Copy the original compressed bytes unchanged.
    """

    info: zipfile.ZipInfo
    origin: str | None = None
    file: pathlib.Path | None = None
    data: bytes | None = None
    raw: bool = False


_COPY_CHUNK: int = 1024 * 1024
_FILE_ATTR: int = 0o100644 << 16
_DIR_ATTR: int = (0o040755 << 16) | 0x10

_LOCAL_SIG: int = 0x04034B50
_CENTRAL_SIG: int = 0x02014B50
_END_SIG: int = 0x06054B50
_LOCAL_FMT: str = "<IHHHHHIIIHH"
_CENTRAL_FMT: str = "<IHHHHHHIIIHHHHHII"
_END_FMT: str = "<IHHHHIIH"
_LOCAL_SIZE: int = struct.calcsize(_LOCAL_FMT)
_LOCAL_CRC_OFFSET: int = 14
_FLAG_DATA_DESCRIPTOR: int = 0x08
_FLAG_UTF8: int = 0x800
_ZIP64_EXTRA: int = 0x0001
_MAX_32: int = 0xFFFFFFFF
_MAX_ENTRIES: int = 0xFFFF
_VERSION: int = 20


def _strip_zip64(extra: bytes) -> bytes:
    """Drop ZIP64 records from an extra field; other bytes are kept as they are."""

    kept: bytearray = bytearray()
    i: int = 0
    while i + 4 <= len(extra):
        tp, ln = struct.unpack_from("<HH", extra, i)
        if i + 4 + ln > len(extra):
            break
        if tp != _ZIP64_EXTRA:
            kept += extra[i : i + 4 + ln]
        i += 4 + ln
    kept += extra[i:]
    return bytes(kept)


def _dos_date_time(date_time: tuple[int, ...]) -> tuple[int, int]:
    year, month, day, hour, minute, second = date_time[0:6]
    if year < 1980:
        year, month, day, hour, minute, second = 1980, 1, 1, 0, 0, 0
    dos_date: int = (year - 1980) << 9 | month << 5 | day
    dos_time: int = hour << 11 | minute << 5 | second // 2
    return dos_date, dos_time


def _encode_name(name: str) -> tuple[bytes, int]:
    try:
        return name.encode("ascii"), 0
    except UnicodeEncodeError:
        return name.encode("utf-8"), _FLAG_UTF8


def _clone_info(info: zipfile.ZipInfo, *, compress_type: int | None = None) -> zipfile.ZipInfo:
    """Copy the metadata of an entry into a fresh :class:`zipfile.ZipInfo`.

    Offsets, sizes and CRCs are left for the writer to fill in.

    :param info: Source entry metadata.
    :param compress_type: Optional compression override.
    :returns: New metadata object.
    """

    clone: zipfile.ZipInfo = zipfile.ZipInfo(info.filename, date_time=info.date_time)
    clone.compress_type = info.compress_type if compress_type is None else compress_type
    clone.comment = info.comment
    clone.extra = _strip_zip64(info.extra)
    clone.create_system = info.create_system
    clone.external_attr = info.external_attr
    clone.internal_attr = info.internal_attr
    clone.file_size = info.file_size
    return clone


class _ZipWriter:
    """Writes a zip file entry by entry.

    :mod:`zipfile` recompresses everything it copies, so entries that must
    keep their exact compressed bytes go through :meth:`copy_raw` instead.
    ZIP64 output is not supported; APKs stay far below its limits.
    """

    def __init__(self, fp: BinaryIO, *, comment: bytes = b"") -> None:
        self._fp: BinaryIO = fp
        self._comment: bytes = comment
        self._central: list[bytes] = []

    def copy_raw(self, src: BinaryIO, info: zipfile.ZipInfo) -> None:
        """Copy one entry of ``src`` without decompressing it.

        :param src: Source zip file, opened for binary reading.
        :param info: The entry's metadata as read from the source central directory.
        :raises ArchiveError: If the local header is damaged or the data is truncated.
        """

        src.seek(info.header_offset)
        header: bytes = src.read(_LOCAL_SIZE)
        if len(header) != _LOCAL_SIZE or struct.unpack_from("<I", header)[0] != _LOCAL_SIG:
            raise ArchiveError(f"Bad local header for entry {info.filename!r}")
        name_len, extra_len = struct.unpack_from("<HH", header, 26)
        name: bytes = src.read(name_len)
        local_extra: bytes = _strip_zip64(src.read(extra_len))

        offset: int = self._begin(
            name=name,
            flags=info.flag_bits & ~_FLAG_DATA_DESCRIPTOR,
            info=info,
            extra=local_extra,
            extract_version=info.extract_version,
            crc=info.CRC,
            compress_size=info.compress_size,
            file_size=info.file_size,
        )

        remaining: int = info.compress_size
        while remaining > 0:
            chunk: bytes = src.read(min(_COPY_CHUNK, remaining))
            if chunk == b"":
                raise ArchiveError(f"Truncated data for entry {info.filename!r}")
            self._fp.write(chunk)
            remaining -= len(chunk)

        self._record(
            name=name,
            flags=info.flag_bits & ~_FLAG_DATA_DESCRIPTOR,
            info=info,
            extra=_strip_zip64(info.extra),
            create_version=info.create_version,
            extract_version=info.extract_version,
            crc=info.CRC,
            compress_size=info.compress_size,
            file_size=info.file_size,
            offset=offset,
        )

    def write(self, info: zipfile.ZipInfo, chunks: Iterable[bytes]) -> None:
        """Encode one entry from its uncompressed content.

        :param info: Entry metadata; ``compress_type`` picks stored or deflated.
        :param chunks: Uncompressed content.
        :raises ArchiveError: For compression methods other than stored and deflated.
        """

        compressor = None
        if info.compress_type == zipfile.ZIP_DEFLATED:
            compressor = zlib.compressobj(zlib.Z_DEFAULT_COMPRESSION, zlib.DEFLATED, -15)
        elif info.compress_type != zipfile.ZIP_STORED:
            raise ArchiveError(f"Unsupported compression method {info.compress_type} for {info.filename!r}")

        name, flags = _encode_name(info.filename)
        offset: int = self._begin(
            name=name,
            flags=flags,
            info=info,
            extra=info.extra,
            extract_version=_VERSION,
            crc=0,
            compress_size=0,
            file_size=0,
        )

        crc: int = 0
        file_size: int = 0
        compress_size: int = 0
        for chunk in chunks:
            crc = zlib.crc32(chunk, crc)
            file_size += len(chunk)
            out: bytes = compressor.compress(chunk) if compressor is not None else chunk
            self._fp.write(out)
            compress_size += len(out)
        if compressor is not None:
            tail: bytes = compressor.flush()
            self._fp.write(tail)
            compress_size += len(tail)
        if file_size > _MAX_32 or compress_size > _MAX_32:
            raise ArchiveError(f"Entry {info.filename!r} is too large for a non-ZIP64 archive")

        end: int = self._fp.tell()
        self._fp.seek(offset + _LOCAL_CRC_OFFSET)
        self._fp.write(struct.pack("<III", crc, compress_size, file_size))
        self._fp.seek(end)

        self._record(
            name=name,
            flags=flags,
            info=info,
            extra=info.extra,
            create_version=_VERSION,
            extract_version=_VERSION,
            crc=crc,
            compress_size=compress_size,
            file_size=file_size,
            offset=offset,
        )

    def finish(self) -> None:
        """Write the central directory and the end record."""

        if len(self._central) > _MAX_ENTRIES:
            raise ArchiveError(f"Too many entries for a non-ZIP64 archive: {len(self._central)}")
        start: int = self._fp.tell()
        for record in self._central:
            self._fp.write(record)
        size: int = self._fp.tell() - start
        if start > _MAX_32 or size > _MAX_32:
            raise ArchiveError("Archive is too large for a non-ZIP64 archive")
        count: int = len(self._central)
        self._fp.write(struct.pack(_END_FMT, _END_SIG, 0, 0, count, count, size, start, len(self._comment)))
        self._fp.write(self._comment)

    def _begin(
        self,
        *,
        name: bytes,
        flags: int,
        info: zipfile.ZipInfo,
        extra: bytes,
        extract_version: int,
        crc: int,
        compress_size: int,
        file_size: int,
    ) -> int:
        offset: int = self._fp.tell()
        if offset > _MAX_32:
            raise ArchiveError("Archive is too large for a non-ZIP64 archive")
        dos_date, dos_time = _dos_date_time(info.date_time)
        self._fp.write(
            struct.pack(
                _LOCAL_FMT,
                _LOCAL_SIG,
                extract_version,
                flags,
                info.compress_type,
                dos_time,
                dos_date,
                crc,
                compress_size,
                file_size,
                len(name),
                len(extra),
            )
        )
        self._fp.write(name)
        self._fp.write(extra)
        return offset

    def _record(
        self,
        *,
        name: bytes,
        flags: int,
        info: zipfile.ZipInfo,
        extra: bytes,
        create_version: int,
        extract_version: int,
        crc: int,
        compress_size: int,
        file_size: int,
        offset: int,
    ) -> None:
        dos_date, dos_time = _dos_date_time(info.date_time)
        comment: bytes = info.comment
        self._central.append(
            struct.pack(
                _CENTRAL_FMT,
                _CENTRAL_SIG,
                info.create_system << 8 | create_version,
                extract_version,
                flags,
                info.compress_type,
                dos_time,
                dos_date,
                crc,
                compress_size,
                file_size,
                len(name),
                len(extra),
                len(comment),
                0,
                info.internal_attr,
                info.external_attr,
                offset,
            )
            + name
            + extra
            + comment
        )


class ZipArchive:
    """A zip container opened as a mutable virtual filesystem.

    Paths are archive-relative and use ``/`` separators. Directories may be
    explicit (an entry named ``dir/``) or implicit (only entries beneath them
    exist); both count as existing directories.
    """

    def __init__(
        self,
        *,
        path: pathlib.Path,
        zf: zipfile.ZipFile,
        logger: logging.Logger,
        compression: int,
    ) -> None:
        self._path: pathlib.Path = path
        self._zf: zipfile.ZipFile = zf
        self._logger: logging.Logger = logger
        self._compression: int = compression
        self._entries: dict[str, _Entry] = {}
        for info in zf.infolist():
            self._entries[info.filename] = _Entry(info=info, origin=info.filename, raw=True)
        self._dirty: bool = False
        self._closed: bool = False

    @classmethod
    def open(
        cls,
        path: pathlib.Path,
        *,
        logger: logging.Logger | None = None,
        compression: int = zipfile.ZIP_DEFLATED,
    ) -> "ZipArchive":
        """Open a zip file as an archive filesystem.

        :param path: Zip file on disk.
        :param logger: Optional logger for debug output.
        :param compression: Compression method for newly added file entries.
        :returns: Open archive.
        :raises ArchiveError: If the file is missing, unreadable or not a valid zip.
        """

        if logger is None:
            logger = logging.getLogger("apk_repack")

        path = pathlib.Path(path)
        if path.is_file() is False:
            raise ArchiveError(f"Archive does not exist: {path}")
        if compression not in (zipfile.ZIP_STORED, zipfile.ZIP_DEFLATED):
            raise ArchiveError(f"Unsupported compression method for new entries: {compression}")

        try:
            zf: zipfile.ZipFile = zipfile.ZipFile(path, "r")
        except zipfile.BadZipFile as e:
            raise ArchiveError(f"Not a valid zip archive: {path}") from e
        except OSError as e:
            raise ArchiveError(f"Failed to open archive {path}: {e}") from e

        if logger.isEnabledFor(logging.DEBUG) is True:
            logger.debug(f"apk-repack: opened {path} ({len(zf.infolist())} entries)")
        return cls(path=path, zf=zf, logger=logger, compression=compression)

    @property
    def path(self) -> pathlib.Path:
        return self._path

    @property
    def closed(self) -> bool:
        return self._closed

    def __enter__(self) -> "ZipArchive":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        if self._closed is True:
            return
        if exc_type is None:
            self.close()
        else:
            self.discard()

    @staticmethod
    def resolve(path: str | os.PathLike[str]) -> pathlib.PurePosixPath:
        """Map a user path onto an archive-relative path.

        This is pure string handling; the archive is not consulted. ``""`` and
        ``"/"`` map to the root, which is ``PurePosixPath(".")``.

        :param path: Slash- or OS-separated path, optionally absolute.
        :returns: Normalized archive path.
        :raises ArchiveError: If the path escapes the archive root.
        """

        raw: str = os.fspath(path).replace("\\", "/")
        parts: list[str] = [p for p in raw.split("/") if p != "" and p != "."]
        if ".." in parts:
            raise ArchiveError(f"Path escapes the archive root: {raw!r}")
        return pathlib.PurePosixPath(*parts)

    def _name(self, path: str | os.PathLike[str]) -> str:
        """Resolve a path into an entry-table key prefix ("" for the root)."""

        resolved: pathlib.PurePosixPath = self.resolve(path)
        if resolved == pathlib.PurePosixPath("."):
            return ""
        return resolved.as_posix()

    def names(self) -> list[str]:
        """Return every entry name in archive order (directories end with ``/``)."""

        return list(self._entries)

    def is_file(self, path: str | os.PathLike[str]) -> bool:
        name: str = self._name(path)
        return name != "" and name in self._entries

    def is_dir(self, path: str | os.PathLike[str]) -> bool:
        name: str = self._name(path)
        if name == "":
            return True
        prefix: str = name + "/"
        if prefix in self._entries:
            return True
        return any(key.startswith(prefix) for key in self._entries)

    def exists(self, path: str | os.PathLike[str]) -> bool:
        return self.is_file(path) is True or self.is_dir(path) is True

    def compress_type(self, path: str | os.PathLike[str]) -> int:
        """Return the compression method an entry will be written with.

        :param path: File entry path.
        :returns: ``zipfile.ZIP_STORED``, ``zipfile.ZIP_DEFLATED``, ...
        :raises ArchiveError: If the file entry does not exist.
        """

        return self._file_entry(path).info.compress_type

    def read(self, path: str | os.PathLike[str]) -> bytes:
        """Read the current (possibly pending) content of a file entry.

        :param path: File entry path.
        :returns: Decompressed content.
        :raises ArchiveError: If the file entry does not exist.
        """

        self._check_open()
        entry: _Entry = self._file_entry(path)
        if entry.data is not None:
            return entry.data
        if entry.file is not None:
            return entry.file.read_bytes()
        if entry.origin is None:
            raise ArchiveError(f"Internal error: entry has no content source: {entry.info.filename}")
        return self._zf.read(entry.origin)

    def stored_names(self) -> list[str]:
        """Return the file entries currently marked ``ZIP_STORED``."""

        return [
            name
            for name, entry in self._entries.items()
            if entry.info.is_dir() is False and entry.info.compress_type == zipfile.ZIP_STORED
        ]

    def _file_entry(self, path: str | os.PathLike[str]) -> _Entry:
        name: str = self._name(path)
        entry: _Entry | None = self._entries.get(name) if name != "" else None
        if entry is None:
            raise ArchiveError(f"File does not exist in archive {self._path}: {name!r}")
        return entry

    def _check_open(self) -> None:
        if self._closed is True:
            raise ArchiveError(f"Archive is closed: {self._path}")

    def mark_stored(self, *paths: str) -> None:
        """Force file entries to be written without compression.

        Content is unchanged; only the compression method is. Package loaders
        memory-map some entries (``resources.arsc``, native libraries, ...) and
        need them stored.

        :param paths: File entry paths.
        :raises ArchiveError: If a path is missing or is a directory.
        """

        self._check_open()
        for path in paths:
            entry: _Entry = self._file_entry(path)
            if entry.info.compress_type == zipfile.ZIP_STORED:
                continue
            entry.info = _clone_info(entry.info, compress_type=zipfile.ZIP_STORED)
            entry.raw = False
            self._dirty = True
            if self._logger.isEnabledFor(logging.DEBUG) is True:
                self._logger.debug(f"apk-repack: {self._path.name}: stored {entry.info.filename}")

    def delete_recursive(self, path: str | os.PathLike[str]) -> int:
        """Delete a file entry, or a directory and everything beneath it.

        :param path: Entry path.
        :returns: Number of entries removed from the table.
        :raises ArchiveError: If the path does not exist or is the root.
        """

        self._check_open()
        name: str = self._name(path)
        if name == "":
            raise ArchiveError(f"Refusing to delete the root of archive {self._path}")

        doomed: list[str]
        if name in self._entries:
            doomed = [name]
        elif self.is_dir(name) is True:
            doomed = self._post_order(name)
        else:
            raise ArchiveError(f"File does not exist in archive {self._path}: {name!r}")

        for key in doomed:
            del self._entries[key]
        self._dirty = True
        if self._logger.isEnabledFor(logging.DEBUG) is True:
            self._logger.debug(f"apk-repack: {self._path.name}: deleted {name} ({len(doomed)} entries)")
        return len(doomed)

    def _post_order(self, directory: str) -> list[str]:
        """List the entry keys of a directory subtree, children before parents.

        Computed from a snapshot of the entry table so callers can delete in
        the returned order without walking a structure they are mutating.

        :param directory: Directory name without trailing slash.
        :returns: Entry keys in deletion order.
        """

        prefix: str = directory + "/"
        children: dict[str, bool] = {}
        for key in self._entries:
            if key.startswith(prefix) is False or key == prefix:
                continue
            head, sep, _ = key[len(prefix) :].partition("/")
            if sep != "":
                children[head] = True
            else:
                children.setdefault(head, False)

        order: list[str] = []
        for child, child_is_dir in sorted(children.items()):
            if child_is_dir is True:
                order.extend(self._post_order(prefix + child))
            else:
                order.append(prefix + child)
        if prefix in self._entries:
            order.append(prefix)
        return order

    def import_tree(self, source: pathlib.Path) -> int:
        """Copy a directory tree into the archive root.

        Top-level names of ``source`` that already exist in the archive are
        deleted first, so importing twice never leaves stale entries behind.

        :param source: Directory whose children land at the archive root.
        :returns: Number of files imported.
        :raises ArchiveError: If ``source`` is not a directory.
        """

        self._check_open()
        source = pathlib.Path(source)
        if source.is_dir() is False:
            raise ArchiveError(f"Import source is not a directory: {source}")

        for child in sorted(source.iterdir()):
            if self.exists(child.name) is True:
                self.delete_recursive(child.name)

        files: int = 0
        for p in sorted(source.rglob("*")):
            rel: str = p.relative_to(source).as_posix()
            if p.is_dir() is True:
                self._ensure_dir(rel)
                continue
            if p.is_file() is False:
                continue
            self._ensure_parents(rel)
            info: zipfile.ZipInfo = zipfile.ZipInfo.from_file(p, arcname=rel, strict_timestamps=False)
            info.compress_type = self._compression
            self._entries[rel] = _Entry(info=info, file=p)
            files += 1

        self._dirty = True
        if self._logger.isEnabledFor(logging.DEBUG) is True:
            self._logger.debug(f"apk-repack: {self._path.name}: imported {files} files from {source}")
        return files

    def write_entry(self, path: str | os.PathLike[str], data: bytes) -> None:
        """Write or overwrite one file entry.

        :param path: File entry path; missing parent directories are created.
        :param data: Entry content.
        :raises ArchiveError: If the path is the root or an existing directory.
        """

        self._check_open()
        name: str = self._name(path)
        if name == "" or self.is_dir(name) is True:
            raise ArchiveError(f"Cannot write file content over a directory: {name!r}")

        self._ensure_parents(name)
        existing: _Entry | None = self._entries.get(name)
        info: zipfile.ZipInfo
        if existing is not None:
            info = _clone_info(existing.info)
        else:
            info = zipfile.ZipInfo(name, date_time=time.localtime(time.time())[0:6])
            info.compress_type = self._compression
            info.external_attr = _FILE_ATTR
        info.file_size = len(data)
        self._entries[name] = _Entry(info=info, data=bytes(data))
        self._dirty = True
        if self._logger.isEnabledFor(logging.DEBUG) is True:
            self._logger.debug(f"apk-repack: {self._path.name}: wrote {name} ({len(data)} bytes)")

    def _ensure_parents(self, name: str) -> None:
        parts: list[str] = name.split("/")
        for i in range(1, len(parts)):
            self._ensure_dir("/".join(parts[0:i]))

    def _ensure_dir(self, name: str) -> None:
        if self.is_dir(name) is True:
            return
        if name in self._entries:
            raise ArchiveError(f"Cannot create directory over a file entry: {name!r}")
        info: zipfile.ZipInfo = zipfile.ZipInfo(name + "/", date_time=time.localtime(time.time())[0:6])
        info.compress_type = zipfile.ZIP_STORED
        info.external_attr = _DIR_ATTR
        self._entries[name + "/"] = _Entry(info=info)

    def close(self) -> None:
        """Commit pending changes and release the archive.

        :raises ArchiveError: If the archive was already closed or the commit failed.
        """

        self._check_open()
        self._closed = True
        tmp_path: pathlib.Path | None = None
        try:
            if self._dirty is True:
                tmp_path = self._write_temp()
        finally:
            self._zf.close()

        if tmp_path is None:
            return
        try:
            shutil.copymode(self._path, tmp_path)
            os.replace(tmp_path, self._path)
        except OSError as e:
            tmp_path.unlink(missing_ok=True)
            raise ArchiveError(f"Failed to replace archive {self._path}") from e
        if self._logger.isEnabledFor(logging.DEBUG) is True:
            self._logger.debug(f"apk-repack: committed {self._path} ({len(self._entries)} entries)")

    def discard(self) -> None:
        """Release the archive without committing pending changes."""

        if self._closed is True:
            return
        self._closed = True
        self._zf.close()
        if self._dirty is True:
            self._logger.debug(f"apk-repack: discarded pending changes to {self._path}")

    def _write_temp(self) -> pathlib.Path:
        """Write the entry table to a temporary file next to the archive.

        :returns: Path of the written temporary zip.
        :raises ArchiveError: If writing fails (the temporary file is removed).
        """

        try:
            fd, tmp = tempfile.mkstemp(prefix=f".{self._path.name}.", suffix=".tmp", dir=self._path.parent)
        except OSError as e:
            raise ArchiveError(f"Failed to create a temporary file next to {self._path}") from e
        tmp_path: pathlib.Path = pathlib.Path(tmp)

        written: bool = False
        try:
            with os.fdopen(fd, "wb") as out, open(self._path, "rb") as src:
                writer: _ZipWriter = _ZipWriter(out, comment=self._zf.comment)
                for entry in self._entries.values():
                    self._copy_entry(writer, src, entry)
                writer.finish()
            written = True
        except ArchiveError:
            raise
        except Exception as e:
            raise ArchiveError(f"Failed to write archive {self._path}: {e}") from e
        finally:
            if written is False:
                tmp_path.unlink(missing_ok=True)
        return tmp_path

    def _copy_entry(self, writer: _ZipWriter, src: BinaryIO, entry: _Entry) -> None:
        info: zipfile.ZipInfo = entry.info
        if entry.raw is True:
            writer.copy_raw(src, info)
        elif entry.data is not None:
            writer.write(info, [entry.data])
        elif entry.file is not None:
            with open(entry.file, "rb") as f:
                writer.write(info, iter(functools.partial(f.read, _COPY_CHUNK), b""))
        elif entry.origin is not None:
            with self._zf.open(entry.origin, "r") as f:
                writer.write(info, iter(functools.partial(f.read, _COPY_CHUNK), b""))
        else:
            writer.write(info, [])
