import logging
import os
import stat
import tarfile
from typing import Optional

from errors import ArchiveError, OutputError

log = logging.getLogger(__name__)

FORMATS = {
    "pax": tarfile.PAX_FORMAT,
    "gnu": tarfile.GNU_FORMAT,
    "ustar": tarfile.USTAR_FORMAT,
}
COMPRESSIONS = ("none", "gz", "bz2", "xz")

NUL = b"\x00"
BLOCKSIZE = tarfile.BLOCKSIZE

_TAR_TYPES = {
    stat.S_IFREG: tarfile.REGTYPE,
    stat.S_IFDIR: tarfile.DIRTYPE,
    stat.S_IFLNK: tarfile.SYMTYPE,
    stat.S_IFCHR: tarfile.CHRTYPE,
    stat.S_IFBLK: tarfile.BLKTYPE,
    stat.S_IFIFO: tarfile.FIFOTYPE,
}


class ArchiveEntry:
    """Header fields of one archive member; release with free() or a with block"""

    def __init__(self):
        self.info: Optional[tarfile.TarInfo] = tarfile.TarInfo()
        self.nlink = 1
        self.atime: Optional[int] = None
        self.ctime: Optional[int] = None

    def __enter__(self) -> "ArchiveEntry":
        return self

    def __exit__(self, exc_type, exc_value, traceback):
        self.free()

    @property
    def freed(self) -> bool:
        return self.info is None

    def _require(self) -> tarfile.TarInfo:
        if self.info is None:
            raise ArchiveError("Archive entry used after free")
        return self.info

    def set_pathname(self, path: str):
        self._require().name = path

    def set_mode(self, mode: int):
        info = self._require()
        fmt = stat.S_IFMT(mode)
        if fmt not in _TAR_TYPES:
            raise ArchiveError(f"No archive member type for mode 0o{mode:o}")
        info.type = _TAR_TYPES[fmt]
        info.mode = stat.S_IMODE(mode)

    def set_size(self, size: int):
        self._require().size = size

    def set_nlink(self, nlink: int):
        self._require()
        self.nlink = nlink

    def set_uid(self, uid: int):
        self._require().uid = uid

    def set_gid(self, gid: int):
        self._require().gid = gid

    def set_atime(self, atime: int):
        self._require()
        self.atime = atime

    def set_ctime(self, ctime: int):
        self._require()
        self.ctime = ctime

    def set_mtime(self, mtime: int):
        self._require().mtime = mtime

    def set_symlink(self, target: str):
        info = self._require()
        info.type = tarfile.SYMTYPE
        info.linkname = target

    def set_rdev(self, rdev: int):
        info = self._require()
        info.devmajor = os.major(rdev)
        info.devminor = os.minor(rdev)

    def free(self):
        self.info = None


class ArchiveWriter:
    """Streams members into a tar archive: header first, then the body in pieces"""

    def __init__(self, path: str, format: str = "pax", compression: str = "none"):
        if format not in FORMATS:
            raise ValueError(f"Unknown archive format {format!r}")
        if compression not in COMPRESSIONS:
            raise ValueError(f"Unknown compression {compression!r}")
        self.path = path
        self.format = format
        self.compression = compression
        self.tar: Optional[tarfile.TarFile] = None
        self._current: Optional[tarfile.TarInfo] = None
        self._remaining = 0
        self._header_offset = 0

    def open(self) -> "ArchiveWriter":
        mode = "w" if self.compression == "none" else f"w:{self.compression}"
        try:
            self.tar = tarfile.open(self.path, mode, format=FORMATS[self.format],
                                    encoding="utf-8", errors="surrogateescape")
        except (OSError, tarfile.TarError) as e:
            raise OutputError(f"Unable to open archive {self.path}: {e}") from e
        log.debug("writing %s archive %s (compression: %s)", self.format, self.path, self.compression)
        return self

    def __enter__(self) -> "ArchiveWriter":
        return self.open() if self.tar is None else self

    def __exit__(self, exc_type, exc_value, traceback):
        self.close()

    def _write(self, data: bytes):
        try:
            self.tar.fileobj.write(data)
        except OSError as e:
            raise ArchiveError(f"Write to {self.path} failed: {e}") from e
        self.tar.offset += len(data)

    def write_header(self, entry: ArchiveEntry):
        if self.tar is None:
            raise ArchiveError("Archive is not open")
        if self._current is not None:
            self.finish_entry()

        info = entry._require()
        header = tarfile.TarInfo(info.name)
        for field in ("mode", "uid", "gid", "mtime", "type", "linkname", "devmajor", "devminor"):
            setattr(header, field, getattr(info, field))
        # Only regular files carry a body
        header.size = info.size if info.type == tarfile.REGTYPE else 0
        if self.format == "pax":
            if entry.atime is not None:
                header.pax_headers["atime"] = str(entry.atime)
            if entry.ctime is not None:
                header.pax_headers["ctime"] = str(entry.ctime)

        try:
            buf = header.tobuf(self.tar.format, self.tar.encoding, self.tar.errors)
        except (ValueError, UnicodeError, tarfile.HeaderError) as e:
            raise ArchiveError(f"Cannot build header for {info.name}: {e}") from e

        self._header_offset = self.tar.offset
        self._write(buf)
        self.tar.members.append(header)
        self._current = header
        self._remaining = header.size

    def write_data(self, data: bytes) -> int:
        """Append body bytes; returns how many were written, never past the declared size"""
        if self._current is None:
            raise ArchiveError("No archive member header has been written")
        count = min(len(data), self._remaining)
        if count:
            self._write(data[:count])
            self._remaining -= count
        return count

    def finish_entry(self):
        if self._current is None:
            return
        header = self._current
        self._current = None
        if self._remaining:
            log.debug("zero-filling %d missing bytes of %s", self._remaining, header.name)
            self._write(NUL * self._remaining)
            self._remaining = 0
        remainder = header.size % BLOCKSIZE
        if remainder:
            self._write(NUL * (BLOCKSIZE - remainder))

    def abandon_entry(self) -> bool:
        """
        Drop a member whose body could not be produced.

        An uncompressed archive is rewound to where the member's header began.
        Compressed streams cannot seek, so there the member is padded out in place
        to keep later members aligned. Returns True when such a partial member
        remains in the archive.
        """
        if self._current is None:
            return False
        header = self._current
        try:
            if self.compression == "none":
                log.debug("removing %s from the archive", header.name)
                self._current = None
                self._remaining = 0
                self.tar.fileobj.seek(self._header_offset)
                self.tar.fileobj.truncate()
                self.tar.offset = self._header_offset
                self.tar.members.pop()
                return False
            log.debug("padding out %s after its header was written", header.name)
            self.finish_entry()
            return True
        except (OSError, ArchiveError) as e:
            raise OutputError(f"Archive {self.path} is unusable: {e}") from e

    def close(self):
        if self.tar is None:
            return
        try:
            try:
                self.finish_entry()
            finally:
                self.tar.close()
        except (OSError, ArchiveError) as e:
            raise OutputError(f"Unable to finalize archive {self.path}: {e}") from e
        finally:
            self.tar = None
