import enum
import logging
import os
from typing import Tuple

from errors import ShortReadError, UnsupportedObjectError
from extfs import (
    S_IFBLK, S_IFCHR, S_IFDIR, S_IFIFO, S_IFLNK, S_IFMT, S_IFREG, S_IFSOCK,
    ExtFilesystem, decode_name, is_fast_symlink,
)
from extstruct import Inode

log = logging.getLogger(__name__)


class InodeKind(enum.Enum):
    DIRECTORY = "directory"
    REGULAR_FILE = "regular file"
    SYMLINK = "symlink"
    CHAR_DEVICE = "char device"
    BLOCK_DEVICE = "block device"
    FIFO = "fifo"
    SOCKET = "socket"


_KIND_BY_FORMAT = {
    S_IFDIR: InodeKind.DIRECTORY,
    S_IFREG: InodeKind.REGULAR_FILE,
    S_IFLNK: InodeKind.SYMLINK,
    S_IFCHR: InodeKind.CHAR_DEVICE,
    S_IFBLK: InodeKind.BLOCK_DEVICE,
    S_IFIFO: InodeKind.FIFO,
    S_IFSOCK: InodeKind.SOCKET,
}

EXPORTABLE_KINDS = frozenset({
    InodeKind.DIRECTORY,
    InodeKind.REGULAR_FILE,
    InodeKind.SYMLINK,
    InodeKind.CHAR_DEVICE,
})


def classify(inode: Inode, path: str = "") -> InodeKind:
    fmt = inode.mode & S_IFMT
    try:
        return _KIND_BY_FORMAT[fmt]
    except KeyError:
        raise UnsupportedObjectError(f"file type 0o{fmt:06o}", path) from None


def check_supported(kind: InodeKind, path: str):
    """Block devices, fifos and sockets abort the run instead of being skipped"""
    if kind not in EXPORTABLE_KINDS:
        raise UnsupportedObjectError(kind.value, path)


def resolve_symlink(fs: ExtFilesystem, inode_num: int, inode: Inode, path: str = "") -> str:
    """Reads the target of a symbolic link inode"""
    if is_fast_symlink(inode):
        # Target lives in i_block
        target = inode.block[:inode.size]
    else:
        data = bytearray()
        with fs.open_file(inode_num, inode) as f:
            while len(data) < inode.size:
                chunk = f.read(inode.size - len(data))
                if not chunk:
                    raise ShortReadError(path, inode.size, len(data))
                data.extend(chunk)
        target = bytes(data)

    if not target:
        log.warning("Symlink %s has an empty target, the inode may be corrupt", path)
    return decode_name(target)


def decode_device(inode: Inode) -> Tuple[int, int]:
    """Major and minor numbers from i_block[0] (old) or i_block[1] (new encoding)"""
    words = inode.block_words()
    if words[1]:
        dev = words[1]
        major = (dev & 0xFFF00) >> 8
        minor = (dev & 0xFF) | ((dev >> 12) & 0xFFF00)
    else:
        dev = words[0]
        major = (dev >> 8) & 0xFF
        minor = dev & 0xFF
    return major, minor


def encode_device(inode: Inode) -> int:
    major, minor = decode_device(inode)
    return os.makedev(major, minor)
