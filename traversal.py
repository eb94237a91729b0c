"""
Two-phase directory traversal.

Phase 1 scans every inode and registers the data blocks of every directory.
Phase 2 replays the registered blocks and yields the entries they contain.
A directory block is never decoded before the scan has completed.
"""

import logging
from typing import Iterator, List

import attr

from errors import FilesystemError, ScanError
from extfs import S_IFDIR, S_IFMT, DirentKind, ExtFilesystem, decode_name
from extstruct import EXT4_INLINE_DATA_FL

log = logging.getLogger(__name__)


@attr.s(auto_attribs=True, frozen=True)
class DirBlock:
    dir_ino: int
    block: int
    blockcnt: int  # index of the block within the directory


@attr.s(auto_attribs=True, frozen=True)
class DirectoryEntry:
    parent_ino: int
    child_ino: int
    name: bytes
    file_type: int = 0


class DirectoryBlockList:
    """Ordered (directory inode, block, block index) triples built by the inode scan"""

    def __init__(self):
        self._blocks: List[DirBlock] = []
        self.sealed = False
        self.freed = False

    def add(self, dir_ino: int, block: int, blockcnt: int):
        if self.sealed or self.freed:
            raise ScanError("Directory block list is already complete")
        self._blocks.append(DirBlock(dir_ino, block, blockcnt))

    def seal(self):
        self.sealed = True

    def free(self):
        self._blocks = []
        self.freed = True

    def directories(self) -> List[int]:
        return list(dict.fromkeys(b.dir_ino for b in self._blocks))

    def __iter__(self) -> Iterator[DirBlock]:
        if self.freed:
            raise ScanError("Directory block list has been freed")
        return iter(self._blocks)

    def __len__(self) -> int:
        return len(self._blocks)


def scan_directory_blocks(fs: ExtFilesystem) -> DirectoryBlockList:
    """Register the data blocks of every directory in inode order"""
    dblist = DirectoryBlockList()
    try:
        for ino, inode in fs.iter_inodes():
            if (inode.mode & S_IFMT) != S_IFDIR:
                continue
            if inode.links_count == 0:
                log.debug("skipping deleted directory inode %d", ino)
                continue
            if inode.flags & EXT4_INLINE_DATA_FL:
                log.warning("Directory inode %d stores its entries inline; its contents are not exported", ino)
                continue
            if not fs.has_valid_blocks(inode):
                continue
            for block, blockcnt in fs.iter_blocks(ino, inode):
                dblist.add(ino, block, blockcnt)
    except FilesystemError as e:
        raise ScanError(f"Inode scan failed: {e}") from e

    dblist.seal()
    log.info("Registered %d blocks of %d directories", len(dblist), len(dblist.directories()))
    return dblist


def iter_directory_entries(fs: ExtFilesystem, dblist: DirectoryBlockList) -> Iterator[DirectoryEntry]:
    """Replay the block list in registration order, skipping "." and ".." """
    if not dblist.sealed:
        raise ScanError("Directory entries requested before the inode scan completed")

    for dir_block in dblist:
        try:
            entries = list(fs.iter_dir_entries(dir_block.dir_ino, dir_block.block, dir_block.blockcnt))
        except FilesystemError as e:
            raise ScanError(str(e)) from e

        for kind, entry in entries:
            if kind is not DirentKind.OTHER:
                continue
            yield DirectoryEntry(dir_block.dir_ino, entry.inode_num, entry.name, entry.file_type)


def resolve_path(fs: ExtFilesystem, parent_ino: int, name: bytes) -> str:
    """Absolute path of an entry; the parent's path is recomputed on every call"""
    parent_path = fs.get_pathname(parent_ino)
    if parent_path == "/":
        return "/" + decode_name(name)
    return parent_path + "/" + decode_name(name)
