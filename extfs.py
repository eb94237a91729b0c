import bisect
import enum
import logging
import posixpath
import struct
from typing import Iterator, List, Optional, Tuple

import attr

from errors import FilesystemError
from extstruct import (
    DIRECT_BLOCKS, DIND_BLOCK, EMBEDDED_STORAGE_SIZE, EXT2_MAGIC, EXT4_EXTENTS_FL,
    EXT4_INLINE_DATA_FL, IND_BLOCK, INCOMPAT_COMPRESSION, INCOMPAT_ENCRYPT,
    INCOMPAT_FILETYPE, INCOMPAT_JOURNAL_DEV, INCOMPAT_META_BG, INCOMPAT_RECOVER,
    INODE_BASE_SIZE, SUPERBLOCK_OFFSET, SUPERBLOCK_SIZE, TIND_BLOCK, BG_INODE_UNINIT,
    INLINE_DATA_XATTR, DirEntry, GroupDesc, Inode, Superblock, unpack_extent_node,
    unpack_inode_xattrs,
)

log = logging.getLogger(__name__)

ROOT_INODE = 2

MIN_BLOCK_SIZE = 1024
MAX_BLOCK_SIZE = 65536
MAX_EXTENT_DEPTH = 5
MAX_PATH_DEPTH = 64

# File types
S_IFMT   = 0o170000  # mask for the file type bits

S_IFSOCK = 0o140000  # socket
S_IFLNK  = 0o120000  # symbolic link
S_IFREG  = 0o100000  # regular file
S_IFBLK  = 0o060000  # block device
S_IFDIR  = 0o040000  # directory
S_IFCHR  = 0o020000  # character device
S_IFIFO  = 0o010000  # FIFO

UNSUPPORTED_INCOMPAT = {
    INCOMPAT_COMPRESSION: "compression",
    INCOMPAT_JOURNAL_DEV: "external journal device",
    INCOMPAT_META_BG: "meta_bg",
    INCOMPAT_ENCRYPT: "encryption",
}


class DirentKind(enum.Enum):
    DOT = "."
    DOT_DOT = ".."
    OTHER = "other"


@attr.s(auto_attribs=True, frozen=True)
class BlockRun:
    """Contiguous mapping of logical blocks onto physical blocks"""
    logical: int
    physical: int
    length: int
    uninitialized: bool = False


def decode_name(name: bytes) -> str:
    """Directory entry names are raw bytes; undecodable bytes survive as surrogates"""
    return name.decode("utf-8", "surrogateescape")


def is_fast_symlink(inode: Inode) -> bool:
    return (inode.mode & S_IFMT) == S_IFLNK and 0 < inode.size < EMBEDDED_STORAGE_SIZE


def read_inline_data(inode_num: int, inode: Inode) -> bytes:
    """Content of an inline-data inode: the 60 bytes of i_block, then the system.data xattr"""
    data = inode.block
    if inode.size > EMBEDDED_STORAGE_SIZE:
        try:
            xattrs = unpack_inode_xattrs(inode.extra)
        except (ValueError, struct.error) as e:
            raise FilesystemError(f"Inode {inode_num}: corrupt in-inode xattrs: {e}") from e
        data += xattrs.get(INLINE_DATA_XATTR, b"")
    if len(data) < inode.size:
        raise FilesystemError(f"Inode {inode_num}: inline data holds {len(data)} of {inode.size} bytes")
    return data[:inode.size]


class ExtFilesystem:
    """Read-only view of an ext2/ext3/ext4 image"""

    def __init__(self, image_path: str):
        self.image_path = image_path
        self.image_file = None
        self.superblock: Optional[Superblock] = None
        self.group_descriptors: List[GroupDesc] = []
        self._load_filesystem()

    def _load_filesystem(self):
        """Load superblock and group descriptors"""
        try:
            self.image_file = open(self.image_path, "rb")
        except OSError as e:
            raise FilesystemError(f"Unable to open {self.image_path}: {e.strerror}") from e

        try:
            sb_data = self._read_at(SUPERBLOCK_OFFSET, SUPERBLOCK_SIZE)
            try:
                self.superblock = Superblock.unpack(sb_data)
            except (ValueError, struct.error) as e:
                raise FilesystemError(f"Unable to read superblock of {self.image_path}: {e}") from e
            self._check_superblock()
            self._load_group_descriptors()
        except BaseException:
            self.close()
            raise

    def _check_superblock(self):
        sb = self.superblock
        if sb.magic != EXT2_MAGIC:
            raise FilesystemError(f"{self.image_path}: bad superblock magic 0x{sb.magic:04x}")
        if not MIN_BLOCK_SIZE <= sb.block_size <= MAX_BLOCK_SIZE:
            raise FilesystemError(f"{self.image_path}: invalid block size {sb.block_size}")
        if sb.blocks_per_group == 0 or sb.inodes_per_group == 0:
            raise FilesystemError(f"{self.image_path}: corrupt group geometry")
        if sb.inode_size < INODE_BASE_SIZE or sb.inode_size > sb.block_size or sb.inode_size & (sb.inode_size - 1):
            raise FilesystemError(f"{self.image_path}: invalid inode size {sb.inode_size}")

        for mask, feature in UNSUPPORTED_INCOMPAT.items():
            if sb.has_incompat(mask):
                raise FilesystemError(f"{self.image_path}: unsupported feature: {feature}")

        if sb.has_incompat(INCOMPAT_RECOVER):
            log.warning("%s needs journal recovery; exporting without replaying the journal", self.image_path)

        log.debug("block size %d, %d blocks, %d inodes, %d groups",
                  sb.block_size, sb.blocks_count, sb.inodes_count, sb.group_count)

    def _load_group_descriptors(self):
        sb = self.superblock
        desc_size = sb.group_desc_size
        gdt_offset = (sb.first_data_block + 1) * sb.block_size
        gdt = self._read_at(gdt_offset, sb.group_count * desc_size)
        if len(gdt) != sb.group_count * desc_size:
            raise FilesystemError(f"{self.image_path}: truncated group descriptor table")

        for i in range(sb.group_count):
            gd = GroupDesc.unpack(gdt[i * desc_size:(i + 1) * desc_size], desc_size)
            if not 0 < gd.inode_table_block < sb.blocks_count:
                raise FilesystemError(f"{self.image_path}: group {i} inode table at invalid block {gd.inode_table_block}")
            self.group_descriptors.append(gd)

    def close(self):
        if self.image_file:
            self.image_file.close()
            self.image_file = None

    def _read_at(self, offset: int, size: int) -> bytes:
        """Read from the image; I/O failures surface as FilesystemError"""
        try:
            self.image_file.seek(offset)
            return self.image_file.read(size)
        except OSError as e:
            raise FilesystemError(f"Read of {size} bytes at offset {offset} of {self.image_path} failed: {e}") from e

    def __enter__(self) -> "ExtFilesystem":
        return self

    def __exit__(self, exc_type, exc_value, traceback):
        self.close()

    @property
    def block_size(self) -> int:
        return self.superblock.block_size

    @property
    def inodes_count(self) -> int:
        return self.superblock.inodes_count

    @property
    def has_filetype(self) -> bool:
        return self.superblock.has_incompat(INCOMPAT_FILETYPE)

    def read_block(self, block_num: int) -> bytes:
        if not 0 < block_num < self.superblock.blocks_count:
            raise FilesystemError(f"Block {block_num} is beyond filesystem bounds")
        data = self._read_at(block_num * self.block_size, self.block_size)
        if len(data) != self.block_size:
            raise FilesystemError(f"Could not read block {block_num}: image truncated")
        return data

    # Inodes

    def _resolve_inode_location(self, inode_num: int) -> Tuple[int, int, GroupDesc, int]:
        """
        Calculates the group, index, group descriptor, and disk offset for a given inode number.
        Returns: (group_num, inode_index, group_desc, inode_offset)
        """
        if not 0 < inode_num <= self.inodes_count:
            raise FilesystemError(f"Invalid inode number {inode_num}")

        group_num = (inode_num - 1) // self.superblock.inodes_per_group
        inode_index = (inode_num - 1) % self.superblock.inodes_per_group

        if group_num >= len(self.group_descriptors):
            raise FilesystemError(f"Inode {inode_num} is beyond filesystem bounds")

        group_desc = self.group_descriptors[group_num]
        inode_offset = group_desc.inode_table_block * self.block_size + inode_index * self.superblock.inode_size

        return group_num, inode_index, group_desc, inode_offset

    def read_inode(self, inode_num: int) -> Inode:
        """Get inode by number"""
        _, _, _, inode_offset = self._resolve_inode_location(inode_num)

        inode_data = self._read_at(inode_offset, self.superblock.inode_size)

        if len(inode_data) != self.superblock.inode_size:
            raise FilesystemError(f"Could not read inode {inode_num}")

        return Inode.unpack(inode_data)

    def iter_inodes(self) -> Iterator[Tuple[int, Inode]]:
        """Yield every inode from 1 to the inode count, one group table at a time"""
        sb = self.superblock
        inode_size = sb.inode_size
        empty = Inode.unpack(b"\x00" * INODE_BASE_SIZE)

        for group_num, group_desc in enumerate(self.group_descriptors):
            first = group_num * sb.inodes_per_group + 1
            count = min(sb.inodes_per_group, sb.inodes_count - first + 1)
            if count <= 0:
                return

            if group_desc.flags & BG_INODE_UNINIT:
                log.debug("group %d inode table uninitialized", group_num)
                for i in range(count):
                    yield first + i, empty
                continue

            table = self._read_at(group_desc.inode_table_block * self.block_size, count * inode_size)
            if len(table) != count * inode_size:
                raise FilesystemError(f"Inode table of group {group_num} is truncated")

            for i in range(count):
                yield first + i, Inode.unpack(table[i * inode_size:(i + 1) * inode_size])

    def has_valid_blocks(self, inode: Inode) -> bool:
        """Whether i_block holds block pointers rather than inline data or a device number"""
        fmt = inode.mode & S_IFMT
        if fmt not in (S_IFDIR, S_IFREG, S_IFLNK):
            return False
        if inode.flags & EXT4_INLINE_DATA_FL:
            return False
        if is_fast_symlink(inode):
            return False
        return True

    # Block mapping

    def iter_runs(self, inode: Inode) -> Iterator[BlockRun]:
        """Yield the inode's block runs in logical order"""
        if inode.flags & EXT4_EXTENTS_FL:
            yield from self._iter_extent_node(inode.block, None, 0)
        else:
            yield from self._iter_block_map(inode)

    def iter_blocks(self, inode_num: int, inode: Optional[Inode] = None) -> Iterator[Tuple[int, int]]:
        """Yield (physical block, logical block index) for every mapped data block"""
        if inode is None:
            inode = self.read_inode(inode_num)
        if not self.has_valid_blocks(inode):
            return
        for run in self.iter_runs(inode):
            for i in range(run.length):
                yield run.physical + i, run.logical + i

    def _iter_extent_node(self, data: bytes, expected_depth: Optional[int], level: int) -> Iterator[BlockRun]:
        if level > MAX_EXTENT_DEPTH:
            raise FilesystemError("Extent tree too deep")
        try:
            header, entries = unpack_extent_node(data)
        except (ValueError, struct.error) as e:
            raise FilesystemError(f"Corrupt extent node: {e}") from e
        if expected_depth is not None and header.depth != expected_depth:
            raise FilesystemError(f"Extent node depth {header.depth}, expected {expected_depth}")

        if header.depth == 0:
            for leaf in entries:
                yield BlockRun(leaf.logical_block, leaf.get_start_block(), leaf.length, leaf.uninitialized)
        else:
            for index in entries:
                child = self.read_block(index.child_block)
                yield from self._iter_extent_node(child, header.depth - 1, level + 1)

    def _iter_block_map(self, inode: Inode) -> Iterator[BlockRun]:
        words = inode.block_words()
        for i in range(DIRECT_BLOCKS):
            if words[i]:
                yield BlockRun(i, words[i], 1)

        per_block = self.block_size // 4
        logical = DIRECT_BLOCKS
        for level, slot in ((1, IND_BLOCK), (2, DIND_BLOCK), (3, TIND_BLOCK)):
            if words[slot]:
                yield from self._iter_indirect(words[slot], level, logical)
            logical += per_block ** level

    def _iter_indirect(self, block_num: int, level: int, logical: int) -> Iterator[BlockRun]:
        per_block = self.block_size // 4
        pointers = struct.unpack(f"<{per_block}I", self.read_block(block_num))
        span = per_block ** (level - 1)
        for i, pointer in enumerate(pointers):
            if not pointer:
                continue
            if level == 1:
                yield BlockRun(logical + i, pointer, 1)
            else:
                yield from self._iter_indirect(pointer, level - 1, logical + i * span)

    # Directories

    def iter_dir_entries(self, dir_ino: int, block_num: int, blockcnt: int) -> Iterator[Tuple[DirentKind, DirEntry]]:
        """Decode the live entries of one directory block"""
        data = self.read_block(block_num)
        offset = 0
        index = 0
        while offset < len(data):
            try:
                entry = DirEntry.unpack(data, offset, self.block_size, self.has_filetype)
            except (ValueError, struct.error) as e:
                raise FilesystemError(f"Corrupt directory block {block_num} of inode {dir_ino}: {e}") from e
            offset += entry.rec_len

            if entry.inode_num == 0:
                continue
            if blockcnt == 0 and index == 0:
                kind = DirentKind.DOT
            elif blockcnt == 0 and index == 1:
                kind = DirentKind.DOT_DOT
            else:
                kind = DirentKind.OTHER
            index += 1
            yield kind, entry

    def _traverse_directory(self, dir_ino: int) -> Iterator[Tuple[DirentKind, DirEntry]]:
        inode = self.read_inode(dir_ino)
        if (inode.mode & S_IFMT) != S_IFDIR:
            raise FilesystemError(f"Inode {dir_ino} is not a directory")
        for block_num, blockcnt in self.iter_blocks(dir_ino, inode):
            yield from self.iter_dir_entries(dir_ino, block_num, blockcnt)

    def _lookup_parent(self, dir_ino: int) -> Optional[int]:
        for kind, entry in self._traverse_directory(dir_ino):
            if kind is DirentKind.DOT_DOT:
                return entry.inode_num
        return None

    def _lookup_name(self, dir_ino: int, child_ino: int) -> Optional[bytes]:
        for kind, entry in self._traverse_directory(dir_ino):
            if kind is DirentKind.OTHER and entry.inode_num == child_ino:
                return entry.name
        return None

    def _dir_pathname(self, dir_ino: int, depth: int) -> str:
        if dir_ino == ROOT_INODE:
            return "/"
        if depth > MAX_PATH_DEPTH:
            raise FilesystemError(f"Directory loop while resolving inode {dir_ino}")

        parent = self._lookup_parent(dir_ino)
        if parent is None:
            return f"/<{dir_ino}>"
        name = self._lookup_name(parent, dir_ino)
        component = decode_name(name) if name is not None else f"<{dir_ino}>"
        return posixpath.join(self._dir_pathname(parent, depth + 1), component)

    def get_pathname(self, dir_ino: int, child_ino: Optional[int] = None) -> str:
        """Absolute path of a directory, or of child_ino inside it; nothing is cached"""
        path = self._dir_pathname(dir_ino, 0)
        if child_ino is None:
            return path
        name = self._lookup_name(dir_ino, child_ino)
        component = decode_name(name) if name is not None else f"<{child_ino}>"
        return posixpath.join(path, component)

    # File content

    def open_file(self, inode_num: int, inode: Optional[Inode] = None) -> "ExtFile":
        if inode is None:
            inode = self.read_inode(inode_num)
        return ExtFile(self, inode_num, inode)


class ExtFile:
    """Sequential reader over one inode's data"""

    def __init__(self, fs: ExtFilesystem, inode_num: int, inode: Inode):
        self.fs = fs
        self.inode_num = inode_num
        self.inode = inode
        self.size = inode.size
        self.offset = 0
        self._inline: Optional[bytes] = None
        self._runs: List[BlockRun] = []
        self._run_starts: List[int] = []
        self._cached_block: Tuple[int, bytes] = (0, b"")

        if inode.flags & EXT4_INLINE_DATA_FL:
            self._inline = read_inline_data(inode_num, inode)
        else:
            self._runs = list(fs.iter_runs(inode))
            self._run_starts = [run.logical for run in self._runs]

    def __enter__(self) -> "ExtFile":
        return self

    def __exit__(self, exc_type, exc_value, traceback):
        self.close()

    def close(self):
        self._runs = []
        self._run_starts = []
        self._cached_block = (0, b"")

    def _map(self, logical: int) -> Optional[int]:
        """Physical block for a logical block, None for holes and unwritten extents"""
        i = bisect.bisect_right(self._run_starts, logical) - 1
        if i < 0:
            return None
        run = self._runs[i]
        if logical >= run.logical + run.length or run.uninitialized:
            return None
        return run.physical + (logical - run.logical)

    def _block(self, physical: int) -> bytes:
        if self._cached_block[0] != physical:
            self._cached_block = (physical, self.fs.read_block(physical))
        return self._cached_block[1]

    def read(self, size: int) -> bytes:
        """Read up to size bytes; returns b"" at end of file"""
        if self.offset >= self.size or size <= 0:
            return b""
        actual_size = min(size, self.size - self.offset)

        if self._inline is not None:
            result = self._inline[self.offset:self.offset + actual_size]
            self.offset += len(result)
            return result

        block_size = self.fs.block_size
        result = bytearray()
        while len(result) < actual_size:
            logical_block, block_offset = divmod(self.offset + len(result), block_size)
            bytes_to_read = min(actual_size - len(result), block_size - block_offset)
            physical = self._map(logical_block)
            if physical is None:
                # Hole or unwritten extent
                result.extend(b"\x00" * bytes_to_read)
            else:
                result.extend(self._block(physical)[block_offset:block_offset + bytes_to_read])

        self.offset += len(result)
        return bytes(result)


def open_filesystem(image_path: str) -> ExtFilesystem:
    return ExtFilesystem(image_path)
