import struct
from typing import Dict, List, Optional, Tuple

import attr

SUPERBLOCK_OFFSET = 1024
SUPERBLOCK_SIZE = 1024
EXT2_MAGIC = 0xEF53
EXTENT_MAGIC = 0xF30A

GOOD_OLD_REV = 0
GOOD_OLD_INODE_SIZE = 128
GOOD_OLD_FIRST_INO = 11

INODE_BASE_SIZE = 128
EMBEDDED_STORAGE_SIZE = 60  # i_block[15]
EMBEDDED_WORDS = 15
DIRECT_BLOCKS = 12
IND_BLOCK = 12
DIND_BLOCK = 13
TIND_BLOCK = 14

GROUP_DESC_SIZE = 32
GROUP_DESC_SIZE_64BIT = 64

EXTENT_ENTRY_SIZE = 12
EXTENT_INIT_MAX_LEN = 32768

DIRENTRY_HEADER_SIZE = 8
EXT2_NAME_LEN = 255

# s_feature_incompat
INCOMPAT_COMPRESSION = 0x0001
INCOMPAT_FILETYPE = 0x0002
INCOMPAT_RECOVER = 0x0004
INCOMPAT_JOURNAL_DEV = 0x0008
INCOMPAT_META_BG = 0x0010
INCOMPAT_EXTENTS = 0x0040
INCOMPAT_64BIT = 0x0080
INCOMPAT_FLEX_BG = 0x0200
INCOMPAT_INLINE_DATA = 0x8000
INCOMPAT_ENCRYPT = 0x10000

# s_feature_compat
COMPAT_HAS_JOURNAL = 0x0004

# bg_flags
BG_INODE_UNINIT = 0x0001

# i_flags
EXT4_EXTENTS_FL = 0x00080000
EXT4_INLINE_DATA_FL = 0x10000000

# In-inode extended attributes
XATTR_MAGIC = 0xEA020000
XATTR_ENTRY_SIZE = 16
XATTR_INDEX_USER = 1
XATTR_INDEX_SYSTEM = 7
INLINE_DATA_XATTR = (XATTR_INDEX_SYSTEM, b"data")

_SUPERBLOCK_FMT = "<13I6H4I2HI2H3I16s16s"
_SUPERBLOCK_DESC_SIZE_OFFSET = 0xFE
_SUPERBLOCK_BLOCKS_HI_OFFSET = 0x150

_GROUP_DESC_FMT = "<IIIHHHH"
_GROUP_DESC_HI_FMT = "<III"
_GROUP_DESC_HI_OFFSET = 0x20

# i_atime, i_ctime and i_mtime are signed: pre-1970 times are negative
_INODE_FMT = "<HHIiiiIHHIII60sIIIIHHHHHH"


@attr.s(auto_attribs=True)
class Superblock:
    inodes_count: int
    blocks_count: int
    free_blocks_count: int
    free_inodes_count: int
    first_data_block: int
    log_block_size: int
    blocks_per_group: int
    inodes_per_group: int
    magic: int = EXT2_MAGIC
    state: int = 1
    rev_level: int = 1
    first_ino: int = GOOD_OLD_FIRST_INO
    inode_size: int = GOOD_OLD_INODE_SIZE
    feature_compat: int = 0
    feature_incompat: int = 0
    feature_ro_compat: int = 0
    volume_name: bytes = b""
    desc_size: int = 0

    @property
    def block_size(self) -> int:
        return 1024 << self.log_block_size

    @property
    def group_count(self) -> int:
        data_blocks = self.blocks_count - self.first_data_block
        return (data_blocks + self.blocks_per_group - 1) // self.blocks_per_group

    @property
    def group_desc_size(self) -> int:
        if self.feature_incompat & INCOMPAT_64BIT and self.desc_size >= GROUP_DESC_SIZE_64BIT:
            return self.desc_size
        return GROUP_DESC_SIZE

    def has_incompat(self, mask: int) -> bool:
        return bool(self.feature_incompat & mask)

    def pack(self) -> bytes:
        data = bytearray(SUPERBLOCK_SIZE)
        struct.pack_into(
            _SUPERBLOCK_FMT, data, 0,
            self.inodes_count,
            self.blocks_count & 0xFFFFFFFF,
            0,  # r_blocks_count
            self.free_blocks_count & 0xFFFFFFFF,
            self.free_inodes_count,
            self.first_data_block,
            self.log_block_size,
            self.log_block_size,  # log_cluster_size
            self.blocks_per_group,
            self.blocks_per_group,  # clusters_per_group
            self.inodes_per_group,
            0, 0,  # mtime, wtime
            0, 0xFFFF,  # mnt_count, max_mnt_count
            self.magic,
            self.state,
            1,  # errors: continue
            0,  # minor_rev_level
            0, 0, 0,  # lastcheck, checkinterval, creator_os
            self.rev_level,
            0, 0,  # def_resuid, def_resgid
            self.first_ino,
            self.inode_size,
            0,  # block_group_nr
            self.feature_compat,
            self.feature_incompat,
            self.feature_ro_compat,
            b"\x00" * 16,  # uuid
            self.volume_name[:16],
        )
        struct.pack_into("<H", data, _SUPERBLOCK_DESC_SIZE_OFFSET, self.desc_size)
        struct.pack_into("<I", data, _SUPERBLOCK_BLOCKS_HI_OFFSET, self.blocks_count >> 32)
        return bytes(data)

    @classmethod
    def unpack(cls, data: bytes) -> "Superblock":
        if len(data) < SUPERBLOCK_SIZE:
            raise ValueError(f"Superblock too short: {len(data)} bytes")
        fields = struct.unpack_from(_SUPERBLOCK_FMT, data, 0)
        rev_level = fields[22]
        # Revision 0 predates the dynamic fields
        dynamic = rev_level > GOOD_OLD_REV
        feature_incompat = fields[29] if dynamic else 0
        blocks_count = fields[1]
        if feature_incompat & INCOMPAT_64BIT:
            blocks_count |= struct.unpack_from("<I", data, _SUPERBLOCK_BLOCKS_HI_OFFSET)[0] << 32
        (desc_size,) = struct.unpack_from("<H", data, _SUPERBLOCK_DESC_SIZE_OFFSET)
        return cls(
            inodes_count=fields[0],
            blocks_count=blocks_count,
            free_blocks_count=fields[3],
            free_inodes_count=fields[4],
            first_data_block=fields[5],
            log_block_size=fields[6],
            blocks_per_group=fields[8],
            inodes_per_group=fields[10],
            magic=fields[15],
            state=fields[16],
            rev_level=rev_level,
            first_ino=fields[25] if dynamic else GOOD_OLD_FIRST_INO,
            inode_size=fields[26] if dynamic else GOOD_OLD_INODE_SIZE,
            feature_compat=fields[28] if dynamic else 0,
            feature_incompat=feature_incompat,
            feature_ro_compat=fields[30] if dynamic else 0,
            volume_name=fields[32].rstrip(b"\x00"),
            desc_size=desc_size,
        )


@attr.s(auto_attribs=True)
class GroupDesc:
    block_bitmap_block: int
    inode_bitmap_block: int
    inode_table_block: int
    free_blocks_count: int
    free_inodes_count: int
    used_dirs_count: int = 0
    flags: int = 0

    def pack(self, desc_size: int = GROUP_DESC_SIZE) -> bytes:
        data = bytearray(desc_size)
        struct.pack_into(
            _GROUP_DESC_FMT, data, 0,
            self.block_bitmap_block & 0xFFFFFFFF,
            self.inode_bitmap_block & 0xFFFFFFFF,
            self.inode_table_block & 0xFFFFFFFF,
            self.free_blocks_count & 0xFFFF,
            self.free_inodes_count & 0xFFFF,
            self.used_dirs_count & 0xFFFF,
            self.flags,
        )
        if desc_size >= GROUP_DESC_SIZE_64BIT:
            struct.pack_into(
                _GROUP_DESC_HI_FMT, data, _GROUP_DESC_HI_OFFSET,
                self.block_bitmap_block >> 32,
                self.inode_bitmap_block >> 32,
                self.inode_table_block >> 32,
            )
        return bytes(data)

    @classmethod
    def unpack(cls, data: bytes, desc_size: int = GROUP_DESC_SIZE) -> "GroupDesc":
        block_bitmap, inode_bitmap, inode_table, free_blocks, free_inodes, used_dirs, flags = \
            struct.unpack_from(_GROUP_DESC_FMT, data, 0)
        if desc_size >= GROUP_DESC_SIZE_64BIT:
            bb_hi, ib_hi, it_hi = struct.unpack_from(_GROUP_DESC_HI_FMT, data, _GROUP_DESC_HI_OFFSET)
            block_bitmap |= bb_hi << 32
            inode_bitmap |= ib_hi << 32
            inode_table |= it_hi << 32
        return cls(block_bitmap, inode_bitmap, inode_table, free_blocks, free_inodes, used_dirs, flags)


@attr.s(auto_attribs=True)
class Inode:
    mode: int
    uid: int
    size_lo: int
    atime: int
    ctime: int
    mtime: int
    dtime: int
    gid: int
    links_count: int
    blocks: int
    flags: int
    # Raw i_block: block map, extent root, inline data or device number
    block: bytes = attr.ib(default=b"\x00" * EMBEDDED_STORAGE_SIZE)
    generation: int = 0
    file_acl: int = 0
    size_high: int = 0
    # Everything past the 128-byte base: i_extra_isize, extra times, in-inode xattrs
    extra: bytes = b""

    @property
    def size(self) -> int:
        return self.size_lo | (self.size_high << 32)

    def block_words(self) -> Tuple[int, ...]:
        return struct.unpack("<15I", self.block)

    def pack(self) -> bytes:
        return struct.pack(
            _INODE_FMT,
            self.mode,
            self.uid & 0xFFFF,
            self.size_lo,
            self.atime,
            self.ctime,
            self.mtime,
            self.dtime,
            self.gid & 0xFFFF,
            self.links_count,
            self.blocks & 0xFFFFFFFF,
            self.flags,
            0,  # osd1
            self.block.ljust(EMBEDDED_STORAGE_SIZE, b"\x00"),
            self.generation,
            self.file_acl & 0xFFFFFFFF,
            self.size_high,
            0,  # faddr
            self.blocks >> 32,
            self.file_acl >> 32,
            self.uid >> 16,
            self.gid >> 16,
            0, 0,  # checksum_lo, reserved
        ) + self.extra

    @classmethod
    def unpack(cls, data: bytes) -> "Inode":
        (mode, uid_lo, size_lo, atime, ctime, mtime, dtime, gid_lo, links_count,
         blocks_lo, flags, _osd1, block, generation, file_acl_lo, size_high, _faddr,
         blocks_hi, file_acl_hi, uid_hi, gid_hi, _csum, _reserved) = struct.unpack_from(_INODE_FMT, data, 0)
        return cls(
            mode=mode,
            uid=uid_lo | (uid_hi << 16),
            size_lo=size_lo,
            atime=atime,
            ctime=ctime,
            mtime=mtime,
            dtime=dtime,
            gid=gid_lo | (gid_hi << 16),
            links_count=links_count,
            blocks=blocks_lo | (blocks_hi << 32),
            flags=flags,
            block=block,
            generation=generation,
            file_acl=file_acl_lo | (file_acl_hi << 32),
            size_high=size_high,
            extra=bytes(data[INODE_BASE_SIZE:]),
        )


@attr.s(auto_attribs=True)
class XattrEntry:
    """Extended attribute entry; value_offs is relative to the first entry"""
    name_index: int
    name: bytes
    value_offs: int
    value_size: int
    value_inum: int = 0
    hash: int = 0

    @staticmethod
    def length(name_len: int) -> int:
        return (XATTR_ENTRY_SIZE + name_len + 3) & ~3

    def pack(self) -> bytes:
        header = struct.pack("<BBHIII", len(self.name), self.name_index, self.value_offs,
                             self.value_inum, self.value_size, self.hash)
        return (header + self.name).ljust(self.length(len(self.name)), b"\x00")

    @classmethod
    def unpack(cls, data: bytes, offset: int) -> "XattrEntry":
        name_len, name_index, value_offs, value_inum, value_size, hash_ = \
            struct.unpack_from("<BBHIII", data, offset)
        name_start = offset + XATTR_ENTRY_SIZE
        if name_start + name_len > len(data):
            raise ValueError(f"Xattr name at offset {offset} overruns the inode")
        return cls(name_index, bytes(data[name_start:name_start + name_len]), value_offs, value_size,
                   value_inum, hash_)


def unpack_inode_xattrs(extra: bytes) -> Dict[Tuple[int, bytes], bytes]:
    """
    Decode the extended attributes stored after i_extra_isize.
    Returns {(name index, name): value}; empty when the inode has none.
    """
    if len(extra) < 2:
        return {}
    (extra_isize,) = struct.unpack_from("<H", extra, 0)
    start = extra_isize
    if extra_isize % 4 or start + 4 > len(extra):
        return {}
    (magic,) = struct.unpack_from("<I", extra, start)
    if magic != XATTR_MAGIC:
        return {}

    first = start + 4
    result = {}
    offset = first
    while offset + 4 <= len(extra) and struct.unpack_from("<I", extra, offset)[0] != 0:
        if offset + XATTR_ENTRY_SIZE > len(extra):
            raise ValueError(f"Xattr entry at offset {offset} overruns the inode")
        entry = XattrEntry.unpack(extra, offset)
        if entry.value_inum:
            raise ValueError(f"Xattr {entry.name!r} lives in inode {entry.value_inum}")
        value_start = first + entry.value_offs
        if value_start + entry.value_size > len(extra):
            raise ValueError(f"Xattr {entry.name!r} value overruns the inode")
        result[(entry.name_index, entry.name)] = bytes(extra[value_start:value_start + entry.value_size])
        offset += XattrEntry.length(len(entry.name))
    return result


def pack_inode_xattrs(xattrs: Dict[Tuple[int, bytes], bytes], extra_isize: int, area_size: int) -> bytes:
    """Lay out an inode's extra area: i_extra_isize, magic, entries, values at the end"""
    data = bytearray(area_size)
    struct.pack_into("<H", data, 0, extra_isize)
    if not xattrs:
        return bytes(data)

    first = extra_isize + 4
    struct.pack_into("<I", data, extra_isize, XATTR_MAGIC)
    offset = first
    value_end = area_size
    for (name_index, name), value in xattrs.items():
        value_start = (value_end - len(value)) & ~3
        entry = XattrEntry(name_index, name, value_start - first if value else 0, len(value))
        packed = entry.pack()
        if offset + len(packed) + 4 > value_start:
            raise ValueError("Extended attributes do not fit in the inode")
        data[offset:offset + len(packed)] = packed
        data[value_start:value_start + len(value)] = value
        offset += len(packed)
        value_end = value_start
    return bytes(data)


@attr.s(auto_attribs=True)
class ExtentHeader:
    """Header of an extent tree node"""
    magic: int          # 0xF30A
    entries_count: int  # valid entries following the header
    max_entries: int    # capacity of the node
    depth: int          # 0 for leaves
    generation: int = 0

    def pack(self) -> bytes:
        return struct.pack("<HHHHI", self.magic, self.entries_count, self.max_entries, self.depth, self.generation)

    @classmethod
    def unpack(cls, data: bytes) -> "ExtentHeader":
        return cls(*struct.unpack_from("<HHHHI", data, 0))


@attr.s(auto_attribs=True)
class ExtentIndex:
    """Interior node entry pointing at the next level"""
    logical_block: int
    child_block_lo: int
    child_block_hi: int = 0

    @property
    def child_block(self) -> int:
        return (self.child_block_hi << 32) | self.child_block_lo

    def pack(self) -> bytes:
        return struct.pack("<IIHH", self.logical_block, self.child_block_lo, self.child_block_hi, 0)

    @classmethod
    def unpack(cls, data: bytes, offset: int = 0) -> "ExtentIndex":
        logical_block, child_lo, child_hi, _unused = struct.unpack_from("<IIHH", data, offset)
        return cls(logical_block, child_lo, child_hi)


@attr.s(auto_attribs=True)
class ExtentLeaf:
    """Leaf entry mapping a run of logical blocks (12 bytes)"""
    logical_block: int
    block_count: int     # above 32768 marks an uninitialized extent
    start_block_hi: int
    start_block_lo: int

    def pack(self) -> bytes:
        return struct.pack("<IHHI", self.logical_block, self.block_count, self.start_block_hi, self.start_block_lo)

    @classmethod
    def unpack(cls, data: bytes, offset: int = 0) -> "ExtentLeaf":
        return cls(*struct.unpack_from("<IHHI", data, offset))

    def get_start_block(self) -> int:
        return (self.start_block_hi << 32) | self.start_block_lo

    @property
    def uninitialized(self) -> bool:
        return self.block_count > EXTENT_INIT_MAX_LEN

    @property
    def length(self) -> int:
        if self.uninitialized:
            return self.block_count - EXTENT_INIT_MAX_LEN
        return self.block_count


def decode_rec_len(rec_len: int, block_size: int) -> int:
    """Decode a directory record length, including the 64KiB block encoding"""
    if block_size < 65536:
        return rec_len
    if rec_len == 65535 or rec_len == 0:
        return block_size
    return (rec_len & 65532) | ((rec_len & 3) << 16)


def encode_rec_len(length: int, block_size: int) -> int:
    if block_size < 65536:
        return length
    if length == block_size:
        return 65535 if block_size == 65536 else 0
    return (length & 65532) | ((length >> 16) & 3)


@attr.s(auto_attribs=True)
class DirEntry:
    """Directory entry structure"""

    inode_num: int
    rec_len: int
    name: bytes
    file_type: int = 0

    @property
    def name_len(self) -> int:
        return len(self.name)

    @staticmethod
    def min_length(name_len: int) -> int:
        return (DIRENTRY_HEADER_SIZE + name_len + 3) & ~3

    def pack(self, block_size: int, has_filetype: bool = True) -> bytes:
        if has_filetype:
            header = struct.pack("<IHBB", self.inode_num, encode_rec_len(self.rec_len, block_size),
                                 self.name_len, self.file_type)
        else:
            header = struct.pack("<IHH", self.inode_num, encode_rec_len(self.rec_len, block_size), self.name_len)
        return (header + self.name).ljust(self.rec_len, b"\x00")

    @classmethod
    def unpack(cls, data: bytes, offset: int, block_size: int,
               has_filetype: bool = True) -> "DirEntry":
        """Decode the entry at offset; raises ValueError when it does not fit the block"""
        if offset + DIRENTRY_HEADER_SIZE > len(data):
            raise ValueError(f"Directory entry header at offset {offset} crosses the block end")

        if has_filetype:
            inode_num, raw_rec_len, name_len, file_type = struct.unpack_from("<IHBB", data, offset)
        else:
            inode_num, raw_rec_len, name_len = struct.unpack_from("<IHH", data, offset)
            file_type = 0
            # High byte is unused on filesystems without the filetype feature
            name_len &= 0xFF

        rec_len = decode_rec_len(raw_rec_len, block_size)
        if rec_len < DIRENTRY_HEADER_SIZE or rec_len % 4 != 0:
            raise ValueError(f"Invalid record length {rec_len} at offset {offset}")
        if offset + rec_len > len(data):
            raise ValueError(f"Directory entry at offset {offset} overruns the block")
        if DIRENTRY_HEADER_SIZE + name_len > rec_len:
            raise ValueError(f"Name length {name_len} exceeds record length {rec_len} at offset {offset}")

        name_start = offset + DIRENTRY_HEADER_SIZE
        return cls(inode_num, rec_len, bytes(data[name_start:name_start + name_len]), file_type)


def unpack_extent_node(data: bytes) -> Tuple[ExtentHeader, List[object]]:
    """Decode an extent node into its header and index or leaf entries"""
    header = ExtentHeader.unpack(data)
    if header.magic != EXTENT_MAGIC:
        raise ValueError(f"Bad extent magic 0x{header.magic:04x}")
    capacity = (len(data) - EXTENT_ENTRY_SIZE) // EXTENT_ENTRY_SIZE
    if header.entries_count > header.max_entries or header.max_entries > capacity:
        raise ValueError(f"Extent node claims {header.entries_count}/{header.max_entries} entries, room for {capacity}")

    entry_cls = ExtentLeaf if header.depth == 0 else ExtentIndex
    entries = [
        entry_cls.unpack(data, EXTENT_ENTRY_SIZE * (i + 1))
        for i in range(header.entries_count)
    ]
    return header, entries


def pack_extent_node(depth: int, entries: List[object], capacity: int,
                     node_size: Optional[int] = None) -> bytes:
    header = ExtentHeader(EXTENT_MAGIC, len(entries), capacity, depth)
    data = header.pack() + b"".join(e.pack() for e in entries)
    size = node_size if node_size is not None else EXTENT_ENTRY_SIZE * (capacity + 1)
    return data.ljust(size, b"\x00")
