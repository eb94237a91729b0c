"""
Build small ext2/ext4 images without mke2fs or root privileges.

All group metadata is packed at the start of the image (flex_bg style) and
data blocks are handed out sequentially, so the layout is deterministic.
"""

import struct
import sys
from typing import Dict, Iterable, List, Optional, Tuple

import attr

from extfs import (
    ROOT_INODE, S_IFBLK, S_IFCHR, S_IFDIR, S_IFIFO, S_IFLNK, S_IFMT, S_IFREG, S_IFSOCK,
)
from extstruct import (
    BG_INODE_UNINIT, DIRECT_BLOCKS, DIND_BLOCK, EMBEDDED_STORAGE_SIZE, EXT2_NAME_LEN,
    EXT4_EXTENTS_FL, EXT4_INLINE_DATA_FL, EXTENT_ENTRY_SIZE, EXTENT_INIT_MAX_LEN,
    GOOD_OLD_FIRST_INO, GROUP_DESC_SIZE, IND_BLOCK, INCOMPAT_EXTENTS, INCOMPAT_FILETYPE,
    INCOMPAT_FLEX_BG, INCOMPAT_INLINE_DATA, INLINE_DATA_XATTR, INODE_BASE_SIZE, SUPERBLOCK_OFFSET,
    DirEntry, ExtentIndex, ExtentLeaf, GroupDesc, Inode, Superblock, pack_extent_node,
    pack_inode_xattrs,
)

DEFAULT_TIMESTAMP = 1700000000
RO_COMPAT_GDT_CSUM = 0x0010
EXTRA_ISIZE = 32

FILE_TYPES = {
    S_IFREG: 1,
    S_IFDIR: 2,
    S_IFCHR: 3,
    S_IFBLK: 4,
    S_IFIFO: 5,
    S_IFSOCK: 6,
    S_IFLNK: 7,
}


@attr.s(auto_attribs=True)
class Node:
    ino: int
    mode: int
    uid: int = 0
    gid: int = 0
    atime: int = DEFAULT_TIMESTAMP
    ctime: int = DEFAULT_TIMESTAMP
    mtime: int = DEFAULT_TIMESTAMP
    parent: int = 0
    data: bytes = b""
    device: Tuple[int, int] = (0, 0)
    new_device_encoding: bool = False
    inline: bool = False
    holes: frozenset = frozenset()
    entries: List[Tuple[bytes, int]] = attr.ib(factory=list)
    links_override: Optional[int] = None


def _ceil_div(a: int, b: int) -> int:
    return (a + b - 1) // b


def _as_name(name) -> bytes:
    if isinstance(name, str):
        name = name.encode("utf-8")
    if not 0 < len(name) <= EXT2_NAME_LEN:
        raise ValueError(f"Invalid name length {len(name)}")
    return name


class ImageBuilder:
    """In-memory description of a filesystem, rendered by build()"""

    def __init__(self, block_size: int = 1024, blocks_count: int = 4096,
                 inodes_per_group: int = 128, blocks_per_group: Optional[int] = None,
                 inode_size: int = 128, extents: bool = False, lazy_itable: bool = False,
                 extra_incompat: int = 0, volume_name: bytes = b""):
        self.block_size = block_size
        self.blocks_count = blocks_count
        self.inodes_per_group = inodes_per_group
        self.blocks_per_group = blocks_per_group or 8 * block_size
        self.inode_size = inode_size
        self.extents = extents
        self.lazy_itable = lazy_itable
        self.extra_incompat = extra_incompat
        self.volume_name = volume_name

        self.first_data_block = 1 if block_size == 1024 else 0
        self.group_count = _ceil_div(blocks_count - self.first_data_block, self.blocks_per_group)
        self.inodes_count = self.group_count * inodes_per_group

        self.nodes: Dict[int, Node] = {}
        self.links: Dict[int, int] = {}
        self.next_ino = GOOD_OLD_FIRST_INO
        self.uses_inline_data = False

        self.nodes[ROOT_INODE] = Node(ROOT_INODE, S_IFDIR | 0o755, parent=ROOT_INODE)
        self.links[ROOT_INODE] = 2

        self._layout_metadata()

    @property
    def root(self) -> int:
        return ROOT_INODE

    def _layout_metadata(self):
        bs = self.block_size
        self.gdt_block = self.first_data_block + 1
        gdt_blocks = _ceil_div(self.group_count * GROUP_DESC_SIZE, bs)
        itable_blocks = _ceil_div(self.inodes_per_group * self.inode_size, bs)

        next_block = self.gdt_block + gdt_blocks
        self.group_descriptors: List[GroupDesc] = []
        for _ in range(self.group_count):
            self.group_descriptors.append(GroupDesc(
                block_bitmap_block=next_block,
                inode_bitmap_block=next_block + 1,
                inode_table_block=next_block + 2,
                free_blocks_count=0,
                free_inodes_count=0,
            ))
            next_block += 2 + itable_blocks
        if next_block >= self.blocks_count:
            raise ValueError("Image too small for its metadata")
        self.first_free_block = next_block

    # Tree description

    def _new_node(self, parent: int, name, mode: int, **kwargs) -> int:
        if (self.nodes[parent].mode & S_IFMT) != S_IFDIR:
            raise ValueError(f"Inode {parent} is not a directory")
        if self.next_ino > self.inodes_count:
            raise ValueError("No free inodes available")
        ino = self.next_ino
        self.next_ino += 1
        self.nodes[ino] = Node(ino, mode, parent=parent, **kwargs)
        self.nodes[parent].entries.append((_as_name(name), ino))
        self.links[ino] = 1
        return ino

    def mkdir(self, parent: int, name, mode: int = 0o755, **kwargs) -> int:
        ino = self._new_node(parent, name, S_IFDIR | mode, **kwargs)
        self.links[ino] += 1        # "."
        self.links[parent] += 1     # ".."
        return ino

    def add_file(self, parent: int, name, data: bytes = b"", mode: int = 0o644,
                 holes: Iterable[int] = (), inline: bool = False, **kwargs) -> int:
        if inline:
            if len(data) > EMBEDDED_STORAGE_SIZE and self.inode_size == INODE_BASE_SIZE:
                raise ValueError("Inline data past i_block needs inodes larger than 128 bytes")
            self.uses_inline_data = True
        return self._new_node(parent, name, S_IFREG | mode, data=data,
                              holes=frozenset(holes), inline=inline, **kwargs)

    def link(self, parent: int, name, ino: int):
        if (self.nodes[ino].mode & S_IFMT) == S_IFDIR:
            raise ValueError("Hard links to directories are not allowed")
        self.nodes[parent].entries.append((_as_name(name), ino))
        self.links[ino] += 1

    def symlink(self, parent: int, name, target, **kwargs) -> int:
        if isinstance(target, str):
            target = target.encode("utf-8")
        return self._new_node(parent, name, S_IFLNK | 0o777, data=target, **kwargs)

    def mknod(self, parent: int, name, kind: int, major: int = 0, minor: int = 0,
              mode: int = 0o600, new_encoding: bool = False, **kwargs) -> int:
        if kind not in (S_IFCHR, S_IFBLK, S_IFIFO, S_IFSOCK):
            raise ValueError(f"Not a special file type: 0o{kind:o}")
        return self._new_node(parent, name, kind | mode, device=(major, minor),
                              new_device_encoding=new_encoding, **kwargs)

    def mkfifo(self, parent: int, name, mode: int = 0o644, **kwargs) -> int:
        return self.mknod(parent, name, S_IFIFO, mode=mode, **kwargs)

    def set_links(self, ino: int, count: int):
        self.nodes[ino].links_override = count

    # Rendering

    def _alloc_block(self) -> int:
        block = self._next_block
        if block >= self.blocks_count:
            raise ValueError("No free blocks available")
        self._next_block += 1
        return block

    def _write_block(self, image: bytearray, block: int, data: bytes):
        offset = block * self.block_size
        image[offset:offset + len(data)] = data

    def _pointer_block(self, image: bytearray, pointers: Dict[int, int]) -> int:
        per_block = self.block_size // 4
        words = [0] * per_block
        for index, block in pointers.items():
            words[index] = block
        block = self._alloc_block()
        self._write_block(image, block, struct.pack(f"<{per_block}I", *words))
        return block

    def _block_map(self, image: bytearray, mapping: Dict[int, int]) -> Tuple[bytes, int]:
        per_block = self.block_size // 4
        words = [0] * 15
        indirect: Dict[int, int] = {}
        double: Dict[int, Dict[int, int]] = {}

        for logical, physical in sorted(mapping.items()):
            if logical < DIRECT_BLOCKS:
                words[logical] = physical
            elif logical < DIRECT_BLOCKS + per_block:
                indirect[logical - DIRECT_BLOCKS] = physical
            elif logical < DIRECT_BLOCKS + per_block + per_block ** 2:
                rel = logical - DIRECT_BLOCKS - per_block
                double.setdefault(rel // per_block, {})[rel % per_block] = physical
            else:
                raise ValueError("File too large for the image builder")

        meta = 0
        if indirect:
            words[IND_BLOCK] = self._pointer_block(image, indirect)
            meta += 1
        if double:
            children = {}
            for index, pointers in double.items():
                children[index] = self._pointer_block(image, pointers)
            words[DIND_BLOCK] = self._pointer_block(image, children)
            meta += len(children) + 1
        return struct.pack("<15I", *words), meta

    def _extent_tree(self, image: bytearray, mapping: Dict[int, int]) -> Tuple[bytes, int]:
        leaves: List[ExtentLeaf] = []
        for logical, physical in sorted(mapping.items()):
            if leaves:
                last = leaves[-1]
                if (last.logical_block + last.block_count == logical
                        and last.get_start_block() + last.block_count == physical
                        and last.block_count < EXTENT_INIT_MAX_LEN):
                    last.block_count += 1
                    continue
            leaves.append(ExtentLeaf(logical, 1, physical >> 32, physical & 0xFFFFFFFF))

        root_capacity = EMBEDDED_STORAGE_SIZE // EXTENT_ENTRY_SIZE - 1
        if len(leaves) <= root_capacity:
            return pack_extent_node(0, leaves, root_capacity), 0

        per_block = (self.block_size - EXTENT_ENTRY_SIZE) // EXTENT_ENTRY_SIZE
        chunks = [leaves[i:i + per_block] for i in range(0, len(leaves), per_block)]
        if len(chunks) > root_capacity:
            raise ValueError("Too many extents for the image builder")
        indexes = []
        for chunk in chunks:
            block = self._alloc_block()
            self._write_block(image, block, pack_extent_node(0, chunk, per_block, self.block_size))
            indexes.append(ExtentIndex(chunk[0].logical_block, block & 0xFFFFFFFF, block >> 32))
        return pack_extent_node(1, indexes, root_capacity), len(chunks)

    def _store_data(self, image: bytearray, data: bytes, holes: frozenset) -> Tuple[bytes, int, int]:
        """Write data blocks; returns (i_block, i_flags, blocks used)"""
        bs = self.block_size
        mapping: Dict[int, int] = {}
        for logical in range(_ceil_div(len(data), bs)):
            if logical in holes:
                continue
            physical = self._alloc_block()
            self._write_block(image, physical, data[logical * bs:(logical + 1) * bs])
            mapping[logical] = physical

        if self.extents:
            i_block, meta = self._extent_tree(image, mapping)
            return i_block, EXT4_EXTENTS_FL, len(mapping) + meta
        i_block, meta = self._block_map(image, mapping)
        return i_block, 0, len(mapping) + meta

    def _dir_data(self, node: Node) -> bytes:
        bs = self.block_size
        entries = [(b".", node.ino), (b"..", node.parent)] + node.entries
        blocks: List[List[DirEntry]] = [[]]
        used = 0
        for name, ino in entries:
            needed = DirEntry.min_length(len(name))
            if used + needed > bs:
                blocks.append([])
                used = 0
            file_type = FILE_TYPES[self.nodes[ino].mode & S_IFMT]
            blocks[-1].append(DirEntry(ino, needed, name, file_type))
            used += needed

        data = bytearray()
        for block in blocks:
            block[-1].rec_len += bs - sum(e.rec_len for e in block)
            data += b"".join(e.pack(bs) for e in block)
        return bytes(data)

    def _device_words(self, node: Node) -> bytes:
        major, minor = node.device
        words = [0] * 15
        if node.new_device_encoding:
            words[1] = (minor & 0xFF) | (major << 8) | ((minor & ~0xFF) << 12)
        else:
            words[0] = (major << 8) | minor
        return struct.pack("<15I", *words)

    def _build_inode(self, image: bytearray, node: Node) -> Inode:
        fmt = node.mode & S_IFMT
        i_block = b"\x00" * EMBEDDED_STORAGE_SIZE
        flags = 0
        used_blocks = 0
        size = 0

        if fmt == S_IFDIR:
            data = self._dir_data(node)
            size = len(data)
            i_block, flags, used_blocks = self._store_data(image, data, frozenset())
        elif fmt == S_IFREG and node.inline:
            size = len(node.data)
            i_block = node.data[:EMBEDDED_STORAGE_SIZE].ljust(EMBEDDED_STORAGE_SIZE, b"\x00")
            flags = EXT4_INLINE_DATA_FL
        elif fmt == S_IFREG:
            size = len(node.data)
            i_block, flags, used_blocks = self._store_data(image, node.data, node.holes)
        elif fmt == S_IFLNK:
            size = len(node.data)
            if size < EMBEDDED_STORAGE_SIZE:
                i_block = node.data.ljust(EMBEDDED_STORAGE_SIZE, b"\x00")
            else:
                i_block, flags, used_blocks = self._store_data(image, node.data, frozenset())
        elif fmt in (S_IFCHR, S_IFBLK):
            i_block = self._device_words(node)

        extra = b""
        if self.inode_size > INODE_BASE_SIZE:
            xattrs = {}
            if flags & EXT4_INLINE_DATA_FL:
                xattrs[INLINE_DATA_XATTR] = node.data[EMBEDDED_STORAGE_SIZE:]
            extra = pack_inode_xattrs(xattrs, EXTRA_ISIZE, self.inode_size - INODE_BASE_SIZE)

        links = node.links_override if node.links_override is not None else self.links[node.ino]
        return Inode(
            mode=node.mode,
            uid=node.uid,
            size_lo=size & 0xFFFFFFFF,
            atime=node.atime,
            ctime=node.ctime,
            mtime=node.mtime,
            dtime=0,
            gid=node.gid,
            links_count=links,
            blocks=used_blocks * (self.block_size // 512),
            flags=flags,
            block=i_block,
            size_high=size >> 32,
            extra=extra,
        )

    def _bitmap(self, used: int, valid: int) -> bytes:
        """First `used` bits set, bits past `valid` set as padding"""
        bits = bytearray(self.block_size)
        for i in list(range(used)) + list(range(valid, self.block_size * 8)):
            bits[i // 8] |= 1 << (i % 8)
        return bytes(bits)

    def build(self) -> bytes:
        bs = self.block_size
        image = bytearray(self.blocks_count * bs)
        self._next_block = self.first_free_block

        inodes = {ino: self._build_inode(image, node) for ino, node in sorted(self.nodes.items())}

        used_inodes = self.next_ino - 1
        for ino, inode in inodes.items():
            group, index = divmod(ino - 1, self.inodes_per_group)
            offset = self.group_descriptors[group].inode_table_block * bs + index * self.inode_size
            packed = inode.pack()
            image[offset:offset + len(packed)] = packed

        free_blocks_total = 0
        for group, gd in enumerate(self.group_descriptors):
            group_start = self.first_data_block + group * self.blocks_per_group
            group_blocks = min(self.blocks_per_group, self.blocks_count - group_start)
            used_blocks = max(0, min(group_blocks, self._next_block - group_start))
            group_inodes_used = max(0, min(self.inodes_per_group, used_inodes - group * self.inodes_per_group))

            gd.free_blocks_count = group_blocks - used_blocks
            gd.free_inodes_count = self.inodes_per_group - group_inodes_used
            gd.used_dirs_count = sum(
                1 for ino, node in self.nodes.items()
                if (ino - 1) // self.inodes_per_group == group and (node.mode & S_IFMT) == S_IFDIR
            )
            gd.flags = BG_INODE_UNINIT if self.lazy_itable and group_inodes_used == 0 else 0
            free_blocks_total += gd.free_blocks_count

            self._write_block(image, gd.block_bitmap_block, self._bitmap(used_blocks, group_blocks))
            self._write_block(image, gd.inode_bitmap_block, self._bitmap(group_inodes_used, self.inodes_per_group))

        gdt = b"".join(gd.pack() for gd in self.group_descriptors)
        self._write_block(image, self.gdt_block, gdt)

        incompat = INCOMPAT_FILETYPE | INCOMPAT_FLEX_BG | self.extra_incompat
        if self.extents:
            incompat |= INCOMPAT_EXTENTS
        if self.uses_inline_data:
            incompat |= INCOMPAT_INLINE_DATA

        superblock = Superblock(
            inodes_count=self.inodes_count,
            blocks_count=self.blocks_count,
            free_blocks_count=free_blocks_total,
            free_inodes_count=self.inodes_count - used_inodes,
            first_data_block=self.first_data_block,
            log_block_size=(bs // 1024).bit_length() - 1,
            blocks_per_group=self.blocks_per_group,
            inodes_per_group=self.inodes_per_group,
            inode_size=self.inode_size,
            feature_incompat=incompat,
            feature_ro_compat=RO_COMPAT_GDT_CSUM if self.lazy_itable else 0,
            volume_name=self.volume_name,
        )
        image[SUPERBLOCK_OFFSET:SUPERBLOCK_OFFSET + 1024] = superblock.pack()
        return bytes(image)

    def write(self, image_path: str):
        with open(image_path, "wb") as f:
            f.write(self.build())


def sample_builder(extents: bool = False) -> ImageBuilder:
    """A small tree with one object of every exportable type"""
    b = ImageBuilder(extents=extents, volume_name=b"sample")
    etc = b.mkdir(b.root, "etc")
    b.add_file(etc, "hostname", b"sample\n")
    b.add_file(etc, "motd", b"Welcome\n" * 200, uid=1000, gid=1000)
    bin_dir = b.mkdir(b.root, "bin")
    b.add_file(bin_dir, "sh", bytes(range(256)) * 20, mode=0o755)
    b.symlink(bin_dir, "bash", "sh")
    dev = b.mkdir(b.root, "dev")
    b.mknod(dev, "console", S_IFCHR, 5, 1)
    b.mknod(dev, "tty", S_IFCHR, 5, 0, new_encoding=True)
    return b


def main():
    image_path = sys.argv[1] if len(sys.argv) > 1 else "fs.img"
    sample_builder(extents="--extents" in sys.argv).write(image_path)


if __name__ == "__main__":
    main()
