import logging

import pytest

from errors import FilesystemError, ScanError
from extfs import ROOT_INODE
from mkfs import ImageBuilder, sample_builder
from traversal import (
    DirectoryBlockList, iter_directory_entries, resolve_path, scan_directory_blocks,
)


class TestDirectoryBlockList:
    def test_add_after_seal(self):
        dblist = DirectoryBlockList()
        dblist.add(2, 100, 0)
        dblist.seal()
        with pytest.raises(ScanError):
            dblist.add(2, 101, 1)
        assert len(dblist) == 1

    def test_free(self):
        dblist = DirectoryBlockList()
        dblist.add(2, 100, 0)
        dblist.seal()
        dblist.free()
        assert len(dblist) == 0
        with pytest.raises(ScanError):
            iter(dblist)

    def test_replay_requires_completed_scan(self, open_image):
        fs = open_image(ImageBuilder())
        with pytest.raises(ScanError):
            list(iter_directory_entries(fs, DirectoryBlockList()))


class TestInodeScan:
    def test_registers_directories_in_inode_order(self, open_image):
        fs = open_image(sample_builder())
        dblist = scan_directory_blocks(fs)
        assert dblist.sealed
        assert dblist.directories() == [ROOT_INODE, 11, 14, 17]
        assert all(b.blockcnt == 0 for b in dblist)

    def test_multi_block_directory_order(self, open_image):
        b = ImageBuilder(extents=True, inodes_per_group=256)
        d = b.mkdir(b.root, "many")
        for i in range(150):
            b.add_file(d, f"entry-{i:04d}")
        fs = open_image(b)

        blocks = [blk for blk in scan_directory_blocks(fs) if blk.dir_ino == d]
        assert [blk.blockcnt for blk in blocks] == [0, 1, 2]

    def test_deleted_directory_is_skipped(self, open_image):
        b = ImageBuilder()
        gone = b.mkdir(b.root, "gone")
        b.set_links(gone, 0)
        fs = open_image(b)
        assert gone not in scan_directory_blocks(fs).directories()

    def test_enumeration_error_is_fatal(self, open_image, monkeypatch):
        fs = open_image(sample_builder())

        def broken(ino, inode=None):
            raise FilesystemError("Block 99999 is beyond filesystem bounds")

        monkeypatch.setattr(fs, "iter_blocks", broken)
        with pytest.raises(ScanError, match="Inode scan failed"):
            scan_directory_blocks(fs)


class TestDirectoryIterator:
    def test_dot_entries_suppressed(self, open_image):
        fs = open_image(sample_builder())
        entries = list(iter_directory_entries(fs, scan_directory_blocks(fs)))
        names = [e.name for e in entries]
        assert b"." not in names
        assert b".." not in names
        assert names == [b"etc", b"bin", b"dev", b"hostname", b"motd", b"sh", b"bash", b"console", b"tty"]

    def test_every_entry_belongs_to_a_registered_block(self, open_image):
        b = ImageBuilder(inodes_per_group=256)
        top = b.mkdir(b.root, "top")
        for i in range(5):
            sub = b.mkdir(top, f"sub{i}")
            for j in range(30):
                b.add_file(sub, f"file-{j:02d}", b"x" * j)
        fs = open_image(b)

        dblist = scan_directory_blocks(fs)
        registered = set(dblist.directories())
        entries = list(iter_directory_entries(fs, dblist))
        assert len(entries) == 1 + 5 + 5 * 30
        assert {e.parent_ino for e in entries} <= registered
        for e in entries:
            assert fs.get_pathname(e.parent_ino, e.child_ino).endswith(e.name.decode())


class TestPathResolver:
    def test_root_is_collapsed(self, open_image):
        fs = open_image(ImageBuilder())
        assert resolve_path(fs, ROOT_INODE, b"file") == "/file"

    def test_nested(self, open_image):
        b = ImageBuilder()
        a = b.mkdir(b.root, "a")
        c = b.mkdir(a, "c")
        fs = open_image(b)
        assert resolve_path(fs, c, b"leaf") == "/a/c/leaf"

    def test_names_taken_verbatim(self, open_image, caplog):
        fs = open_image(ImageBuilder())
        with caplog.at_level(logging.WARNING):
            assert resolve_path(fs, ROOT_INODE, b"caf\xe9") == "/caf\udce9"
            assert resolve_path(fs, ROOT_INODE, b"a\nb") == "/a\nb"
        assert caplog.text == ""
