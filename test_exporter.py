import logging

import pytest

from archive import ArchiveWriter
from errors import (
    ArchiveError, CorruptInodeError, FatalError, ShortWriteError, UnsupportedObjectError,
)
from exporter import ExportContext, ExportOptions, export_tree, run_export
from extfs import S_IFBLK, open_filesystem
from mkfs import ImageBuilder, sample_builder

SAMPLE_NAMES = [
    "etc", "bin", "dev",
    "etc/hostname", "etc/motd",
    "bin/sh", "bin/bash",
    "dev/console", "dev/tty",
]


class TestSampleExport:
    def test_members(self, export_image, read_archive):
        summary, archive = export_image(sample_builder())
        members = read_archive(archive)
        assert list(members) == SAMPLE_NAMES

        assert members["etc"][0].isdir()
        assert members["etc/hostname"][1] == b"sample\n"
        motd, content = members["etc/motd"]
        assert content == b"Welcome\n" * 200
        assert (motd.uid, motd.gid) == (1000, 1000)
        sh, content = members["bin/sh"]
        assert content == bytes(range(256)) * 20
        assert sh.mode == 0o755

        bash = members["bin/bash"][0]
        assert bash.issym()
        assert bash.linkname == "sh"

        console = members["dev/console"][0]
        assert console.ischr()
        assert (console.devmajor, console.devminor) == (5, 1)
        tty = members["dev/tty"][0]
        assert (tty.devmajor, tty.devminor) == (5, 0)

    def test_summary(self, export_image):
        summary, _ = export_image(sample_builder())
        assert summary.exported == 9
        assert summary.abandoned == 0
        assert summary.bytes_written == 7 + 1600 + 5120
        assert summary.directory_blocks == 4
        assert summary.kinds == {"directory": 3, "regular file": 3, "symlink": 1, "char device": 2}

    def test_pax_times(self, export_image, read_archive):
        b = ImageBuilder()
        b.add_file(b.root, "f", b"x", atime=1600000001, ctime=1600000002, mtime=1600000003)
        _, archive = export_image(b)
        member = read_archive(archive)["f"][0]
        assert member.mtime == 1600000003
        assert float(member.pax_headers["atime"]) == 1600000001
        assert float(member.pax_headers["ctime"]) == 1600000002

    def test_repeatable(self, export_image):
        _, first = export_image(sample_builder())
        _, second = export_image(sample_builder())
        with open(first, "rb") as f1, open(second, "rb") as f2:
            assert f1.read() == f2.read()

    def test_extents_and_block_maps_agree(self, export_image):
        _, mapped = export_image(sample_builder(extents=False))
        _, extents = export_image(sample_builder(extents=True))
        with open(mapped, "rb") as f1, open(extents, "rb") as f2:
            assert f1.read() == f2.read()

    def test_compressed_archive(self, export_image, read_archive):
        _, archive = export_image(sample_builder(), suffix=".tar.gz", compression="gz")
        assert list(read_archive(archive, "r:gz")) == SAMPLE_NAMES

    @pytest.mark.parametrize("format", ["gnu", "ustar"])
    def test_other_formats(self, export_image, read_archive, format):
        _, archive = export_image(sample_builder(), format=format)
        members = read_archive(archive)
        assert list(members) == SAMPLE_NAMES
        assert members["bin/sh"][1] == bytes(range(256)) * 20


class TestContent:
    def test_large_sparse_file(self, export_image, read_archive):
        b = ImageBuilder(extents=True)
        holes = set(range(5, 40))
        data = b"".join(b"\x00" * 1024 if i in holes else bytes([i]) * 1024 for i in range(64))
        b.add_file(b.root, "sparse", data, holes=holes)
        summary, archive = export_image(b)
        assert read_archive(archive)["sparse"][1] == data
        assert summary.bytes_written == len(data)

    def test_multi_block_directory(self, export_image, read_archive):
        b = ImageBuilder()
        d = b.mkdir(b.root, "many")
        for i in range(100):
            b.add_file(d, f"file-{i:03d}", str(i).encode())
        _, archive = export_image(b)
        members = read_archive(archive)
        assert len(members) == 101
        assert members["many/file-099"][1] == b"99"

    def test_undecodable_name(self, export_image, read_archive):
        b = ImageBuilder()
        b.add_file(b.root, b"caf\xe9", b"latin-1")
        _, archive = export_image(b)
        assert read_archive(archive)["caf\udce9"][1] == b"latin-1"

    def test_inline_data_file(self, export_image, read_archive):
        b = ImageBuilder(inode_size=256, extents=True)
        data = b"inline body " * 9
        b.add_file(b.root, "small", data, inline=True)
        b.add_file(b.root, "tiny", b"hi", inline=True)
        summary, archive = export_image(b)
        members = read_archive(archive)
        assert members["small"][1] == data
        assert members["tiny"][1] == b"hi"
        assert summary.bytes_written == len(data) + 2

    def test_pre_epoch_times(self, export_image, read_archive):
        b = ImageBuilder()
        b.add_file(b.root, "old", b"1969", atime=-200, ctime=-300, mtime=-100)
        _, archive = export_image(b)
        member = read_archive(archive)["old"][0]
        assert member.mtime == -100
        assert float(member.pax_headers["atime"]) == -200
        assert float(member.pax_headers["ctime"]) == -300

    def test_empty_file(self, export_image, read_archive):
        b = ImageBuilder()
        b.add_file(b.root, "empty")
        _, archive = export_image(b)
        member, content = read_archive(archive)["empty"]
        assert member.size == 0
        assert content == b""


class TestHardLinks:
    def test_each_link_is_archived(self, export_image, read_archive, caplog):
        b = ImageBuilder()
        ino = b.add_file(b.root, "a", b"shared")
        b.link(b.root, "b", ino)
        with caplog.at_level(logging.WARNING, logger="exporter"):
            summary, archive = export_image(b)

        members = read_archive(archive)
        assert members["a"][1] == members["b"][1] == b"shared"
        assert members["b"][0].isreg()
        assert summary.hard_links == 2
        assert len([r for r in caplog.records if "links" in r.getMessage()]) == 2


class TestFailures:
    def run(self, write_image, tmp_path, builder, **options):
        return run_export(write_image(builder), str(tmp_path / "out.tar"), ExportOptions(**options))

    def test_fifo_aborts_the_run(self, write_image, tmp_path, read_archive):
        b = ImageBuilder()
        b.mkfifo(b.root, "pipe")
        b.add_file(b.root, "after", b"never")
        with pytest.raises(UnsupportedObjectError, match="fifo"):
            self.run(write_image, tmp_path, b)
        assert read_archive(str(tmp_path / "out.tar")) == {}

    def test_block_device_aborts_the_run(self, write_image, tmp_path):
        b = ImageBuilder()
        b.add_file(b.root, "before", b"kept")
        b.mknod(b.root, "sda", S_IFBLK, 8, 0)
        with pytest.raises(UnsupportedObjectError, match="/sda"):
            self.run(write_image, tmp_path, b)

    def test_unlinked_regular_file(self, write_image, tmp_path):
        b = ImageBuilder()
        ino = b.add_file(b.root, "orphan", b"data")
        b.set_links(ino, 0)
        with pytest.raises(CorruptInodeError):
            self.run(write_image, tmp_path, b)

    def test_header_error_is_advisory(self, write_image, tmp_path, read_archive, caplog):
        b = ImageBuilder()
        b.add_file(b.root, "x" * 150, b"too long for ustar")
        b.add_file(b.root, "fine", b"ok")
        with caplog.at_level(logging.WARNING):
            summary = self.run(write_image, tmp_path, b, format="ustar")
        assert summary.abandoned == 1
        assert summary.exported == 1
        assert "Skipping /" + "x" * 150 in caplog.text
        assert read_archive(str(tmp_path / "out.tar"))["fine"][1] == b"ok"

    def test_short_write_is_fatal(self, write_image, tmp_path, monkeypatch):
        b = ImageBuilder()
        b.add_file(b.root, "f", b"y" * 2000)
        monkeypatch.setattr(ArchiveWriter, "write_data", lambda self, data: len(data) - 1)
        with pytest.raises(ShortWriteError):
            self.run(write_image, tmp_path, b)

    def test_image_read_error_is_fatal(self, write_image, tmp_path, break_image_reads, caplog):
        b = ImageBuilder()
        f = b.add_file(b.root, "f", b"a" * 3000)
        b.add_file(b.root, "g", b"b" * 3000)
        with open_filesystem(write_image(b)) as fs:
            break_image_reads(fs, next(fs.iter_blocks(f))[0])
            with ArchiveWriter(str(tmp_path / "out.tar")) as archive:
                with caplog.at_level(logging.WARNING):
                    with pytest.raises(FatalError, match="Input/output error"):
                        export_tree(ExportContext(fs, archive))
        assert "Skipping" not in caplog.text


class TestAbandonedEntries:
    @pytest.fixture
    def failing_body(self, monkeypatch):
        write_data = ArchiveWriter.write_data

        def failing(self, data):
            if self._current.name == "bad":
                raise ArchiveError("No space left on device")
            return write_data(self, data)

        monkeypatch.setattr(ArchiveWriter, "write_data", failing)

    def builder(self) -> ImageBuilder:
        b = ImageBuilder()
        b.add_file(b.root, "bad", b"x" * 1500)
        b.add_file(b.root, "good", b"kept")
        return b

    def test_header_is_removed(self, export_image, read_archive, failing_body):
        summary, archive = export_image(self.builder())
        assert list(read_archive(archive)) == ["good"]
        assert (summary.exported, summary.abandoned, summary.partial) == (1, 1, 0)

    def test_compressed_member_is_padded(self, export_image, read_archive, failing_body, caplog):
        with caplog.at_level(logging.WARNING):
            summary, archive = export_image(self.builder(), suffix=".tar.gz", compression="gz")
        members = read_archive(archive, "r:gz")
        assert list(members) == ["bad", "good"]
        assert members["bad"][1] == b"\x00" * 1500
        assert members["good"][1] == b"kept"
        assert (summary.exported, summary.abandoned, summary.partial) == (1, 1, 1)
        assert "zero-filled" in caplog.text
