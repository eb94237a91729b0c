import errno
import itertools
import os
import tarfile

import pytest

from exporter import ExportOptions, run_export
from extfs import open_filesystem


@pytest.fixture
def write_image(tmp_path):
    counter = itertools.count()

    def _write(builder) -> str:
        path = tmp_path / f"fs{next(counter)}.img"
        builder.write(str(path))
        return str(path)

    return _write


@pytest.fixture
def open_image(write_image):
    opened = []

    def _open(builder):
        fs = open_filesystem(write_image(builder))
        opened.append(fs)
        return fs

    yield _open
    for fs in opened:
        fs.close()


@pytest.fixture
def read_archive():
    def _read(archive_path: str, mode: str = "r"):
        """Members in archive order as {name: (TarInfo, content or None)}"""
        members = {}
        with tarfile.open(archive_path, mode) as tar:
            for member in tar.getmembers():
                content = tar.extractfile(member).read() if member.isreg() else None
                members[member.name] = (member, content)
        return members

    return _read


@pytest.fixture
def export_image(tmp_path, write_image):
    counter = itertools.count()

    def _export(builder, suffix: str = ".tar", **options):
        image = write_image(builder)
        archive = str(tmp_path / f"out{next(counter)}{suffix}")
        summary = run_export(image, archive, ExportOptions(**options))
        return summary, archive

    return _export


class FailingImage:
    """Image file whose reads at or past fail_at raise EIO"""

    def __init__(self, image_file, fail_at: int):
        self.image_file = image_file
        self.fail_at = fail_at

    def seek(self, offset: int, whence: int = 0) -> int:
        return self.image_file.seek(offset, whence)

    def read(self, size: int = -1) -> bytes:
        if self.image_file.tell() >= self.fail_at:
            raise OSError(errno.EIO, os.strerror(errno.EIO))
        return self.image_file.read(size)

    def close(self):
        self.image_file.close()


@pytest.fixture
def break_image_reads():
    def _break(fs, from_block: int):
        fs.image_file = FailingImage(fs.image_file, from_block * fs.block_size)

    return _break
