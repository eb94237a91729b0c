import logging
import tarfile

import pytest

from ext2tar import build_parser, guess_compression, main
from mkfs import ImageBuilder, sample_builder


@pytest.fixture(autouse=True)
def restore_logging():
    root = logging.getLogger()
    handlers, level = root.handlers[:], root.level
    yield
    root.handlers[:] = handlers
    root.setLevel(level)


def test_export(write_image, tmp_path, capsys):
    archive = str(tmp_path / "out.tar")
    assert main([write_image(sample_builder()), archive]) == 0
    out = capsys.readouterr().out
    assert "Export summary" in out
    with tarfile.open(archive) as tar:
        assert "bin/bash" in tar.getnames()


def test_compression_from_suffix(write_image, tmp_path):
    archive = str(tmp_path / "out.tgz")
    assert main([write_image(sample_builder()), archive, "-q"]) == 0
    with tarfile.open(archive, "r:gz") as tar:
        assert len(tar.getnames()) == 9


def test_explicit_compression(write_image, tmp_path):
    archive = str(tmp_path / "out.archive")
    assert main([write_image(sample_builder()), archive, "--compress", "bz2", "--format", "gnu"]) == 0
    with tarfile.open(archive, "r:bz2") as tar:
        assert tar.getmember("etc/motd").size == 1600


def test_quiet_skips_summary(write_image, tmp_path, capsys):
    assert main([write_image(sample_builder()), str(tmp_path / "out.tar"), "--quiet"]) == 0
    assert "Export summary" not in capsys.readouterr().out


def test_fatal_error(write_image, tmp_path, capsys):
    b = ImageBuilder()
    b.mkfifo(b.root, "pipe")
    assert main([write_image(b), str(tmp_path / "out.tar")]) == 1
    out = capsys.readouterr().out
    assert "fatal" in out
    assert "unsupported fifo /pipe" in out


def test_missing_image(tmp_path, capsys):
    assert main([str(tmp_path / "nope.img"), str(tmp_path / "out.tar")]) == 1
    assert "fatal" in capsys.readouterr().out


def test_usage_error():
    with pytest.raises(SystemExit) as excinfo:
        build_parser().parse_args(["only-one"])
    assert excinfo.value.code == 2


def test_verbose_and_quiet_conflict():
    with pytest.raises(SystemExit):
        build_parser().parse_args(["a.img", "a.tar", "-v", "-q"])


@pytest.mark.parametrize("path, compression", [
    ("a.tar", "none"),
    ("a.tar.gz", "gz"),
    ("A.TGZ", "gz"),
    ("a.tar.bz2", "bz2"),
    ("a.txz", "xz"),
])
def test_guess_compression(path, compression):
    assert guess_compression(path) == compression
