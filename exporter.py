import logging
from typing import Dict, Optional

import attr

from archive import ArchiveEntry, ArchiveWriter
from errors import ArchiveError, CorruptInodeError, ShortWriteError
from extfs import ExtFilesystem, open_filesystem
from extstruct import Inode
from inodes import InodeKind, check_supported, classify, encode_device, resolve_symlink
from traversal import iter_directory_entries, resolve_path, scan_directory_blocks

log = logging.getLogger(__name__)

CHUNK_SIZE = 512


@attr.s(auto_attribs=True)
class ExportOptions:
    format: str = "pax"
    compression: str = "none"


@attr.s(auto_attribs=True)
class ExportOutcome:
    path: str
    kind: InodeKind
    exported: bool
    bytes_written: int = 0
    error: Optional[str] = None
    # Header was written before the failure and the padded member stayed in the archive
    partial: bool = False


@attr.s(auto_attribs=True)
class ExportSummary:
    exported: int = 0
    abandoned: int = 0
    partial: int = 0
    bytes_written: int = 0
    directory_blocks: int = 0
    hard_links: int = 0
    kinds: Dict[str, int] = attr.ib(factory=dict)

    def record(self, outcome: ExportOutcome):
        if outcome.exported:
            self.exported += 1
            self.bytes_written += outcome.bytes_written
        else:
            self.abandoned += 1
            if outcome.partial:
                self.partial += 1
        self.kinds[outcome.kind.value] = self.kinds.get(outcome.kind.value, 0) + 1


@attr.s(auto_attribs=True)
class ExportContext:
    """Everything one export run touches, passed explicitly to each step"""
    fs: ExtFilesystem
    archive: ArchiveWriter
    options: ExportOptions = attr.ib(factory=ExportOptions)
    summary: ExportSummary = attr.ib(factory=ExportSummary)


def _archive_path(path: str) -> str:
    return path[1:] if path.startswith("/") else path


def _fill_header(entry: ArchiveEntry, inode: Inode, path: str):
    entry.set_pathname(_archive_path(path))
    entry.set_mode(inode.mode)
    entry.set_size(inode.size)
    entry.set_nlink(inode.links_count)
    entry.set_uid(inode.uid)
    entry.set_gid(inode.gid)
    entry.set_atime(inode.atime)
    entry.set_ctime(inode.ctime)
    entry.set_mtime(inode.mtime)


def _stream_content(ctx: ExportContext, inode_num: int, inode: Inode, path: str) -> int:
    total = 0
    with ctx.fs.open_file(inode_num, inode) as f:
        while True:
            chunk = f.read(CHUNK_SIZE)
            if not chunk:
                break
            written = ctx.archive.write_data(chunk)
            if written != len(chunk):
                raise ShortWriteError(path, len(chunk), written)
            total += written
    return total


def export_entry(ctx: ExportContext, inode_num: int, path: str) -> ExportOutcome:
    """Write one archive member for the object at path"""
    inode = ctx.fs.read_inode(inode_num)
    kind = classify(inode, path)
    check_supported(kind, path)

    if kind is InodeKind.REGULAR_FILE:
        if inode.links_count == 0:
            raise CorruptInodeError(f"Regular file {path} (inode {inode_num}) has a zero link count")
        if inode.links_count > 1:
            ctx.summary.hard_links += 1
            log.warning("%s: inode %d has %d links, its content is archived once per link",
                        path, inode_num, inode.links_count)

    written = 0
    try:
        with ArchiveEntry() as entry:
            _fill_header(entry, inode, path)
            if kind is InodeKind.SYMLINK:
                entry.set_symlink(resolve_symlink(ctx.fs, inode_num, inode, path))
            elif kind in (InodeKind.CHAR_DEVICE, InodeKind.BLOCK_DEVICE):
                entry.set_rdev(encode_device(inode))
                log.info("%s %s", kind.value, path)

            ctx.archive.write_header(entry)
            if kind is InodeKind.REGULAR_FILE:
                written = _stream_content(ctx, inode_num, inode, path)
            ctx.archive.finish_entry()
    except ArchiveError as e:
        log.warning("Skipping %s (inode %d): %s", path, inode_num, e)
        partial = ctx.archive.abandon_entry()
        if partial:
            log.warning("%s stays in the archive with a zero-filled body", path)
        return ExportOutcome(path, kind, False, error=str(e), partial=partial)

    log.debug("%s %s (%d bytes)", kind.value, path, written)
    return ExportOutcome(path, kind, True, bytes_written=written)


def export_tree(ctx: ExportContext):
    """Scan the whole filesystem, then export every directory entry found"""
    dblist = scan_directory_blocks(ctx.fs)
    ctx.summary.directory_blocks = len(dblist)
    try:
        for dirent in iter_directory_entries(ctx.fs, dblist):
            path = resolve_path(ctx.fs, dirent.parent_ino, dirent.name)
            ctx.summary.record(export_entry(ctx, dirent.child_ino, path))
    finally:
        dblist.free()


def run_export(image_path: str, archive_path: str, options: Optional[ExportOptions] = None) -> ExportSummary:
    if options is None:
        options = ExportOptions()

    with open_filesystem(image_path) as fs:
        log.info("Exporting %s to %s", image_path, archive_path)
        with ArchiveWriter(archive_path, options.format, options.compression) as archive:
            ctx = ExportContext(fs, archive, options)
            export_tree(ctx)

    summary = ctx.summary
    log.info("Exported %d entries (%d bytes of file content), %d skipped",
             summary.exported, summary.bytes_written, summary.abandoned)
    return summary
