class Ext2TarError(Exception):
    """Base class for all export errors"""


class FatalError(Ext2TarError):
    """Aborts the whole run"""


class FilesystemError(FatalError):
    """The image cannot be opened or decoded"""


class ScanError(FatalError):
    """Inode scan or directory block enumeration failed"""


class UnsupportedObjectError(FatalError):
    def __init__(self, kind: str, path: str):
        super().__init__(f"unsupported {kind} {path}")
        self.kind = kind
        self.path = path


class CorruptInodeError(FatalError):
    pass


class ShortReadError(FatalError):
    def __init__(self, path: str, expected: int, got: int):
        super().__init__(f"short read on {path}: expected {expected} bytes, got {got}")
        self.path = path
        self.expected = expected
        self.got = got


class ShortWriteError(FatalError):
    def __init__(self, path: str, expected: int, written: int):
        super().__init__(f"short write on {path}: {written} of {expected} bytes")
        self.path = path
        self.expected = expected
        self.written = written


class ArchiveError(Ext2TarError):
    """A single archive entry could not be built or written; the run continues"""


class OutputError(FatalError):
    """The archive cannot be created or finalized"""
