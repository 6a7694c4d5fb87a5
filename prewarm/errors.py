import pathlib
from dataclasses import dataclass
from enum import StrEnum, auto


class FileErrorType(StrEnum):
    CREATE_FAILED = auto()
    OPEN_FAILED = auto()


@dataclass
class FileError:
    type: FileErrorType
    path: str
    detailed_message: str

    def __str__(self) -> str:
        return f"{self.type} {self.path}: {self.detailed_message}"


@dataclass
class FifoCreateFailed:
    path: pathlib.Path
    exception: Exception

    def to_file_error(self) -> FileError:
        return FileError(FileErrorType.CREATE_FAILED, str(self.path), repr(self.exception))


@dataclass
class FileOpenFailed:
    path: pathlib.Path
    exception: Exception

    def to_file_error(self) -> FileError:
        return FileError(FileErrorType.OPEN_FAILED, str(self.path), repr(self.exception))


@dataclass
class HookLoadFailed:
    spec: str
    detailed_message: str

    def __str__(self) -> str:
        return f"Could not load hook {self.spec!r}: {self.detailed_message}"


class InvalidConfig(RuntimeError):
    """Raised when the config file or environment holds an unusable value."""


class BootFailed(RuntimeError):
    """Raised when the environment could not be loaded in the supervisor."""
