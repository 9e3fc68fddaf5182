"""Compile SCSS/Sass through a libsass worker process."""

from sassbridge.compiler import Compiler, CssStream
from sassbridge.exceptions import (
    CompilationError,
    CompilerDependencyError,
    ErrorKind,
    InputTooLargeError,
    InvalidOptionError,
    OutputUnwritableError,
    PersistentModeError,
    ProcessError,
    ProcessTimeoutError,
    ProtocolError,
    RuntimeNotFoundError,
    SassBridgeError,
    SourceNotFoundError,
    SourceUnreadableError,
    WorkerNotFoundError,
)
from sassbridge.options import CompileOptions
from sassbridge.process import ProcessRegistry
from sassbridge.protocol import StreamPolicy

__version__ = "1.0.0"

__all__ = [
    "CompilationError",
    "CompileOptions",
    "Compiler",
    "CompilerDependencyError",
    "CssStream",
    "ErrorKind",
    "InputTooLargeError",
    "InvalidOptionError",
    "OutputUnwritableError",
    "PersistentModeError",
    "ProcessError",
    "ProcessRegistry",
    "ProcessTimeoutError",
    "ProtocolError",
    "RuntimeNotFoundError",
    "SassBridgeError",
    "SourceNotFoundError",
    "SourceUnreadableError",
    "StreamPolicy",
    "WorkerNotFoundError",
]
