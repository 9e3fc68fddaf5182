"""
Exception hierarchy for sassbridge.

Every error carries an ErrorKind so callers can tell which layer failed
(file, environment, process, protocol, compiler) without matching messages.
"""

from enum import Enum


class ErrorKind(Enum):
    """Layer that produced a failure."""

    INPUT = "input"
    ENVIRONMENT = "environment"
    PROCESS = "process"
    PROTOCOL = "protocol"
    COMPILATION = "compilation"
    RESOURCE = "resource"


class SassBridgeError(Exception):
    """Base exception for sassbridge errors."""

    kind: ErrorKind = ErrorKind.PROCESS

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class SourceNotFoundError(SassBridgeError):
    """Input file does not exist."""

    kind = ErrorKind.INPUT


class SourceUnreadableError(SassBridgeError):
    """Input file exists but could not be read."""

    kind = ErrorKind.INPUT


class InvalidOptionError(SassBridgeError):
    """Unknown option key or unsupported option value."""

    kind = ErrorKind.INPUT


class PersistentModeError(SassBridgeError):
    """Persistent compile requested without enabling persistent mode."""

    kind = ErrorKind.INPUT


class OutputUnwritableError(SassBridgeError):
    """Compiled CSS or its source map could not be written."""

    kind = ErrorKind.INPUT


class RuntimeNotFoundError(SassBridgeError):
    """No usable runtime executable was found."""

    kind = ErrorKind.ENVIRONMENT


class WorkerNotFoundError(SassBridgeError):
    """Worker script is missing."""

    kind = ErrorKind.ENVIRONMENT


class CompilerDependencyError(SassBridgeError):
    """Runtime lacks the compiler package."""

    kind = ErrorKind.ENVIRONMENT


class ProcessError(SassBridgeError):
    """Worker process could not be spawned, crashed, or produced no output."""

    kind = ErrorKind.PROCESS


class ProcessTimeoutError(ProcessError):
    """Worker process did not answer in time."""

    pass


class ProtocolError(SassBridgeError):
    """Worker output was not a valid response document."""

    kind = ErrorKind.PROTOCOL


class CompilationError(SassBridgeError):
    """Compiler rejected the stylesheet."""

    kind = ErrorKind.COMPILATION


class InputTooLargeError(SassBridgeError):
    """Worker refused the request because it exceeded the input ceiling."""

    kind = ErrorKind.RESOURCE
