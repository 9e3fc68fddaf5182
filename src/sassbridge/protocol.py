"""Wire protocol between the client and the worker script.

Requests and responses are UTF-8 JSON. One-shot invocations exchange a
single document; persistent invocations exchange one document per line.
"""

import json
import logging
from dataclasses import dataclass, field
from typing import Any, Literal

from sassbridge.exceptions import CompilationError, InputTooLargeError, ProcessError, ProtocolError
from sassbridge.options import CompileOptions

logger = logging.getLogger(__name__)

STREAM_THRESHOLD = 1024 * 1024
CHUNK_SIZE = 64 * 1024
MAX_INPUT_BYTES = 50 * 1024 * 1024

STDIN_FLAG = "--stdin"
PERSISTENT_FLAG = "--persistent"

EXIT_REQUEST: dict[str, Any] = {"exit": True}

# Prefix the worker uses when it rejects an oversized request
INPUT_TOO_LARGE_PREFIX = "Input too large"

Mode = Literal["standard", "persistent"]


@dataclass(frozen=True)
class StreamPolicy:
    """Size limits shared by client and worker.

    Attributes:
        stream_threshold: Size above which results are chunked
        chunk_size: Size of each chunk
        max_input_bytes: Ceiling on one-shot worker input
    """

    stream_threshold: int = STREAM_THRESHOLD
    chunk_size: int = CHUNK_SIZE
    max_input_bytes: int = MAX_INPUT_BYTES

    def __post_init__(self) -> None:
        for name in ("stream_threshold", "chunk_size", "max_input_bytes"):
            if getattr(self, name) <= 0:
                raise ValueError(f"{name} must be positive")

    def worker_args(self) -> list[str]:
        """Flags for the worker; empty when every limit is the default."""
        args: list[str] = []
        if self.stream_threshold != STREAM_THRESHOLD:
            args += ["--stream-threshold", str(self.stream_threshold)]
        if self.chunk_size != CHUNK_SIZE:
            args += ["--chunk-size", str(self.chunk_size)]
        if self.max_input_bytes != MAX_INPUT_BYTES:
            args += ["--max-input-bytes", str(self.max_input_bytes)]
        return args


def build_request(source: str, options: CompileOptions) -> dict[str, Any]:
    return {
        "source": source,
        "options": options.to_wire(),
        "url": options.url,
    }


def encode_request(payload: dict[str, Any]) -> str:
    return json.dumps(payload, ensure_ascii=False)


def encode_line(payload: dict[str, Any]) -> str:
    """Encode a persistent-mode request as one newline-terminated line."""
    return encode_request(payload) + "\n"


@dataclass
class CompileResponse:
    """Successful worker response.

    Exactly one of css / chunks carries the stylesheet, and at most one of
    source_map / source_map_chunks carries the map.
    """

    css: str | None = None
    chunks: list[str] = field(default_factory=lambda: [])
    is_streamed: bool = False
    source_map: dict[str, Any] | None = None
    source_map_chunks: list[str] = field(default_factory=lambda: [])
    source_map_is_streamed: bool = False

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "CompileResponse":
        is_streamed = bool(data.get("isStreamed")) and isinstance(data.get("chunks"), list)
        map_streamed = bool(data.get("sourceMapIsStreamed")) and isinstance(data.get("sourceMapChunks"), list)
        css = data.get("css")
        if not is_streamed and not isinstance(css, str):
            raise ProtocolError("Invalid response from sass bridge: missing css")
        source_map = data.get("sourceMap")
        if source_map is not None and not isinstance(source_map, dict):
            raise ProtocolError("Invalid response from sass bridge: sourceMap must be an object")
        return cls(
            css=css,
            chunks=[str(chunk) for chunk in data["chunks"]] if is_streamed else [],
            is_streamed=is_streamed,
            source_map=source_map or None,
            source_map_chunks=[str(chunk) for chunk in data["sourceMapChunks"]] if map_streamed else [],
            source_map_is_streamed=map_streamed,
        )

    def css_fragments(self) -> list[str]:
        if self.is_streamed:
            return list(self.chunks)
        return [self.css or ""]

    def full_css(self) -> str:
        return "".join(self.css_fragments())

    def full_source_map(self) -> dict[str, Any] | None:
        """Return the map object, joining and parsing chunks when streamed."""
        if self.source_map_is_streamed:
            joined = "".join(self.source_map_chunks)
            if not joined:
                return None
            try:
                parsed = json.loads(joined)
            except json.JSONDecodeError as e:
                raise ProtocolError(f"Invalid response from sass bridge: corrupt source map chunks ({e})") from e
            if not isinstance(parsed, dict):
                raise ProtocolError("Invalid response from sass bridge: source map chunks are not an object")
            return parsed or None
        return self.source_map


def parse_response(output: str, error_output: str = "", mode: Mode = "standard") -> CompileResponse:
    """Validate worker output and convert it into a CompileResponse.

    Args:
        output: Raw stdout (one-shot) or one response line (persistent)
        error_output: Captured stderr, used as detail for empty output
        mode: "standard" for one-shot, "persistent" for the long-lived worker

    Raises:
        ProcessError: Output was empty
        ProtocolError: Output was not a JSON object
        InputTooLargeError: Worker rejected the input size
        CompilationError: Worker reported a compile error
    """
    out = output.strip()
    if not out:
        err = error_output.strip()
        process_label = "persistent process" if mode == "persistent" else "process"
        raise ProcessError(f"Sass {process_label} failed: {err or 'unknown error'}")

    bridge_label = "persistent bridge" if mode == "persistent" else "bridge"
    try:
        data = json.loads(out)
    except json.JSONDecodeError as e:
        logger.debug(f"Unparsable worker output ({mode}): {out[:200]!r}")
        raise ProtocolError(f"Invalid response from sass {bridge_label}") from e
    if not isinstance(data, dict):
        raise ProtocolError(f"Invalid response from sass {bridge_label}")

    error = data.get("error")
    if error:
        message = str(error)
        if message.startswith(INPUT_TOO_LARGE_PREFIX):
            raise InputTooLargeError(message)
        raise CompilationError(f"Sass parsing error: {message}")

    return CompileResponse.from_dict(data)
