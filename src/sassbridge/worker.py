#!/usr/bin/env python3
"""Worker script exposing libsass over stdin/stdout JSON.

Runs standalone under any interpreter that has libsass installed, so it
only imports the standard library and the compiler.

Modes:
- --stdin: read one request until EOF, write one response, exit
- --persistent: read newline-delimited requests, write one response line
  per request, stop on {"exit": true} or EOF
"""

import argparse
import json
import logging
import sys
import tempfile
from dataclasses import dataclass, field
from pathlib import Path, PurePosixPath
from typing import IO, Any
from urllib.parse import unquote, urlparse
from urllib.request import url2pathname

import sass

logger = logging.getLogger("sassbridge.worker")

STREAM_THRESHOLD = 1024 * 1024
CHUNK_SIZE = 64 * 1024
MAX_INPUT_BYTES = 50 * 1024 * 1024
READ_BLOCK = 64 * 1024

INPUT_TOO_LARGE = "Input too large. Consider using streaming mode or splitting the input."

# Dart Sass options with no libsass equivalent
DEPRECATION_KEYS = ("quietDeps", "silenceDeprecations", "verbose")

# libsass rounds to 5 fractional digits unless told otherwise
PRECISION = 10


@dataclass(frozen=True)
class Limits:
    stream_threshold: int = STREAM_THRESHOLD
    chunk_size: int = CHUNK_SIZE
    max_input_bytes: int = MAX_INPUT_BYTES


@dataclass
class NativeOptions:
    """Request options translated into libsass terms.

    quietDeps, silenceDeprecations and verbose have no libsass counterpart
    (it reports no deprecations) and are not carried here.
    """

    indented: bool = False
    output_style: str = "expanded"
    source_map: str | bool = False
    include_sources: bool = False
    include_paths: list[str] = field(default_factory=lambda: [])
    url: str | None = None


def file_url_to_path(url: str | None) -> Path | None:
    if not url:
        return None
    parsed = urlparse(url)
    if parsed.scheme != "file":
        return None
    return Path(url2pathname(unquote(parsed.path)))


def url_stem(url: str | None, default: str) -> str:
    if not url:
        return default
    stem = PurePosixPath(unquote(urlparse(url).path)).stem
    return stem or default


def translate_options(options: dict[str, Any], url: str | None = None) -> NativeOptions:
    """Map wire option keys onto libsass arguments."""
    native = NativeOptions(url=url or options.get("url") or None)

    if options.get("syntax") in ("sass", "indented"):
        native.indented = True

    if options.get("minimize") or options.get("compressed") or options.get("style") == "compressed":
        native.output_style = "compressed"

    if options.get("sourceMap") or options.get("sourceMapPath"):
        native.source_map = options.get("sourceMapPath") or bool(options.get("sourceMap"))
        include_sources = options.get("includeSources", options.get("sourceMapIncludeSources"))
        if include_sources:
            native.include_sources = bool(include_sources)

    load_paths = options.get("loadPaths") or []
    if isinstance(load_paths, str):
        load_paths = [load_paths]
    native.include_paths = [str(p) for p in load_paths]

    # Relative imports resolve next to the original file, like the Dart compiler does
    origin = file_url_to_path(native.url)
    if origin is not None:
        native.include_paths.insert(0, str(origin.parent))

    ignored = [key for key in DEPRECATION_KEYS if options.get(key)]
    if ignored:
        logger.debug(f"Ignoring {', '.join(ignored)}: libsass reports no deprecations")

    return native


def split_chunks(text: str, size: int) -> list[str]:
    return [text[i : i + size] for i in range(0, len(text), size)]


def _rewrite_sources(source_map: dict[str, Any], map_dir: Path, entry: Path, entry_name: str) -> None:
    rewritten: list[str] = []
    entry_resolved = entry.resolve()
    for source in source_map.get("sources", []):
        resolved = (map_dir / url2pathname(unquote(str(source)))).resolve()
        if resolved == entry_resolved:
            rewritten.append(entry_name)
        else:
            rewritten.append(resolved.as_uri())
    source_map["sources"] = rewritten


def compile_source(source: str, native: NativeOptions) -> tuple[str, dict[str, Any] | None]:
    """Run libsass and return (css, source map or None)."""
    if not native.source_map:
        css = sass.compile(
            string=source,
            output_style=native.output_style,
            include_paths=native.include_paths,
            indented=native.indented,
            precision=PRECISION,
        )
        return css.rstrip("\n"), None

    # libsass only produces maps in filename mode
    stem = url_stem(native.url, "stdin")
    extension = ".sass" if native.indented else ".scss"
    with tempfile.TemporaryDirectory(prefix="sassbridge-") as tmp:
        tmp_dir = Path(tmp)
        entry = tmp_dir / f"{stem}{extension}"
        entry.write_text(source, encoding="utf-8")
        css, map_json = sass.compile(
            filename=str(entry),
            output_style=native.output_style,
            include_paths=native.include_paths,
            precision=PRECISION,
            source_map_filename=str(tmp_dir / f"{stem}.css.map"),
            output_filename_hint=str(tmp_dir / f"{stem}.css"),
            source_map_contents=native.include_sources,
            omit_source_map_url=True,
        )
        source_map = json.loads(map_json)
        _rewrite_sources(source_map, tmp_dir, entry, native.url or entry.name)
    return css.rstrip("\n"), source_map


def build_response(payload: dict[str, Any], limits: Limits) -> dict[str, Any]:
    source = str(payload.get("source") or "")
    options = payload.get("options") or {}
    if not isinstance(options, dict):
        raise ValueError("options must be an object")
    url = payload.get("url")
    native = translate_options(options, str(url) if url else None)

    if not source.strip():
        return {"css": ""}

    css, source_map = compile_source(source, native)
    response: dict[str, Any] = {"css": css}

    if options.get("streamResult") and len(css) > limits.stream_threshold:
        response = {"chunks": split_chunks(css, limits.chunk_size), "isStreamed": True}

    if source_map:
        serialized = json.dumps(source_map, separators=(",", ":"))
        if len(serialized) > limits.stream_threshold:
            response["sourceMapChunks"] = split_chunks(serialized, limits.chunk_size)
            response["sourceMapIsStreamed"] = True
        else:
            response["sourceMap"] = source_map

    return response


def handle_payload(payload: Any, limits: Limits) -> dict[str, Any]:
    """Compile one decoded request, converting every failure into an error response."""
    if not isinstance(payload, dict):
        return {"error": "Request must be a JSON object"}
    try:
        return build_response(payload, limits)
    except sass.CompileError as e:
        return {"error": str(e).strip()}
    except Exception as e:
        logger.debug("Request failed", exc_info=True)
        return {"error": str(e) or type(e).__name__}


def decode_payload(raw: bytes) -> Any:
    text = raw.decode("utf-8")
    return json.loads(text or "{}")


def write_response(stream: IO[str], response: dict[str, Any], newline: bool = False) -> None:
    stream.write(json.dumps(response) + ("\n" if newline else ""))
    stream.flush()


def run_single(stdin: IO[bytes], stdout: IO[str], limits: Limits) -> int:
    buffer: list[bytes] = []
    total = 0
    while True:
        block = stdin.read(READ_BLOCK)
        if not block:
            break
        buffer.append(block)
        total += len(block)
        if total > limits.max_input_bytes:
            logger.warning(f"Rejecting request larger than {limits.max_input_bytes} bytes")
            write_response(stdout, {"error": INPUT_TOO_LARGE})
            return 1

    try:
        payload = decode_payload(b"".join(buffer).strip())
    except (UnicodeDecodeError, json.JSONDecodeError) as e:
        write_response(stdout, {"error": f"Invalid request: {e}"})
        return 0

    write_response(stdout, handle_payload(payload, limits))
    return 0


def run_persistent(stdin: IO[bytes], stdout: IO[str], limits: Limits) -> int:
    for raw_line in iter(stdin.readline, b""):
        line = raw_line.strip()
        if not line:
            continue
        try:
            payload = decode_payload(line)
        except (UnicodeDecodeError, json.JSONDecodeError) as e:
            write_response(stdout, {"error": f"Invalid request: {e}"}, newline=True)
            continue

        if isinstance(payload, dict) and payload.get("exit") is True:
            logger.debug("Exit requested")
            break

        write_response(stdout, handle_payload(payload, limits), newline=True)
    return 0


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(prog="sassbridge-worker", description="Compile Sass requests read from stdin")
    mode = parser.add_mutually_exclusive_group(required=True)
    mode.add_argument("--stdin", action="store_true", help="Read one request until EOF")
    mode.add_argument("--persistent", action="store_true", help="Serve newline-delimited requests until exit")
    parser.add_argument("--stream-threshold", type=int, default=STREAM_THRESHOLD)
    parser.add_argument("--chunk-size", type=int, default=CHUNK_SIZE)
    parser.add_argument("--max-input-bytes", type=int, default=MAX_INPUT_BYTES)
    parser.add_argument("--log-level", default="WARNING", choices=["DEBUG", "INFO", "WARNING", "ERROR"])
    return parser.parse_args(argv)


def main(argv: list[str] | None = None) -> int:
    args = parse_args(argv)

    # stdout carries the protocol, so logs go to stderr only
    logging.basicConfig(
        level=getattr(logging, args.log_level),
        stream=sys.stderr,
        format="[%(asctime)s] [%(levelname)s] [sass-worker] %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )

    limits = Limits(
        stream_threshold=args.stream_threshold,
        chunk_size=args.chunk_size,
        max_input_bytes=args.max_input_bytes,
    )
    if args.persistent:
        return run_persistent(sys.stdin.buffer, sys.stdout, limits)
    return run_single(sys.stdin.buffer, sys.stdout, limits)


if __name__ == "__main__":
    sys.exit(main())
