"""Sass compiler client.

Compiles SCSS/Sass by handing requests to the worker script over
stdin/stdout. One-shot requests go through a process-wide ProcessRegistry;
persistent requests go through one long-lived worker owned by the Compiler.
"""

import logging
import os
from collections.abc import Iterator, Mapping, Sequence
from pathlib import Path
from typing import Any

from sassbridge.exceptions import (
    OutputUnwritableError,
    PersistentModeError,
    ProcessError,
    ProcessTimeoutError,
    SourceNotFoundError,
    SourceUnreadableError,
)
from sassbridge.options import CompileOptions, coerce_options
from sassbridge.process import ProcessHandle, ProcessRegistry, shared_registry
from sassbridge.protocol import (
    EXIT_REQUEST,
    PERSISTENT_FLAG,
    STDIN_FLAG,
    CompileResponse,
    StreamPolicy,
    build_request,
    encode_line,
    encode_request,
    parse_response,
)
from sassbridge.runtime import check_environment, default_worker_path, find_runtime, verify_runtime
from sassbridge.sourcemap import render_source_map

logger = logging.getLogger(__name__)

OptionsArg = CompileOptions | Mapping[str, Any] | None

DEFAULT_RESPONSE_TIMEOUT = 30.0
PROBE_TIMEOUT = 15.0


class CssStream(Iterator[str]):
    """Finite, single-pass iterator over compiled CSS fragments.

    Fragments are computed before the stream is handed out; iterating never
    talks to a worker. Compile again for a fresh stream.
    """

    def __init__(self, fragments: Sequence[str]) -> None:
        self._fragments = list(fragments)
        self._index = 0

    def __iter__(self) -> "CssStream":
        return self

    def __next__(self) -> str:
        if self._index >= len(self._fragments):
            raise StopIteration
        fragment = self._fragments[self._index]
        self._index += 1
        return fragment


def write_output(path: Path, text: str) -> None:
    try:
        path.write_text(text, encoding="utf-8")
    except OSError as e:
        raise OutputUnwritableError(f"Unable to write file: {path} ({e.strerror or e})") from e


class Compiler:
    """Client for the Sass worker.

    Args:
        worker_path: Worker script (defaults to the bundled worker.py)
        runtime_path: Interpreter used to run the worker (discovered when omitted)
        registry: Cache for one-shot processes (defaults to the process-wide registry)
        timeout: Seconds to wait for a one-shot compile; None waits forever
        response_timeout: Seconds to wait for each persistent-mode response
        policy: Chunking and input-size limits forwarded to the worker

    Raises:
        RuntimeNotFoundError: If no runtime could be found, or runtime_path does not start
        WorkerNotFoundError: If the worker script is missing
        CompilerDependencyError: If the runtime lacks libsass
    """

    def __init__(
        self,
        worker_path: str | Path | None = None,
        runtime_path: str | None = None,
        *,
        registry: ProcessRegistry | None = None,
        timeout: float | None = None,
        response_timeout: float = DEFAULT_RESPONSE_TIMEOUT,
        policy: StreamPolicy | None = None,
    ) -> None:
        self.worker_path = Path(worker_path) if worker_path is not None else default_worker_path()
        self.registry = registry if registry is not None else shared_registry
        self.timeout = timeout
        self.response_timeout = response_timeout
        self.policy = policy or StreamPolicy()
        self.options = CompileOptions()
        self.persistent_mode = False
        self.persistent_process: ProcessHandle | None = None
        self.runtime_explicit = bool(runtime_path)
        self.runtime_path = runtime_path or self.find_runtime()
        self.check_environment()

    def __enter__(self) -> "Compiler":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    # Configuration

    def set_options(self, options: OptionsArg) -> "Compiler":
        self.options = coerce_options(options)
        return self

    def get_options(self) -> CompileOptions:
        return self.options

    def _merge(self, options: OptionsArg) -> CompileOptions:
        return self.options.merged(coerce_options(options))

    # Compilation

    def compile_string(self, source: str, options: OptionsArg = None) -> str:
        """Compile source and return CSS with any source map comment appended."""
        if not source.strip():
            return ""
        return self._compile_source(source, self._merge(options))

    def compile_file(self, file_path: str | Path, options: OptionsArg = None) -> str:
        """Compile a file; the default url points at the file so maps reference it.

        Raises:
            SourceNotFoundError: If the file does not exist
            SourceUnreadableError: If reading it fails
        """
        path = Path(file_path)
        if not path.exists():
            raise SourceNotFoundError(f"File not found: {file_path}")

        content = self.read_file(path)
        if not content.strip():
            return ""

        merged = self._merge(options)
        if merged.url is None:
            merged = merged.with_values(url=path.resolve().as_uri())
        return self._compile_source(content, merged)

    def compile_file_and_save(
        self,
        input_path: str | Path,
        output_path: str | Path,
        options: OptionsArg = None,
        *,
        force: bool = False,
    ) -> bool:
        """Recompile input_path into output_path when the input is newer.

        The existing output is only replaced once compilation succeeded.

        Args:
            force: Recompile even when the output is up to date

        Returns:
            True if the output was rewritten, False if it was up to date

        Raises:
            SourceNotFoundError: If input_path does not exist
            OutputUnwritableError: If the CSS cannot be written
        """
        input_file = Path(input_path)
        output_file = Path(output_path)
        if not input_file.exists():
            raise SourceNotFoundError(f"Source file not found: {input_path}")

        if not force:
            input_mtime = self.get_file_mtime(input_file)
            output_mtime = self.get_file_mtime(output_file) if output_file.exists() else 0.0
            if input_mtime <= output_mtime:
                logger.debug(f"{output_file} is up to date")
                return False

        call_options = coerce_options(options)
        effective = self.options.merged(call_options)
        if effective.source_map and not effective.source_map_path:
            # Map lands beside the generated CSS rather than inline
            call_options = call_options.with_values(source_map_path=str(output_file))

        css = self.compile_file(input_file, call_options)
        write_output(output_file, css)
        logger.info(f"Compiled {input_file} -> {output_file}")
        return True

    def compile_string_as_generator(self, source: str, options: OptionsArg = None) -> CssStream:
        """Compile once and return the CSS as a stream of fragments.

        Large sources force chunked output; a source map comment, if any, is
        the final fragment.
        """
        if not source.strip():
            return CssStream([""])

        merged = self._merge(options)
        if len(source.encode("utf-8")) > self.policy.stream_threshold:
            merged = merged.with_values(stream_result=True)

        response = self._run_compile(build_request(source, merged))
        fragments = response.css_fragments()
        source_map = response.full_source_map()
        if source_map:
            fragments.append(self.process_source_map(source_map, merged))
        return CssStream(fragments)

    def compile_in_persistent_mode(self, source: str, options: OptionsArg = None) -> str:
        """Compile through the long-lived worker, starting it if needed.

        Raises:
            PersistentModeError: If enable_persistent_mode() was never called
        """
        if not self.persistent_mode:
            raise PersistentModeError("Persistent mode is not enabled; call enable_persistent_mode() first")
        if not source.strip():
            return ""
        return self._compile_source(source, self._merge(options), persistent=True)

    def enable_persistent_mode(self) -> "Compiler":
        self.persistent_mode = True
        return self

    def disable_persistent_mode(self) -> None:
        """Ask the persistent worker to exit, then make sure it is gone."""
        process = self.persistent_process
        if process is not None:
            if process.is_running():
                logger.info("Stopping persistent sass worker")
                try:
                    process.send_line(encode_line(EXIT_REQUEST))
                    process.wait(timeout=self.response_timeout)
                except ProcessError as e:
                    logger.debug(f"Persistent worker did not take exit request: {e}")
            # An exited worker still holds its pipes and reader threads
            process.stop()

        self.persistent_process = None
        self.persistent_mode = False

    def close(self) -> None:
        self.disable_persistent_mode()

    # Source maps

    def process_source_map(self, source_map: dict[str, Any], options: CompileOptions) -> str:
        return render_source_map(source_map, options)

    # Internals

    def _compile_source(self, source: str, options: CompileOptions, persistent: bool = False) -> str:
        payload = build_request(source, options)
        response = self._run_compile_persistent(payload) if persistent else self._run_compile(payload)
        return self._build_css_with_source_map(response, options)

    def _build_css_with_source_map(self, response: CompileResponse, options: CompileOptions) -> str:
        css = response.full_css()
        source_map = response.full_source_map()
        if source_map:
            css += self.process_source_map(source_map, options)
        return css

    def worker_command(self, flag: str) -> list[str]:
        return [self.runtime_path, str(self.worker_path), flag, *self.policy.worker_args()]

    def _run_compile(self, payload: dict[str, Any]) -> CompileResponse:
        process = self.registry.acquire(self.worker_command(STDIN_FLAG), self.create_process)
        result = process.run(encode_request(payload), timeout=self.timeout)
        return parse_response(result.stdout, result.stderr, "standard")

    def _run_compile_persistent(self, payload: dict[str, Any]) -> CompileResponse:
        process = self._get_or_create_persistent_process()
        process.send_line(encode_line(payload))
        try:
            line = process.read_line(timeout=self.response_timeout)
        except ProcessTimeoutError:
            # A late answer would be paired with the next request, so drop the worker
            process.stop()
            self.persistent_process = None
            raise
        return parse_response(line, process.error_output(), "persistent")

    def _get_or_create_persistent_process(self) -> ProcessHandle:
        if self.persistent_process is not None:
            if self.persistent_process.is_running():
                return self.persistent_process
            logger.warning("Persistent sass worker exited; starting a new one")
            self.persistent_process.stop()

        process = self.create_process(self.worker_command(PERSISTENT_FLAG))
        process.start()
        self.persistent_process = process
        return process

    def create_process(self, command: Sequence[str]) -> ProcessHandle:
        return ProcessHandle(command)

    def read_file(self, path: Path) -> str:
        try:
            return path.read_text(encoding="utf-8")
        except (OSError, UnicodeDecodeError) as e:
            raise SourceUnreadableError(f"Unable to read file: {path}") from e

    def get_file_mtime(self, path: Path) -> float:
        return os.path.getmtime(path)

    # Environment

    def _probe(self, command: Sequence[str]) -> bool:
        try:
            return self.create_process(command).run(timeout=PROBE_TIMEOUT).successful
        except ProcessError:
            return False

    def find_runtime(self) -> str:
        return find_runtime(self._probe)

    def check_environment(self) -> None:
        if self.runtime_explicit:
            verify_runtime(self.runtime_path, self._probe)
        check_environment(self.runtime_path, self.worker_path, self._probe)
