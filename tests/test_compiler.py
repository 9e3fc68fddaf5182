"""Unit tests for the Compiler client using fake worker processes."""

import base64
import json
import os
import shutil
import tempfile
import time
import unittest
from pathlib import Path
from unittest.mock import patch

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
    SourceNotFoundError,
    SourceUnreadableError,
)
from sassbridge.options import CompileOptions
from sassbridge.protocol import PERSISTENT_FLAG, STDIN_FLAG, StreamPolicy

from mocks import FakeCompiler, FakeProcessHandle

SCSS = "$color: red; body { color: $color; }"
EXPANDED = "body {\n  color: red;\n}"
SOURCE_MAP = {"version": 3, "mappings": "AAAA", "sources": ["file:///tmp/main.scss"], "names": []}


class TestCompileString(unittest.TestCase):
    """Test one-shot compilation."""

    def test_returns_css(self) -> None:
        compiler = FakeCompiler().queue(css=EXPANDED)

        self.assertEqual(compiler.compile_string(SCSS), EXPANDED)
        payload = compiler.spawned[0].sent_payloads()[0]
        self.assertEqual(payload, {"source": SCSS, "options": {}, "url": None})

    def test_empty_source_spawns_nothing(self) -> None:
        compiler = FakeCompiler()

        self.assertEqual(compiler.compile_string(""), "")
        self.assertEqual(compiler.compile_string("  \n\t"), "")
        self.assertEqual(compiler.spawned, [])

    def test_cached_process_reused(self) -> None:
        """Test that two compiles with an unchanged command spawn once."""
        compiler = FakeCompiler().queue(css="a {}").queue(css="b {}")

        self.assertEqual(compiler.compile_string("a { }"), "a {}")
        self.assertEqual(compiler.compile_string("b { }"), "b {}")
        self.assertEqual(len(compiler.spawned), 1)
        self.assertEqual(len(compiler.spawned[0].inputs), 2)

    def test_worker_command(self) -> None:
        compiler = FakeCompiler(worker_path="/opt/sassbridge/worker.py").queue(css="")
        compiler.compile_string(SCSS)

        self.assertEqual(compiler.spawned[0].command, ("python-test", str(Path("/opt/sassbridge/worker.py")), STDIN_FLAG))

    def test_policy_forwarded_to_worker(self) -> None:
        compiler = FakeCompiler(policy=StreamPolicy(chunk_size=1024)).queue(css="")
        compiler.compile_string(SCSS)

        self.assertEqual(compiler.spawned[0].command[-2:], ("--chunk-size", "1024"))

    def test_call_options_override_defaults(self) -> None:
        compiler = FakeCompiler().queue(css="body{color:red}")
        compiler.set_options({"style": "expanded", "loadPaths": ["vendor"]})

        compiler.compile_string(SCSS, {"style": "compressed"})

        options = compiler.spawned[0].sent_payloads()[0]["options"]
        self.assertEqual(options, {"style": "compressed", "loadPaths": ["vendor"]})
        # Stored defaults are untouched by call options
        self.assertEqual(compiler.get_options().style, "expanded")

    def test_url_forwarded(self) -> None:
        compiler = FakeCompiler().queue(css="")
        compiler.compile_string(SCSS, CompileOptions(url="file:///src/main.scss"))

        self.assertEqual(compiler.spawned[0].sent_payloads()[0]["url"], "file:///src/main.scss")

    def test_unknown_option_rejected(self) -> None:
        with self.assertRaises(InvalidOptionError):
            FakeCompiler().compile_string(SCSS, {"outputStyle": "compressed"})

    def test_compile_error(self) -> None:
        compiler = FakeCompiler().queue(error="expected \"{\".")

        with self.assertRaises(CompilationError) as ctx:
            compiler.compile_string("a { color: red")

        self.assertTrue(str(ctx.exception).startswith("Sass parsing error:"))
        self.assertEqual(ctx.exception.kind, ErrorKind.COMPILATION)

    def test_input_too_large(self) -> None:
        compiler = FakeCompiler().queue(error="Input too large. Consider using streaming mode or splitting the input.")

        with self.assertRaises(InputTooLargeError):
            compiler.compile_string(SCSS)

    def test_empty_output_is_process_error(self) -> None:
        compiler = FakeCompiler(stderr="Traceback: boom")

        with self.assertRaises(ProcessError) as ctx:
            compiler.compile_string(SCSS)

        self.assertIn("Traceback: boom", str(ctx.exception))

    def test_bad_json_is_protocol_error(self) -> None:
        compiler = FakeCompiler(outputs=["not json at all"])

        with self.assertRaises(ProtocolError):
            compiler.compile_string(SCSS)

    def test_chunks_reassembled(self) -> None:
        compiler = FakeCompiler().queue(chunks=["body {", "\n  color: red;", "\n}"], isStreamed=True)

        self.assertEqual(compiler.compile_string(SCSS), EXPANDED)


class TestSourceMaps(unittest.TestCase):
    """Test map directives appended by the client."""

    def setUp(self) -> None:
        self.test_dir = Path(tempfile.mkdtemp(prefix="test_compiler_maps_"))

    def tearDown(self) -> None:
        if self.test_dir.exists():
            shutil.rmtree(self.test_dir)

    def test_inline_map(self) -> None:
        compiler = FakeCompiler().queue(css=EXPANDED, sourceMap=SOURCE_MAP)

        css = compiler.compile_string(SCSS, {"sourceMap": True})

        css_part, comment = css.split("\n/*# sourceMappingURL=data:application/json;base64,")
        self.assertEqual(css_part, EXPANDED)
        self.assertEqual(json.loads(base64.b64decode(comment[: -len(" */")])), SOURCE_MAP)

    def test_map_written_to_path(self) -> None:
        compiler = FakeCompiler().queue(css=EXPANDED, sourceMap=SOURCE_MAP)
        map_path = self.test_dir / "site.css.map"

        css = compiler.compile_string(SCSS, {"sourceMap": True, "sourceMapPath": str(map_path)})

        self.assertEqual(css, EXPANDED + "\n/*# sourceMappingURL=site.css.map */")
        self.assertEqual(json.loads(map_path.read_text(encoding="utf-8")), SOURCE_MAP)

    def test_streamed_map_reassembled(self) -> None:
        serialized = json.dumps(SOURCE_MAP)
        chunks = [serialized[i : i + 8] for i in range(0, len(serialized), 8)]
        compiler = FakeCompiler().queue(css=EXPANDED, sourceMapChunks=chunks, sourceMapIsStreamed=True)

        css = compiler.compile_string(SCSS, {"sourceMap": True, "sourceMapPath": "https://cdn.example.com/site.css.map"})

        self.assertEqual(css, EXPANDED + "\n/*# sourceMappingURL=https://cdn.example.com/site.css.map */")

    def test_no_map_no_comment(self) -> None:
        compiler = FakeCompiler().queue(css=EXPANDED)
        self.assertNotIn("sourceMappingURL", compiler.compile_string(SCSS, {"sourceMap": True}))


class TestCompileFile(unittest.TestCase):
    """Test file-based compilation."""

    def setUp(self) -> None:
        self.test_dir = Path(tempfile.mkdtemp(prefix="test_compiler_files_"))
        self.source = self.test_dir / "main.scss"
        self.source.write_text(SCSS, encoding="utf-8")

    def tearDown(self) -> None:
        if self.test_dir.exists():
            shutil.rmtree(self.test_dir)

    def test_compile_file_sets_file_url(self) -> None:
        compiler = FakeCompiler().queue(css=EXPANDED)

        self.assertEqual(compiler.compile_file(self.source), EXPANDED)
        payload = compiler.spawned[0].sent_payloads()[0]
        self.assertEqual(payload["source"], SCSS)
        self.assertEqual(payload["url"], self.source.resolve().as_uri())

    def test_explicit_url_kept(self) -> None:
        compiler = FakeCompiler().queue(css=EXPANDED)
        compiler.compile_file(str(self.source), {"url": "https://example.com/main.scss"})

        self.assertEqual(compiler.spawned[0].sent_payloads()[0]["url"], "https://example.com/main.scss")

    def test_missing_file(self) -> None:
        with self.assertRaises(SourceNotFoundError) as ctx:
            FakeCompiler().compile_file(self.test_dir / "missing.scss")

        self.assertIn("File not found", str(ctx.exception))
        self.assertEqual(ctx.exception.kind, ErrorKind.INPUT)

    def test_unreadable_file(self) -> None:
        """Test that a directory path exists but cannot be read as text."""
        with self.assertRaises(SourceUnreadableError) as ctx:
            FakeCompiler().compile_file(self.test_dir)

        self.assertIn("Unable to read file", str(ctx.exception))

    def test_empty_file(self) -> None:
        self.source.write_text("\n\n", encoding="utf-8")
        compiler = FakeCompiler()

        self.assertEqual(compiler.compile_file(self.source), "")
        self.assertEqual(compiler.spawned, [])


class TestCompileFileAndSave(unittest.TestCase):
    """Test the mtime-gated save."""

    def setUp(self) -> None:
        self.test_dir = Path(tempfile.mkdtemp(prefix="test_compiler_save_"))
        self.source = self.test_dir / "main.scss"
        self.source.write_text(SCSS, encoding="utf-8")
        self.output = self.test_dir / "main.css"

    def tearDown(self) -> None:
        if self.test_dir.exists():
            shutil.rmtree(self.test_dir)

    def test_writes_when_output_missing(self) -> None:
        compiler = FakeCompiler().queue(css=EXPANDED)

        self.assertTrue(compiler.compile_file_and_save(self.source, self.output))
        self.assertEqual(self.output.read_text(encoding="utf-8"), EXPANDED)

    def test_skips_when_output_newer(self) -> None:
        self.output.write_text("old", encoding="utf-8")
        now = time.time()
        os.utime(self.source, (now - 100, now - 100))
        os.utime(self.output, (now, now))
        compiler = FakeCompiler()

        self.assertFalse(compiler.compile_file_and_save(self.source, self.output))
        self.assertEqual(self.output.read_text(encoding="utf-8"), "old")
        self.assertEqual(compiler.spawned, [])

    def test_skips_when_mtimes_equal(self) -> None:
        self.output.write_text("old", encoding="utf-8")
        compiler = FakeCompiler()

        with patch.object(compiler, "get_file_mtime", return_value=1000.0):
            self.assertFalse(compiler.compile_file_and_save(self.source, self.output))

    def test_rewrites_when_input_newer(self) -> None:
        self.output.write_text("old", encoding="utf-8")
        compiler = FakeCompiler().queue(css=EXPANDED)
        mtimes = {self.source: 2000.0, self.output: 1000.0}

        with patch.object(compiler, "get_file_mtime", side_effect=lambda path: mtimes[path]):
            self.assertTrue(compiler.compile_file_and_save(self.source, self.output))

        self.assertEqual(self.output.read_text(encoding="utf-8"), EXPANDED)

    def test_missing_input(self) -> None:
        with self.assertRaises(SourceNotFoundError) as ctx:
            FakeCompiler().compile_file_and_save(self.test_dir / "missing.scss", self.output)
        self.assertIn("Source file not found", str(ctx.exception))

    def test_map_defaults_beside_output(self) -> None:
        """Test that a requested map without a path is written next to the CSS."""
        compiler = FakeCompiler().queue(css=EXPANDED, sourceMap=SOURCE_MAP)

        self.assertTrue(compiler.compile_file_and_save(self.source, self.output, {"sourceMap": True}))

        self.assertEqual(self.output.read_text(encoding="utf-8"), EXPANDED + "\n/*# sourceMappingURL=main.css.map */")
        self.assertEqual(json.loads((self.test_dir / "main.css.map").read_text(encoding="utf-8")), SOURCE_MAP)
        self.assertEqual(compiler.spawned[0].sent_payloads()[0]["options"]["sourceMapPath"], str(self.output))

    def test_map_from_stored_defaults(self) -> None:
        compiler = FakeCompiler().queue(css=EXPANDED, sourceMap=SOURCE_MAP)
        compiler.set_options(CompileOptions(source_map=True))

        compiler.compile_file_and_save(self.source, self.output)

        self.assertTrue((self.test_dir / "main.css.map").exists())

    def test_force_recompiles_up_to_date_output(self) -> None:
        self.output.write_text("old", encoding="utf-8")
        compiler = FakeCompiler().queue(css=EXPANDED)

        with patch.object(compiler, "get_file_mtime", return_value=1000.0):
            self.assertTrue(compiler.compile_file_and_save(self.source, self.output, force=True))

        self.assertEqual(self.output.read_text(encoding="utf-8"), EXPANDED)

    def test_failed_compile_keeps_previous_output(self) -> None:
        self.output.write_text("last good", encoding="utf-8")
        compiler = FakeCompiler().queue(error="expected \"}\".")

        with self.assertRaises(CompilationError):
            compiler.compile_file_and_save(self.source, self.output, force=True)

        self.assertEqual(self.output.read_text(encoding="utf-8"), "last good")

    def test_unwritable_output(self) -> None:
        compiler = FakeCompiler().queue(css=EXPANDED)

        with self.assertRaises(OutputUnwritableError) as ctx:
            compiler.compile_file_and_save(self.source, self.test_dir / "missing" / "main.css")

        self.assertIn("Unable to write file", str(ctx.exception))
        self.assertEqual(ctx.exception.kind, ErrorKind.INPUT)


class TestGenerator(unittest.TestCase):
    """Test compile_string_as_generator."""

    def test_fragments(self) -> None:
        compiler = FakeCompiler().queue(chunks=["a", "b", "c"], isStreamed=True)

        stream = compiler.compile_string_as_generator(SCSS)

        self.assertIsInstance(stream, CssStream)
        self.assertEqual(list(stream), ["a", "b", "c"])

    def test_single_fragment_without_chunks(self) -> None:
        compiler = FakeCompiler().queue(css=EXPANDED)
        self.assertEqual(list(compiler.compile_string_as_generator(SCSS)), [EXPANDED])

    def test_empty_source_yields_empty_string(self) -> None:
        compiler = FakeCompiler()

        self.assertEqual(list(compiler.compile_string_as_generator("   ")), [""])
        self.assertEqual(compiler.spawned, [])

    def test_stream_is_single_pass(self) -> None:
        compiler = FakeCompiler().queue(chunks=["a", "b"], isStreamed=True)
        stream = compiler.compile_string_as_generator(SCSS)

        self.assertEqual(list(stream), ["a", "b"])
        self.assertEqual(list(stream), [])
        self.assertEqual(len(compiler.spawned[0].inputs), 1)

    def test_large_source_forces_streaming(self) -> None:
        compiler = FakeCompiler(policy=StreamPolicy(stream_threshold=10)).queue(css="")

        compiler.compile_string_as_generator(SCSS)

        self.assertIs(compiler.spawned[0].sent_payloads()[0]["options"]["streamResult"], True)

    def test_small_source_not_forced(self) -> None:
        compiler = FakeCompiler().queue(css="")
        compiler.compile_string_as_generator(SCSS)

        self.assertNotIn("streamResult", compiler.spawned[0].sent_payloads()[0]["options"])

    def test_threshold_counts_utf8_bytes(self) -> None:
        """Test that multi-byte sources are measured in encoded bytes."""
        compiler = FakeCompiler(policy=StreamPolicy(stream_threshold=15)).queue(css="")

        # 12 characters, 17 bytes
        compiler.compile_string_as_generator("a{c:'éééé'}é")

        self.assertIs(compiler.spawned[0].sent_payloads()[0]["options"]["streamResult"], True)

    def test_source_map_is_last_fragment(self) -> None:
        compiler = FakeCompiler().queue(chunks=["a", "b"], isStreamed=True, sourceMap=SOURCE_MAP)

        fragments = list(compiler.compile_string_as_generator(SCSS, {"sourceMap": True}))

        self.assertEqual(fragments[:2], ["a", "b"])
        self.assertTrue(fragments[2].startswith("\n/*# sourceMappingURL=data:application/json;base64,"))

    def test_errors_raised_at_call(self) -> None:
        compiler = FakeCompiler().queue(error="broken")

        with self.assertRaises(CompilationError):
            compiler.compile_string_as_generator(SCSS)


class TestPersistentMode(unittest.TestCase):
    """Test the long-lived worker path."""

    def test_requires_enable(self) -> None:
        compiler = FakeCompiler()

        with self.assertRaises(PersistentModeError):
            compiler.compile_in_persistent_mode(SCSS)
        self.assertEqual(compiler.spawned, [])

    def test_two_compiles_share_one_worker(self) -> None:
        compiler = FakeCompiler().queue(css=EXPANDED).queue(css="body{color:red}")
        compiler.enable_persistent_mode()

        self.assertEqual(compiler.compile_in_persistent_mode(SCSS), EXPANDED)
        self.assertEqual(compiler.compile_in_persistent_mode(SCSS, {"style": "compressed"}), "body{color:red}")

        self.assertEqual(len(compiler.spawned), 1)
        worker = compiler.spawned[0]
        self.assertTrue(worker.started)
        self.assertEqual(worker.command[2], PERSISTENT_FLAG)
        self.assertEqual([payload["options"] for payload in worker.sent_payloads()], [{}, {"style": "compressed"}])

    def test_empty_source_skips_worker(self) -> None:
        compiler = FakeCompiler().enable_persistent_mode()
        self.assertEqual(compiler.compile_in_persistent_mode(""), "")
        self.assertEqual(compiler.spawned, [])

    def test_disable_sends_exit_and_stops(self) -> None:
        compiler = FakeCompiler().queue(css=EXPANDED)
        compiler.enable_persistent_mode()
        compiler.compile_in_persistent_mode(SCSS)
        worker = compiler.spawned[0]

        compiler.disable_persistent_mode()

        self.assertEqual(worker.sent_payloads()[-1], {"exit": True})
        self.assertTrue(worker.stopped)
        self.assertIsNone(compiler.persistent_process)
        self.assertFalse(compiler.persistent_mode)
        with self.assertRaises(PersistentModeError):
            compiler.compile_in_persistent_mode(SCSS)

    def test_disable_releases_exited_worker(self) -> None:
        """Test that a worker which already exited is still stopped."""
        compiler = FakeCompiler().queue(css=EXPANDED)
        compiler.enable_persistent_mode()
        compiler.compile_in_persistent_mode(SCSS)
        worker = compiler.spawned[0]
        worker.running = False

        compiler.disable_persistent_mode()

        self.assertTrue(worker.stopped)
        self.assertNotIn({"exit": True}, worker.sent_payloads())
        self.assertIsNone(compiler.persistent_process)

    def test_disable_without_worker(self) -> None:
        compiler = FakeCompiler().enable_persistent_mode()
        compiler.disable_persistent_mode()
        compiler.disable_persistent_mode()
        self.assertFalse(compiler.persistent_mode)

    def test_dead_worker_restarted(self) -> None:
        compiler = FakeCompiler().queue(css="a {}").queue(css="b {}")
        compiler.enable_persistent_mode()
        compiler.compile_in_persistent_mode("a { }")
        compiler.spawned[0].running = False

        self.assertEqual(compiler.compile_in_persistent_mode("b { }"), "b {}")

        self.assertEqual(len(compiler.spawned), 2)
        self.assertTrue(compiler.spawned[0].stopped)
        self.assertIs(compiler.persistent_process, compiler.spawned[1])

    def test_worker_closing_output_is_process_error(self) -> None:
        compiler = FakeCompiler(stderr="fatal: out of memory").enable_persistent_mode()

        with self.assertRaises(ProcessError) as ctx:
            compiler.compile_in_persistent_mode(SCSS)

        self.assertEqual(str(ctx.exception), "Sass persistent process failed: fatal: out of memory")

    def test_timeout_drops_worker(self) -> None:
        compiler = FakeCompiler().enable_persistent_mode()
        with patch.object(FakeProcessHandle, "read_line", side_effect=ProcessTimeoutError("Timed out")):
            with self.assertRaises(ProcessTimeoutError):
                compiler.compile_in_persistent_mode(SCSS)

        self.assertTrue(compiler.spawned[0].stopped)
        self.assertIsNone(compiler.persistent_process)
        self.assertTrue(compiler.persistent_mode)

    def test_context_manager_disables(self) -> None:
        with FakeCompiler().queue(css=EXPANDED) as compiler:
            compiler.enable_persistent_mode()
            compiler.compile_in_persistent_mode(SCSS)
            worker = compiler.spawned[0]

        self.assertTrue(worker.stopped)
        self.assertFalse(compiler.persistent_mode)


class TestOptions(unittest.TestCase):
    """Test stored default options."""

    def test_defaults_are_empty(self) -> None:
        self.assertEqual(FakeCompiler().get_options(), CompileOptions())

    def test_set_options_from_mapping(self) -> None:
        compiler = FakeCompiler()
        returned = compiler.set_options({"style": "compressed", "sourceMap": True})

        self.assertIs(returned, compiler)
        self.assertEqual(compiler.get_options(), CompileOptions(style="compressed", source_map=True))

    def test_set_options_replaces(self) -> None:
        compiler = FakeCompiler()
        compiler.set_options({"style": "compressed"})
        compiler.set_options({"syntax": "indented"})

        self.assertIsNone(compiler.get_options().style)
        self.assertEqual(compiler.get_options().syntax, "indented")

    def test_invalid_options_type(self) -> None:
        with self.assertRaises(InvalidOptionError):
            FakeCompiler().set_options(["compressed"])  # type: ignore[arg-type]


class TestEnvironmentChecks(unittest.TestCase):
    """Test that construction validates the environment."""

    def test_runtime_discovered_when_omitted(self) -> None:
        with patch.object(FakeCompiler, "find_runtime", return_value="/usr/bin/python3") as mock_find:
            compiler = FakeCompiler(runtime_path=None)

        mock_find.assert_called_once()
        self.assertEqual(compiler.runtime_path, "/usr/bin/python3")

    def test_check_environment_called(self) -> None:
        with patch.object(Compiler, "check_environment") as mock_check:
            Compiler(runtime_path="python-test")
        mock_check.assert_called_once()

    def test_explicit_runtime_must_start(self) -> None:
        """Test that a bad runtime path is not reported as missing libsass."""
        with self.assertRaises(RuntimeNotFoundError) as ctx:
            Compiler(runtime_path="/nonexistent/sassbridge-python")

        self.assertIn("/nonexistent/sassbridge-python", str(ctx.exception))

    def test_missing_libsass_after_runtime_check(self) -> None:
        with patch.object(Compiler, "_probe", side_effect=lambda command: command[1] == "--version"):
            with self.assertRaises(CompilerDependencyError):
                Compiler(runtime_path="python-test")


if __name__ == "__main__":
    unittest.main()
