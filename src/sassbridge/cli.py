"""Command line entry point for sassbridge."""

import argparse
import logging
import sys
from dataclasses import dataclass, field
from pathlib import Path

from sassbridge.compiler import Compiler, write_output
from sassbridge.exceptions import SassBridgeError
from sassbridge.options import STYLES, SYNTAXES, CompileOptions

logger = logging.getLogger(__name__)


@dataclass
class CliArgs:
    """Typed command line arguments."""

    input: str
    output: str | None = None
    style: str | None = None
    syntax: str | None = None
    source_map: bool = False
    source_map_path: str | None = None
    include_sources: bool = False
    load_paths: list[str] = field(default_factory=lambda: [])
    force: bool = False
    verbose: bool = False

    def compile_options(self) -> CompileOptions:
        return CompileOptions(
            style=self.style,
            syntax=self.syntax,
            source_map=True if self.source_map or self.source_map_path else None,
            source_map_path=self.source_map_path,
            include_sources=True if self.include_sources else None,
            load_paths=self.load_paths or None,
        )


def parse_args(args: list[str] | None = None) -> CliArgs:
    parser = argparse.ArgumentParser(prog="sassbridge", description="Compile SCSS/Sass to CSS")
    parser.add_argument("input", help="Stylesheet to compile, or - for stdin")
    parser.add_argument("-o", "--output", help="Write CSS here (skipped when already up to date)")
    parser.add_argument("--style", choices=STYLES)
    parser.add_argument("--syntax", choices=SYNTAXES)
    parser.add_argument("--source-map", action="store_true", help="Emit a source map (inline unless a path is given)")
    parser.add_argument("--source-map-path", help="Map file, directory or http(s) URL")
    parser.add_argument("--include-sources", action="store_true", help="Embed sources in the map")
    parser.add_argument("-I", "--load-path", dest="load_paths", action="append", default=[], help="Import search path (repeatable)")
    parser.add_argument("-f", "--force", action="store_true", help="Recompile even if the output is newer")
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable debug logging")
    parsed = parser.parse_args(args)
    return CliArgs(
        input=parsed.input,
        output=parsed.output,
        style=parsed.style,
        syntax=parsed.syntax,
        source_map=parsed.source_map,
        source_map_path=parsed.source_map_path,
        include_sources=parsed.include_sources,
        load_paths=list(parsed.load_paths),
        force=parsed.force,
        verbose=parsed.verbose,
    )


def run(cli_args: CliArgs, compiler: Compiler) -> int:
    options = cli_args.compile_options()

    if cli_args.input == "-":
        css = compiler.compile_string(sys.stdin.read(), options)
    elif cli_args.output:
        output = Path(cli_args.output)
        changed = compiler.compile_file_and_save(cli_args.input, output, options, force=cli_args.force)
        if not changed:
            logger.info(f"{output} is up to date")
        return 0
    else:
        css = compiler.compile_file(cli_args.input, options)

    if cli_args.output:
        write_output(Path(cli_args.output), css)
    else:
        sys.stdout.write(css + ("\n" if css else ""))
    return 0


def main(args: list[str] | None = None) -> int:
    cli_args = parse_args(args)
    logging.basicConfig(
        level=logging.DEBUG if cli_args.verbose else logging.WARNING,
        format="[%(asctime)s] [%(levelname)s] %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )

    try:
        with Compiler() as compiler:
            return run(cli_args, compiler)
    except SassBridgeError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1
    except KeyboardInterrupt:
        print("\nInterrupted", file=sys.stderr)
        return 130


if __name__ == "__main__":
    sys.exit(main())
