"""Typed compile options.

Fields left as None are "not set": they do not override defaults when
merged and are not sent to the worker.
"""

import os
from collections.abc import Mapping
from dataclasses import dataclass, fields, replace
from typing import Any

from sassbridge.exceptions import InvalidOptionError

SYNTAXES = ("scss", "sass", "indented")
STYLES = ("expanded", "compressed")

# field name -> wire key
WIRE_KEYS: dict[str, str] = {
    "syntax": "syntax",
    "style": "style",
    "source_map": "sourceMap",
    "source_map_path": "sourceMapPath",
    "include_sources": "includeSources",
    "load_paths": "loadPaths",
    "quiet_deps": "quietDeps",
    "silence_deprecations": "silenceDeprecations",
    "verbose": "verbose",
    "stream_result": "streamResult",
    "url": "url",
}

_ALIASES: dict[str, str] = {wire: name for name, wire in WIRE_KEYS.items()}
_ALIASES.update({name: name for name in WIRE_KEYS})
_ALIASES["sourceMapIncludeSources"] = "include_sources"


@dataclass(frozen=True)
class CompileOptions:
    """Options for a single compilation.

    Attributes:
        syntax: "scss" (default), "sass" or "indented"
        style: "expanded" (default) or "compressed"
        source_map: Produce a source map
        source_map_path: Map file, directory or http(s) URL; unset means inline
        include_sources: Embed original sources in the map
        load_paths: Ordered import search paths
        quiet_deps: Silence warnings from dependencies
        silence_deprecations: Deprecation ids to silence
        verbose: Report every deprecation occurrence
        stream_result: Ask the worker to chunk large results
        url: Logical source URL used in maps and default map filenames
    """

    syntax: str | None = None
    style: str | None = None
    source_map: bool | None = None
    source_map_path: str | None = None
    include_sources: bool | None = None
    load_paths: tuple[str, ...] | None = None
    quiet_deps: bool | None = None
    silence_deprecations: tuple[str, ...] | None = None
    verbose: bool | None = None
    stream_result: bool | None = None
    url: str | None = None

    def __post_init__(self) -> None:
        if self.syntax is not None and self.syntax not in SYNTAXES:
            raise InvalidOptionError(f"Unsupported syntax {self.syntax!r}; expected one of {', '.join(SYNTAXES)}")
        if self.style is not None and self.style not in STYLES:
            raise InvalidOptionError(f"Unsupported style {self.style!r}; expected one of {', '.join(STYLES)}")
        # Sequences are stored as tuples so instances stay hashable and immutable
        if self.load_paths is not None:
            object.__setattr__(self, "load_paths", _as_str_tuple(self.load_paths))
        if self.silence_deprecations is not None:
            object.__setattr__(self, "silence_deprecations", _as_str_tuple(self.silence_deprecations))
        if self.source_map_path is not None:
            object.__setattr__(self, "source_map_path", os.fspath(self.source_map_path))

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> "CompileOptions":
        """Build options from wire keys or field names.

        Raises:
            InvalidOptionError: If a key is not recognized
        """
        values: dict[str, Any] = {}
        unknown: list[str] = []
        for key, value in data.items():
            name = _ALIASES.get(key)
            if name is None:
                unknown.append(key)
                continue
            values[name] = value
        if unknown:
            raise InvalidOptionError(f"Unknown option(s): {', '.join(sorted(unknown))}")
        return cls(**values)

    def merged(self, override: "CompileOptions | None") -> "CompileOptions":
        """Return a copy where every field set on override wins."""
        if override is None:
            return self
        changes = {f.name: getattr(override, f.name) for f in fields(self) if f.name in WIRE_KEYS and getattr(override, f.name) is not None}
        return replace(self, **changes)

    def with_values(self, **changes: Any) -> "CompileOptions":
        return replace(self, **changes)

    def to_wire(self) -> dict[str, Any]:
        """Convert set fields to the worker's camelCase keys."""
        wire: dict[str, Any] = {}
        for name, key in WIRE_KEYS.items():
            value = getattr(self, name)
            if value is None:
                continue
            wire[key] = list(value) if isinstance(value, tuple) else value
        return wire

    @property
    def wants_source_map(self) -> bool:
        return bool(self.source_map) or bool(self.source_map_path)


def _as_str_tuple(value: Any) -> tuple[str, ...]:
    if isinstance(value, (str, os.PathLike)):
        return (os.fspath(value),)
    return tuple(os.fspath(item) if isinstance(item, os.PathLike) else str(item) for item in value)


def coerce_options(options: "CompileOptions | Mapping[str, Any] | None") -> CompileOptions:
    """Accept CompileOptions, a plain mapping, or None."""
    if options is None:
        return CompileOptions()
    if isinstance(options, CompileOptions):
        return options
    if isinstance(options, Mapping):
        return CompileOptions.from_mapping(options)
    raise InvalidOptionError(f"Options must be a mapping or CompileOptions, got {type(options).__name__}")
