"""Source map directives appended to compiled CSS.

The emitted comment always references a URL or a bare filename, never a
local filesystem path.
"""

import base64
import json
import logging
import os
from pathlib import Path, PurePosixPath
from typing import Any
from urllib.parse import unquote, urlparse

from sassbridge.exceptions import OutputUnwritableError
from sassbridge.options import CompileOptions

logger = logging.getLogger(__name__)

DEFAULT_FILENAME = "style"


def serialize_map(source_map: dict[str, Any]) -> str:
    return json.dumps(source_map, separators=(",", ":"), ensure_ascii=False)


def is_http_url(value: str) -> bool:
    parsed = urlparse(value)
    return parsed.scheme in ("http", "https") and bool(parsed.netloc)


def inline_comment(source_map: dict[str, Any]) -> str:
    encoded = base64.b64encode(serialize_map(source_map).encode("utf-8")).decode("ascii")
    return f"\n/*# sourceMappingURL=data:application/json;base64,{encoded} */"


def source_stem_from_url(url: str | None) -> str:
    """Filename stem of the last path segment of url, or DEFAULT_FILENAME."""
    if not url:
        return DEFAULT_FILENAME
    try:
        path = urlparse(url).path
    except ValueError:
        return DEFAULT_FILENAME
    stem = PurePosixPath(unquote(path)).stem
    return stem or DEFAULT_FILENAME


def file_comment(source_map: dict[str, Any], map_path: str, url: str | None = None) -> str:
    """Write the map beside the CSS (or reference a URL) and return the comment.

    Args:
        source_map: Map object to write
        map_path: http(s) URL, existing directory, or file path
        url: Source URL used to name the map file when map_path is a directory

    Returns:
        Comment referencing the URL or the written file's base name
    """
    if is_http_url(map_path):
        return f"\n/*# sourceMappingURL={map_path} */"

    if os.path.isdir(map_path):
        target = Path(map_path) / f"{source_stem_from_url(url)}.map"
    elif not map_path.lower().endswith(".map"):
        target = Path(map_path + ".map")
    else:
        target = Path(map_path)

    try:
        target.write_text(serialize_map(source_map), encoding="utf-8")
    except OSError as e:
        raise OutputUnwritableError(f"Unable to write file: {target} ({e.strerror or e})") from e
    logger.debug(f"Wrote source map to {target}")
    return f"\n/*# sourceMappingURL={target.name} */"


def render_source_map(source_map: dict[str, Any], options: CompileOptions) -> str:
    """Render the directive for a compiled map: inline without a map path, else file/URL."""
    if not options.source_map_path:
        return inline_comment(source_map)
    return file_comment(source_map, options.source_map_path, options.url)
