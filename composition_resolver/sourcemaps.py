from __future__ import annotations

import bisect
import json
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any
from urllib.parse import urlsplit

import structlog

logger = structlog.get_logger(__name__)

_BASE64 = "ABCDEFGHIJKLMNOPQRSTUVWXYZabcdefghijklmnopqrstuvwxyz0123456789+/"
_BASE64_VALUES = {ch: i for i, ch in enumerate(_BASE64)}

# http://localhost:3000/bundle.js:12:345
_FRAME_LOCATION_RE = re.compile(r"(https?://[^\s()]+?):(\d+):(\d+)")


def decode_vlq(segment: str) -> list[int]:
    values: list[int] = []
    shift = 0
    value = 0
    for ch in segment:
        digit = _BASE64_VALUES[ch]
        value += (digit & 31) << shift
        if digit & 32:
            shift += 5
            continue
        negative = value & 1
        value >>= 1
        values.append(-value if negative else value)
        value = 0
        shift = 0
    return values


@dataclass
class SourceMap:
    sources: list[str]
    # Per generated line: sorted (generated column, source index, original line, original column).
    lines: list[list[tuple[int, int, int, int]]]

    @classmethod
    def parse(cls, raw: dict[str, Any]) -> "SourceMap":
        root = str(raw.get("sourceRoot") or "")
        sources = [root + str(s) for s in raw.get("sources") or []]
        lines: list[list[tuple[int, int, int, int]]] = []

        src = orig_line = orig_col = 0
        for line in str(raw.get("mappings") or "").split(";"):
            gen_col = 0
            decoded: list[tuple[int, int, int, int]] = []
            for segment in line.split(","):
                if not segment:
                    continue
                fields = decode_vlq(segment)
                gen_col += fields[0]
                if len(fields) < 4:
                    continue
                src += fields[1]
                orig_line += fields[2]
                orig_col += fields[3]
                decoded.append((gen_col, src, orig_line, orig_col))
            decoded.sort()
            lines.append(decoded)
        return cls(sources=sources, lines=lines)

    def original_position(self, line: int, column: int) -> tuple[str, int, int] | None:
        """Map a 1-based generated line/column to a 1-based original location."""
        if line < 1 or line > len(self.lines):
            return None
        segments = self.lines[line - 1]
        if not segments:
            return None
        idx = bisect.bisect_right(segments, (column - 1, float("inf"), 0, 0)) - 1
        if idx < 0:
            return None
        _, src, orig_line, orig_col = segments[idx]
        if src >= len(self.sources):
            return None
        return self.sources[src], orig_line + 1, orig_col + 1


@dataclass
class SourceMapContext:
    """Source maps of a served bundle, keyed by script path relative to its root."""

    maps: dict[str, SourceMap] = field(default_factory=dict)

    @classmethod
    def from_bundle_dir(cls, bundle_dir: Path) -> "SourceMapContext":
        maps: dict[str, SourceMap] = {}
        for map_file in sorted(bundle_dir.rglob("*.js.map")):
            script = map_file.relative_to(bundle_dir).as_posix()[: -len(".map")]
            try:
                maps[script] = SourceMap.parse(json.loads(map_file.read_text(encoding="utf-8")))
            except (OSError, ValueError, KeyError) as exc:
                logger.warning("Ignoring unreadable source map", file=str(map_file), error=str(exc))
        return cls(maps=maps)

    def lookup(self, url: str) -> SourceMap | None:
        path = urlsplit(url).path.lstrip("/")
        return self.maps.get(path)

    def symbolicate(self, stack: str | None) -> str | None:
        """Rewrite bundle locations in a browser stack trace to original sources."""
        if not stack or not self.maps:
            return stack

        def _replace(m: re.Match[str]) -> str:
            source_map = self.lookup(m.group(1))
            if source_map is None:
                return m.group(0)
            pos = source_map.original_position(int(m.group(2)), int(m.group(3)))
            if pos is None:
                return m.group(0)
            source, line, column = pos
            return f"{source}:{line}:{column}"

        return _FRAME_LOCATION_RE.sub(_replace, stack)
