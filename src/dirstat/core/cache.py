"""Reading and writing dirstat cache files.

A cache file is line-oriented UTF-8 text, optionally gzip-compressed::

    # comment
    [dirstat 1.0 cache file]<TAB>/scanned/root
    D<TAB>0<TAB>1700000000<TAB>-<TAB>0<TAB>/scanned/root
    F<TAB>100<TAB>1700000000<TAB>-<TAB>0<TAB>a.txt
    L<TAB>7<TAB>1700000000<TAB>-<TAB>0<TAB>link<TAB>a.txt
    ]

Entry fields are type tag, own size, mtime, flags, unreadable-bytes
estimate and name, plus the link target for symlinks. A ``D`` line opens a
directory and the matching ``]`` line closes it. Flags are any of ``e``
(error), ``p`` (partial) and ``x`` (excluded), each at most once and in
that order, or ``-`` for none.
Backslash, tab, newline and carriage return in names are escaped.
"""

from __future__ import annotations

import gzip
import io
import logging
import os
import re
import tempfile
import zlib
from contextlib import ExitStack, contextmanager
from pathlib import Path
from typing import IO, Iterable, Iterator

from dirstat.errors import CacheIOError, CacheParseError, InvalidStateError
from dirstat.models.entry import Entry, EntryType
from dirstat.models.tree import DirTree, ScanOutcome

log = logging.getLogger(__name__)

CACHE_VERSION = "1.0"
HEADER = f"[dirstat {CACHE_VERSION} cache file]"
CLOSE_MARKER = "]"

_COMMENT = "# Do not edit!\n#\n# Type\tsize\tmtime\tflags\tunreadable\tname\t[link target]\n"
_GZIP_MAGIC = b"\x1f\x8b"
_FLAG_ORDER = "epx"

_TAGS = {
    EntryType.FILE: "F",
    EntryType.DIRECTORY: "D",
    EntryType.SYMLINK: "L",
    EntryType.SPECIAL: "S",
}
_TYPES = {tag: etype for etype, tag in _TAGS.items()}

_ESCAPE_TABLE = str.maketrans({"\\": "\\\\", "\t": "\\t", "\n": "\\n", "\r": "\\r"})
_UNESCAPES = {"\\": "\\", "t": "\t", "n": "\n", "r": "\r"}
_ESCAPE_RE = re.compile(r"\\(.?)", re.DOTALL)
_UINT_RE = re.compile(r"[0-9]+", re.ASCII)
_INT_RE = re.compile(r"-?[0-9]+", re.ASCII)


# ── writing ──────────────────────────────────────────────────────────────

def write_cache(tree: DirTree, destination: str | os.PathLike[str]) -> None:
    """Stream ``tree`` to ``destination``, replacing it atomically.

    Destinations ending in ``.gz`` are gzip-compressed. Nothing is left
    behind at ``destination`` if writing fails.

    Raises:
        InvalidStateError: If the tree has no root.
        CacheIOError: On any filesystem error.
    """
    if tree.root is None:
        raise InvalidStateError("Cannot write a cache file for an empty tree")

    dest = Path(destination)
    try:
        fd, tmp_name = tempfile.mkstemp(prefix=f".{dest.name}.", suffix=".tmp", dir=dest.parent)
    except OSError as e:
        raise CacheIOError(f"Cannot create cache file in {dest.parent}: {e}") from e

    written = False
    try:
        with _text_writer(fd, compress=dest.name.endswith(".gz")) as out:
            _write_tree(tree, out)
        # mkstemp creates the file owner-only; give it the usual umask-based mode
        os.chmod(tmp_name, 0o666 & ~_current_umask())
        os.replace(tmp_name, dest)
        written = True
    except OSError as e:
        raise CacheIOError(f"Cannot write cache file {dest}: {e}") from e
    finally:
        if not written:
            _remove_quietly(tmp_name)

    log.info("Wrote %d entries to cache file %s", len(tree), dest)


def _write_tree(tree: DirTree, out: IO[str]) -> None:
    out.write(_COMMENT)
    out.write(f"{HEADER}\t{_escape(tree.root_path)}\n")

    # None stands for the close marker of the directory pushed before it
    stack: list[Entry | None] = [tree.root]
    while stack:
        entry = stack.pop()
        if entry is None:
            out.write(CLOSE_MARKER + "\n")
            continue
        out.write(_format_entry(entry))
        if entry.is_dir:
            stack.append(None)
            stack.extend(reversed(entry.children))


def _format_entry(entry: Entry) -> str:
    flags = ("e" if entry.error else "") + ("p" if entry.partial else "") + ("x" if entry.excluded else "")
    fields = [
        _TAGS[entry.type],
        str(entry.size),
        str(entry.mtime),
        flags or "-",
        str(entry.unreadable_bytes),
        _escape(entry.name),
    ]
    if entry.type is EntryType.SYMLINK:
        fields.append(_escape(entry.link_target))
    return "\t".join(fields) + "\n"


@contextmanager
def _text_writer(fd: int, compress: bool) -> Iterator[IO[str]]:
    with ExitStack() as stack:
        stream: IO[bytes] = stack.enter_context(os.fdopen(fd, "wb"))
        if compress:
            # Fixed header mtime keeps identical trees byte-identical on disk
            stream = stack.enter_context(gzip.GzipFile(filename="", mode="wb", fileobj=stream, mtime=0))
        yield stack.enter_context(
            io.TextIOWrapper(stream, encoding="utf-8", errors="surrogateescape", newline="\n")
        )


def _current_umask() -> int:
    mask = os.umask(0)
    os.umask(mask)
    return mask


def _remove_quietly(path: str) -> None:
    try:
        os.unlink(path)
    except FileNotFoundError:
        pass
    except OSError as e:
        log.warning("Could not remove temporary file %s: %s", path, e)


# ── reading ──────────────────────────────────────────────────────────────

def read_cache(source: str | os.PathLike[str]) -> DirTree:
    """Parse a cache file into a new, fully aggregated :class:`DirTree`.

    Either the whole file parses or nothing is returned.

    Raises:
        CacheParseError: If the content is malformed or truncated.
        CacheIOError: If the file cannot be opened or read.
    """
    path = Path(source)
    try:
        with _text_reader(path) as lines:
            tree = _parse(lines)
    except (gzip.BadGzipFile, zlib.error) as e:
        raise CacheParseError(f"Corrupt compressed data: {e}") from e
    except EOFError as e:
        raise CacheParseError(f"Truncated compressed data: {e}") from e
    except OSError as e:
        raise CacheIOError(f"Cannot read cache file {path}: {e}") from e

    log.info("Read %d entries from cache file %s", len(tree), path)
    return tree


@contextmanager
def _text_reader(path: Path) -> Iterator[IO[str]]:
    with ExitStack() as stack:
        stream: IO[bytes] = stack.enter_context(open(path, "rb"))
        if stream.read(2) == _GZIP_MAGIC:
            stream.seek(0)
            stream = stack.enter_context(gzip.GzipFile(fileobj=stream, mode="rb"))
        else:
            stream.seek(0)
        yield stack.enter_context(
            io.TextIOWrapper(stream, encoding="utf-8", errors="surrogateescape", newline="\n")
        )


def _parse(lines: Iterable[str]) -> DirTree:
    tree = DirTree()
    root_path: str | None = None
    open_dirs: list[tuple[Entry, int]] = []
    line_no = 0

    for line_no, raw in enumerate(lines, 1):
        line = raw.rstrip("\n")
        if not line or line.startswith("#"):
            continue

        if root_path is None:
            root_path = _parse_header(line, line_no)
            continue

        if tree.root is not None and not open_dirs:
            raise CacheParseError("Unexpected content after the root entry", line_no)

        if line == CLOSE_MARKER:
            if not open_dirs:
                raise CacheParseError("Close marker without an open directory", line_no)
            entry, _ = open_dirs.pop()
            entry.recalc()
            continue

        entry = _parse_entry(line, line_no)
        if tree.root is None:
            tree.set_root(entry, root_path)
        else:
            tree.insert(open_dirs[-1][0], entry)
        if entry.is_dir:
            open_dirs.append((entry, line_no))

    if root_path is None:
        raise CacheParseError("Missing cache file header", line_no)
    if open_dirs:
        entry, opened_at = open_dirs[-1]
        raise CacheParseError(f"Directory '{entry.name}' is never closed", opened_at)
    if tree.root is None:
        raise CacheParseError("Cache file contains no entries", line_no)

    tree.outcome = ScanOutcome.FINISHED
    return tree


def _parse_header(line: str, line_no: int) -> str:
    fields = line.split("\t")
    if not fields[0].startswith("[dirstat ") or not fields[0].endswith("cache file]"):
        raise CacheParseError("Not a dirstat cache file", line_no)
    if fields[0] != HEADER:
        raise CacheParseError(f"Unsupported cache format {fields[0]!r}", line_no)
    if len(fields) != 2 or not fields[1]:
        raise CacheParseError("Header does not name the scanned root", line_no)
    return _unescape(fields[1], line_no)


def _parse_entry(line: str, line_no: int) -> Entry:
    fields = line.split("\t")
    etype = _TYPES.get(fields[0])
    if etype is None:
        raise CacheParseError(f"Unknown entry type {fields[0]!r}", line_no)

    expected = 7 if etype is EntryType.SYMLINK else 6
    if len(fields) != expected:
        raise CacheParseError(f"Expected {expected} fields, found {len(fields)}", line_no)

    _, size, mtime, flags, unreadable, name, *rest = fields
    if flags != "-" and (not flags or flags != "".join(f for f in _FLAG_ORDER if f in flags)):
        raise CacheParseError(f"Invalid flags {flags!r}", line_no)
    name = _unescape(name, line_no)
    if not name:
        raise CacheParseError("Empty entry name", line_no)

    return Entry(
        name=name,
        type=etype,
        size=_parse_int(size, "size", line_no, _UINT_RE),
        mtime=_parse_int(mtime, "mtime", line_no, _INT_RE),
        link_target=_unescape(rest[0], line_no) if rest else "",
        error="e" in flags,
        unreadable_bytes=_parse_int(unreadable, "unreadable bytes", line_no, _UINT_RE),
        excluded="x" in flags,
        partial="p" in flags,
    )


def _parse_int(text: str, what: str, line_no: int, pattern: re.Pattern[str]) -> int:
    if not pattern.fullmatch(text):
        raise CacheParseError(f"Invalid {what} {text!r}", line_no)
    return int(text)


def _escape(text: str) -> str:
    return text.translate(_ESCAPE_TABLE)


def _unescape(text: str, line_no: int) -> str:
    def replace(match: re.Match[str]) -> str:
        char = match.group(1)
        if char not in _UNESCAPES:
            raise CacheParseError(f"Invalid escape sequence {match.group(0)!r}", line_no)
        return _UNESCAPES[char]

    return _ESCAPE_RE.sub(replace, text)
