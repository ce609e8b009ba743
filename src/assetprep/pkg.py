#!/usr/bin/env python3
"""Build and unpack PKG resource archives.

A package is a 16-byte header, a sorted index of 20-byte entries, a table
of NUL-terminated stored pathnames and then the file payloads, each aligned
to the configured boundary. Entries are sorted by ``(pkg_hash(name),
name.lower())`` so the runtime loader can binary search them.
"""

from __future__ import annotations

import bisect
import logging
import struct
import zlib
from dataclasses import dataclass
from pathlib import Path
from typing import Callable

from assetprep.binutil import align_up

logger = logging.getLogger(__name__)

PKG_MAGIC = b"PKG\x00"
PKG_MAGIC_LEGACY = b"PKG\x0a"
PKG_HEADER_STRUCT = struct.Struct(">4sHHII")
PKG_ENTRY_STRUCT = struct.Struct(">IIIII")
PKGF_DEFLATED = 1 << 24
NAMEOFS_MASK = 0x00FFFFFF
U32_MAX = 0xFFFFFFFF

DEFAULT_ALIGNMENT = 4
COPY_CHUNK = 1 << 16
DEFLATE_PREFIX = "deflate:"


@dataclass
class FileInfo:
    pathname: str
    realfile: Path
    flags: int = 0


@dataclass
class IndexEntry:
    hash: int
    nameofs_flags: int
    offset: int = 0
    datalen: int = 0
    filesize: int = 0
    name: str = ""

    @property
    def name_offset(self) -> int:
        return self.nameofs_flags & NAMEOFS_MASK

    @property
    def deflated(self) -> bool:
        return bool(self.nameofs_flags & PKGF_DEFLATED)

    def pack(self) -> bytes:
        return PKG_ENTRY_STRUCT.pack(self.hash, self.nameofs_flags, self.offset, self.datalen, self.filesize)


@dataclass(frozen=True)
class PackageOptions:
    alignment: int = DEFAULT_ALIGNMENT
    compress_min_size: int = 0
    compress_min_ratio: float = 0.0

    def __post_init__(self) -> None:
        if self.alignment < 1:
            raise ValueError("Invalid alignment value")
        if self.compress_min_size < 0:
            raise ValueError("Invalid minimum compression size")
        if self.compress_min_ratio > 1.0:
            raise ValueError("Invalid compression ratio")


def pkg_hash(path: str) -> int:
    """Hash a stored pathname the way the runtime loader does (ASCII case-folded)."""
    h = 0
    for c in path.encode("utf-8"):
        if 0x41 <= c <= 0x5A:
            c += 0x20
        h = ((h << 27) | (h >> 5)) & U32_MAX
        h ^= c
    return h


def sort_key(name: str) -> tuple[int, bytes]:
    return pkg_hash(name), name.encode("utf-8").lower()


# ---------------------------------------------------------------------------
# Control file parsing
# ---------------------------------------------------------------------------


def parse_path(text: str, pos: int) -> tuple[str | None, int]:
    """Read one pathname starting at ``pos``, skipping leading whitespace.

    Quoted pathnames end at the next unescaped double quote, with ``\\``
    escaping the following character; unquoted ones end at whitespace.
    Returns ``(None, pos)`` when no pathname is present.
    """
    while pos < len(text) and text[pos].isspace():
        pos += 1
    if pos >= len(text):
        return None, pos

    if text[pos] != '"':
        start = pos
        while pos < len(text) and not text[pos].isspace():
            pos += 1
        return text[start:pos], pos

    pos += 1
    chars = []
    while pos < len(text) and text[pos] != '"':
        if text[pos] == "\\":
            if pos + 1 >= len(text):
                raise ValueError(f"Stray backslash at end of line: {text[pos:]}")
            pos += 1
        chars.append(text[pos])
        pos += 1
    if pos >= len(text):
        raise ValueError(f"Unterminated quoted pathname: {''.join(chars)}")
    return "".join(chars), pos + 1


def _skip_blanks(text: str, pos: int) -> int:
    while pos < len(text) and text[pos] in " \t":
        pos += 1
    return pos


def _strip_deflate(text: str, pos: int) -> tuple[int, int]:
    if text[pos:pos + len(DEFLATE_PREFIX)].lower() == DEFLATE_PREFIX:
        return pos + len(DEFLATE_PREFIX), PKGF_DEFLATED
    return pos, 0


def parse_control_line(line: str) -> tuple[str | None, str, int] | None:
    """Parse one control-file line into ``(stored, real, flags)``.

    Returns None for blank and comment lines. ``stored`` is None when the
    line names only the real file.
    """
    line = line.rstrip("\n").rstrip("\r")
    pos = _skip_blanks(line, 0)
    if pos >= len(line) or line[pos] == "#":
        return None
    if line[pos] == "=":
        raise ValueError("Pathname missing")

    pos, flags = _strip_deflate(line, pos)
    try:
        pathname, pos = parse_path(line, pos)
    except ValueError as exc:
        raise ValueError(f"Pathname missing or invalid ({exc})") from None
    if pathname is None:
        raise ValueError("Pathname missing or invalid")

    pos = _skip_blanks(line, pos)
    if pos >= len(line):
        return None, pathname, flags
    if line[pos] != "=":
        raise ValueError("Invalid format (unquoted spaces not allowed in pathnames)")

    pos = _skip_blanks(line, pos + 1)
    pos, real_flags = _strip_deflate(line, pos)
    try:
        realfile, pos = parse_path(line, pos)
    except ValueError as exc:
        raise ValueError(f"Real filename missing or invalid ({exc})") from None
    if realfile is None:
        raise ValueError("Real filename missing or invalid")
    if _skip_blanks(line, pos) < len(line):
        raise ValueError("Junk at end of line")
    return pathname, realfile, flags | real_flags


def expand_wildcard(stored: str | None, pattern: str, flags: int) -> list[FileInfo]:
    """Expand a real-path pattern holding one ``%`` against its directory.

    The directory part may not contain ``%``. Every regular file whose name
    starts and ends with the text around the ``%`` matches, and the matched
    middle replaces the ``%`` of the stored pattern.
    """
    if stored is None:
        stored = pattern
    dirpart, slash, filepart = pattern.rpartition("/")
    if not slash:
        dirpart = "."
    elif "%" in dirpart:
        raise ValueError("'%' not allowed in directory name")
    if "%" not in stored:
        raise ValueError("No '%' found in replacement string")
    before, _, after = filepart.partition("%")
    subst_before, _, subst_after = stored.partition("%")

    directory = Path(dirpart)
    if not directory.exists():
        logger.warning("%s: No such file or directory", dirpart)
        return []

    files = []
    for name in sorted(entry.name for entry in directory.iterdir() if entry.is_file()):
        if len(name) < len(before) + len(after):
            continue
        if not name.startswith(before) or not name.endswith(after):
            continue
        middle = name[len(before):len(name) - len(after)]
        files.append(FileInfo(
            pathname=subst_before + middle + subst_after,
            realfile=Path(f"{dirpart}/{name}"),
            flags=flags,
        ))
    return files


def read_control_file(path: Path) -> list[FileInfo]:
    """Parse a control file into the list of files to package, in file order."""
    files: list[FileInfo] = []
    with path.open("r", encoding="utf-8", newline="") as handle:
        for lineno, line in enumerate(handle, start=1):
            try:
                parsed = parse_control_line(line)
                if parsed is None:
                    continue
                stored, realfile, flags = parsed
                if "%" in realfile:
                    files.extend(expand_wildcard(stored, realfile, flags))
                else:
                    files.append(FileInfo(
                        pathname=stored if stored is not None else realfile,
                        realfile=Path(realfile),
                        flags=flags,
                    ))
            except ValueError as exc:
                raise ValueError(f"{path}:{lineno}: {exc}") from None
    return files


# ---------------------------------------------------------------------------
# Building
# ---------------------------------------------------------------------------


class NameTableBuilder:
    def __init__(self) -> None:
        self._bytes = bytearray()
        self._offsets: dict[str, int] = {}

    def intern(self, value: str) -> int:
        if value in self._offsets:
            return self._offsets[value]

        offset = len(self._bytes)
        if offset > NAMEOFS_MASK:
            raise ValueError("Pathname table too large")
        self._bytes.extend(value.encode("utf-8"))
        self._bytes.append(0)
        self._offsets[value] = offset
        return offset

    @property
    def bytes(self) -> bytes:
        return bytes(self._bytes)


def build_index(files: list[FileInfo]) -> tuple[list[IndexEntry], list[IndexEntry], bytes]:
    """Create one index entry per file.

    Returns the entries in file-list order (payload order), the same
    entries in index order, and the pathname table.
    """
    names = NameTableBuilder()
    seen: dict[bytes, str] = {}
    entries = []
    for info in files:
        folded = info.pathname.encode("utf-8").lower()
        if folded in seen:
            raise ValueError(f"Duplicate pathname in package: {info.pathname} (already have {seen[folded]})")
        seen[folded] = info.pathname
        filesize = info.realfile.stat().st_size
        if filesize > U32_MAX:
            raise ValueError(f"{info.realfile}: File too large for package")
        entries.append(IndexEntry(
            hash=pkg_hash(info.pathname),
            nameofs_flags=names.intern(info.pathname) | info.flags,
            filesize=filesize,
            name=info.pathname,
        ))
    index = sorted(entries, key=lambda entry: sort_key(entry.name))
    return entries, index, names.bytes


def _copy_raw(src, out) -> int:
    copied = 0
    for chunk in iter(lambda: src.read(COPY_CHUNK), b""):
        out.write(chunk)
        copied += len(chunk)
    return copied


def _copy_deflated(src, out) -> int:
    compressor = zlib.compressobj(9)
    copied = 0
    for chunk in iter(lambda: src.read(COPY_CHUNK), b""):
        out.write(compressor.compress(chunk))
        copied += len(chunk)
    out.write(compressor.flush())
    return copied


def write_payload(out, info: FileInfo, entry: IndexEntry, options: PackageOptions) -> None:
    if entry.deflated and entry.filesize < options.compress_min_size:
        entry.nameofs_flags &= ~PKGF_DEFLATED

    with info.realfile.open("rb") as src:
        if entry.deflated:
            copied = _copy_deflated(src, out)
            entry.datalen = out.tell() - entry.offset
            ratio = 1.0 - entry.datalen / entry.filesize if entry.filesize else 0.0
            if ratio < options.compress_min_ratio:
                logger.debug("%s: compression ratio %.3f too low, storing uncompressed", entry.name, ratio)
                out.seek(entry.offset)
                out.truncate()
                src.seek(0)
                entry.nameofs_flags &= ~PKGF_DEFLATED
        if not entry.deflated:
            copied = _copy_raw(src, out)
            entry.datalen = copied

    if copied != entry.filesize:
        raise ValueError(f"{info.realfile}: File changed size while writing package")
    if out.tell() > U32_MAX:
        raise ValueError("Package too large")


def build_package(files: list[FileInfo], output: Path, options: PackageOptions | None = None) -> list[IndexEntry]:
    """Write a package holding ``files`` to ``output`` and return its sorted index."""
    options = options or PackageOptions()
    entries, index, names = build_index(files)

    output.parent.mkdir(parents=True, exist_ok=True)
    tmp_path = output.with_suffix(output.suffix + ".tmp")
    try:
        with tmp_path.open("w+b") as out:
            out.write(PKG_HEADER_STRUCT.pack(
                PKG_MAGIC,
                PKG_HEADER_STRUCT.size,
                PKG_ENTRY_STRUCT.size,
                len(index),
                len(names),
            ))
            index_offset = out.tell()
            out.write(b"".join(entry.pack() for entry in index))
            out.write(names)

            for info, entry in zip(files, entries):
                position = out.tell()
                entry.offset = align_up(position, options.alignment)
                out.write(bytes(entry.offset - position))
                logger.debug("adding %s as %s", info.realfile, entry.name)
                write_payload(out, info, entry, options)

            out.seek(index_offset)
            out.write(b"".join(entry.pack() for entry in index))
        tmp_path.replace(output)
    finally:
        if tmp_path.exists():
            tmp_path.unlink()

    logger.debug("wrote %s", output)
    return index


# ---------------------------------------------------------------------------
# Reading and extraction
# ---------------------------------------------------------------------------


class PackageReader:
    """Random access to the files stored in a package."""

    def __init__(self, path: Path) -> None:
        self.path = path
        with path.open("rb") as handle:
            header = handle.read(PKG_HEADER_STRUCT.size)
            if len(header) != PKG_HEADER_STRUCT.size:
                raise ValueError(f"EOF reading {path}")
            magic, header_size, entry_size, count, name_size = PKG_HEADER_STRUCT.unpack(header)
            if magic not in (PKG_MAGIC, PKG_MAGIC_LEGACY):
                raise ValueError(
                    f"Bad magic number reading {path} (got {magic.hex().upper()},"
                    f" expected {PKG_MAGIC.hex().upper()})"
                )
            if header_size != PKG_HEADER_STRUCT.size:
                raise ValueError(f"Bad header size {header_size} in {path}")
            if entry_size != PKG_ENTRY_STRUCT.size:
                raise ValueError(f"Bad index entry size {entry_size} in {path}")

            raw_index = handle.read(count * entry_size)
            if len(raw_index) != count * entry_size:
                raise ValueError(f"EOF reading {path} directory")
            names = handle.read(name_size)
            if len(names) != name_size:
                raise ValueError(f"EOF reading {path} pathname table")

        self.entries: list[IndexEntry] = []
        for fields in PKG_ENTRY_STRUCT.iter_unpack(raw_index):
            entry = IndexEntry(*fields)
            start = entry.name_offset
            end = names.find(b"\x00", start)
            if start >= len(names) or end < 0:
                raise ValueError(f"Bad pathname offset {start} in {path}")
            entry.name = names[start:end].decode("utf-8")
            self.entries.append(entry)
        self._keys = [(entry.hash, entry.name.encode("utf-8").lower()) for entry in self.entries]

    def lookup(self, name: str) -> IndexEntry | None:
        key = sort_key(name)
        i = bisect.bisect_left(self._keys, key)
        if i < len(self._keys) and self._keys[i] == key:
            return self.entries[i]
        return None

    def read(self, entry: IndexEntry) -> bytes:
        with self.path.open("rb") as handle:
            handle.seek(entry.offset)
            data = handle.read(entry.datalen)
        if len(data) != entry.datalen:
            raise ValueError(f"{entry.name}: Short read on package file")
        if not entry.deflated:
            return data
        try:
            data = zlib.decompress(data)
        except zlib.error as exc:
            raise ValueError(f"{entry.name}: Decompression error ({exc})") from None
        if len(data) != entry.filesize:
            raise ValueError(f"{entry.name}: Decompressed size {len(data)} does not match {entry.filesize}")
        return data


def match_pattern(pattern: str, path: str) -> bool:
    """Match ``path`` against ``?``, ``*`` and ``**`` wildcards.

    ``?`` and ``*`` never match ``/``; ``**`` matches across directories.
    Literal runs are walked in a loop, so only stars recurse.
    """
    p = 0
    i = 0
    while p < len(pattern):
        ch = pattern[p]
        if ch == "*":
            double_star = pattern.startswith("**", p)
            rest = pattern[p + 2:] if double_star else pattern[p + 1:]
            while not match_pattern(rest, path[i:]):
                if i >= len(path) or (not double_star and path[i] == "/"):
                    return False
                i += 1
            return True
        if i >= len(path):
            return False
        if ch == "?":
            if path[i] == "/":
                return False
        elif path[i] != ch:
            return False
        p += 1
        i += 1
    return i == len(path)


def sanitize_path(path: str) -> str:
    """Drop every ``../`` that starts the path or follows a ``/``."""
    warned = False
    i = path.find("../")
    while i >= 0:
        if i > 0 and path[i - 1] != "/":
            i = path.find("../", i + 3)
            continue
        if not warned:
            logger.warning("%s: removing ../ components", path)
            warned = True
        path = path[:i] + path[i + 3:]
        i = path.find("../", i)
    return path


def select_entries(reader: PackageReader, patterns: list[str]) -> list[IndexEntry]:
    if not patterns:
        return list(reader.entries)
    return [
        entry for entry in reader.entries
        if any(match_pattern(pattern, entry.name) for pattern in patterns)
    ]


def format_listing(entries: list[IndexEntry], verbose: bool = False) -> list[str]:
    if not verbose:
        return [entry.name for entry in entries]
    lines = [
        "Hash      Data size  File size  Filename",
        "--------  ---------  ---------  --------",
    ]
    for entry in entries:
        lines.append(f"{entry.hash:08X}  {entry.datalen:9d}  {entry.filesize:9d}  {entry.name}")
    return lines


def extract_entry(reader: PackageReader, entry: IndexEntry, outdir: Path | None = None) -> Path:
    relative = sanitize_path(entry.name).lstrip("/")
    target = outdir / relative if outdir is not None else Path(relative)
    target.parent.mkdir(parents=True, exist_ok=True)
    data = reader.read(entry)
    with target.open("wb") as out:
        out.write(data)
    return target


def extract_package(
    reader: PackageReader,
    entries: list[IndexEntry],
    outdir: Path | None = None,
    report: Callable[[str], None] | None = None,
) -> tuple[list[Path], list[str]]:
    """Extract ``entries``, carrying on past failures.

    ``report`` is called with each entry name before it is extracted.
    Returns the written paths and the names of entries that could not be
    extracted; each failure is logged.
    """
    written = []
    failed = []
    for entry in entries:
        if report is not None:
            report(entry.name)
        try:
            written.append(extract_entry(reader, entry, outdir))
        except (OSError, ValueError) as exc:
            logger.error("%s: %s", entry.name, exc)
            failed.append(entry.name)
    return written, failed
