#!/usr/bin/python3
# encoding: utf-8
# SPDX-FileCopyrightText: 2024 FC (Fay) Stegerman <flx@obfusk.net>
# SPDX-License-Identifier: GPL-3.0-or-later

"""
extract, reassemble & align APK (ZIP) containers

* extract_apk() unpacks a container into a directory (rejecting entries that
  would escape it);
* build_apk() writes a directory back into a container, storing the entries
  that must not be compressed (see should_store());
* align_apk() rewrites a container so that the data of each entry starts at a
  multiple of the alignment (page_alignment for .so files) by padding the extra
  field of the local file header.
"""

import errno
import os
import re
import shutil
import struct
import threading
import zipfile
import zlib

from collections import namedtuple
from typing import BinaryIO, Callable, Dict, Iterator, List, Optional, Tuple

from .errors import AlignmentError, Cancelled, ContainerError

DateTime = Tuple[int, int, int, int, int, int]

ZipData = namedtuple("ZipData", ("cd_offset", "eocd_offset", "cd_and_eocd"))
ZipEntry = namedtuple("ZipEntry", ("path", "filename", "compress_type", "size", "crc"))

DATETIME: DateTime = (1980, 1, 1, 0, 0, 0)

ALIGNMENT = 4
PAGE_ALIGNMENT = 16384

# https://android.googlesource.com/platform/tools/apksig
#   src/main/java/com/android/apksig/ApkSigner.java
ALIGNMENT_EXTRA_ID = 0xd935

STORED_FILES = ("AndroidManifest.xml", "resources.arsc")
STORED_EXTS = (".dex",)
STORED_META = re.compile(r"\AMETA-INF/((?s:.)*\.(SF|RSA|DSA)|MANIFEST\.MF)\Z")

# NB: android does not skip subdirectories of META-INF
APK_META = re.compile(r"\AMETA-INF/((?s:.)*\.(SF|RSA|DSA|EC)|MANIFEST\.MF)\Z")

CHUNK_SIZE = 65536


def check_cancelled(cancel: Optional[threading.Event]) -> None:
    """Raise Cancelled if cancel is set."""
    if cancel is not None and cancel.is_set():
        raise Cancelled("Cancelled")


def _reraise_enospc(e: OSError) -> None:
    if e.errno == errno.ENOSPC:
        raise e


def is_meta(filename: str) -> bool:
    r"""
    Returns whether filename is a v1 (JAR) signature file (.SF), signature block
    file (.RSA, .DSA, or .EC), or manifest (MANIFEST.MF).

    >>> is_meta("classes.dex")
    False
    >>> is_meta("META-INF/CERT.SF")
    True
    >>> is_meta("META-INF/CERT.EC")
    True
    >>> is_meta("META-INF/OOPS")
    False
    >>> is_meta("META-INF/oops/CERT.RSA")
    True

    """
    return bool(APK_META.fullmatch(filename))


def is_directory(filename: str) -> bool:
    """ZIP entries with filenames that end with a '/' are directories."""
    return filename.endswith("/")


def should_store(path: str) -> bool:
    """
    Returns whether the entry at path must be stored uncompressed: the binary
    manifest, the compiled resource table, dex files, and signature files.

    >>> should_store("AndroidManifest.xml")
    True
    >>> should_store("resources.arsc")
    True
    >>> should_store("classes2.dex")
    True
    >>> should_store("META-INF/CERT.RSA")
    True
    >>> should_store("META-INF/MANIFEST.MF")
    True
    >>> should_store("META-INF/CERT.EC")
    False
    >>> should_store("res/layout/main.xml")
    False
    >>> should_store("lib/arm64-v8a/libfoo.so")
    False

    """
    name = path.rsplit("/", 1)[-1]
    return name in STORED_FILES or path.endswith(STORED_EXTS) or \
        bool(STORED_META.fullmatch(path))


def safe_path(root: str, name: str) -> str:
    """
    Path of ZIP entry name under root; raises ContainerError for absolute
    paths and parent directory references.

    >>> safe_path("/tmp/x", "res/raw/a.txt")
    '/tmp/x/res/raw/a.txt'
    >>> safe_path("/tmp/x", "META-INF/")
    '/tmp/x/META-INF'
    >>> safe_path("/tmp/x", "../evil")
    Traceback (most recent call last):
    ...
    apkrepack.errors.ContainerError: Unsafe ZIP entry: '../evil'
    >>> safe_path("/tmp/x", "/etc/passwd")
    Traceback (most recent call last):
    ...
    apkrepack.errors.ContainerError: Unsafe ZIP entry: '/etc/passwd'

    """
    parts = name.replace("\\", "/").split("/")
    if name.startswith(("/", "\\")) or ".." in parts or ":" in parts[0] or "\x00" in name:
        raise ContainerError(f"Unsafe ZIP entry: {name!r}")
    return os.path.join(root, *[p for p in parts if p not in ("", ".")])


################################################################################
#
# extraction
#
################################################################################

def extract_apk(apkfile: str, output_dir: str, *,
                cancel: Optional[threading.Event] = None) -> None:
    """
    Extract all entries of apkfile (in order) into output_dir.

    All entry names are checked (see safe_path()) before anything is written.
    """
    if not os.path.isfile(apkfile):
        raise ContainerError(f"No such file: {apkfile!r}")
    try:
        with zipfile.ZipFile(apkfile, "r") as zf:
            infos = zf.infolist()
            paths = [safe_path(output_dir, info.filename) for info in infos]
            for info, path in zip(infos, paths):
                check_cancelled(cancel)
                if info.is_dir():
                    os.makedirs(path, exist_ok=True)
                    continue
                os.makedirs(os.path.dirname(path), exist_ok=True)
                with zf.open(info) as fhi, open(path, "wb") as fho:
                    shutil.copyfileobj(fhi, fho, CHUNK_SIZE)
    except (zipfile.BadZipFile, zipfile.LargeZipFile, EOFError, zlib.error,
            NotImplementedError) as e:
        raise ContainerError(f"Failed to extract {apkfile!r}: {e}")   # pylint: disable=W0707
    except OSError as e:
        _reraise_enospc(e)
        raise ContainerError(f"Failed to extract {apkfile!r}: {e}")   # pylint: disable=W0707


################################################################################
#
# reassembly
#
################################################################################

def walk_tree(src_dir: str) -> Iterator[Tuple[str, str]]:
    """
    Yield (entry path, file path) pairs for all files and empty directories
    under src_dir; parents before children, siblings sorted by name.
    """
    def walk(path: str, prefix: str) -> Iterator[Tuple[str, str]]:
        for name in sorted(os.listdir(path)):
            full = os.path.join(path, name)
            if os.path.isdir(full) and not os.path.islink(full):
                if os.listdir(full):
                    yield from walk(full, f"{prefix}{name}/")
                else:
                    yield f"{prefix}{name}/", full
            else:
                yield prefix + name, full
    yield from walk(src_dir, "")


def entry_descriptor(path: str, filename: str) -> ZipEntry:
    """ZipEntry for path; stored entries get their size & CRC32 up front."""
    if is_directory(path):
        return ZipEntry(path, filename, zipfile.ZIP_STORED, 0, 0)
    if should_store(path):
        size, crc = size_and_crc32(filename)
        return ZipEntry(path, filename, zipfile.ZIP_STORED, size, crc)
    return ZipEntry(path, filename, zipfile.ZIP_DEFLATED, None, None)


def size_and_crc32(filename: str) -> Tuple[int, int]:
    size, crc = 0, 0
    with open(filename, "rb") as fh:
        while chunk := fh.read(CHUNK_SIZE):
            size += len(chunk)
            crc = zlib.crc32(chunk, crc)
    return size, crc


def build_apk(src_dir: str, output_apk: str, *,
              cancel: Optional[threading.Event] = None) -> List[ZipEntry]:
    """Write the tree under src_dir to output_apk; returns the entries written."""
    entries = []
    with zipfile.ZipFile(output_apk, "w") as zf:
        for path, filename in walk_tree(src_dir):
            check_cancelled(cancel)
            entry = entry_descriptor(path, filename)
            write_entry(zf, entry)
            entries.append(entry)
    return entries


def write_entry(zf: zipfile.ZipFile, entry: ZipEntry) -> None:
    info = zipfile.ZipInfo(entry.path, date_time=DATETIME)
    info.create_system = 0
    info.compress_type = entry.compress_type
    if is_directory(entry.path):
        info.external_attr = (0o40755 << 16) | 0x10
        zf.writestr(info, b"")
        return
    info.external_attr = 0o100644 << 16
    if entry.size is not None:
        info.file_size = entry.size
    with open(entry.filename, "rb") as fhi, zf.open(info, "w") as fho:
        shutil.copyfileobj(fhi, fho, CHUNK_SIZE)
    if entry.compress_type == zipfile.ZIP_STORED and \
            (info.file_size, info.CRC) != (entry.size, entry.crc):
        raise ContainerError(f"{entry.path!r} changed while writing")


################################################################################
#
# https://en.wikipedia.org/wiki/ZIP_(file_format)
#
# =================================
# | LFH | name | extra | data      |  <- data offset aligned by padding extra
# | ...                           |
# =================================
# | ZIP Central Directory         |  <- header offsets adjusted
# =================================
# | ZIP End of Central Directory  |
# =================================
#
################################################################################

def align_apk(input_apk: str, output_apk: str, alignment: int = ALIGNMENT,
              page_alignment: int = PAGE_ALIGNMENT, *,
              exclude: Optional[Callable[[str], bool]] = None,
              cancel: Optional[threading.Event] = None) -> None:
    """
    Copy input_apk to output_apk, aligning the data of every entry to
    alignment bytes (page_alignment bytes for .so files), leaving out entries
    matched by exclude.

    Entry data, sizes, and compression methods are copied unchanged; only the
    extra fields of the local file headers and the offsets in the central
    directory change.
    """
    try:
        with zipfile.ZipFile(input_apk, "r") as zf:
            infos = zf.infolist()
            comment = zf.comment
        zdata = zip_data(input_apk)
    except (zipfile.BadZipFile, ContainerError, OSError) as e:
        raise AlignmentError(f"Failed to read {input_apk!r}: {e}")    # pylint: disable=W0707
    if len(infos) >= 0xffff or any(i.header_offset >= 0xffffffff for i in infos):
        raise AlignmentError("ZIP64 is not supported")
    offsets: Dict[str, int] = {}
    try:
        fho = open(output_apk, "wb")
    except OSError as e:
        _reraise_enospc(e)
        raise AlignmentError(f"Unable to write {output_apk!r}: {e}")  # pylint: disable=W0707
    try:
        with fho, open(input_apk, "rb") as fhi:
            for info in sorted(infos, key=lambda info: info.header_offset):
                check_cancelled(cancel)
                if exclude is not None and exclude(info.orig_filename):
                    continue
                if info.orig_filename in offsets:
                    raise AlignmentError(f"Duplicate ZIP entry: {info.orig_filename!r}")
                fhi.seek(info.header_offset)
                hdr, n, m = _read_lfh(fhi)
                off_o = offsets[info.orig_filename] = fho.tell()
                align = page_alignment if info.orig_filename.endswith(".so") else alignment
                fho.write(_align_zip_entry(hdr, n, m, off_o, align))
                _copy_bytes(fhi, fho, info.compress_size)
                if data_descriptor := _read_data_descriptor(fhi, info):
                    fho.write(data_descriptor)
            cd_offset = fho.tell()
            fhi.seek(zdata.cd_offset)
            for info in infos:
                hdr, _, _, _ = _read_cdfh(fhi)
                if info.orig_filename in offsets:
                    fho.write(_adjust_offset(hdr, offsets[info.orig_filename]))
            eocd_offset = fho.tell()
            fho.write(_eocd(len(offsets), eocd_offset, cd_offset, comment))
    except ContainerError as e:
        os.unlink(output_apk)
        raise AlignmentError(f"Failed to align {input_apk!r}: {e}")   # pylint: disable=W0707
    except OSError as e:
        os.unlink(output_apk)
        _reraise_enospc(e)
        raise AlignmentError(f"Failed to align {input_apk!r}: {e}")   # pylint: disable=W0707
    except (AlignmentError, Cancelled):
        os.unlink(output_apk)
        raise


def _align_zip_entry(hdr: bytes, n: int, m: int, off_o: int, align: int) -> bytes:
    """
    Replace any alignment padding in the extra field of the LFH hdr (to be
    written at off_o) with an apksigner-style alignment record padded so that
    the entry data starts at a multiple of align.

    >>> hdr = b"PK\\x03\\x04" + bytes(22) + b"\\x01\\x00\\x03\\x00" + b"a" + bytes(3)
    >>> new = _align_zip_entry(hdr, 1, 3, 0, 4)
    >>> len(new) % 4, new[30:31], new[31:33]
    (0, b'a', b'5\\xd9')

    """
    old_xtr = hdr[30 + n:30 + n + m]
    new_xtr = b""
    while len(old_xtr) >= 4:
        hdr_id, size = struct.unpack("<HH", old_xtr[:4])
        if size > len(old_xtr) - 4:
            break
        if not (hdr_id == 0 and size == 0) and hdr_id != ALIGNMENT_EXTRA_ID:
            new_xtr += old_xtr[:size + 4]
        old_xtr = old_xtr[size + 4:]
    pad = (align - (off_o + 30 + n + len(new_xtr) + 6) % align) % align
    xtr = new_xtr + struct.pack("<HHH", ALIGNMENT_EXTRA_ID, 2 + pad, align) + pad * b"\x00"
    if len(xtr) > 0xffff:
        raise AlignmentError("Extra field too long")
    return hdr[:28] + int.to_bytes(len(xtr), 2, "little") + hdr[30:30 + n] + xtr


def data_offsets(apkfile: str) -> Dict[str, int]:
    """Offsets of the data of all entries in apkfile."""
    result = {}
    with zipfile.ZipFile(apkfile, "r") as zf, open(apkfile, "rb") as fh:
        for info in zf.infolist():
            fh.seek(info.header_offset)
            _, n, m = _read_lfh(fh)
            result[info.orig_filename] = info.header_offset + 30 + n + m
    return result


def check_alignment(apkfile: str, alignment: int = ALIGNMENT,
                    page_alignment: int = PAGE_ALIGNMENT) -> List[str]:
    """Names of the entries in apkfile that are not aligned."""
    return [name for name, offset in data_offsets(apkfile).items()
            if offset % (page_alignment if name.endswith(".so") else alignment)]


def _read_lfh(fh: BinaryIO) -> Tuple[bytes, int, int]:
    hdr = fh.read(30)
    if hdr[:4] != b"\x50\x4b\x03\x04":
        raise ContainerError("Expected local file header signature")
    n, m = struct.unpack("<HH", hdr[26:30])
    return hdr + fh.read(n + m), n, m


def _read_cdfh(fh: BinaryIO) -> Tuple[bytes, int, int, int]:
    hdr = fh.read(46)
    if hdr[:4] != b"\x50\x4b\x01\x02":
        raise ContainerError("Expected central directory file header signature")
    n, m, k = struct.unpack("<HHH", hdr[28:34])
    return hdr + fh.read(n + m + k), n, m, k


def _adjust_offset(hdr: bytes, offset: int) -> bytes:
    return hdr[:42] + int.to_bytes(offset, 4, "little") + hdr[46:]


def _read_data_descriptor(fh: BinaryIO, info: zipfile.ZipInfo) -> Optional[bytes]:
    if info.flag_bits & 0x08:
        data_descriptor = fh.read(12)
        if data_descriptor[:4] == b"\x50\x4b\x07\x08":
            data_descriptor += fh.read(4)
        return data_descriptor
    return None


def _copy_bytes(fhi: BinaryIO, fho: BinaryIO, size: int, blocksize: int = CHUNK_SIZE) -> None:
    while size > 0:
        data = fhi.read(min(size, blocksize))
        if not data:
            break
        size -= len(data)
        fho.write(data)
    if size != 0:
        raise ContainerError("Unexpected EOF")


def _eocd(entries: int, eocd_offset: int, cd_offset: int, comment: bytes = b"") -> bytes:
    data = struct.pack("<HHHHLLH", 0, 0, entries, entries, eocd_offset - cd_offset,
                       cd_offset, len(comment))
    return b"\x50\x4b\x05\x06" + data + comment


def zip_data(apkfile: str, count: int = 65536) -> ZipData:
    """Extract central directory, EOCD, and offsets from ZIP."""
    with open(apkfile, "rb") as fh:
        return _zip_data(fh, count=min(os.path.getsize(apkfile), count))


def _zip_data(fh: BinaryIO, count: int = 65536) -> ZipData:
    fh.seek(-count, os.SEEK_END)
    data = fh.read()
    pos = data.rfind(b"\x50\x4b\x05\x06")
    if pos == -1:
        raise ContainerError("Expected end of central directory record (EOCD)")
    fh.seek(pos - len(data), os.SEEK_CUR)
    eocd_offset = fh.tell()
    fh.seek(16, os.SEEK_CUR)
    cd_offset = int.from_bytes(fh.read(4), "little")
    fh.seek(cd_offset)
    cd_and_eocd = fh.read()
    return ZipData(cd_offset, eocd_offset, cd_and_eocd)

# vim: set tw=80 sw=4 sts=4 et fdm=marker :
