#!/usr/bin/python3
# encoding: utf-8
# SPDX-FileCopyrightText: 2024 FC (Fay) Stegerman <flx@obfusk.net>
# SPDX-License-Identifier: GPL-3.0-or-later

"""
edit decoded resources in a working tree: app_name in res/values*/strings.xml
and launcher icon bitmaps
"""

import errno
import logging
import os
import struct
import xml.etree.ElementTree as ET

from typing import Iterable, List, Optional, Union

from androguard.core.axml import ARSCParser, ResParserError    # type: ignore[import-untyped]
from PIL import Image

from . import axml
from .errors import APKRepackError, NoStringsTableFound

log = logging.getLogger(__name__)

APP_NAME = "app_name"
VALUES_PREFIX = "values"
STRINGS_FILE = "strings.xml"

# launcher icons of the builds this tool was first written for (obfuscated
# resource names, directly under res/)
KNOWN_ICON_FILES = ("yn.png", "N3.png", "9w.png", "FS.png", "RJ.png", "o-.png")

BITMAP_EXTS = (".png", ".webp", ".jpg", ".jpeg")

# (minimum size in bytes, exclusive; pixels)
ICON_SIZES = ((40000, 192), (20000, 144), (10000, 96), (5000, 72))
DEFAULT_ICON_SIZE = 48

ImageSource = Union[str, Image.Image]

# what androguard raises for a truncated or otherwise malformed resources.arsc
RESOURCE_TABLE_ERRORS = (ResParserError, struct.error, AssertionError, IndexError,
                         KeyError, ValueError)


def _reraise_enospc(e: OSError) -> None:
    if e.errno == errno.ENOSPC:
        raise e


################################################################################
#
# strings
#
################################################################################

def update_app_name_strings(res_dir: str, name: str) -> int:
    """
    Set app_name to name in every res/values*/strings.xml (adding the entry
    where it is missing); returns the number of files updated.

    A file that cannot be parsed or written is skipped; raises
    NoStringsTableFound when res_dir has no such files or none could be
    updated.
    """
    if not os.path.isdir(res_dir):
        raise NoStringsTableFound(f"No resource directory: {res_dir!r}")
    files = [os.path.join(res_dir, d, STRINGS_FILE) for d in sorted(os.listdir(res_dir))
             if d.startswith(VALUES_PREFIX)]
    files = [f for f in files if os.path.isfile(f)]
    if not files:
        raise NoStringsTableFound(f"No {VALUES_PREFIX}*/{STRINGS_FILE} in {res_dir!r}")
    updated = 0
    for path in files:
        try:
            set_string(path, APP_NAME, name)
        except ET.ParseError as e:
            log.warning("skipping %s: %s", path, e)
        except OSError as e:
            _reraise_enospc(e)
            log.warning("skipping %s: %s", path, e)
        else:
            updated += 1
    if not updated:
        raise NoStringsTableFound(f"Unable to update any {STRINGS_FILE} in {res_dir!r}")
    return updated


def set_string(path: str, key: str, text: str) -> None:
    """Replace (or append) <string name="key"> in the strings file at path."""
    tree = ET.parse(path)
    root = tree.getroot()
    for elem in root.iter("string"):
        if elem.get("name") == key:
            log.debug("%s: replacing %s %r with %r", path, key, elem.text, text)
            for child in list(elem):
                elem.remove(child)
            elem.text = text
            break
    else:
        log.debug("%s: adding %s %r", path, key, text)
        elem = ET.SubElement(root, "string", name=key)
        elem.text = text
    tree.write(path, encoding="utf-8", xml_declaration=True)


################################################################################
#
# icons
#
################################################################################

def icon_size_for(nbytes: int) -> int:
    """
    Square size in pixels for an icon file of nbytes bytes.

    >>> [icon_size_for(n) for n in (40001, 40000, 20001, 10001, 5001, 5000, 0)]
    [192, 144, 144, 96, 72, 48, 48]

    """
    for threshold, size in ICON_SIZES:
        if nbytes > threshold:
            return size
    return DEFAULT_ICON_SIZE


def image_format_for(path: str) -> str:
    """
    >>> image_format_for("res/yn.png"), image_format_for("a.WEBP"), image_format_for("b.jpeg")
    ('PNG', 'WEBP', 'JPEG')

    """
    ext = os.path.splitext(path)[1].lower()
    if ext == ".webp":
        return "WEBP"
    if ext in (".jpg", ".jpeg"):
        return "JPEG"
    return "PNG"


def icon_paths(work_dir: str) -> List[str]:
    """
    Paths (relative to work_dir) of the launcher icon bitmaps: the known
    obfuscated names under res/ plus whatever the application icon and
    roundIcon resolve to in resources.arsc.
    """
    found = [f"res/{name}" for name in KNOWN_ICON_FILES
             if os.path.isfile(os.path.join(work_dir, "res", name))]
    for path in _referenced_icons(work_dir):
        if path not in found:
            found.append(path)
    return found


def _referenced_icons(work_dir: str) -> List[str]:
    manifest = os.path.join(work_dir, "AndroidManifest.xml")
    arsc = os.path.join(work_dir, "resources.arsc")
    if not (os.path.isfile(manifest) and os.path.isfile(arsc)):
        return []
    try:
        with open(manifest, "rb") as fh:
            refs = axml.application_refs(axml.parse(fh.read()), "icon", "roundIcon")
        if not refs:
            return []
        with open(arsc, "rb") as fh:
            table = ARSCParser(fh.read())
        values = [value for rid in refs for _, value in table.get_resolved_res_configs(rid)]
    except APKRepackError as e:
        log.warning("unable to look up icon resources: %s", e)
        return []
    except RESOURCE_TABLE_ERRORS as e:
        log.warning("unable to read resources.arsc: %s", e)
        return []
    paths = []
    for path in values:
        if isinstance(path, str):
            if not path.lower().endswith(BITMAP_EXTS):
                log.debug("skipping non-bitmap icon %r", path)
            elif ".." in path.split("/") or path.startswith("/"):
                log.warning("skipping unsafe icon path %r", path)
            elif os.path.isfile(os.path.join(work_dir, path)) and path not in paths:
                paths.append(path)
    return paths


def replace_icons(work_dir: str, image: ImageSource,
                  paths: Optional[Iterable[str]] = None) -> List[str]:
    """
    Overwrite each icon file (default: icon_paths()) with image scaled to the
    size class of the existing file; returns the paths replaced.
    """
    if paths is None:
        paths = icon_paths(work_dir)
    paths = list(paths)
    if not paths:
        log.info("no known icon files found")
        return []
    source = image if isinstance(image, Image.Image) else Image.open(image)
    source = source.convert("RGBA")
    replaced = []
    for path in paths:
        filename = os.path.join(work_dir, path)
        try:
            size = icon_size_for(os.path.getsize(filename))
            write_icon(source, filename, size)
        except OSError as e:
            _reraise_enospc(e)
            log.warning("unable to replace %s: %s", path, e)
        else:
            log.debug("replaced %s (%dx%d)", path, size, size)
            replaced.append(path)
    return replaced


def write_icon(source: Image.Image, filename: str, size: int) -> None:
    img = source.resize((size, size), Image.Resampling.LANCZOS)
    fmt = image_format_for(filename)
    if fmt == "PNG":
        img.save(filename, fmt)
    else:
        if fmt == "JPEG":
            img = img.convert("RGB")
        img.save(filename, fmt, quality=100)

# vim: set tw=80 sw=4 sts=4 et fdm=marker :
