#!/usr/bin/python3
# encoding: utf-8
# SPDX-FileCopyrightText: 2024 FC (Fay) Stegerman <flx@obfusk.net>
# SPDX-License-Identifier: GPL-3.0-or-later

r"""
read, edit & write android binary XML (AndroidManifest.xml)

The document is an arena of nodes (Document.nodes) referenced by index; each
node lists the indices of its children and stores its parent's index for
traversal only.  Namespace declarations are kept at document level and wrap
the root nodes when written.

>>> doc = Document()
>>> m = doc.add_node(Node("manifest", attrs=[Attribute("package", value="com.old.app")]))
>>> _ = doc.add_node(Node("application"), parent=m)
>>> doc2 = parse(dump(doc))
>>> [n.name for n in doc2.walk()]
['manifest', 'application']
>>> doc2.nodes[0].attrs
[Attribute(name='package', ns=None, resource_id=None, type=3, value='com.old.app', raw=None)]

"""

import logging
import struct

from dataclasses import dataclass, field
from typing import Dict, Iterator, List, Optional, Tuple, Union

from .errors import ManifestStructureError

log = logging.getLogger(__name__)

################################################################################
#
# https://android.googlesource.com/platform/frameworks/base
#   libs/androidfw/include/androidfw/ResourceTypes.h
#
# =================================
# | ResXMLTree_header (0x0003)    |
# =================================
# | ResStringPool (0x0001)        |
# | ResXMLTree resource map       |
# |   (0x0180, one res id per     |
# |   string index, prefix only)  |
# | start namespace (0x0100)      |
# |   start element (0x0102)      |
# |     attributes (20B each)     |
# |   end element (0x0103)        |
# | end namespace (0x0101)        |
# =================================
#
################################################################################

RES_STRING_POOL_TYPE = 0x0001
RES_XML_TYPE = 0x0003
RES_XML_START_NAMESPACE_TYPE = 0x0100
RES_XML_END_NAMESPACE_TYPE = 0x0101
RES_XML_START_ELEMENT_TYPE = 0x0102
RES_XML_END_ELEMENT_TYPE = 0x0103
RES_XML_CDATA_TYPE = 0x0104
RES_XML_RESOURCE_MAP_TYPE = 0x0180

UTF8_FLAG = 0x100
NO_ENTRY = 0xffffffff

TYPE_NULL = 0x00
TYPE_REFERENCE = 0x01
TYPE_ATTRIBUTE = 0x02
TYPE_STRING = 0x03
TYPE_FLOAT = 0x04
TYPE_DIMENSION = 0x05
TYPE_FRACTION = 0x06
TYPE_INT_DEC = 0x10
TYPE_INT_HEX = 0x11
TYPE_INT_BOOLEAN = 0x12

ANDROID_NS = "http://schemas.android.com/apk/res/android"

# android.R.attr; obfuscated manifests may strip the names but keep the ids
ANDROID_ATTR_IDS = dict(
    label=0x01010001,
    icon=0x01010002,
    name=0x01010003,
    minSdkVersion=0x0101020c,
    versionCode=0x0101021b,
    versionName=0x0101021c,
    targetSdkVersion=0x01010270,
    roundIcon=0x0101052c,
)

ELEMENT_HEADER_SIZE = 16
ATTRIBUTE_START = 20
ATTRIBUTE_SIZE = 20

MAIN_ACTIVITY = "MainActivity"


@dataclass
class Attribute:
    """An attribute; value is a str for TYPE_STRING, an int otherwise."""
    name: str
    ns: Optional[str] = None
    resource_id: Optional[int] = None
    type: int = TYPE_STRING
    value: Union[str, int] = ""
    raw: Optional[str] = None


@dataclass
class Node:
    """An element; children holds indices into Document.nodes."""
    name: str
    ns: Optional[str] = None
    attrs: List[Attribute] = field(default_factory=list)
    children: List[int] = field(default_factory=list)
    parent: Optional[int] = None
    line: int = 0
    comment: Optional[str] = None
    text: Optional[str] = None


@dataclass
class Namespace:
    prefix: Optional[str]
    uri: Optional[str]
    line: int = 0


@dataclass
class Document:
    nodes: List[Node] = field(default_factory=list)
    roots: List[int] = field(default_factory=list)
    namespaces: List[Namespace] = field(default_factory=list)
    utf8: bool = False

    def add_node(self, node: Node, parent: Optional[int] = None) -> int:
        """Append node (as a root when parent is None); returns its index."""
        idx = len(self.nodes)
        node.parent = parent
        self.nodes.append(node)
        if parent is None:
            self.roots.append(idx)
        else:
            self.nodes[parent].children.append(idx)
        return idx

    def children(self, node: Node) -> Iterator[Node]:
        for idx in node.children:
            yield self.nodes[idx]

    def walk(self) -> Iterator[Node]:
        """Pre-order traversal of all nodes."""
        todo = list(reversed(self.roots))
        while todo:
            node = self.nodes[todo.pop()]
            yield node
            todo.extend(reversed(node.children))


################################################################################
#
# parsing
#
################################################################################

def parse(data: bytes) -> Document:
    """
    Parse binary XML.

    Raises ManifestStructureError if data is not a well-formed document.
    """
    try:
        return _parse(data)
    except (struct.error, IndexError, UnicodeDecodeError) as e:
        raise ManifestStructureError(f"Malformed binary XML: {e}")   # pylint: disable=W0707


def _parse(data: bytes) -> Document:
    if len(data) < 8:
        raise ManifestStructureError("Binary XML too short")
    typ, hsize, size = struct.unpack_from("<HHL", data, 0)
    if typ != RES_XML_TYPE:
        raise ManifestStructureError(f"Not a binary XML document (type 0x{typ:04x})")
    doc = Document()
    strings: List[str] = []
    resmap: List[int] = []
    stack: List[int] = []

    def s(idx: int) -> Optional[str]:
        return None if idx == NO_ENTRY else strings[idx]

    off, end = hsize, min(size, len(data))
    while off + 8 <= end:
        ctype, chsize, csize = struct.unpack_from("<HHL", data, off)
        if csize < 8 or off + csize > end:
            raise ManifestStructureError(f"Invalid chunk size at offset {off}")
        body = off + chsize
        if ctype == RES_STRING_POOL_TYPE:
            strings, doc.utf8 = parse_string_pool(data, off)
        elif ctype == RES_XML_RESOURCE_MAP_TYPE:
            resmap = list(struct.unpack_from(f"<{(csize - chsize) // 4}L", data, body))
        elif ctype == RES_XML_START_NAMESPACE_TYPE:
            line, _ = struct.unpack_from("<LL", data, off + 8)
            prefix, uri = struct.unpack_from("<LL", data, body)
            doc.namespaces.append(Namespace(s(prefix), s(uri), line))
        elif ctype == RES_XML_START_ELEMENT_TYPE:
            line, comment = struct.unpack_from("<LL", data, off + 8)
            ns, name, attr_start, attr_size, attr_count = struct.unpack_from("<LLHHH", data, body)
            node = Node(s(name) or "", ns=s(ns), line=line, comment=s(comment))
            for i in range(attr_count):
                a_ns, a_name, a_raw, _, _, a_type, a_data = \
                    struct.unpack_from("<LLLHBBL", data, body + attr_start + i * attr_size)
                rid = resmap[a_name] if a_name < len(resmap) and resmap[a_name] else None
                if a_type == TYPE_STRING:
                    value: Union[str, int] = strings[a_data]
                    raw = None
                else:
                    value, raw = a_data, s(a_raw)
                node.attrs.append(Attribute(s(a_name) or "", s(a_ns), rid, a_type, value, raw))
            stack.append(doc.add_node(node, parent=stack[-1] if stack else None))
        elif ctype == RES_XML_END_ELEMENT_TYPE:
            if not stack:
                raise ManifestStructureError("Unbalanced end element")
            stack.pop()
        elif ctype == RES_XML_CDATA_TYPE:
            text, = struct.unpack_from("<L", data, body)
            if stack:
                doc.nodes[stack[-1]].text = s(text)
        elif ctype != RES_XML_END_NAMESPACE_TYPE:
            log.debug("skipping unknown chunk type 0x%04x at offset %d", ctype, off)
        off += csize
    return doc


def parse_string_pool(data: bytes, off: int) -> Tuple[List[str], bool]:
    """Parse the ResStringPool chunk at off; returns (strings, utf8)."""
    _, hsize, _ = struct.unpack_from("<HHL", data, off)
    count, _, flags, strings_start, _ = struct.unpack_from("<5L", data, off + 8)
    utf8 = bool(flags & UTF8_FLAG)
    offsets = struct.unpack_from(f"<{count}L", data, off + hsize)
    base = off + strings_start
    return [_read_string(data, base + o, utf8) for o in offsets], utf8


def _read_length(data: bytes, pos: int, utf8: bool) -> Tuple[int, int]:
    if utf8:
        n = data[pos]
        if n & 0x80:
            return ((n & 0x7f) << 8) | data[pos + 1], pos + 2
        return n, pos + 1
    n, = struct.unpack_from("<H", data, pos)
    if n & 0x8000:
        lo, = struct.unpack_from("<H", data, pos + 2)
        return ((n & 0x7fff) << 16) | lo, pos + 4
    return n, pos + 2


def _read_string(data: bytes, pos: int, utf8: bool) -> str:
    if utf8:
        _, pos = _read_length(data, pos, True)     # length in UTF-16 code units
        n, pos = _read_length(data, pos, True)
        return data[pos:pos + n].decode("utf-8", "surrogatepass")
    n, pos = _read_length(data, pos, False)
    return data[pos:pos + 2 * n].decode("utf-16-le", "surrogatepass")


################################################################################
#
# writing
#
################################################################################

class _StringPool:
    """
    String pool under construction.

    Attribute names bound to a resource id occupy the first indices (one per
    (name, id) pair) so they line up with the resource map; all other strings
    are deduplicated after them.
    """

    def __init__(self) -> None:
        self.strings: List[str] = []
        self.resource_ids: List[int] = []
        self._res: Dict[Tuple[str, int], int] = {}
        self._plain: Dict[str, int] = {}
        self._frozen = False

    def add_res(self, name: str, rid: int) -> None:
        assert not self._frozen
        if (name, rid) not in self._res:
            self._res[(name, rid)] = len(self.strings)
            self.strings.append(name)
            self.resource_ids.append(rid)

    def add(self, value: Optional[str]) -> None:
        self._frozen = True
        if value is not None and value not in self._plain:
            self._plain[value] = len(self.strings)
            self.strings.append(value)

    def idx(self, value: Optional[str]) -> int:
        return NO_ENTRY if value is None else self._plain[value]

    def name_idx(self, attr: Attribute) -> int:
        if attr.resource_id is not None:
            return self._res[(attr.name, attr.resource_id)]
        return self._plain[attr.name]


def dump(doc: Document) -> bytes:
    """Serialize doc to binary XML."""
    pool = _StringPool()
    for node in doc.walk():
        for attr in node.attrs:
            if attr.resource_id is not None:
                pool.add_res(attr.name, attr.resource_id)
    for ns in doc.namespaces:
        pool.add(ns.prefix)
        pool.add(ns.uri)
    for node in doc.walk():
        pool.add(node.ns)
        pool.add(node.name)
        pool.add(node.comment)
        pool.add(node.text)
        for attr in node.attrs:
            pool.add(attr.ns)
            if attr.resource_id is None:
                pool.add(attr.name)
            if isinstance(attr.value, str):
                pool.add(attr.value)
            pool.add(attr.raw)
    chunks = [dump_string_pool(pool.strings, doc.utf8)]
    if pool.resource_ids:
        n = len(pool.resource_ids)
        chunks.append(struct.pack(f"<HHL{n}L", RES_XML_RESOURCE_MAP_TYPE, 8, 8 + 4 * n,
                                  *pool.resource_ids))
    for ns in doc.namespaces:
        chunks.append(_ns_chunk(RES_XML_START_NAMESPACE_TYPE, ns, pool))
    for idx in doc.roots:
        _dump_node(doc, doc.nodes[idx], pool, chunks)
    for ns in reversed(doc.namespaces):
        chunks.append(_ns_chunk(RES_XML_END_NAMESPACE_TYPE, ns, pool))
    body = b"".join(chunks)
    return struct.pack("<HHL", RES_XML_TYPE, 8, 8 + len(body)) + body


def _ns_chunk(ctype: int, ns: Namespace, pool: _StringPool) -> bytes:
    return struct.pack("<HHLLLLL", ctype, ELEMENT_HEADER_SIZE, 24, ns.line, NO_ENTRY,
                       pool.idx(ns.prefix), pool.idx(ns.uri))


def _dump_node(doc: Document, node: Node, pool: _StringPool, chunks: List[bytes]) -> None:
    special = [0, 0, 0]     # 1-based indices of id, class & style
    attrs = []
    for i, attr in enumerate(node.attrs):
        if attr.ns is None and attr.name in ("id", "class", "style"):
            j = ("id", "class", "style").index(attr.name)
            special[j] = special[j] or i + 1
        if isinstance(attr.value, str):
            raw = data = pool.idx(attr.value)
            vtype = TYPE_STRING
        else:
            raw, data, vtype = pool.idx(attr.raw), attr.value & 0xffffffff, attr.type
        attrs.append(struct.pack("<LLLHBBL", pool.idx(attr.ns), pool.name_idx(attr), raw,
                                 8, 0, vtype, data))
    size = ELEMENT_HEADER_SIZE + ATTRIBUTE_START + ATTRIBUTE_SIZE * len(attrs)
    chunks.append(struct.pack("<HHLLLLLHHHHHH", RES_XML_START_ELEMENT_TYPE, ELEMENT_HEADER_SIZE,
                              size, node.line, pool.idx(node.comment), pool.idx(node.ns),
                              pool.idx(node.name), ATTRIBUTE_START, ATTRIBUTE_SIZE,
                              len(attrs), *special))
    chunks.extend(attrs)
    if node.text is not None:
        chunks.append(struct.pack("<HHLLLLHBBL", RES_XML_CDATA_TYPE, ELEMENT_HEADER_SIZE, 28,
                                  node.line, NO_ENTRY, pool.idx(node.text), 8, 0, TYPE_NULL, 0))
    for child in doc.children(node):
        _dump_node(doc, child, pool, chunks)
    chunks.append(struct.pack("<HHLLLLL", RES_XML_END_ELEMENT_TYPE, ELEMENT_HEADER_SIZE, 24,
                              node.line, NO_ENTRY, pool.idx(node.ns), pool.idx(node.name)))


def dump_string_pool(strings: List[str], utf8: bool) -> bytes:
    r"""
    Serialize a ResStringPool chunk.

    >>> parse_string_pool(dump_string_pool(["a", "héllo", ""], True), 0)
    (['a', 'héllo', ''], True)
    >>> dump_string_pool(["ab"], False)[28:]
    b'\x00\x00\x00\x00\x02\x00a\x00b\x00\x00\x00'

    """
    offsets, data = [], bytearray()
    for value in strings:
        offsets.append(len(data))
        if utf8:
            encoded = value.encode("utf-8", "surrogatepass")
            units = len(value.encode("utf-16-le", "surrogatepass")) // 2
            data += _length(units, True) + _length(len(encoded), True) + encoded + b"\x00"
        else:
            encoded = value.encode("utf-16-le", "surrogatepass")
            data += _length(len(encoded) // 2, False) + encoded + b"\x00\x00"
    data += b"\x00" * (-len(data) % 4)
    n = len(strings)
    strings_start = 28 + 4 * n
    return struct.pack(f"<HHL5L{n}L", RES_STRING_POOL_TYPE, 28, strings_start + len(data),
                       n, 0, UTF8_FLAG if utf8 else 0, strings_start, 0, *offsets) + bytes(data)


def _length(n: int, utf8: bool) -> bytes:
    if utf8:
        if n > 0x7fff:
            raise ManifestStructureError("String too long for UTF-8 string pool")
        return bytes([(n >> 8) | 0x80, n & 0xff]) if n > 0x7f else bytes([n])
    if n > 0x7fffffff:
        raise ManifestStructureError("String too long for UTF-16 string pool")
    if n > 0x7fff:
        return struct.pack("<HH", (n >> 16) | 0x8000, n & 0xffff)
    return struct.pack("<H", n)


################################################################################
#
# editing
#
################################################################################

def manifest_node(doc: Document) -> Node:
    """The top-level manifest node; raises ManifestStructureError if missing."""
    for idx in doc.roots:
        if doc.nodes[idx].name == "manifest":
            return doc.nodes[idx]
    raise ManifestStructureError("No top-level <manifest> element")


def application_node(doc: Document) -> Node:
    """The first application child of the manifest node."""
    for child in doc.children(manifest_node(doc)):
        if child.name == "application":
            return child
    raise ManifestStructureError("No <application> element in <manifest>")


def get_attribute(node: Node, name: str) -> Optional[Attribute]:
    """Find an android attribute by resource id or by (un-namespaced) name."""
    rid = ANDROID_ATTR_IDS.get(name)
    for attr in node.attrs:
        if rid is not None and attr.resource_id == rid:
            return attr
        if attr.name == name and attr.ns in (None, ANDROID_NS):
            return attr
    return None


def is_main_activity_ref(value: str, package: str) -> bool:
    """
    Whether value names the launcher activity of package.

    >>> is_main_activity_ref("com.old.app.MainActivity", "com.old.app")
    True
    >>> is_main_activity_ref("x.com.old.app.MainActivity", "com.old.app")
    True
    >>> is_main_activity_ref("com.old.app.MainActivity2", "com.old.app")
    False

    """
    ref = f"{package}.{MAIN_ACTIVITY}"
    return value == ref or value.endswith("." + ref)


def patch_identity(doc: Document, new_package: str) -> Document:
    """
    Set the manifest package to new_package and rewrite every string attribute
    that embeds the old package (all occurrences), except references to
    <old>.MainActivity.

    >>> doc = Document()
    >>> m = doc.add_node(Node("manifest", attrs=[Attribute("package", value="com.old.app")]))
    >>> a = doc.add_node(Node("application"), parent=m)
    >>> _ = doc.add_node(Node("activity", attrs=[
    ...     Attribute("name", ANDROID_NS, 0x01010003, value="com.old.app.MainActivity")]), parent=a)
    >>> _ = doc.add_node(Node("provider", attrs=[
    ...     Attribute("authorities", ANDROID_NS, 0x01010018,
    ...               value="com.old.app.Provider;com.old.app.Service")]), parent=a)
    >>> [attr.value for node in patch_identity(doc, "com.new").walk() for attr in node.attrs]
    ['com.new', 'com.old.app.MainActivity', 'com.new.Provider;com.new.Service']

    """
    manifest = manifest_node(doc)
    package = next((a for a in manifest.attrs if a.name == "package" and a.ns is None), None)
    if package is None:
        log.info("manifest has no package attribute, adding one")
        package = Attribute("package", None, None, TYPE_STRING, new_package)
        manifest.attrs.append(package)
        return doc
    old = package.value if isinstance(package.value, str) else ""
    log.info("replacing package %r with %r", old, new_package)
    if old and old != new_package:
        for node in doc.walk():
            for attr in node.attrs:
                if attr is package or not isinstance(attr.value, str) or old not in attr.value:
                    continue
                if is_main_activity_ref(attr.value, old):
                    log.debug("keeping launcher activity reference %r", attr.value)
                    continue
                new_value = attr.value.replace(old, new_package)
                log.debug("rewriting %s=%r to %r", attr.name, attr.value, new_value)
                attr.value = new_value
    package.type, package.value, package.raw = TYPE_STRING, new_package, None
    return doc


def patch_label(doc: Document, new_label: str) -> Document:
    """
    Set the application label to the literal new_label (replacing a resource
    reference if need be).

    >>> doc = Document()
    >>> m = doc.add_node(Node("manifest"))
    >>> a = doc.add_node(Node("application", attrs=[
    ...     Attribute("label", ANDROID_NS, 0x01010001, TYPE_REFERENCE, 0x7f0e001b)]), parent=m)
    >>> patch_label(doc, "Foo").nodes[a].attrs
    [Attribute(name='label', ns='http://schemas.android.com/apk/res/android', resource_id=16842753, type=3, value='Foo', raw=None)]

    """
    application = application_node(doc)
    for attr in application.attrs:
        if attr.name == "label" and attr.ns in (None, ANDROID_NS):
            log.info("replacing application label %r with %r", attr.value, new_label)
            attr.type, attr.value, attr.raw = TYPE_STRING, new_label, None
            return doc
    log.info("application has no label attribute, adding one")
    application.attrs.append(Attribute("label", ANDROID_NS, None, TYPE_STRING, new_label))
    return doc


def application_refs(doc: Document, *names: str) -> List[int]:
    """Resource ids referenced by the named application attributes."""
    try:
        application = application_node(doc)
    except ManifestStructureError:
        return []
    refs = []
    for name in names:
        attr = get_attribute(application, name)
        if attr is not None and attr.type == TYPE_REFERENCE and isinstance(attr.value, int):
            refs.append(attr.value)
    return refs

# vim: set tw=80 sw=4 sts=4 et fdm=marker :
