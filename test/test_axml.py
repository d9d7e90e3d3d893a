#!/usr/bin/python3
# encoding: utf-8
# SPDX-FileCopyrightText: 2024 FC (Fay) Stegerman <flx@obfusk.net>
# SPDX-License-Identifier: GPL-3.0-or-later

import struct

import pytest

from androguard.core.axml import AXMLPrinter          # type: ignore[import-untyped]

from apkrepack import axml
from apkrepack.axml import ANDROID_NS, Attribute, Document, Node
from apkrepack.errors import ManifestStructureError

from helpers import LABEL_RID, PACKAGE, make_manifest, make_manifest_doc


def structure(doc):
    return [(n.name, n.ns, [(a.name, a.ns, a.resource_id, a.type, a.value) for a in n.attrs],
             [doc.nodes[c].name for c in n.children]) for n in doc.walk()]


def values(doc):
    return [a.value for n in doc.walk() for a in n.attrs if isinstance(a.value, str)]


def attr(doc, node_name, attr_name):
    for node in doc.walk():
        if node.name == node_name:
            for a in node.attrs:
                if a.name == attr_name:
                    return a
    return None


@pytest.mark.parametrize("utf8", [False, True])
def test_round_trip(utf8):
    doc = make_manifest_doc()
    doc.utf8 = utf8
    data = axml.dump(doc)
    doc2 = axml.parse(data)
    assert doc2.utf8 == utf8
    assert structure(doc2) == structure(doc)
    assert [(ns.prefix, ns.uri) for ns in doc2.namespaces] == [("android", ANDROID_NS)]
    assert axml.dump(doc2) == data


def test_resource_map_prefix():
    data = make_manifest()
    hsize, = struct.unpack_from("<H", data, 10)
    pool_size, = struct.unpack_from("<L", data, 12)
    strings, _ = axml.parse_string_pool(data, 8)
    off = 8 + pool_size
    typ, _, size = struct.unpack_from("<HHL", data, off)
    assert typ == axml.RES_XML_RESOURCE_MAP_TYPE
    ids = struct.unpack_from(f"<{(size - 8) // 4}L", data, off + 8)
    by_id = {v: k for k, v in axml.ANDROID_ATTR_IDS.items()}
    for name, rid in zip(strings, ids):
        if rid in by_id:
            assert by_id[rid] == name
    assert hsize == 28


def test_patch_identity():
    doc = axml.patch_identity(axml.parse(make_manifest()), "com.new")
    doc = axml.parse(axml.dump(doc))
    assert attr(doc, "manifest", "package").value == "com.new"
    assert attr(doc, "application", "name").value == "com.new.App"
    assert attr(doc, "provider", "authorities").value == "com.new.Provider;com.new.Service"
    assert f"{PACKAGE}.MainActivity" in values(doc)
    assert "com.new.SettingsActivity" in values(doc)
    assert "com.new.permission.C2D_MESSAGE" in values(doc)
    assert "android.intent.action.MAIN" in values(doc)
    assert not [v for v in values(doc) if PACKAGE in v and not v.endswith(".MainActivity")]


def test_patch_identity_idempotent():
    once = axml.patch_identity(axml.parse(make_manifest()), "com.new")
    twice = axml.patch_identity(axml.parse(axml.dump(once)), "com.new")
    assert attr(once, "manifest", "package").value == "com.new"
    assert attr(twice, "manifest", "package").value == "com.new"
    main_once = [v for v in values(once) if v.endswith("MainActivity")]
    main_twice = [v for v in values(twice) if v.endswith("MainActivity")]
    assert main_once == main_twice == [f"{PACKAGE}.MainActivity"]
    assert axml.dump(once) == axml.dump(twice)


def test_patch_identity_new_contains_old():
    doc = axml.patch_identity(axml.parse(make_manifest()), f"{PACKAGE}.clone")
    assert attr(doc, "manifest", "package").value == f"{PACKAGE}.clone"
    assert attr(doc, "application", "name").value == f"{PACKAGE}.clone.App"


def test_patch_identity_keeps_prefixed_main_activity():
    doc = Document()
    m = doc.add_node(Node("manifest", attrs=[Attribute("package", value="a.b")]))
    doc.add_node(Node("activity", attrs=[
        Attribute("name", ANDROID_NS, 0x01010003, value="x.a.b.MainActivity"),
        Attribute("targetActivity", ANDROID_NS, 0x01010202, value="a.b.MainActivity2")]),
        parent=m)
    axml.patch_identity(doc, "c.d")
    assert values(doc) == ["c.d", "x.a.b.MainActivity", "c.d.MainActivity2"]


def test_patch_identity_missing_package():
    doc = axml.patch_identity(axml.parse(make_manifest(package=None)), "com.new")
    doc = axml.parse(axml.dump(doc))
    package = attr(doc, "manifest", "package")
    assert (package.ns, package.resource_id, package.type, package.value) == \
        (None, None, axml.TYPE_STRING, "com.new")
    assert attr(doc, "application", "name").value == f"{PACKAGE}.App"


def test_patch_label_reference():
    doc = axml.parse(make_manifest(label=LABEL_RID))
    label = attr(doc, "application", "label")
    assert label.type == axml.TYPE_REFERENCE
    doc = axml.parse(axml.dump(axml.patch_label(doc, "New Name")))
    label = attr(doc, "application", "label")
    assert (label.ns, label.type, label.value) == (ANDROID_NS, axml.TYPE_STRING, "New Name")


def test_patch_label_missing():
    doc = axml.parse(make_manifest(label=None))
    doc = axml.parse(axml.dump(axml.patch_label(doc, "New Name")))
    label = attr(doc, "application", "label")
    assert (label.ns, label.resource_id, label.type, label.value) == \
        (ANDROID_NS, None, axml.TYPE_STRING, "New Name")


def test_patch_label_unnamespaced():
    doc = Document()
    m = doc.add_node(Node("manifest"))
    a = doc.add_node(Node("application", attrs=[Attribute("label", value="Old")]), parent=m)
    axml.patch_label(doc, "New")
    assert [(x.name, x.ns, x.value) for x in doc.nodes[a].attrs] == [("label", None, "New")]


def test_no_manifest():
    doc = Document()
    doc.add_node(Node("resources"))
    with pytest.raises(ManifestStructureError):
        axml.patch_identity(doc, "com.new")
    with pytest.raises(ManifestStructureError):
        axml.patch_label(doc, "New")


def test_no_application():
    doc = Document()
    doc.add_node(Node("manifest", attrs=[Attribute("package", value="a.b")]))
    with pytest.raises(ManifestStructureError, match="application"):
        axml.patch_label(doc, "New")


@pytest.mark.parametrize("data", [b"", b"\x03\x00\x08\x00", b"\x02\x00\x0c\x00" + bytes(8),
                                  make_manifest()[:100]])
def test_malformed(data):
    with pytest.raises(ManifestStructureError):
        axml.parse(data)


def test_dump_readable_by_androguard():
    doc = axml.parse(make_manifest(label=LABEL_RID))
    axml.patch_identity(doc, "com.new.pkg")
    axml.patch_label(doc, "Héllo")
    printer = AXMLPrinter(axml.dump(doc))
    assert printer.is_valid()
    root = printer.get_xml_obj()
    assert root.get("package") == "com.new.pkg"
    app = root.find("application")
    assert app.get(f"{{{ANDROID_NS}}}label") == "Héllo"
    assert app.get(f"{{{ANDROID_NS}}}icon") == "@7F010000"
    assert app.get(f"{{{ANDROID_NS}}}name") == "com.new.pkg.App"


def test_application_refs():
    doc = axml.parse(make_manifest(label=LABEL_RID))
    assert axml.application_refs(doc, "icon", "roundIcon") == [0x7f010000]
    assert axml.application_refs(doc, "label") == [LABEL_RID]

# vim: set tw=80 sw=4 sts=4 et fdm=marker :
