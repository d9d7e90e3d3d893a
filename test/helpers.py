#!/usr/bin/python3
# encoding: utf-8
# SPDX-FileCopyrightText: 2024 FC (Fay) Stegerman <flx@obfusk.net>
# SPDX-License-Identifier: GPL-3.0-or-later

import datetime
import hashlib
import io
import os
import struct
import zipfile

from typing import Dict, List, Optional, Sequence, Tuple, Union

from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec, rsa
from cryptography.hazmat.primitives.serialization import pkcs12
from cryptography.x509.oid import NameOID
from PIL import Image
from pyasn1.codec.der.encoder import encode as pyasn1_encode
from pyasn1_modules import rfc5208

from apkrepack import axml
from apkrepack.axml import ANDROID_ATTR_IDS, ANDROID_NS, Attribute, Document, Namespace, Node
from apkrepack.signing import JKS_KEY_PROTECTOR_OID

PACKAGE = "com.old.app"
ICON_RID = 0x7f010000
LABEL_RID = 0x7f020000
LABEL_REF_RID = 0x7f020001
ICON_PATH = "res/mipmap-xxhdpi-v4/ic_launcher.png"
GL_ES_VERSION = 0x01010281
AUTHORITIES = 0x01010018
PASSWORD = "secret"


################################################################################
#
# binary XML
#
################################################################################

def android_attr(name: str, value: Union[str, int], type: int = axml.TYPE_STRING,
                 rid: Optional[int] = None) -> Attribute:
    return Attribute(name, ANDROID_NS, rid or ANDROID_ATTR_IDS.get(name), type, value)


def make_manifest_doc(package: Optional[str] = PACKAGE,
                      label: Union[str, int, None] = "Old App",
                      icon: Optional[int] = ICON_RID) -> Document:
    """A manifest like the ones built by aapt2 (with a launcher activity)."""
    doc = Document(namespaces=[Namespace("android", ANDROID_NS)])
    attrs = [android_attr("versionCode", 3, axml.TYPE_INT_DEC),
             android_attr("versionName", "1.2")]
    if package is not None:
        attrs.append(Attribute("package", value=package))
    m = doc.add_node(Node("manifest", attrs=attrs))
    doc.add_node(Node("uses-sdk", attrs=[
        android_attr("minSdkVersion", 21, axml.TYPE_INT_DEC),
        android_attr("targetSdkVersion", 33, axml.TYPE_INT_DEC)]), parent=m)
    doc.add_node(Node("uses-permission", attrs=[
        android_attr("name", "android.permission.INTERNET")]), parent=m)
    doc.add_node(Node("uses-permission", attrs=[
        android_attr("name", f"{PACKAGE}.permission.C2D_MESSAGE")]), parent=m)
    doc.add_node(Node("uses-feature", attrs=[
        android_attr("glEsVersion", 0x20000, axml.TYPE_INT_HEX, GL_ES_VERSION)]), parent=m)
    doc.add_node(Node("uses-feature", attrs=[
        android_attr("name", "android.hardware.camera")]), parent=m)
    app_attrs = [android_attr("name", f"{PACKAGE}.App")]
    if isinstance(label, str):
        app_attrs.append(android_attr("label", label))
    elif label is not None:
        app_attrs.append(android_attr("label", label, axml.TYPE_REFERENCE))
    if icon is not None:
        app_attrs.append(android_attr("icon", icon, axml.TYPE_REFERENCE))
    a = doc.add_node(Node("application", attrs=app_attrs), parent=m)
    act = doc.add_node(Node("activity", attrs=[
        android_attr("name", f"{PACKAGE}.MainActivity")]), parent=a)
    f = doc.add_node(Node("intent-filter"), parent=act)
    doc.add_node(Node("action", attrs=[
        android_attr("name", "android.intent.action.MAIN")]), parent=f)
    doc.add_node(Node("activity", attrs=[
        android_attr("name", f"{PACKAGE}.SettingsActivity")]), parent=a)
    doc.add_node(Node("provider", attrs=[
        android_attr("name", "androidx.core.content.FileProvider"),
        android_attr("authorities", f"{PACKAGE}.Provider;{PACKAGE}.Service",
                     rid=AUTHORITIES)]), parent=a)
    return doc


def make_manifest(**kwargs: Union[str, int, None]) -> bytes:
    return axml.dump(make_manifest_doc(**kwargs))      # type: ignore[arg-type]


################################################################################
#
# resources.arsc
#
################################################################################

Value = Optional[Tuple[int, int]]


def arsc_type_chunk(type_id: int, values: Sequence[Value], config: bytes = b"") -> bytes:
    cfg = struct.pack("<L", 64) + config.ljust(60, b"\x00")
    hsize = 20 + len(cfg)
    offsets, entries = [], b""
    for key, value in enumerate(values):
        if value is None:
            offsets.append(axml.NO_ENTRY)
            continue
        offsets.append(len(entries))
        entries += struct.pack("<HHL", 8, 0, key) + struct.pack("<HBBL", 8, 0, *value)
    entries_start = hsize + 4 * len(values)
    return struct.pack("<HHLBBHLL", 0x0201, hsize, entries_start + len(entries), type_id,
                       0, 0, len(values), entries_start) + cfg + \
        struct.pack(f"<{len(values)}L", *offsets) + entries


def make_arsc(strings: List[str], chunks: List[bytes], pkg_id: int = 0x7f) -> bytes:
    type_pool = axml.dump_string_pool(["mipmap", "string"], True)
    key_pool = axml.dump_string_pool(["ic_launcher", "app_name", "label_ref"], True)
    name = PACKAGE.encode("utf-16-le").ljust(256, b"\x00")
    body = type_pool + key_pool + b"".join(chunks)
    pkg = struct.pack("<HHLL", 0x0200, 288, 288 + len(body), pkg_id) + name + \
        struct.pack("<5L", 288, 0, 288 + len(type_pool), 0, 0) + body
    pool = axml.dump_string_pool(strings, True)
    return struct.pack("<HHLL", 0x0002, 12, 12 + len(pool) + len(pkg), 1) + pool + pkg


def make_default_arsc() -> bytes:
    """Icon (mipmap 0) -> ICON_PATH; label (string 0) -> "Old App" (fr: "Vieille")."""
    strings = [ICON_PATH, "Vieille", "Old App"]
    fr = b"\x00" * 4 + b"fr"
    return make_arsc(strings, [
        arsc_type_chunk(1, [(axml.TYPE_STRING, 0)]),
        arsc_type_chunk(2, [(axml.TYPE_STRING, 1)], fr),
        arsc_type_chunk(2, [(axml.TYPE_STRING, 2), (axml.TYPE_REFERENCE, LABEL_RID)]),
    ])


def make_truncated_arsc() -> bytes:
    """Like make_default_arsc(), but the icon entry points past the end of the data."""
    chunk = bytearray(arsc_type_chunk(1, [(axml.TYPE_STRING, 0)]))
    struct.pack_into("<L", chunk, 84, 0x00fffff0)
    return make_arsc([ICON_PATH, "Old App"], [
        bytes(chunk), arsc_type_chunk(2, [(axml.TYPE_STRING, 1)])])


def density_config(dpi: int) -> bytes:
    return bytes(10) + struct.pack("<H", dpi)


################################################################################
#
# images & APKs
#
################################################################################

def png_bytes(size: int, color: Tuple[int, int, int, int] = (255, 0, 0, 255),
              noise: bool = False) -> bytes:
    img = Image.new("RGBA", (size, size), color)
    if noise:
        img = Image.frombytes("RGBA", (size, size), os.urandom(size * size * 4))
    buf = io.BytesIO()
    img.save(buf, "PNG")
    return buf.getvalue()


def strings_xml(app_name: Optional[str]) -> bytes:
    entry = f'    <string name="app_name">{app_name}</string>\n' if app_name else ""
    return ('<?xml version="1.0" encoding="utf-8"?>\n<resources>\n'
            f'{entry}    <string name="other">Other</string>\n</resources>\n').encode()


def default_files() -> Dict[str, bytes]:
    return {
        "AndroidManifest.xml": make_manifest(label=LABEL_RID),
        "classes.dex": b"dex\n035\x00" + os.urandom(1000),
        "resources.arsc": make_default_arsc(),
        "res/yn.png": png_bytes(64, noise=True),
        "res/N3.png": png_bytes(8),
        ICON_PATH: png_bytes(32),
        "res/values/strings.xml": strings_xml("Old App"),
        "res/values-fr/strings.xml": strings_xml(None),
        "res/layout/main.xml": b"\x03\x00\x08\x00" + bytes(100),
        "lib/arm64-v8a/libfoo.so": b"\x7fELF" + os.urandom(5000),
        "assets/data.txt": b"hello " * 500,
        "META-INF/MANIFEST.MF": b"Manifest-Version: 1.0\r\n\r\n",
        "META-INF/OLD.SF": b"Signature-Version: 1.0\r\n\r\n",
        "META-INF/OLD.RSA": os.urandom(100),
    }


def make_apk(path: str, files: Dict[str, bytes], dirs: Sequence[str] = ()) -> str:
    with zipfile.ZipFile(path, "w", zipfile.ZIP_DEFLATED) as zf:
        for name in dirs:
            zf.writestr(zipfile.ZipInfo(name), b"")
        for name, data in files.items():
            zf.writestr(name, data)
    return path


def make_tree(path: str, files: Dict[str, bytes], dirs: Sequence[str] = ()) -> str:
    for name, data in files.items():
        filename = os.path.join(path, *name.split("/"))
        os.makedirs(os.path.dirname(filename), exist_ok=True)
        with open(filename, "wb") as fh:
            fh.write(data)
    for name in dirs:
        os.makedirs(os.path.join(path, *name.split("/")), exist_ok=True)
    return path


################################################################################
#
# keys & keystores
#
################################################################################

def make_cert(key: Union[rsa.RSAPrivateKey, ec.EllipticCurvePrivateKey],
              cn: str = "apkrepack test") -> x509.Certificate:
    name = x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, cn)])
    now = datetime.datetime(2024, 1, 1, tzinfo=datetime.timezone.utc)
    return (x509.CertificateBuilder()
            .subject_name(name)
            .issuer_name(name)
            .public_key(key.public_key())
            .serial_number(0x1234)
            .not_valid_before(now)
            .not_valid_after(now + datetime.timedelta(days=10000))
            .sign(key, hashes.SHA256()))


def make_pkcs12(key: Optional[rsa.RSAPrivateKey], cert: Optional[x509.Certificate],
                password: str, alias: Optional[str] = "foo") -> bytes:
    return pkcs12.serialize_key_and_certificates(
        alias.encode() if alias else None, key, cert, None,
        serialization.BestAvailableEncryption(password.encode()))


def jks_protect_key(pkcs8: bytes, password: str, salt: bytes = b"\x01" * 20) -> bytes:
    pw = password.encode("utf-16-be")
    stream, digest = b"", salt
    while len(stream) < len(pkcs8):
        digest = hashlib.sha1(pw + digest).digest()
        stream += digest
    encrypted = bytes(a ^ b for a, b in zip(pkcs8, stream))
    epki = rfc5208.EncryptedPrivateKeyInfo()
    epki["encryptionAlgorithm"]["algorithm"] = JKS_KEY_PROTECTOR_OID
    epki["encryptedData"] = salt + encrypted + hashlib.sha1(pw + pkcs8).digest()
    return pyasn1_encode(epki)


JKSCert = Union[x509.Certificate, Tuple[str, bytes]]
JKSEntry = Tuple[str, Optional[object], Sequence[JKSCert]]


def make_jks(entries: Sequence[JKSEntry], password: str,
             key_password: Optional[str] = None) -> bytes:
    """
    Write a JKS keystore; entries are (alias, key, chain), with key None for
    trusted certificate entries.
    """
    def utf(s: str) -> bytes:
        b = s.encode()
        return struct.pack(">H", len(b)) + b

    def cert(c: JKSCert) -> bytes:
        cert_type, der = c if isinstance(c, tuple) else \
            ("X.509", c.public_bytes(serialization.Encoding.DER))
        return utf(cert_type) + struct.pack(">L", len(der)) + der

    data = struct.pack(">LLL", 0xfeedfeed, 2, len(entries))
    for alias, key, chain in entries:
        if key is None:
            data += struct.pack(">L", 2) + utf(alias) + struct.pack(">Q", 0) + cert(chain[0])
            continue
        pkcs8 = key.private_bytes(serialization.Encoding.DER,     # type: ignore[attr-defined]
                                  serialization.PrivateFormat.PKCS8,
                                  serialization.NoEncryption())
        protected = jks_protect_key(pkcs8, key_password or password)
        data += struct.pack(">L", 1) + utf(alias) + struct.pack(">Q", 0) + \
            struct.pack(">L", len(protected)) + protected + \
            struct.pack(">L", len(chain)) + b"".join(cert(c) for c in chain)
    digest = hashlib.sha1(password.encode("utf-16-be") + b"Mighty Aphrodite" + data).digest()
    return data + digest


def write_file(path: str, data: bytes) -> str:
    with open(path, "wb") as fh:
        fh.write(data)
    return path

# vim: set tw=80 sw=4 sts=4 et fdm=marker :
