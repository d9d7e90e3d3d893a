#!/usr/bin/python3
# encoding: utf-8
# SPDX-FileCopyrightText: 2024 FC (Fay) Stegerman <flx@obfusk.net>
# SPDX-License-Identifier: GPL-3.0-or-later

"""
load signing keys from a keystore (PKCS#12, then JKS) & sign an APK using v1
(JAR) + v2 (APK Signature Scheme v2) signatures

Keystore loading is an ordered sequence of attempts; the first encoding that
opens the keystore with the given password is used and the others are not
tried.  When the requested alias does not exist, the first alias in the
keystore is used instead.
"""

import base64
import hashlib
import logging
import os
import struct
import tempfile
import zipfile

from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterable, List, NamedTuple, Optional, Tuple, TypeVar, Union

from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric.dsa import DSAPrivateKey
from cryptography.hazmat.primitives.asymmetric.ec import ECDSA, EllipticCurvePrivateKey
from cryptography.hazmat.primitives.asymmetric.padding import PKCS1v15
from cryptography.hazmat.primitives.asymmetric.rsa import RSAPrivateKey
from cryptography.hazmat.primitives.hashes import HashAlgorithm, SHA1, SHA256
from cryptography.hazmat.primitives.serialization import pkcs12
from cryptography import x509
from pyasn1.codec.der.decoder import decode as pyasn1_decode
from pyasn1.codec.der.encoder import encode as pyasn1_encode
from pyasn1.error import PyAsn1Error
from pyasn1.type import univ as pyasn1_univ
from pyasn1_modules import rfc2315, rfc5208

from .errors import (CertificateChainMissing, KeyNotFound, KeystoreLoadError, NotAPrivateKey,
                     SigningError, UnsupportedCertificateType)
from .zipalign import (ALIGNMENT, DATETIME, PAGE_ALIGNMENT, align_apk, is_directory, is_meta,
                       should_store, zip_data)

log = logging.getLogger(__name__)

T = TypeVar("T")

PrivKey = Union[RSAPrivateKey, DSAPrivateKey, EllipticCurvePrivateKey]
PRIVKEY_TYPE = {RSAPrivateKey: "RSA", DSAPrivateKey: "DSA", EllipticCurvePrivateKey: "EC"}

MIN_SDK_VERSION = 26

# https://source.android.com/docs/security/features/apksigning/v2#apk-signing-block-format
APK_SIGNATURE_SCHEME_V2_BLOCK_ID = 0x7109871a
APK_SIG_BLOCK_MAGIC = b"APK Sig Block 42"

# RSASSA-PKCS1-v1_5, ECDSA & DSA; all with SHA2-256, content in 1 MB chunks
V2_SIGNATURE_ALGORITHM = dict(RSA=0x0103, EC=0x0201, DSA=0x0301)
CHUNK_SIZE = 1048576

# v1 signatures only use SHA-256 on API level 18+
SHA256_MIN_SDK = 18

#            name       hasher          halgo   digest OID
JAR_HASHERS = dict(
    SHA1=("SHA1", hashlib.sha1, SHA1, pyasn1_univ.ObjectIdentifier("1.3.14.3.2.26")),
    SHA256=("SHA-256", hashlib.sha256, SHA256,
            pyasn1_univ.ObjectIdentifier("2.16.840.1.101.3.4.2.1")),
)

DIGEST_ENCRYPTION_ALGORITHM = dict(
    RSA=dict(SHA1=pyasn1_univ.ObjectIdentifier("1.2.840.113549.1.1.5"),
             SHA256=pyasn1_univ.ObjectIdentifier("1.2.840.113549.1.1.11")),
    DSA=dict(SHA1=pyasn1_univ.ObjectIdentifier("1.2.840.10040.4.3"),
             SHA256=pyasn1_univ.ObjectIdentifier("2.16.840.1.101.3.4.3.2")),
    EC=dict(SHA1=pyasn1_univ.ObjectIdentifier("1.2.840.10045.4.1"),
            SHA256=pyasn1_univ.ObjectIdentifier("1.2.840.10045.4.3.2")),
)

JAR_MANIFEST = "META-INF/MANIFEST.MF"
JAR_SIGNATURE_FILE = "META-INF/CERT.SF"
JAR_WRAP = 70

# JKS
JKS_MAGIC = 0xfeedfeed
JKS_PRIVATE_KEY_TAG, JKS_TRUSTED_CERT_TAG = 1, 2
JKS_INTEGRITY_SALT = b"Mighty Aphrodite"
JKS_KEY_PROTECTOR_OID = pyasn1_univ.ObjectIdentifier("1.3.6.1.4.1.42.2.17.1.1")
JKS_SALT_LEN = JKS_CHECK_LEN = 20


class UnknownCertificate(NamedTuple):
    """A certificate of a type other than X.509."""
    type: str
    data: bytes


@dataclass
class KeyEntry:
    """
    A keystore entry; key_loader returns the private key given the key
    password (None for trusted certificate entries).
    """
    alias: str
    chain: Tuple[Union[x509.Certificate, UnknownCertificate], ...] = ()
    key_loader: Optional[Callable[[Optional[str]], Any]] = None


@dataclass
class KeyStore:
    type: str
    entries: Dict[str, KeyEntry] = field(default_factory=dict)

    @property
    def aliases(self) -> List[str]:
        return list(self.entries)


class Signer(NamedTuple):
    alias: str
    key: PrivKey
    chain: Tuple[x509.Certificate, ...]

    @property
    def key_type(self) -> str:
        alg, = [e for c, e in PRIVKEY_TYPE.items() if isinstance(self.key, c)]
        return alg

    def cert_ders(self) -> List[bytes]:
        return [c.public_bytes(serialization.Encoding.DER) for c in self.chain]


################################################################################
#
# keystores
#
################################################################################

def load_pkcs12(data: bytes, password: str) -> KeyStore:
    """
    Load a PKCS#12 keystore; the alias is the friendly name of the
    certificate (or "1").
    """
    try:
        p12 = pkcs12.load_pkcs12(data, password.encode())
    except (ValueError, TypeError) as e:
        raise KeystoreLoadError(f"PKCS12: {e}")     # pylint: disable=W0707
    ks = KeyStore("PKCS12")
    if p12.key is None and p12.cert is None:
        return ks
    chain: List[Union[x509.Certificate, UnknownCertificate]] = []
    alias = "1"
    if p12.cert is not None:
        chain.append(p12.cert.certificate)
        if p12.cert.friendly_name:
            alias = p12.cert.friendly_name.decode()
    chain.extend(c.certificate for c in p12.additional_certs)
    key = p12.key
    ks.entries[alias] = KeyEntry(alias, tuple(chain),
                                 (lambda _password: key) if key is not None else None)
    return ks


def load_jks(data: bytes, password: str) -> KeyStore:
    """
    Load a (Sun) JKS keystore, checking its integrity with password; private
    keys are decrypted when requested.
    """
    try:
        return _load_jks(data, password)
    except (struct.error, IndexError, UnicodeDecodeError) as e:
        raise KeystoreLoadError(f"JKS: Invalid keystore format: {e}")   # pylint: disable=W0707


def _load_jks(data: bytes, password: str) -> KeyStore:
    magic, version, count = struct.unpack_from(">LLL", data, 0)
    if magic != JKS_MAGIC or version not in (1, 2):
        raise KeystoreLoadError("JKS: Invalid keystore format")
    pw = password.encode("utf-16-be")
    body, digest = data[:-20], data[-20:]
    if hashlib.sha1(pw + JKS_INTEGRITY_SALT + body).digest() != digest:
        raise KeystoreLoadError("JKS: Keystore was tampered with, or password was incorrect")
    ks, pos = KeyStore("JKS"), 12

    def read_utf() -> str:
        nonlocal pos
        n, = struct.unpack_from(">H", data, pos)
        s = data[pos + 2:pos + 2 + n].replace(b"\xc0\x80", b"\x00")
        pos += 2 + n
        return s.decode("utf-8", "surrogatepass")

    def read_bytes() -> bytes:
        nonlocal pos
        n, = struct.unpack_from(">L", data, pos)
        b = data[pos + 4:pos + 4 + n]
        if len(b) != n:
            raise KeystoreLoadError("JKS: Invalid keystore format: truncated")
        pos += 4 + n
        return b

    def read_cert() -> Union[x509.Certificate, UnknownCertificate]:
        cert_type = read_utf() if version == 2 else "X.509"
        der = read_bytes()
        if cert_type != "X.509":
            return UnknownCertificate(cert_type, der)
        return x509.load_der_x509_certificate(der)

    for _ in range(count):
        tag, = struct.unpack_from(">L", data, pos)
        pos += 4
        alias = read_utf()
        pos += 8    # timestamp
        if tag == JKS_PRIVATE_KEY_TAG:
            protected = read_bytes()
            n, = struct.unpack_from(">L", data, pos)
            pos += 4
            chain = tuple(read_cert() for _ in range(n))
            ks.entries[alias] = KeyEntry(alias, chain, _jks_key_loader(protected, password))
        elif tag == JKS_TRUSTED_CERT_TAG:
            ks.entries[alias] = KeyEntry(alias, (read_cert(),))
        else:
            raise KeystoreLoadError(f"JKS: Unsupported entry type {tag}")
    return ks


def _jks_key_loader(protected: bytes, store_password: str) -> Callable[[Optional[str]], Any]:
    def load(password: Optional[str]) -> Any:
        pw = password if password is not None else store_password
        return serialization.load_der_private_key(jks_decrypt_key(protected, pw), None)
    return load


def jks_decrypt_key(protected: bytes, password: str) -> bytes:
    """
    Decrypt a JKS-protected (EncryptedPrivateKeyInfo) key; returns the
    PKCS#8 DER.

    The encrypted data is salt + (key XOR keystream) + check, where the
    keystream is a chain of SHA-1 digests of the password and the previous
    digest (starting from the salt) and check is SHA-1(password + key).
    """
    try:
        epki = pyasn1_decode(protected, asn1Spec=rfc5208.EncryptedPrivateKeyInfo())[0]
    except PyAsn1Error as e:
        raise KeyNotFound(f"Malformed protected key: {e}")     # pylint: disable=W0707
    if epki["encryptionAlgorithm"]["algorithm"] != JKS_KEY_PROTECTOR_OID:
        raise KeyNotFound("Unsupported key protection algorithm: "
                          f"{epki['encryptionAlgorithm']['algorithm']}")
    encrypted = epki["encryptedData"].asOctets()
    salt = encrypted[:JKS_SALT_LEN]
    encr_key = encrypted[JKS_SALT_LEN:-JKS_CHECK_LEN]
    check = encrypted[-JKS_CHECK_LEN:]
    pw = password.encode("utf-16-be")
    stream, digest = b"", salt
    while len(stream) < len(encr_key):
        digest = hashlib.sha1(pw + digest).digest()
        stream += digest
    plain = bytes(a ^ b for a, b in zip(encr_key, stream))
    if hashlib.sha1(pw + plain).digest() != check:
        raise KeyNotFound("Cannot recover key (wrong key password?)")
    return plain


KEYSTORE_LOADERS: Tuple[Tuple[str, Callable[[bytes, str], KeyStore]], ...] = (
    ("PKCS12", load_pkcs12),
    ("JKS", load_jks),
)


def first_success(attempts: Iterable[Tuple[str, Callable[[], T]]], message: str) -> T:
    """
    Run attempts in order and return the result of the first one that does
    not raise KeystoreLoadError; raises SigningError with all failures if none
    succeeds.

    >>> def fail(msg):
    ...     raise KeystoreLoadError(msg)
    >>> first_success([("a", lambda: fail("no")), ("b", lambda: 42)], "oops")
    42
    >>> try:
    ...     first_success([("a", lambda: fail("no")), ("b", lambda: fail("nope"))], "oops")
    ... except SigningError as e:
    ...     print(e)
    oops
    no
    nope

    """
    errors: List[Exception] = []
    for name, attempt in attempts:
        try:
            result = attempt()
        except KeystoreLoadError as e:
            log.warning("unable to load keystore as %s: %s", name, e)
            errors.append(e)
        else:
            log.debug("loaded keystore as %s", name)
            return result
    raise SigningError(message, errors)


def load_keystore(data: bytes, password: str) -> KeyStore:
    """Load a keystore, trying each of KEYSTORE_LOADERS in order."""
    return first_success(
        ((name, lambda f=f: f(data, password)) for name, f in KEYSTORE_LOADERS),
        "Unable to load keystore as PKCS12 or JKS")


def resolve_alias(ks: KeyStore, alias: Optional[str]) -> str:
    """
    Return alias if the keystore contains it, the first alias otherwise.

    >>> ks = KeyStore("JKS", dict(foo=KeyEntry("foo")))
    >>> resolve_alias(ks, "foo"), resolve_alias(ks, "bar"), resolve_alias(ks, None)
    ('foo', 'foo', 'foo')

    """
    aliases = ks.aliases
    if alias is not None and alias in ks.entries:
        return alias
    if not aliases:
        raise KeyNotFound(f"{ks.type} keystore contains no aliases")
    if alias is not None:
        log.warning("alias %r not found, using %r", alias, aliases[0])
    return aliases[0]


def get_signer(ks: KeyStore, alias: Optional[str], key_password: Optional[str]) -> Signer:
    """Private key & X.509 certificate chain for alias (see resolve_alias())."""
    alias = resolve_alias(ks, alias)
    entry = ks.entries[alias]
    if entry.key_loader is None:
        raise KeyNotFound(f"No key for alias {alias!r}")
    try:
        key = entry.key_loader(key_password)
    except (ValueError, TypeError) as e:
        raise NotAPrivateKey(f"Unable to load key for alias {alias!r}: {e}")  # pylint: disable=W0707
    if key is None:
        raise KeyNotFound(f"No key for alias {alias!r}")
    if not isinstance(key, tuple(PRIVKEY_TYPE)):
        raise NotAPrivateKey(f"Key for alias {alias!r} is not a supported private key: "
                             f"{type(key).__name__}")
    if not entry.chain:
        raise CertificateChainMissing(f"No certificate chain for alias {alias!r}")
    for cert in entry.chain:
        if not isinstance(cert, x509.Certificate):
            raise UnsupportedCertificateType(f"Not an X.509 certificate: {cert.type}")
    return Signer(alias, key, tuple(entry.chain))      # type: ignore[arg-type]


################################################################################
#
# signing
#
################################################################################

def sign_with_keystore(unsigned_apk: str, keystore: str, ks_pass: str, alias: Optional[str],
                       key_pass: Optional[str], output_apk: str, *,
                       min_sdk_version: int = MIN_SDK_VERSION,
                       alignment: int = ALIGNMENT,
                       page_alignment: int = PAGE_ALIGNMENT) -> Signer:
    """Load the signer from keystore & sign unsigned_apk; returns the signer."""
    if not os.path.isfile(unsigned_apk):
        raise SigningError(f"No such file: {unsigned_apk!r}")
    if not os.path.isfile(keystore):
        raise SigningError(f"No such keystore: {keystore!r}")
    with open(keystore, "rb") as fh:
        ks = load_keystore(fh.read(), ks_pass)
    signer = get_signer(ks, alias, key_pass)
    log.info("signing with %s key %r from %s keystore", signer.key_type, signer.alias, ks.type)
    sign_apk(unsigned_apk, output_apk, signer, min_sdk_version=min_sdk_version,
             alignment=alignment, page_alignment=page_alignment)
    return signer


def sign_apk(unsigned_apk: str, output_apk: str, signer: Signer, *,
             min_sdk_version: int = MIN_SDK_VERSION, alignment: int = ALIGNMENT,
             page_alignment: int = PAGE_ALIGNMENT) -> None:
    """
    Sign APK using a v1 (JAR) and a v2 (APK Signing Block) signature.

    Existing v1 signature files are dropped; the output is aligned.
    """
    hash_algo = "SHA256" if min_sdk_version >= SHA256_MIN_SDK else "SHA1"
    with tempfile.TemporaryDirectory() as tmpdir:
        stripped = os.path.join(tmpdir, "stripped.apk")
        align_apk(unsigned_apk, stripped, alignment, page_alignment, exclude=is_meta)
        meta = create_v1_signature(stripped, signer, hash_algo)
        with zipfile.ZipFile(stripped, "a") as zf:
            for filename, data in meta:
                info = zipfile.ZipInfo(filename, date_time=DATETIME)
                info.create_system = 0
                info.external_attr = 0o100644 << 16
                info.compress_type = zipfile.ZIP_STORED if should_store(filename) \
                    else zipfile.ZIP_DEFLATED
                zf.writestr(info, data)
        align_apk(stripped, output_apk, alignment, page_alignment)
    sb_offset = zip_data(output_apk).cd_offset
    sig_block = create_v2_signing_block(output_apk, signer, sb_offset)
    patch_v2_sig((sb_offset, sig_block), output_apk)
    if extract_v2_sig(output_apk) != (sb_offset, sig_block):
        raise SigningError("Failed to implant APK Signing Block")


def create_v1_signature(apkfile: str, signer: Signer,
                        hash_algo: str = "SHA256") -> Tuple[Tuple[str, bytes], ...]:
    """
    Create v1 (JAR) signature files: MANIFEST.MF, CERT.SF, and CERT.{RSA,DSA,EC}.
    """
    name, hasher, _, _ = JAR_HASHERS[hash_algo]

    def b64digest(data: bytes) -> str:
        return base64.b64encode(hasher(data).digest()).decode()

    created_by = "1.0 (apkrepack)"
    mf_sections, sf_sections = [], []
    with zipfile.ZipFile(apkfile, "r") as zf:
        infos = zf.infolist()
        if len(set(i.filename for i in infos)) != len(infos):
            raise SigningError("Duplicate ZIP entries")
        for info in sorted(infos, key=lambda info: info.header_offset):
            if is_directory(info.filename):
                continue
            h = hasher()
            with zf.open(info) as fh:
                while data := fh.read(65536):
                    h.update(data)
            digest = base64.b64encode(h.digest()).decode()
            mf_section = _jar_section((("Name", info.filename), (f"{name}-Digest", digest)))
            mf_sections.append(mf_section)
            sf_sections.append(_jar_section((("Name", info.filename),
                                             (f"{name}-Digest", b64digest(mf_section)))))
    mf = _jar_section((("Manifest-Version", "1.0"), ("Created-By", created_by))) + \
        b"".join(mf_sections)
    sf = _jar_section((("Signature-Version", "1.0"), ("Created-By", created_by),
                       (f"{name}-Digest-Manifest", b64digest(mf)),
                       ("X-Android-APK-Signed", "2"))) + b"".join(sf_sections)
    sbf = create_signature_block_file(sf, signer, hash_algo)
    return ((JAR_MANIFEST, mf), (JAR_SIGNATURE_FILE, sf),
            (f"META-INF/CERT.{signer.key_type}", sbf))


def _jar_section(headers: Tuple[Tuple[str, str], ...], endl: str = "\r\n") -> bytes:
    r"""
    >>> _jar_section((("Name", "a"), ("SHA-256-Digest", "x")))
    b'Name: a\r\nSHA-256-Digest: x\r\n\r\n'
    >>> [len(line) for line in _jar_section((("Name", "x" * 70),)).split(b"\r\n")]
    [70, 7, 0, 0]

    """
    return ("".join(_jar_wrap(f"{k}: {v}", endl) + endl for k, v in headers) + endl).encode()


def _jar_wrap(s: str, endl: str, wrap: int = JAR_WRAP) -> str:
    w, t = wrap, ""
    while len(s) > w:
        t += s[:w] + endl + " "
        s = s[w:]
        w = wrap - 1    # account for the space
    return t + s


def create_signature_block_file(sf: bytes, signer: Signer, hash_algo: str) -> bytes:
    """PKCS#7 SignedData (without authenticated attributes) over sf."""
    alg = signer.key_type
    _, _, halgo, oid = JAR_HASHERS[hash_algo]
    sig = create_signature(signer.key, sf, halgo())
    certs = [pyasn1_decode(der, asn1Spec=rfc2315.Certificate())[0]
             for der in signer.cert_ders()]
    sdat = rfc2315.SignedData()
    sdat["version"] = 1
    sdat["digestAlgorithms"][0]["algorithm"] = oid
    sdat["contentInfo"] = rfc2315.ContentInfo()
    sdat["contentInfo"]["contentType"] = rfc2315.ContentType(rfc2315.data)
    for i, crt in enumerate(certs):
        sdat["certificates"][i]["certificate"] = crt
    sinf = sdat["signerInfos"][0]
    sinf["version"] = 1
    sinf["issuerAndSerialNumber"]["issuer"] = certs[0]["tbsCertificate"]["issuer"]
    sinf["issuerAndSerialNumber"]["serialNumber"] = certs[0]["tbsCertificate"]["serialNumber"]
    sinf["digestAlgorithm"]["algorithm"] = oid
    sinf["digestEncryptionAlgorithm"]["algorithm"] = DIGEST_ENCRYPTION_ALGORITHM[alg][hash_algo]
    sinf["encryptedDigest"] = sig
    cinf = rfc2315.ContentInfo()
    cinf["contentType"] = rfc2315.ContentType(rfc2315.signedData)
    cinf["content"] = pyasn1_univ.Any(pyasn1_encode(sdat))
    return pyasn1_encode(cinf)


def create_signature(key: PrivKey, msg: bytes, algorithm: HashAlgorithm) -> bytes:
    """Sign msg with key (PKCS#1 v1.5 for RSA)."""
    if isinstance(key, RSAPrivateKey):
        return key.sign(msg, PKCS1v15(), algorithm)
    elif isinstance(key, DSAPrivateKey):
        return key.sign(msg, algorithm)
    else:
        return key.sign(msg, ECDSA(algorithm))


def create_v2_signing_block(apkfile: str, signer: Signer, sb_offset: int) -> bytes:
    """APK Signing Block containing a v2 signature of apkfile."""
    aid = V2_SIGNATURE_ALGORITHM[signer.key_type]
    digest = apk_digest_chunked(apkfile, sb_offset, hashlib.sha256)
    signed_data = (
        _lp(_lp(struct.pack("<L", aid) + _lp(digest))) +
        _lp(b"".join(_lp(der) for der in signer.cert_ders())) +
        _lp(b"")                                                # additional attributes
    )
    signature = create_signature(signer.key, signed_data, SHA256())
    public_key = signer.chain[0].public_key().public_bytes(
        serialization.Encoding.DER, serialization.PublicFormat.SubjectPublicKeyInfo)
    v2_signer = _lp(signed_data) + _lp(_lp(struct.pack("<L", aid) + _lp(signature))) + \
        _lp(public_key)
    return apk_signing_block(((APK_SIGNATURE_SCHEME_V2_BLOCK_ID, _lp(_lp(v2_signer))),))


def apk_signing_block(pairs: Iterable[Tuple[int, bytes]]) -> bytes:
    r"""
    >>> block = apk_signing_block(((0x7109871a, b"foo"),))
    >>> size = int.from_bytes(block[:8], "little")
    >>> size, len(block) - 8, int.from_bytes(block[8:16], "little")
    (39, 39, 7)
    >>> hex(int.from_bytes(block[16:20], "little")), block[20:23], block[-16:]
    ('0x7109871a', b'foo', b'APK Sig Block 42')

    """
    data = b"".join(int.to_bytes(len(value) + 4, 8, "little") + int.to_bytes(pair_id, 4, "little") +
                    value for pair_id, value in pairs)
    size = int.to_bytes(len(data) + 8 + len(APK_SIG_BLOCK_MAGIC), 8, "little")
    return size + data + size + APK_SIG_BLOCK_MAGIC


def _lp(data: bytes) -> bytes:
    return int.to_bytes(len(data), 4, "little") + data


def apk_digest_chunked(apkfile: str, sb_offset: int, hasher: Any) -> bytes:
    """Calculate chunked digest for APK."""
    def f(size: int) -> None:
        while size > 0:
            data = fh.read(min(size, CHUNK_SIZE))
            if not data:
                break
            size -= len(data)
            digests.append(_chunk_digest(data, hasher))
    digests: List[bytes] = []
    cd_offset, eocd_offset, _ = zip_data(apkfile)
    with open(apkfile, "rb") as fh:
        f(sb_offset)
        fh.seek(cd_offset)
        f(eocd_offset - cd_offset)
        fh.seek(eocd_offset)
        data = fh.read()
        data = data[:16] + int.to_bytes(sb_offset, 4, "little") + data[20:]
        digests.extend(_chunk_digest(data[i:i + CHUNK_SIZE], hasher)
                       for i in range(0, len(data), CHUNK_SIZE))
    return hasher(b"\x5a" + int.to_bytes(len(digests), 4, "little") + b"".join(digests)).digest()


def _chunk_digest(chunk: bytes, hasher: Any) -> bytes:
    return hasher(b"\xa5" + int.to_bytes(len(chunk), 4, "little") + chunk).digest()


def extract_v2_sig(apkfile: str) -> Optional[Tuple[int, bytes]]:
    """Extract APK Signing Block and offset from APK (None if there is none)."""
    cd_offset = zip_data(apkfile).cd_offset
    with open(apkfile, "rb") as fh:
        fh.seek(cd_offset - 16)
        if fh.read(16) != APK_SIG_BLOCK_MAGIC:
            return None
        fh.seek(-24, os.SEEK_CUR)
        sb_size2 = int.from_bytes(fh.read(8), "little")
        fh.seek(-sb_size2 + 8, os.SEEK_CUR)
        sb_size1 = int.from_bytes(fh.read(8), "little")
        if sb_size1 != sb_size2:
            raise SigningError("APK Signing Block sizes not equal")
        fh.seek(-8, os.SEEK_CUR)
        sb_offset = fh.tell()
        sig_block = fh.read(sb_size2 + 8)
    return sb_offset, sig_block


def patch_v2_sig(extracted_v2_sig: Tuple[int, bytes], output_apk: str) -> None:
    """Implant a v2 signature (APK Signing Block) into APK."""
    signed_sb_offset, signed_sb = extracted_v2_sig
    data_out = zip_data(output_apk)
    len_padding = signed_sb_offset - data_out.cd_offset
    if len_padding < 0:
        raise SigningError("APK Signing Block offset < central directory offset")
    if len_padding > 65536:
        raise SigningError("APK Signing Block offset requires more than 64k padding")
    padding = b"\x00" * len_padding
    offset = len(signed_sb) + len_padding
    with open(output_apk, "r+b") as fh:
        fh.seek(data_out.cd_offset)
        fh.write(padding)
        fh.write(signed_sb)
        fh.write(data_out.cd_and_eocd)
        fh.seek(data_out.eocd_offset + offset + 16)
        fh.write(int.to_bytes(data_out.cd_offset + offset, 4, "little"))

# vim: set tw=80 sw=4 sts=4 et fdm=marker :
