#!/usr/bin/python3
# encoding: utf-8
# SPDX-FileCopyrightText: 2024 FC (Fay) Stegerman <flx@obfusk.net>
# SPDX-License-Identifier: GPL-3.0-or-later

"""
extract, patch, repackage & re-sign android apks

apkrepack unpacks an APK into a working tree, changes its package name,
application label, and launcher icons, then reassembles, aligns, and signs it
again (v1 + v2) with a key from a PKCS#12 or JKS keystore.


CLI
===

$ apkrepack info APK
$ apkrepack extract APK
$ apkrepack repack [OPTIONS] APK OUTPUT_APK
$ apkrepack align [OPTIONS] INPUT_APK OUTPUT_APK
$ apkrepack sign [OPTIONS] UNSIGNED_APK OUTPUT_APK
$ apkrepack cleanup

The following environment variables can be set to override the default
behaviour:

* set APKREPACK_WORK_DIR=DIR to keep working trees under DIR
* set APKREPACK_MIN_SDK_VERSION=N to sign for API level N (default: 26)
* set APKREPACK_PAGE_ALIGNMENT=N to align .so files to N bytes (default: 16384)


API
===

>> from apkrepack import extract, patch_package_name, patch_app_name
>> from apkrepack import patch_icon, repackage, sign, cleanup
>> tree = extract(apk)
>> patch_package_name(tree, "com.example.new")
>> patch_app_name(tree, "New Name")
>> patch_icon(tree, "icon.png")
>> repackage(tree, unsigned_apk)
>> ok, error = sign(unsigned_apk, keystore, ks_pass, alias, key_pass, output_apk)
>> cleanup()

Or, all at once:

>> from apkrepack import repack_apk
>> ok, error = repack_apk(apk, output_apk, package="com.example.new",
..                        name="New Name", icon="icon.png", keystore=keystore,
..                        ks_pass=ks_pass, alias=alias, key_pass=key_pass)

The stage operations return False (or (False, message)) on failure; errors
are logged.  Running out of disk space (ENOSPC) is never converted.

The following global variables can be set to override the default behaviour
(keyword arguments take precedence over them when not None):

* work_dir: base directory of the working trees
* min_sdk_version: minimum API level to sign for
* page_alignment: alignment of .so files
"""

import errno
import json
import logging
import os
import shutil
import sys
import tempfile
import threading
import zipfile

from typing import Any, Callable, Dict, Optional, Tuple, TypeVar

from androguard.core import apk as ag_apk               # type: ignore[import-untyped]
from loguru import logger as loguru_logger

from . import axml
from .errors import (APKRepackError, AlignmentError, Cancelled, CertificateChainMissing,
                     ContainerError, KeyNotFound, KeystoreLoadError, ManifestStructureError,
                     NoStringsTableFound, NotAPrivateKey, SigningError,
                     UnsupportedCertificateType)
from .resources import (RESOURCE_TABLE_ERRORS, ImageSource, replace_icons,
                        update_app_name_strings)
from .signing import sign_with_keystore
from .zipalign import ALIGNMENT, align_apk, build_apk, check_cancelled, extract_apk

__version__ = "0.1.0"
NAME = "apkrepack"

__all__ = [
    "APKRepackError", "AlignmentError", "Cancelled", "CertificateChainMissing",
    "ContainerError", "KeyNotFound", "KeystoreLoadError", "ManifestStructureError",
    "NoStringsTableFound", "NotAPrivateKey", "SigningError", "UnsupportedCertificateType",
    "cleanup", "extract", "get_info", "patch_app_name", "patch_icon", "patch_package_name",
    "repack_apk", "repackage", "sign",
]

T = TypeVar("T")

log = logging.getLogger(__name__)

MANIFEST = "AndroidManifest.xml"
RESOURCE_TABLE = "resources.arsc"

work_dir = os.path.join(tempfile.gettempdir(), NAME)
min_sdk_version = 26
page_alignment = 16384

_locks: Dict[str, threading.RLock] = {}
_locks_lock = threading.Lock()


def work_dir_lock(path: str) -> threading.RLock:
    """The lock serialising all operations on the working tree at path."""
    key = os.path.realpath(path)
    with _locks_lock:
        return _locks.setdefault(key, threading.RLock())


def working_dir_for(apkfile: str, base_dir: Optional[str] = None) -> str:
    """
    Working tree for apkfile: a directory named after the APK (without
    extension) under base_dir (default: work_dir).

    >>> working_dir_for("/some/where/app-release.apk", "/tmp/x")
    '/tmp/x/app-release'

    """
    stem = os.path.splitext(os.path.basename(apkfile))[0]
    return os.path.join(base_dir if base_dir is not None else work_dir, stem)


def _reraise_enospc(e: OSError) -> None:
    if e.errno == errno.ENOSPC:
        raise e


################################################################################
#
# operations
#
################################################################################

def get_info(apkfile: str) -> Dict[str, Any]:
    """
    Package, versionName, versionCode, appName, minSdk, targetSdk,
    permissions & features of apkfile (as read by androguard).

    A label referring to a string resource is looked up in resources.arsc;
    when that table cannot be read, the raw reference (e.g. "@7F020000") is
    reported instead.
    """
    try:
        with zipfile.ZipFile(apkfile, "r") as zf:
            if MANIFEST not in zf.namelist():
                raise ManifestStructureError(f"No {MANIFEST} in {apkfile!r}")
    except (zipfile.BadZipFile, OSError) as e:
        raise ContainerError(f"Unable to read {apkfile!r}: {e}")     # pylint: disable=W0707
    try:
        apk = ag_apk.APK(apkfile)
    except (ag_apk.Error, *RESOURCE_TABLE_ERRORS) as e:
        raise ManifestStructureError(f"Unable to parse {MANIFEST}: {e}")    # pylint: disable=W0707
    if not apk.is_valid_APK():
        raise ManifestStructureError(f"Unable to parse {MANIFEST} in {apkfile!r}")
    try:
        app_name = apk.get_app_name()
    except RESOURCE_TABLE_ERRORS as e:
        log.warning("unable to read %s: %s", RESOURCE_TABLE, e)
        app_name = apk.get_attribute_value("application", "label")
    return dict(
        package=apk.get_package() or None,
        versionName=apk.get_androidversion_name(),
        versionCode=_number(apk.get_androidversion_code()),
        appName=app_name,
        minSdk=_number(apk.get_min_sdk_version()),
        targetSdk=_number(apk.get_target_sdk_version()),
        permissions=sorted(apk.get_permissions()),
        features=apk.get_features(),
    )


def _number(value: Optional[str]) -> Any:
    """
    >>> _number("33"), _number("0x7F"), _number(None)
    (33, '0x7F', None)

    """
    return int(value) if value is not None and value.isdigit() else value


def extract(apkfile: str, *, base_dir: Optional[str] = None,
            cancel: Optional[threading.Event] = None) -> str:
    """
    Extract apkfile into a fresh working tree (see working_dir_for());
    returns its path.

    Raises ContainerError for a malformed or unsafe APK.
    """
    tree = working_dir_for(apkfile, base_dir)
    with work_dir_lock(tree):
        if os.path.exists(tree):
            log.info("removing old working tree %s", tree)
            shutil.rmtree(tree)
        os.makedirs(tree)
        log.info("extracting %s to %s", apkfile, tree)
        extract_apk(apkfile, tree, cancel=cancel)
    return tree


def _edit_manifest(tree: str, f: Callable[[axml.Document], T]) -> T:
    path = os.path.join(tree, MANIFEST)
    with open(path, "rb") as fh:
        doc = axml.parse(fh.read())
    result = f(doc)
    data = axml.dump(doc)
    tmp = path + ".tmp"
    try:
        with open(tmp, "wb") as fh:
            fh.write(data)
        os.replace(tmp, path)
    finally:
        if os.path.exists(tmp):
            os.unlink(tmp)
    return result


def patch_package_name(tree: str, new_name: str) -> bool:
    """Change the package name (and references to it) in the manifest."""
    with work_dir_lock(tree):
        try:
            _edit_manifest(tree, lambda doc: axml.patch_identity(doc, new_name))
        except APKRepackError as e:
            log.error("unable to change package name: %s", e)
            return False
        except OSError as e:
            _reraise_enospc(e)
            log.error("unable to change package name: %s", e)
            return False
    return True


def _patch_label(doc: axml.Document, new_name: str) -> bool:
    attr = axml.get_attribute(axml.application_node(doc), "label")
    axml.patch_label(doc, new_name)
    return attr is not None and attr.type == axml.TYPE_STRING


def patch_app_name(tree: str, new_name: str) -> bool:
    """
    Change the application label.

    The manifest label is set to the literal new_name; when it was not a
    literal before (or the manifest could not be changed), app_name in
    res/values*/strings.xml is updated as well.
    """
    with work_dir_lock(tree):
        literal: Optional[bool] = None
        try:
            literal = _edit_manifest(tree, lambda doc: _patch_label(doc, new_name))
        except APKRepackError as e:
            log.warning("unable to change label in %s: %s", MANIFEST, e)
        except OSError as e:
            _reraise_enospc(e)
            log.warning("unable to change label in %s: %s", MANIFEST, e)
        if literal:
            return True
        try:
            updated = update_app_name_strings(os.path.join(tree, "res"), new_name)
        except NoStringsTableFound as e:
            if literal is None:
                log.error("unable to change application name: %s", e)
                return False
            log.info("%s", e)
        else:
            log.info("updated app_name in %d strings file(s)", updated)
    return True


def patch_icon(tree: str, image: ImageSource) -> bool:
    """
    Replace the launcher icons with image (a path or PIL image); returns
    whether any icon was replaced.
    """
    with work_dir_lock(tree):
        try:
            replaced = replace_icons(tree, image)
        except OSError as e:
            _reraise_enospc(e)
            log.error("unable to replace icons: %s", e)
            return False
    log.info("replaced %d icon(s)", len(replaced))
    return bool(replaced)


def repackage(tree: str, output_apk: str, *, alignment: int = ALIGNMENT,
              page_alignment: Optional[int] = None,
              cancel: Optional[threading.Event] = None) -> bool:
    """
    Reassemble the working tree into output_apk (unsigned, aligned).

    The unaligned intermediate APK is always removed.
    """
    if page_alignment is None:
        page_alignment = globals()["page_alignment"]
    stem = os.path.splitext(os.path.basename(output_apk))[0]
    unaligned = os.path.join(os.path.dirname(os.path.abspath(output_apk)),
                             f"{stem}_unaligned.apk")
    with work_dir_lock(tree):
        try:
            log.info("reassembling %s", tree)
            build_apk(tree, unaligned, cancel=cancel)
            log.info("aligning to %s", output_apk)
            align_apk(unaligned, output_apk, alignment, page_alignment, cancel=cancel)
        except APKRepackError as e:
            log.error("unable to repackage: %s", e)
            _remove(output_apk)
            return False
        except OSError as e:
            _reraise_enospc(e)
            log.error("unable to repackage: %s", e)
            _remove(output_apk)
            return False
        finally:
            _remove(unaligned)
    return True


def sign(unsigned_apk: str, keystore: str, ks_pass: str, alias: Optional[str],
         key_pass: Optional[str], output_apk: str, *,
         min_sdk_version: Optional[int] = None,
         page_alignment: Optional[int] = None) -> Tuple[bool, Optional[str]]:
    """
    Sign unsigned_apk with the key for alias from keystore (PKCS#12 or JKS);
    returns (True, None) on success and (False, message) otherwise.
    """
    if min_sdk_version is None:
        min_sdk_version = globals()["min_sdk_version"]
    if page_alignment is None:
        page_alignment = globals()["page_alignment"]
    try:
        sign_with_keystore(unsigned_apk, keystore, ks_pass, alias, key_pass, output_apk,
                           min_sdk_version=min_sdk_version, page_alignment=page_alignment)
    except (APKRepackError, zipfile.BadZipFile) as e:
        log.error("unable to sign: %s", e)
        _remove(output_apk)
        return False, str(e)
    except OSError as e:
        _reraise_enospc(e)
        log.error("unable to sign: %s", e)
        _remove(output_apk)
        return False, str(e)
    log.info("signed %s", output_apk)
    return True, None


def cleanup(base_dir: Optional[str] = None) -> None:
    """Remove all working trees."""
    base = base_dir if base_dir is not None else work_dir
    if not os.path.isdir(base):
        return
    for name in sorted(os.listdir(base)):
        tree = os.path.join(base, name)
        key = os.path.realpath(tree)
        with work_dir_lock(tree):
            log.info("removing %s", tree)
            if os.path.isdir(tree) and not os.path.islink(tree):
                shutil.rmtree(tree)
            else:
                os.unlink(tree)
            with _locks_lock:
                _locks.pop(key, None)
    os.rmdir(base)


def repack_apk(apkfile: str, output_apk: str, *, keystore: str, ks_pass: str,
               alias: Optional[str] = None, key_pass: Optional[str] = None,
               package: Optional[str] = None, name: Optional[str] = None,
               icon: Optional[ImageSource] = None, base_dir: Optional[str] = None,
               cancel: Optional[threading.Event] = None) -> Tuple[bool, Optional[str]]:
    """
    Extract, patch, repackage & sign apkfile; returns (success, message).

    The working tree is kept (see cleanup()); the unsigned intermediate APK is
    always removed.
    """
    tree = working_dir_for(apkfile, base_dir)
    with work_dir_lock(tree):
        try:
            extract(apkfile, base_dir=base_dir, cancel=cancel)
            check_cancelled(cancel)
            if package is not None and not patch_package_name(tree, package):
                return False, "Unable to change package name"
            if name is not None and not patch_app_name(tree, name):
                return False, "Unable to change application name"
            if icon is not None and not patch_icon(tree, icon):
                log.warning("no icons replaced")
            check_cancelled(cancel)
            with tempfile.TemporaryDirectory() as tmpdir:
                unsigned = os.path.join(tmpdir, "unsigned.apk")
                if not repackage(tree, unsigned, cancel=cancel):
                    check_cancelled(cancel)
                    return False, "Unable to repackage"
                check_cancelled(cancel)
                return sign(unsigned, keystore, ks_pass, alias, key_pass, output_apk)
        except Cancelled:
            log.warning("cancelled; keeping %s", tree)
            return False, "Cancelled"
        except APKRepackError as e:
            log.error("%s", e)
            return False, str(e)
        except OSError as e:
            _reraise_enospc(e)
            log.error("%s", e)
            return False, str(e)


def _remove(path: str) -> None:
    if os.path.exists(path):
        os.unlink(path)


def main() -> None:
    """CLI; requires click."""

    global work_dir, min_sdk_version, page_alignment
    work_dir = os.environ.get("APKREPACK_WORK_DIR") or work_dir
    min_sdk_version = int(os.environ.get("APKREPACK_MIN_SDK_VERSION") or min_sdk_version)
    page_alignment = int(os.environ.get("APKREPACK_PAGE_ALIGNMENT") or page_alignment)

    import click

    def signing_options(f: Callable[..., Any]) -> Callable[..., Any]:
        f = click.option("--key-pass", envvar="APKREPACK_KEY_PASS",
                         help="Key password (default: keystore password).")(f)
        f = click.option("--alias", help="Key alias (default: the first alias).")(f)
        f = click.option("--ks-pass", required=True, envvar="APKREPACK_KS_PASS",
                         help="Keystore password.")(f)
        f = click.option("--keystore", required=True,
                         type=click.Path(exists=True, dir_okay=False),
                         help="PKCS#12 or JKS keystore.")(f)
        return f

    @click.group(help="""
        apkrepack - extract, patch, repackage & re-sign android apks
    """)
    @click.version_option(__version__)
    @click.option("-v", "--verbose", is_flag=True, help="Show debug output.")
    def cli(verbose: bool) -> None:
        logging.basicConfig(format="%(levelname)s: %(name)s: %(message)s",
                            level=logging.DEBUG if verbose else logging.WARNING)
        # androguard logs (to stderr, via loguru) on every parse
        if not verbose:
            loguru_logger.disable("androguard")

    @cli.command(help="""
        Show package name, version, label, SDK versions, permissions & features.
    """)
    @click.argument("apk", type=click.Path(exists=True, dir_okay=False))
    def info(apk: str) -> None:
        click.echo(json.dumps(get_info(apk), indent=2))

    @cli.command(name="extract", help="""
        Extract APK into a fresh working tree & print its path.
    """)
    @click.argument("apk", type=click.Path(exists=True, dir_okay=False))
    def extract_cmd(apk: str) -> None:
        click.echo(extract(apk))

    @cli.command(help="""
        Extract, patch, repackage & sign APK.
    """)
    @click.option("--package", help="New package name.")
    @click.option("--name", help="New application label.")
    @click.option("--icon", type=click.Path(exists=True, dir_okay=False),
                  help="New launcher icon image.")
    @signing_options
    @click.argument("apk", type=click.Path(exists=True, dir_okay=False))
    @click.argument("output_apk", type=click.Path(dir_okay=False))
    def repack(apk: str, output_apk: str, **kwargs: Any) -> None:
        ok, error = repack_apk(apk, output_apk, **kwargs)
        if not ok:
            raise APKRepackError(error)

    @cli.command(help="""
        Align the entries of an APK (padding the ZIP extra fields).
    """)
    @click.option("--alignment", type=click.INT, default=ALIGNMENT, show_default=True,
                  help="Alignment of entries.")
    @click.option("--page-alignment", type=click.INT, help="Alignment of .so entries.  "
                  f"[default: {page_alignment}]")
    @click.argument("input_apk", type=click.Path(exists=True, dir_okay=False))
    @click.argument("output_apk", type=click.Path(dir_okay=False))
    def align(input_apk: str, output_apk: str, alignment: int,
              page_alignment: Optional[int]) -> None:
        if page_alignment is None:
            page_alignment = globals()["page_alignment"]
        align_apk(input_apk, output_apk, alignment, page_alignment)

    @cli.command(name="sign", help="""
        Sign APK (v1 + v2) with a key from a PKCS#12 or JKS keystore.
    """)
    @signing_options
    @click.argument("unsigned_apk", type=click.Path(exists=True, dir_okay=False))
    @click.argument("output_apk", type=click.Path(dir_okay=False))
    def sign_cmd(unsigned_apk: str, output_apk: str, keystore: str, ks_pass: str,
                 alias: Optional[str], key_pass: Optional[str]) -> None:
        ok, error = sign(unsigned_apk, keystore, ks_pass, alias, key_pass, output_apk)
        if not ok:
            raise SigningError(error or "Unable to sign")

    @cli.command(name="cleanup", help="""
        Remove all working trees.
    """)
    def cleanup_cmd() -> None:
        cleanup()

    try:
        cli(prog_name=NAME)
    except (APKRepackError, zipfile.BadZipFile) as e:
        click.echo(f"Error: {e}.", err=True)
        sys.exit(1)


if __name__ == "__main__":
    main()

# vim: set tw=80 sw=4 sts=4 et fdm=marker :
