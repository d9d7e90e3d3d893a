#!/usr/bin/python3
# encoding: utf-8
# SPDX-FileCopyrightText: 2024 FC (Fay) Stegerman <flx@obfusk.net>
# SPDX-License-Identifier: GPL-3.0-or-later

"""Errors raised by apkrepack."""

from typing import Sequence


class APKRepackError(Exception):
    """Base class for errors."""


class Cancelled(APKRepackError):
    """The operation was cancelled between two entries."""


class ContainerError(APKRepackError):
    """Malformed or unsafe ZIP container."""


class ManifestStructureError(APKRepackError):
    """Binary manifest lacks a required node (or cannot be parsed)."""


class NoStringsTableFound(APKRepackError):
    """No res/values*/strings.xml to update."""


class AlignmentError(APKRepackError):
    """ZIP could not be aligned."""


class KeystoreLoadError(APKRepackError):
    """Keystore could not be opened with a particular encoding."""


class KeyNotFound(APKRepackError):
    """No key for the alias."""


class NotAPrivateKey(APKRepackError):
    """The key for the alias is not a (supported) private key."""


class CertificateChainMissing(APKRepackError):
    """No certificate chain for the alias."""


class UnsupportedCertificateType(APKRepackError):
    """A certificate in the chain is not an X.509 certificate."""


class SigningError(APKRepackError):
    """
    Signing failed; errors holds the underlying failures (e.g. one per
    keystore encoding that was tried).

    >>> e = SigningError("Unable to load keystore",
    ...                  [KeystoreLoadError("PKCS12: bad"), KeystoreLoadError("JKS: worse")])
    >>> print(e)
    Unable to load keystore
    PKCS12: bad
    JKS: worse
    >>> len(e.errors)
    2

    """

    def __init__(self, message: str, errors: Sequence[Exception] = ()) -> None:
        self.errors = tuple(errors)
        super().__init__("\n".join([message] + [str(e) for e in self.errors]))

# vim: set tw=80 sw=4 sts=4 et fdm=marker :
