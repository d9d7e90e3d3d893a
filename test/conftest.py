#!/usr/bin/python3
# encoding: utf-8
# SPDX-FileCopyrightText: 2024 FC (Fay) Stegerman <flx@obfusk.net>
# SPDX-License-Identifier: GPL-3.0-or-later

import os

import pytest

from cryptography.hazmat.primitives.asymmetric import ec, rsa

import apkrepack

from helpers import PASSWORD, default_files, make_apk, make_cert, make_jks, make_pkcs12, write_file


@pytest.fixture(scope="session")
def rsa_key():
    return rsa.generate_private_key(public_exponent=65537, key_size=2048)


@pytest.fixture(scope="session")
def rsa_cert(rsa_key):
    return make_cert(rsa_key)


@pytest.fixture(scope="session")
def ec_key():
    return ec.generate_private_key(ec.SECP256R1())


@pytest.fixture
def p12_file(tmp_path, rsa_key, rsa_cert):
    return write_file(str(tmp_path / "release.p12"), make_pkcs12(rsa_key, rsa_cert, PASSWORD))


@pytest.fixture
def jks_file(tmp_path, rsa_key, rsa_cert):
    return write_file(str(tmp_path / "release.jks"),
                      make_jks([("foo", rsa_key, [rsa_cert])], PASSWORD))


@pytest.fixture
def apk_file(tmp_path):
    return make_apk(str(tmp_path / "app.apk"), default_files(), dirs=["assets/empty/"])


@pytest.fixture(autouse=True)
def work_dir(tmp_path, monkeypatch):
    path = str(tmp_path / "work")
    monkeypatch.setattr(apkrepack, "work_dir", path)
    return path


@pytest.fixture
def tree(apk_file):
    path = apkrepack.extract(apk_file)
    assert os.path.isdir(path)
    return path

# vim: set tw=80 sw=4 sts=4 et fdm=marker :
