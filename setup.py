from pathlib import Path
import re
import setuptools

here = Path(__file__).parent
info = here.joinpath("README.md").read_text(encoding = "utf8")
src = here.joinpath("apkrepack", "__init__.py").read_text(encoding = "utf8")
__version__ = re.search(r"^__version__ = \"([^\"]+)\"", src, re.M).group(1)

setuptools.setup(
    name              = "apkrepack",
    url               = "https://github.com/obfusk/apkrepack",
    description       = "extract, patch, repackage & re-sign android apks",
    long_description  = info,
    long_description_content_type = "text/markdown",
    version           = __version__,
    author            = "FC Stegerman",
    author_email      = "flx@obfusk.net",
    license           = "GPLv3+",
    classifiers       = [
        "Development Status :: 3 - Alpha",
        "Environment :: Console",
        "Intended Audience :: Developers",
        "License :: OSI Approved :: GNU General Public License v3 or later (GPLv3+)",
        "Operating System :: MacOS :: MacOS X",
        "Operating System :: POSIX :: Linux",
        "Operating System :: POSIX",
        "Operating System :: Unix",
        "Programming Language :: Python :: 3",
        "Programming Language :: Python :: 3.9",
        "Programming Language :: Python :: 3.10",
        "Programming Language :: Python :: 3.11",
        "Programming Language :: Python :: 3.12",
        "Programming Language :: Python :: Implementation :: CPython",
        "Topic :: Software Development",
        "Topic :: Utilities",
    ],
    keywords          = "android apk repackage signing zipalign manifest",
    entry_points      = dict(console_scripts = ["apkrepack = apkrepack:main"]),
    packages          = ["apkrepack"],
    package_data      = dict(apkrepack = ["py.typed"]),
    python_requires   = ">=3.9",
    install_requires  = ["androguard>=4.1", "click>=6.0", "cryptography>=37.0", "loguru",
                         "pyasn1", "pyasn1-modules", "Pillow>=9.1"],
    extras_require    = dict(test = ["pytest"]),
)
