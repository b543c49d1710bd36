"""Packaging information for farside."""

import sys

import setuptools

from farside.constants import VERSION

if sys.version_info[:3] < (3, 10, 0):
    print("farside requires Python 3.10 to run.")
    sys.exit(1)

install_requires = [
    "semver>=2.9.1",
]

extras_require = {
    "dev": [
        "rope>=0.14.0",
        "flake8>=3.7.9",
        "flake8-docstrings>=1.5.0",
        "flake8-import-order>=0.18.1",
        "black>=19.10b0",
        "pylint>=2.4.4",
        "mypy>=0.770",
        "pytest>=5.4.1",
        "pytest-cov>=2.8.1",
    ]
}


def _long_description():
    with open("README.md") as f:
        return f.read()


setuptools.setup(
    name="farside",
    version=VERSION,
    description="Browse, edit and run things on remote hosts as if they were local.",
    long_description=_long_description(),
    long_description_content_type="text/markdown",
    license="Apache",
    packages=setuptools.find_packages(),
    install_requires=install_requires,
    extras_require=extras_require,
    classifiers=[
        "Development Status :: 3 - Alpha",
        "Programming Language :: Python :: 3",
        "Programming Language :: Python :: 3.10",
        "Intended Audience :: Developers",
        "License :: OSI Approved :: Apache Software License",
        "Operating System :: POSIX :: Linux",
        "Topic :: Software Development :: Libraries",
        "Topic :: System :: Filesystems",
    ],
    python_requires=">=3.10",
)
