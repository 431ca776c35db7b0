#!/usr/bin/python3
# Setup file for gitgate
# Copyright (C) 2026 The gitgate Authors
# SPDX-License-Identifier: Apache-2.0 OR GPL-2.0-or-later

from setuptools import setup

tests_require = ["pytest"]


setup(
    name="gitgate",
    version="0.1.0",
    description="Git transport gateway (SSH and smart HTTP) with an incremental repository index",
    license="Apache-2.0 OR GPL-2.0-or-later",
    python_requires=">=3.10",
    packages=["gitgate"],
    install_requires=[
        "dulwich>=0.24.0",
        "aiohttp>=3.9",
        "paramiko>=3.2",
        "SQLAlchemy>=2.0",
    ],
    extras_require={
        "test": tests_require,
    },
    entry_points={
        "console_scripts": [
            "gitgate=gitgate.cli:_main",
        ],
    },
    classifiers=[
        "Development Status :: 3 - Alpha",
        "License :: OSI Approved :: Apache Software License",
        "License :: OSI Approved :: GNU General Public License v2 or later (GPLv2+)",
        "Programming Language :: Python :: 3 :: Only",
        "Operating System :: POSIX",
        "Topic :: Software Development :: Version Control",
    ],
)
