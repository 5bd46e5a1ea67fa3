#!/usr/bin/env python
# -*- coding: utf-8 -*-

import os
import re

from setuptools import setup


def get_version(package):
    """
    Return package version as listed in `__version__` in `init.py`.
    """
    init_py = open(os.path.join(package, "__init__.py")).read()
    return re.search("__version__ = ['\"]([^'\"]+)['\"]", init_py).group(1)


def get_long_description():
    """
    Return the README.
    """
    return open("README.md", "r", encoding="utf8").read()


def get_packages(package):
    """
    Return root package and all sub-packages.
    """
    return [
        dirpath
        for dirpath, dirnames, filenames in os.walk(package)
        if os.path.exists(os.path.join(dirpath, "__init__.py"))
    ]


setup(
    name="sse-pulse",
    version=get_version("sse_pulse"),
    license="BSD",
    description="Periodic Server-Sent Events streams for Starlette",
    long_description=get_long_description(),
    long_description_content_type="text/markdown",
    package_data={"sse_pulse": ["py.typed"]},
    packages=get_packages("sse_pulse"),
    python_requires=">=3.8",
    install_requires=[
        "starlette>=0.26",
        "anyio>=4.0",
    ],
    extras_require={
        "uvicorn": ["uvicorn"],
        "test": ["pytest", "httpx"],
    },
    classifiers=[
        "Development Status :: 4 - Beta",
        "Environment :: Web Environment",
        "Intended Audience :: Developers",
        "License :: OSI Approved :: BSD License",
        "Operating System :: OS Independent",
        "Topic :: Internet :: WWW/HTTP",
        "Programming Language :: Python :: 3",
        "Programming Language :: Python :: 3.8",
    ],
)
