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
    name="push-starlette",
    version=get_version("push_starlette"),
    license="BSD",
    description="Real-time update delivery for Starlette: polling, SSE, WebSockets and webhooks",
    long_description=get_long_description(),
    long_description_content_type="text/markdown",
    package_data={"push_starlette": ["py.typed"]},
    packages=get_packages("push_starlette"),
    python_requires=">=3.9",
    install_requires=[
        "starlette>=0.37",
        "anyio>=4.0",
        "httpx>=0.27",
    ],
    extras_require={
        "uvicorn": ["uvicorn[standard]"],
        "test": [
            "pytest>=7",
            "asgi-lifespan",
            "exceptiongroup; python_version < '3.11'",
            "uvicorn",
        ],
    },
    classifiers=[
        "Development Status :: 3 - Alpha",
        "Environment :: Web Environment",
        "Intended Audience :: Developers",
        "License :: OSI Approved :: BSD License",
        "Operating System :: OS Independent",
        "Topic :: Internet :: WWW/HTTP",
        "Programming Language :: Python :: 3",
        "Programming Language :: Python :: 3.9",
    ],
)
