#!/usr/bin/env python3
"""
KV Operator Setup Script
========================
Allows installation of the kv-operator package.

Usage:
    pip install -e .           # Development install
    pip install -e ".[test]"   # With test dependencies
    pip install .              # Regular install
"""

from setuptools import setup, find_packages

setup(
    name="kv-operator",
    version="1.0.0",
    packages=find_packages(include=["kv_operator", "kv_operator.*"]),
    python_requires=">=3.10",
    install_requires=[
        "kubernetes",
        "redis>=5.0.1,<8",
    ],
    extras_require={
        "test": [
            "pytest",
            "pytest-asyncio",
        ],
    },
    entry_points={
        "console_scripts": [
            "kv-operator=kv_operator.server:main",
        ],
    },
)
