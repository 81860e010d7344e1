"""
Setup script for backwards compatibility.

Installation is configured in pyproject.toml; this shim only lets older
pip versions run `pip install -e .`.
"""

from setuptools import setup

setup()
