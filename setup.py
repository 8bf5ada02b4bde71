#!/usr/bin/env python3
"""
Setup script for StageGate.
This is a lightweight installation that only installs the orchestrator package.
"""

from setuptools import setup, find_packages

# Most configuration is in pyproject.toml
# This file exists for compatibility with older pip versions

setup(
    packages=find_packages(include=["stagegate", "stagegate.*"]),
)
