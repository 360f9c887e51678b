#!/usr/bin/env python3
"""
Setup script for VERA - hands-free voice conversation client
"""
from setuptools import setup, find_packages
import os
import re

# Read the contents of README file
this_directory = os.path.abspath(os.path.dirname(__file__))
with open(os.path.join(this_directory, 'README.md'), encoding='utf-8') as f:
    long_description = f.read()

# Read version from the package without importing it
def get_version():
    try:
        with open(os.path.join(this_directory, 'src', 'vera', '__init__.py'), 'r') as f:
            content = f.read()
            version_match = re.search(r'__version__ = "([^"]+)"', content)
            if version_match:
                return version_match.group(1)
    except FileNotFoundError:
        pass
    return "1.0.0"

setup(
    name="vera-voice",
    version=get_version(),
    author="VERA Team",
    description="Hands-free voice conversation client with energy-based turn taking",
    long_description=long_description,
    long_description_content_type="text/markdown",
    packages=find_packages(where="src", exclude=["tests", "tests.*"]),
    package_dir={"": "src"},
    include_package_data=True,
    classifiers=[
        "Development Status :: 4 - Beta",
        "Intended Audience :: End Users/Desktop",
        "License :: OSI Approved :: MIT License",
        "Operating System :: OS Independent",
        "Programming Language :: Python :: 3",
        "Programming Language :: Python :: 3.10",
        "Programming Language :: Python :: 3.11",
        "Programming Language :: Python :: 3.12",
        "Topic :: Multimedia :: Sound/Audio :: Speech",
    ],
    keywords="voice-assistant vad turn-taking speech client",
    python_requires=">=3.10",
    install_requires=[
        "numpy>=1.21.0",
        "sounddevice>=0.4.0",
        "soundfile>=0.10.0",
        "PyYAML>=6.0",
        "requests>=2.25.0",
    ],
    extras_require={
        "dev": [
            "pytest>=7.0.0",
            "black>=22.0.0",
            "flake8>=4.0.0",
            "mypy>=0.950",
        ],
    },
    entry_points={
        "console_scripts": [
            "vera=vera.cli:main",
        ],
    },
)
