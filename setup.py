"""
LayerForge — Setup Script
==========================
Installs LayerForge as a local editable package so that all internal
imports (e.g. `from layerforge.network.graph import NetworkGraph`) work
seamlessly from any script or notebook.

Usage:
    cd /path/to/layerforge
    pip install -e .
"""

from pathlib import Path

from setuptools import setup, find_packages

readme = Path(__file__).parent / "README.md"

setup(
    name="layerforge",
    version="0.1.0",
    author="Aditya",
    description=(
        "LayerForge: layer-graph execution core and training loop for "
        "convolutional detection networks"
    ),
    long_description=(
        readme.read_text(encoding="utf-8") if readme.exists() else ""
    ),
    long_description_content_type="text/markdown",
    packages=find_packages(include=["layerforge", "layerforge.*"]),
    python_requires=">=3.10",
    install_requires=[
        "torch>=2.1.0",
        "safetensors>=0.4.0",
        "numpy>=1.24.0",
        "tqdm>=4.65.0",
        "pyyaml>=6.0",
    ],
    extras_require={
        "dev": ["pytest>=7.0"],
    },
    classifiers=[
        "Development Status :: 3 - Alpha",
        "Intended Audience :: Science/Research",
        "License :: OSI Approved :: Apache Software License",
        "Programming Language :: Python :: 3",
        "Topic :: Scientific/Engineering :: Artificial Intelligence",
    ],
)
