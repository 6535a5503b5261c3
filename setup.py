#!/usr/bin/env python3

from setuptools import setup, find_packages

with open("README.md", "r", encoding="utf-8") as fh:
    long_description = fh.read()

setup(
    name="pySTA",
    version="0.1.0",
    author="James Schnable Lab",
    author_email="jschnable@unl.edu",
    description="Single trial analysis of field trials with mixed models and spatial adjustment",
    long_description=long_description,
    long_description_content_type="text/markdown",
    url="https://github.com/schnablelab/python-sta",
    packages=find_packages(exclude=["tests", "tests.*"]),
    classifiers=[
        "Development Status :: 4 - Beta",
        "Intended Audience :: Science/Research",
        "License :: OSI Approved :: GNU General Public License v2 (GPLv2)",
        "Operating System :: OS Independent",
        "Programming Language :: Python :: 3",
        "Programming Language :: Python :: 3.8",
        "Programming Language :: Python :: 3.9",
        "Programming Language :: Python :: 3.10",
        "Programming Language :: Python :: 3.11",
        "Topic :: Scientific/Engineering :: Bio-Informatics",
        "Topic :: Scientific/Engineering :: Information Analysis",
    ],
    python_requires=">=3.8",
    install_requires=[
        "numpy>=1.20.0",
        "pandas>=1.3.0",
        "scipy>=1.7.0",
        "statsmodels>=0.13.0",
        "patsy>=0.5.2",
    ],
    extras_require={
        "test": ["pytest>=7.0"],
    },
    keywords="field trials, single trial analysis, mixed models, BLUEs, BLUPs, plant breeding",
    project_urls={
        "Bug Reports": "https://github.com/schnablelab/python-sta/issues",
        "Source": "https://github.com/schnablelab/python-sta",
    },
)
