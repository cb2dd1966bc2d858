#!/usr/bin/env python3
"""MonitorGuard: Static Analysis of Lock and Condition Usage in Python."""

from setuptools import setup

# Read the contents of README.md for the long description
with open("README.md", "r", encoding="utf-8") as fh:
    long_description = fh.read()

# Read requirements from requirements.txt
with open("requirements.txt", "r", encoding="utf-8") as fh:
    requirements = [
        line.strip() for line in fh if line.strip() and not line.startswith("#")
    ]

setup(
    name="monitorguard",
    version="1.0.0",
    description="Static analysis tool for detecting missing locks, deadlocks and condition misuse in Python classes",
    long_description=long_description,
    long_description_content_type="text/markdown",
    py_modules=[
        "monitorguard",
        "monitorguard_deadlock",
        "monitorguard_model",
        "monitorguard_monitor",
        "monitorguard_rules",
        "monitorguard_symbols",
        "monitorguard_sync",
        "monitorguard_walker",
    ],
    entry_points={
        "console_scripts": [
            "monitorguard=monitorguard:main",
        ],
    },
    python_requires=">=3.8",
    install_requires=requirements,
    extras_require={
        "test": ["pytest>=7.0"],
    },
    classifiers=[
        "Development Status :: 4 - Beta",
        "Intended Audience :: Developers",
        "License :: OSI Approved :: MIT License",
        "Programming Language :: Python :: 3",
        "Programming Language :: Python :: 3.8",
        "Programming Language :: Python :: 3.9",
        "Programming Language :: Python :: 3.10",
        "Programming Language :: Python :: 3.11",
        "Programming Language :: Python :: 3.12",
        "Programming Language :: Python :: 3.13",
        "Operating System :: OS Independent",
        "Topic :: Software Development :: Quality Assurance",
        "Topic :: Software Development :: Testing",
    ],
    keywords="static-analysis concurrency deadlock-detection data-races thread-safety condition-variables",
)
