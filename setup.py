"""Setup configuration for xpostctl."""

from setuptools import setup, find_packages

setup(
    name="xpostctl",
    version="1.0.0",
    description="Cross-post job orchestration with per-channel workers",
    author="Your Name",
    packages=find_packages(include=["xpostctl", "xpostctl.*"]),
    install_requires=[
        "click>=8.1.7",
        "pydantic>=2.5.0",
        "pydantic-settings>=2.1.0",
    ],
    extras_require={
        "test": ["pytest>=7.0"],
    },
    entry_points={
        "console_scripts": [
            "xpostctl=xpostctl.cli:cli",
        ],
    },
    python_requires=">=3.10",
)
