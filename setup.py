"""Setup script for demandsync package."""

from setuptools import find_packages, setup

setup(
    name="demandsync",
    version="0.1.0",
    description="Shared demand tracking with multi-client sync and time accounting",
    author="demandsync contributors",
    packages=find_packages(include=["demandsync", "demandsync.*", "demandsync_sdk", "demandsync_sdk.*"]),
    python_requires=">=3.10",
    install_requires=[
        "pyyaml>=6.0",
        "requests>=2.25.0",
        "textual>=0.47.0",
        "rich>=13.0.0",
    ],
    extras_require={
        "dev": [
            "pytest>=7.0.0",
        ],
    },
    entry_points={
        "console_scripts": [
            "demandsync-dashboard=demandsync.dashboard.__main__:main",
        ],
    },
    classifiers=[
        "Development Status :: 3 - Alpha",
        "Intended Audience :: Developers",
        "License :: OSI Approved :: MIT License",
        "Programming Language :: Python :: 3",
        "Programming Language :: Python :: 3.10",
        "Programming Language :: Python :: 3.11",
        "Programming Language :: Python :: 3.12",
    ],
)
