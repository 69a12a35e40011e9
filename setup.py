"""
Setup script for the spatialpipe package.
"""

from setuptools import setup, find_packages

setup(
    name="spatialpipe",
    version="0.1.0",
    description="Length-prefixed audio pipe between a media producer and an external spatial-audio renderer",
    packages=find_packages(exclude=["tests", "tests.*"]),
    install_requires=[
        "numpy>=1.20.0",
        "scipy>=1.7.0",
    ],
    extras_require={
        "dev": [
            "pytest>=7.0.0",
            "pytest-cov>=4.0.0",
        ],
    },
    entry_points={
        "console_scripts": [
            "spatialpipe=spatialpipe.bridge.cli:main",
        ],
    },
    classifiers=[
        "Development Status :: 3 - Alpha",
        "Intended Audience :: Developers",
        "License :: OSI Approved :: MIT License",
        "Programming Language :: Python :: 3",
        "Programming Language :: Python :: 3.8",
        "Programming Language :: Python :: 3.9",
        "Programming Language :: Python :: 3.10",
        "Operating System :: POSIX",
        "Topic :: Multimedia :: Sound/Audio",
    ],
    python_requires=">=3.8",
)
