"""
Setup configuration for p2p-trader package.
"""
from setuptools import setup, find_packages

setup(
    name="p2p-trader",
    version="0.1.0",
    description="P2P exchange desk automation: advertisements, order reconciliation and scripted buyer chat",
    long_description=open("README.md", encoding="utf-8").read(),
    long_description_content_type="text/markdown",
    author="Trading System Team",
    license="MIT",
    packages=find_packages(exclude=["tests", "tests.*", "docs", "examples", "scripts"]),
    python_requires=">=3.10",
    install_requires=[
        "requests>=2.28.0,<3.0",
        "aiohttp>=3.8.0,<4.0",
        "cryptography>=40.0.0",
        "pyyaml>=6.0,<7.0",
        "loguru>=0.7.0,<1.0",
        "pydantic>=2.6.0,<3.0",
    ],
    extras_require={
        "test": [
            "pytest>=7.0.0",
            "pytest-asyncio>=0.21.0",
        ],
        "encryption": [
            "sqlcipher3-binary>=0.5.0",
        ],
        "dev": [
            "black>=23.0.0",
            "ruff>=0.1.0",
            "mypy>=1.0.0,<2.0",
            "isort>=5.12.0",
            "pytest-cov>=4.0.0",
            "pre-commit>=3.0.0",
            "sphinx>=6.0.0",
            "sphinx-rtd-theme>=1.2.0",
        ],
    },
    classifiers=[
        "Development Status :: 4 - Beta",
        "Intended Audience :: Developers",
        "License :: OSI Approved :: MIT License",
        "Programming Language :: Python :: 3",
        "Programming Language :: Python :: 3.10",
        "Programming Language :: Python :: 3.11",
        "Programming Language :: Python :: 3.12",
    ],
)
