# Copyright © 2025 Leadpoet

import re
import os
import codecs
from os import path
from io import open
from setuptools import setup, find_packages


here = path.abspath(path.dirname(__file__))

with open(path.join(here, "README.md"), encoding="utf-8") as f:
    long_description = f.read()

with codecs.open(os.path.join(here, "verified_programs/__init__.py"), encoding="utf-8") as init_file:
    version_match = re.search(r"^__version__ = ['\"]([^'\"]*)['\"]", init_file.read(), re.M)
    if not version_match:
        raise RuntimeError("Unable to find version string in verified_programs/__init__.py")
    version_string = version_match.group(1)


requirements = [
    # Web framework
    "fastapi>=0.110.0",
    "starlette>=0.30.0",
    "uvicorn[standard]>=0.38.0",
    "pydantic>=2.0.0",
    "pydantic-settings>=2.0.0",

    # HTTP and networking
    "httpx>=0.27.0",

    # Database
    "sqlalchemy[asyncio]>=2.0.0",
    "asyncpg>=0.29.0",
    "alembic>=1.13.0",

    # Caching and coordination
    "redis>=5.0.0",

    # Monitoring and logging
    "prometheus_client>=0.19.0",
    "loguru>=0.7.0",

    # Retry and resilience
    "tenacity>=8.2.0",

    # Environment and configuration
    "python-dotenv>=1.0.0",

    # Utilities
    "click>=8.1.0",
]

test_requirements = [
    "pytest>=8.0.0",
    "pytest-cov>=4.1.0",
    "pytest-mock>=3.10.0",
    "pytest-asyncio>=0.23.0",
    "aiosqlite>=0.19.0",
]

setup(
    name="verified_programs",
    version=version_string,
    description="Reproducible-build verification for deployed Solana programs",
    long_description=long_description,
    long_description_content_type="text/markdown",
    author="Leadpoet",
    author_email="hello@leadpoet.com",
    license="MIT",
    packages=find_packages(include=['verified_programs', 'verified_programs.*']),
    include_package_data=True,
    python_requires=">=3.10",
    install_requires=requirements,
    extras_require={
        "test": test_requirements,
    },
    entry_points={
        "console_scripts": [
            "verified-programs-api=verified_programs.main:main",
            "verified-programs-crawler=verified_programs.cli:main",
        ]
    },
    classifiers=[
        "Development Status :: 3 - Alpha",
        "Intended Audience :: Developers",
        "License :: OSI Approved :: MIT License",
        "Programming Language :: Python :: 3 :: Only",
        "Programming Language :: Python :: 3.10",
        "Programming Language :: Python :: 3.11",
        "Programming Language :: Python :: 3.12",
        "Topic :: Internet :: WWW/HTTP",
        "Topic :: Software Development :: Build Tools",
    ],
)
