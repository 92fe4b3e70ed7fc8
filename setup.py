"""
Setup script for nuggets-pipeline.

The nuggets pipeline turns source files and web pages into an adaptive
learning graph. It serves three roles:

1. Content Pipeline - Watch folders and URLs, extract and chunk content
2. Semantic Layer - Embed content units and search them by similarity
3. Adaptive Delivery - Build narrative graphs and track learner mastery

The 'nuggets' command is the entry point.
"""

from setuptools import find_packages, setup

setup(
    name="nuggets-pipeline",
    version="1.0.0",
    description="Adaptive learning content pipeline: ingestion, embeddings, narrative graphs",
    long_description=open("README.md", encoding="utf-8").read() if __import__("os").path.exists("README.md") else "",
    long_description_content_type="text/markdown",
    author="Right Learning",
    packages=find_packages(include=["nuggets", "nuggets.*"]),
    python_requires=">=3.10",
    install_requires=[
        # CLI
        "typer>=0.9.0",
        "rich>=13.0.0",
        # Database
        "sqlalchemy[asyncio]>=2.0.0",
        "asyncpg>=0.29.0",
        "aiosqlite>=0.19.0",
        # Config & Validation
        "pydantic>=2.0.0",
        "pydantic-settings>=2.0.0",
        # HTTP
        "httpx>=0.25.0",
        # Logging
        "loguru>=0.7.0",
        # Content extraction
        "beautifulsoup4>=4.12.0",
        "pymupdf>=1.23.0",
        "watchfiles>=0.21.0",
        # Embeddings & AI authoring
        "numpy>=1.24.0",
        "sentence-transformers>=2.2.0",
        "google-generativeai>=0.3.0",
        "openai>=1.0.0",
    ],
    extras_require={
        "dev": [
            "pytest>=7.0.0",
            "pytest-asyncio>=0.21.0",
            "pytest-cov>=4.0.0",
            "ruff>=0.1.0",
            "mypy>=1.0.0",
        ],
    },
    entry_points={
        "console_scripts": [
            "nuggets=nuggets.cli.main:main",
        ],
    },
    classifiers=[
        "Development Status :: 4 - Beta",
        "Environment :: Console",
        "Intended Audience :: Developers",
        "Intended Audience :: Education",
        "License :: OSI Approved :: MIT License",
        "Operating System :: OS Independent",
        "Programming Language :: Python :: 3",
        "Programming Language :: Python :: 3.10",
        "Programming Language :: Python :: 3.11",
        "Programming Language :: Python :: 3.12",
        "Topic :: Education",
        "Topic :: Education :: Computer Aided Instruction (CAI)",
    ],
    keywords="learning content-pipeline embeddings adaptive education",
)
