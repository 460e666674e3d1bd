"""
Setup script for gakuon.

gakuon turns Anki's due cards into audio-first review sessions:

1. Due cards are pulled from Anki through AnkiConnect and ordered the
   way Anki's own scheduler would present them
2. Example sentences and explanations are generated per card and
   synthesized to speech, then cached back into Anki's media folder
3. A keyboard-driven terminal session plays the audio and answers the
   card in Anki, while content for upcoming cards is generated ahead

The 'gakuon' command is the entry point; 'gakuon serve' exposes the
same operations over a REST API.
"""

from setuptools import find_packages, setup

setup(
    name="gakuon",
    version="0.3.0",
    description="Audio-first Anki review sessions with AI-generated content",
    long_description=open("README.md", encoding="utf-8").read() if __import__("os").path.exists("README.md") else "",
    long_description_content_type="text/markdown",
    packages=find_packages(exclude=["tests", "tests.*"]),
    python_requires=">=3.11",
    install_requires=[
        # CLI
        "typer>=0.9.0",
        "click>=8.0.0",
        "rich>=13.0.0",
        # Config & Validation
        "pydantic>=2.0.0",
        "pydantic-settings>=2.2.0",
        # HTTP
        "httpx>=0.25.0",
        # Content generation
        "openai>=1.0.0",
        # API server
        "fastapi>=0.100.0",
        "uvicorn>=0.23.0",
        # Logging
        "loguru>=0.7.0",
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
            "gakuon=gakuon.cli:main",
        ],
    },
    classifiers=[
        "Development Status :: 4 - Beta",
        "Environment :: Console",
        "Intended Audience :: Education",
        "License :: OSI Approved :: MIT License",
        "Operating System :: OS Independent",
        "Programming Language :: Python :: 3",
        "Programming Language :: Python :: 3.11",
        "Programming Language :: Python :: 3.12",
        "Topic :: Education",
        "Topic :: Education :: Computer Aided Instruction (CAI)",
    ],
    keywords="anki spaced-repetition cli education tts language-learning",
)
