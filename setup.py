"""
KnowledgeDistiller — setuptools build script.

Usage:
    # Development (editable install):
    pip install -e .

    # Run the tests:
    python3 -m unittest discover tests

Installs the `distiller` console command.
"""

from setuptools import setup, find_namespace_packages

APP_NAME = "knowledge-distiller"

setup(
    name=APP_NAME,
    version="1.0.0",
    description="Knowledge distillation jobs for web pages, videos and documents",
    packages=find_namespace_packages(include=["distiller", "distiller.*"]),
    py_modules=["main"],
    install_requires=[
        "requests>=2.28.0",
    ],
    extras_require={
        # Creator captions for YouTube sources (invoked as a subprocess)
        "youtube": ["yt-dlp"],
    },
    python_requires=">=3.10",
    entry_points={
        "console_scripts": [
            "distiller=main:main",
        ],
    },
)
