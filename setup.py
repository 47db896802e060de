"""
conversion-client — setuptools build script.

Usage:
    # Development (editable install):
    pip install -e .

    # Run:
    conversion-client --help
"""

from setuptools import setup, find_namespace_packages

APP_NAME = "conversion-client"

setup(
    name=APP_NAME,
    version="1.0.0",
    description="Client for submitting and tracking remote file conversion tasks",
    packages=find_namespace_packages(include=["conversion_client", "conversion_client.*"]),
    py_modules=["main"],
    install_requires=[
        "requests>=2.28.0",
    ],
    python_requires=">=3.10",
    entry_points={
        "console_scripts": [
            "conversion-client=main:main",
        ],
    },
)
