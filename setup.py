#!/usr/bin/env python3
"""
Setup script for the quote stream server and client
"""

from setuptools import setup, find_namespace_packages

setup(
    name="quotestream",
    version="0.0.1",
    description="Publish/subscribe quote streaming over WebSocket",
    packages=find_namespace_packages(include=["server*", "client*", "shared*"]),
    install_requires=[
        "websockets==15.0",
        "click==8.1.7",
        "typer==0.12.3",
        "rich==13.9.2",
        "PyYAML==6.0.2",
    ],
    extras_require={
        "test": [
            "pytest==8.4.2",
            "pytest-asyncio==1.2.0",
        ],
    },
    python_requires=">=3.10",
    entry_points={
        'console_scripts': [
            'quote-server=server.server:main',
            'quote-client=client.quote_cli:main',
        ],
    },
)
