#!/usr/bin/env python3
"""
Setup script for Mint Watcher
"""

from setuptools import setup

setup(
    name="mint-watcher",
    version="1.0.0",
    description="NFT mint and sale notifier for EVM chains",
    package_dir={"": "src"},
    py_modules=[
        "chain_client",
        "config_manager",
        "database_manager",
        "dedup_store",
        "ens_lookup",
        "event_classifier",
        "logger_utils",
        "mint_watcher",
        "notification_builder",
        "notification_sink",
        "ping_helper",
        "price_resolver",
        "token_metadata",
        "watchlist_cli",
        "watchlist_poller",
        "watchlist_store",
    ],
    install_requires=[
        "web3>=6.0.0,<7.0.0",
        "requests>=2.28.0",
        "eth-abi>=4.0.0,<5.0.0",
        "duckdb>=0.9.0",
        "pytz>=2023.3",
        "python-dotenv>=1.0.0",
    ],
    extras_require={
        "test": [
            "pytest>=7.0.0",
        ],
    },
    entry_points={
        "console_scripts": [
            "mintwatch=mint_watcher:main",
        ],
    },
    python_requires=">=3.8",
    classifiers=[
        "Development Status :: 4 - Beta",
        "Intended Audience :: Developers",
        "Programming Language :: Python :: 3",
        "Programming Language :: Python :: 3.8",
        "Programming Language :: Python :: 3.9",
        "Programming Language :: Python :: 3.10",
        "Programming Language :: Python :: 3.11",
    ],
)
