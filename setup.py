"""
Setup configuration for Webhook Relay.
"""

from setuptools import setup, find_packages
from pathlib import Path

# Read version from __version__.py
version = {}
with open("src/__version__.py") as f:
    exec(f.read(), version)

# Read README for long description
readme_file = Path(__file__).parent / "README.md"
long_description = readme_file.read_text(encoding="utf-8")

# Read requirements
requirements_file = Path(__file__).parent / "requirements.txt"
requirements = []
with open(requirements_file) as f:
    requirements = [line.strip() for line in f if line.strip() and not line.startswith("#")]

# Development requirements
dev_requirements_file = Path(__file__).parent / "requirements-dev.txt"
dev_requirements = []
with open(dev_requirements_file) as f:
    dev_requirements = [line.strip() for line in f if line.strip() and not line.startswith("#")]

setup(
    name="webhook-relay",
    version=version["__version__"],
    author="spiderhash-io",
    author_email="",
    description="Broadcast inbound webhooks to local services over WebSocket",
    long_description=long_description,
    long_description_content_type="text/markdown",
    url="https://github.com/spiderhash-io/webhook-relay",
    project_urls={
        "Bug Tracker": "https://github.com/spiderhash-io/webhook-relay/issues",
        "Source Code": "https://github.com/spiderhash-io/webhook-relay",
    },
    packages=find_packages(exclude=["tests", "tests.*", "docs", "scripts"]),
    package_data={
        "src": ["py.typed"],
    },
    include_package_data=True,
    python_requires=">=3.10",
    install_requires=requirements,
    extras_require={
        "dev": dev_requirements,
        "test": dev_requirements,
        "all": requirements + dev_requirements,
    },
    classifiers=[
        "Development Status :: 4 - Beta",
        "Intended Audience :: Developers",
        "License :: OSI Approved :: MIT License",
        "Operating System :: OS Independent",
        "Programming Language :: Python :: 3",
        "Programming Language :: Python :: 3.10",
        "Programming Language :: Python :: 3.11",
        "Programming Language :: Python :: 3.12",
        "Framework :: FastAPI",
        "Topic :: Internet :: WWW/HTTP :: HTTP Servers",
        "Topic :: System :: Networking",
        "Topic :: Software Development :: Testing",
        "Typing :: Typed",
    ],
    keywords=[
        "webhook",
        "relay",
        "tunnel",
        "websocket",
        "fastapi",
        "aiohttp",
        "broadcast",
        "async",
        "asyncio",
    ],
    entry_points={
        "console_scripts": [
            "webhook-relay=src.relay.main:main",
            "webhook-relay-subscriber=src.subscriber.main:main",
        ],
    },
    license="MIT",
    zip_safe=False,
)
