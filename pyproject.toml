[build-system]
requires = ["hatchling>=1.18"]
build-backend = "hatchling.build"

[project]
name = "peerlink"
version = "0.1.0"
description = "Asyncio peer-to-peer toolkit: Ed25519 identities, discovery, framed TCP connections, NAT traversal, chunked files and signed updates"
requires-python = ">=3.11"
keywords = [
    "p2p",
    "peer-to-peer",
    "file-sharing",
    "ed25519",
    "stun",
    "upnp",
    "discovery",
    "asyncio",
]
classifiers = [
    "Development Status :: 3 - Alpha",
    "Intended Audience :: Developers",
    "Operating System :: OS Independent",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Framework :: AsyncIO",
    "Framework :: aiohttp",
    "Topic :: Communications :: File Sharing",
    "Topic :: System :: Networking",
]
dependencies = [
    "aiohttp>=3.9",
    "cryptography>=41",
    "httpx>=0.25",
    "semver>=3.0",
    "tomli-w>=1.0",
]

[project.optional-dependencies]
test = [
    "pytest>=7.4",
    "pytest-asyncio>=0.23",
    "respx>=0.20",
]

[project.scripts]
peerlink-dashboard = "peerlink.dashboard:main"

[tool.hatch.build.targets.wheel]
packages = ["peerlink"]

[tool.hatch.build.targets.sdist]
include = ["peerlink", "tests", "README.md"]

[tool.pytest.ini_options]
addopts = "-ra"

[tool.ruff]
line-length = 100
target-version = "py311"

[tool.ruff.lint]
select = ["E", "F", "W", "I", "B", "UP"]

[tool.mypy]
python_version = "3.11"
warn_unused_ignores = true
warn_redundant_casts = true
