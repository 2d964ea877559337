[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "meshcore"
version = "0.1.3"
description = "Transport-independent core of a peer-to-peer mesh node: peer state, Ed25519 handshake, heartbeat, reconnection ladder and signed network governance."
requires-python = ">=3.10"
dependencies = []
keywords = ["mesh", "p2p", "peer-to-peer", "ed25519", "handshake", "heartbeat", "governance"]
classifiers = [
    "Development Status :: 3 - Alpha",
    "Intended Audience :: Developers",
    "Operating System :: OS Independent",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Framework :: AsyncIO",
    "Topic :: System :: Networking",
    "Typing :: Typed",
]

[project.optional-dependencies]
test = [
    "pytest",
    "pytest-asyncio",
]

[tool.hatch.build.targets.wheel]
packages = ["meshcore"]

[tool.hatch.build.targets.sdist]
include = ["meshcore", "tests"]

[tool.pytest.ini_options]
addopts = "-ra"

[tool.ruff]
line-length = 100
target-version = "py310"

[tool.mypy]
python_version = "3.10"
warn_unused_ignores = true
