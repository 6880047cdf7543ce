[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "bitswap"
version = "0.1.0"
description = "Bitswap block-exchange protocol primitives: CIDs, wantlists, wire messages, session and connection bookkeeping"
requires-python = ">=3.10"
dependencies = []
keywords = ["bitswap", "cid", "content-addressing", "p2p", "block-exchange", "wantlist"]
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
    "Topic :: System :: Distributed Computing",
    "Topic :: System :: Networking",
]

[project.optional-dependencies]
test = ["pytest"]

[tool.hatch.build.targets.wheel]
packages = ["bitswap"]

[tool.pytest.ini_options]
addopts = "-ra"

[tool.ruff]
line-length = 100
target-version = "py310"

[tool.mypy]
python_version = "3.10"
warn_unused_ignores = true
