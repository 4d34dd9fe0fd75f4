[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "ahmiyat"
version = "0.1.0"
description = "A sharded proof-of-work ledger node with memory fragments, staking, governance and a small HTTP API"
requires-python = ">=3.10"
keywords = ["blockchain", "ledger", "sharding", "proof-of-work", "staking", "dht"]
classifiers = [
    "Development Status :: 3 - Alpha",
    "Intended Audience :: Developers",
    "Operating System :: POSIX",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: System :: Distributed Computing",
]
dependencies = [
    "cryptography",
    "requests",
]

[project.optional-dependencies]
test = [
    "pytest",
]

[project.scripts]
ahmiyat = "ahmiyat.cli:main"

[tool.hatch.build.targets.wheel]
packages = ["ahmiyat"]

[tool.pytest.ini_options]
testpaths = ["tests"]
addopts = "-ra"

[tool.ruff]
line-length = 100
target-version = "py310"

[tool.mypy]
python_version = "3.10"
ignore_missing_imports = true
