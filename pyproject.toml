[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "maspmigrate"
version = "0.1.0"
description = "Migrate legacy MASP data-ref events in CometBFT state stores to per-transaction MASP events"
requires-python = ">=3.10"
dependencies = [
    "requests",
]
keywords = [
    "cometbft",
    "tendermint",
    "masp",
    "namada",
    "migration",
    "abci",
    "events",
    "protobuf",
]
classifiers = [
    "Development Status :: 4 - Beta",
    "Intended Audience :: Developers",
    "Intended Audience :: System Administrators",
    "Operating System :: OS Independent",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: Database",
    "Typing :: Typed",
]

[project.optional-dependencies]
test = [
    "pytest",
    "responses",
]

[tool.hatch.build.targets.wheel]
packages = ["maspmigrate"]

[tool.pytest.ini_options]
testpaths = ["tests"]
addopts = "-ra"

[tool.ruff]
line-length = 100
target-version = "py310"

[tool.ruff.lint]
select = ["E", "F", "W", "I", "B", "UP"]

[tool.mypy]
python_version = "3.10"
warn_unused_ignores = true
warn_redundant_casts = true
