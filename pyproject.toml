[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "telfs"
version = "0.1.0"
description = "Chunked, optionally encrypted file storage backed by a message channel, with an on-disk LRU chunk cache"
requires-python = ">=3.11"
keywords = [
    "filesystem",
    "chunking",
    "cache",
    "aes-gcm",
    "argon2",
    "deduplication",
    "encryption",
]
classifiers = [
    "Development Status :: 4 - Beta",
    "Intended Audience :: Developers",
    "Intended Audience :: System Administrators",
    "Operating System :: POSIX",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: Security :: Cryptography",
    "Topic :: System :: Filesystems",
]
dependencies = [
    "cryptography>=44",
    "tomli-w>=1.0",
]

[project.optional-dependencies]
test = [
    "pytest>=7",
]

[tool.hatch.build.targets.wheel]
packages = ["telfs"]

[tool.hatch.build.targets.sdist]
include = [
    "telfs",
    "tests",
    "pyproject.toml",
]

[tool.pytest.ini_options]
testpaths = ["tests"]
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
