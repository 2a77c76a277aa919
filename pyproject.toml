[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "sysbits"
version = "0.1.0"
description = "Small POSIX building blocks: socket helpers, memory-mapped files and arrays, memory pools, an LRU cache and connection servers."
requires-python = ">=3.10"
dependencies = []
keywords = [
    "sockets",
    "poll",
    "mmap",
    "memory pool",
    "lru",
    "cache",
    "server",
    "pipeline",
]
classifiers = [
    "Development Status :: 4 - Beta",
    "Intended Audience :: Developers",
    "Operating System :: POSIX",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: Software Development :: Libraries",
    "Topic :: System :: Networking",
]

[project.optional-dependencies]
test = ["pytest"]

[project.scripts]
sysbits-simple = "sysbits.simple:main"

[tool.hatch.build.targets.wheel]
packages = ["sysbits"]

[tool.pytest.ini_options]
testpaths = ["tests"]
addopts = "-ra"

[tool.ruff]
line-length = 100
target-version = "py310"

[tool.mypy]
python_version = "3.10"
warn_unused_ignores = true
