[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "dtmstore"
version = "0.1.0"
description = "Storage layer for a distributed transaction manager: global transactions, branches and key-value topics, with embedded and Redis back ends"
requires-python = ">=3.10"
keywords = ["distributed transactions", "saga", "tcc", "storage", "redis", "topics"]
classifiers = [
    "Development Status :: 4 - Beta",
    "Intended Audience :: Developers",
    "Operating System :: OS Independent",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: System :: Distributed Computing",
    "Topic :: Database",
]
dependencies = [
    "pyyaml>=6.0",
    "redis>=4.5",
]

[project.optional-dependencies]
test = [
    "pytest>=7.0",
]

[tool.hatch.build.targets.wheel]
packages = ["dtmstore"]

[tool.pytest.ini_options]
testpaths = ["tests"]
addopts = "-ra"

[tool.ruff]
line-length = 100
target-version = "py310"

[tool.ruff.lint]
select = ["E", "F", "W", "I", "B", "UP"]
