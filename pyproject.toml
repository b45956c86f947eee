[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "kvcache-manager"
version = "0.1.0"
description = "KV-cache aware pod scoring for LLM inference: block indexing, prefix token stores and KV-event ingestion."
requires-python = ">=3.10"
keywords = [
    "kv-cache",
    "llm",
    "inference",
    "prefix-cache",
    "routing",
    "scheduling",
    "zeromq",
    "redis",
]
classifiers = [
    "Development Status :: 3 - Alpha",
    "Intended Audience :: Developers",
    "Intended Audience :: System Administrators",
    "Operating System :: OS Independent",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: Scientific/Engineering :: Artificial Intelligence",
    "Topic :: System :: Distributed Computing",
    "Typing :: Typed",
]
dependencies = [
    "cachetools>=5.3",
    "cbor2>=5.4",
    "msgpack>=1.0",
    "pyzmq>=25.0",
    "redis>=5.0",
]

[project.optional-dependencies]
test = [
    "pytest>=7.4",
]

[tool.hatch.build.targets.wheel]
packages = ["kvcache_manager"]

[tool.hatch.build.targets.sdist]
include = [
    "kvcache_manager",
    "tests",
    "pyproject.toml",
]

[tool.pytest.ini_options]
addopts = "-ra"

[tool.ruff]
line-length = 100
target-version = "py310"

[tool.ruff.lint]
select = ["E", "F", "W", "I", "B", "UP", "SIM"]

[tool.mypy]
python_version = "3.10"
warn_unused_ignores = true
warn_redundant_casts = true
ignore_missing_imports = true

[tool.coverage.run]
branch = true
source = ["kvcache_manager"]
