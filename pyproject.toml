[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "fugue"
version = "0.1.0"
description = "Modular synthesis inventions: JSON-defined module graphs with named-port routing, runtime control and interactive front ends."
requires-python = ">=3.10"
keywords = [
    "synthesizer",
    "modular",
    "audio",
    "signal-graph",
    "sound-synthesis",
    "repl",
    "json-rpc",
]
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
    "Topic :: Multimedia :: Sound/Audio :: Sound Synthesis",
]
dependencies = [
    "watchdog",
]

[project.optional-dependencies]
test = [
    "pytest",
]

[project.scripts]
fugue-repl = "fugue.repl:main"
fugue-mcp = "fugue.mcp:main"
fugue-mcp-dev = "fugue.devproxy:main"

[tool.hatch.build.targets.wheel]
packages = ["fugue"]

[tool.pytest.ini_options]
addopts = "-ra"
testpaths = ["tests"]

[tool.ruff]
line-length = 100
target-version = "py310"

[tool.ruff.lint]
select = ["E", "F", "W", "I", "B", "UP"]

[tool.mypy]
python_version = "3.10"
warn_unused_ignores = true
warn_redundant_casts = true
