[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "eclkit"
version = "0.1.0"
description = "Read, inspect and rebuild compiled ECL enemy scripts in the th10 script format family"
requires-python = ">=3.10"
dependencies = []
keywords = ["ecl", "disassembler", "script", "bytecode"]
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
    "Topic :: Software Development :: Disassemblers",
]

[project.optional-dependencies]
test = ["pytest"]

[tool.hatch.build.targets.wheel]
packages = ["eclkit"]

[tool.pytest.ini_options]
testpaths = ["tests"]
addopts = "-ra"
