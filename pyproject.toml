[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "sdns"
version = "0.1.0"
description = "Building blocks of a recursive DNS resolver: sharded caches, message utilities and a middleware chain."
requires-python = ">=3.10"
keywords = ["dns", "resolver", "cache", "middleware", "edns", "blocklist", "hosts"]
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
    "Topic :: Internet :: Name Service (DNS)",
    "Typing :: Typed",
]
dependencies = [
    "dnspython>=2.3",
]

[project.optional-dependencies]
test = [
    "pytest>=7",
]

[tool.hatch.build.targets.wheel]
packages = ["sdns"]

[tool.pytest.ini_options]
addopts = "-ra"

[tool.ruff]
line-length = 100
target-version = "py310"
