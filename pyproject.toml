[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "theatre"
version = "4.0.0"
description = "Console lifecycle management, RBAC helpers and reconciliation utilities for Kubernetes-style workloads, over an in-memory API client"
requires-python = ">=3.10"
dependencies = []
keywords = ["kubernetes", "rbac", "console", "reconcile", "operator", "workloads"]
classifiers = [
    "Development Status :: 4 - Beta",
    "Intended Audience :: System Administrators",
    "Intended Audience :: Developers",
    "Operating System :: OS Independent",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: System :: Systems Administration",
    "Typing :: Typed",
]

[project.optional-dependencies]
test = ["pytest"]

[tool.hatch.build.targets.wheel]
packages = ["theatre"]

[tool.pytest.ini_options]
testpaths = ["tests"]
addopts = "-ra"

[tool.ruff]
line-length = 100
target-version = "py310"

[tool.mypy]
python_version = "3.10"
warn_unused_ignores = true
