[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "identitysync"
version = "0.1.0"
description = "Reconcile pod identity bindings with user-assigned managed identities on cluster nodes and scale sets"
requires-python = ">=3.10"
dependencies = []
keywords = ["kubernetes", "managed-identity", "pod-identity", "reconciliation", "vmss"]
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
    "Topic :: System :: Systems Administration :: Authentication/Directory",
]

[project.optional-dependencies]
test = ["pytest"]

[tool.hatch.build.targets.wheel]
packages = ["identitysync"]

[tool.pytest.ini_options]
addopts = "-ra"

[tool.ruff]
line-length = 100
target-version = "py310"

[tool.mypy]
python_version = "3.10"
warn_unused_ignores = true
