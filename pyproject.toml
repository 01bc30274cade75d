[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "vkubelet"
version = "0.1.0"
description = "Building blocks for running a virtual Kubernetes node: node and lease controllers, kubelet HTTP handlers and request auth."
requires-python = ">=3.10"
dependencies = [
    "werkzeug",
]
keywords = ["kubernetes", "kubelet", "virtual-kubelet", "node", "lease", "controller"]
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
    "Topic :: System :: Clustering",
    "Topic :: Software Development :: Libraries :: Python Modules",
]

[project.optional-dependencies]
test = [
    "pytest",
    "pytest-asyncio",
]

[tool.hatch.build.targets.wheel]
packages = ["vkubelet"]

[tool.pytest.ini_options]
testpaths = ["tests"]
addopts = "-ra"

[tool.ruff]
line-length = 100
target-version = "py310"

[tool.ruff.lint]
select = ["E", "F", "W", "I", "B", "UP"]
