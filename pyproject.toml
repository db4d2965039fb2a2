[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "d3kernel"
version = "0.1.0"
description = "Kernel memory management and logging modelled in Python: page frame allocation, paging, virtual memory areas, NFIT parsing and stat metadata"
requires-python = ">=3.10"
dependencies = []
keywords = ["kernel", "operating-system", "paging", "frame-allocator", "virtual-memory", "nfit"]
classifiers = [
    "Development Status :: 3 - Alpha",
    "Intended Audience :: Education",
    "Intended Audience :: Developers",
    "Operating System :: OS Independent",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: System :: Operating System Kernels",
    "Topic :: Education",
]

[project.optional-dependencies]
test = ["pytest"]

[tool.hatch.build.targets.wheel]
packages = ["d3kernel"]

[tool.pytest.ini_options]
testpaths = ["tests"]
addopts = "-ra"
