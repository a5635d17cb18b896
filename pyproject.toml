[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "accelplugins"
version = "0.19.0"
description = "Discovery, labelling and resource trees for GPU and FPGA accelerators on cluster nodes"
requires-python = ">=3.10"
dependencies = []
keywords = [
    "gpu",
    "fpga",
    "device-plugin",
    "accelerator",
    "sysfs",
    "node-labels",
    "oci-hook",
]
classifiers = [
    "Development Status :: 4 - Beta",
    "Environment :: Console",
    "Intended Audience :: System Administrators",
    "Intended Audience :: Developers",
    "Operating System :: POSIX :: Linux",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: System :: Hardware",
]

[project.optional-dependencies]
test = ["pytest"]

[project.scripts]
gpu-nfdhook = "accelplugins.labeler:main"

[tool.hatch.build.targets.wheel]
packages = ["accelplugins"]

[tool.hatch.build.targets.sdist]
include = ["accelplugins", "tests", "pyproject.toml", "README.md"]

[tool.pytest.ini_options]
testpaths = ["tests"]
addopts = "-ra"

[tool.ruff]
line-length = 100
target-version = "py310"

[tool.ruff.lint]
select = ["E", "F", "W", "I", "B", "UP"]

[tool.mypy]
python_version = "3.10"
warn_unused_ignores = true
warn_redundant_casts = true
