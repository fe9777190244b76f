[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "flashann"
version = "0.1.0"
description = "Beam search over a disk-resident graph index guided by in-memory product-quantized codes"
requires-python = ">=3.10"
dependencies = [
    "numpy",
]
keywords = [
    "nearest-neighbour",
    "ann",
    "vector-search",
    "product-quantization",
    "beam-search",
]
classifiers = [
    "Development Status :: 3 - Alpha",
    "Intended Audience :: Developers",
    "Intended Audience :: Science/Research",
    "Operating System :: OS Independent",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: Scientific/Engineering :: Information Analysis",
]

[project.optional-dependencies]
test = [
    "pytest",
    "hypothesis",
]

[tool.hatch.build.targets.wheel]
packages = ["flashann"]

[tool.pytest.ini_options]
testpaths = ["tests"]
addopts = "-ra"

[tool.ruff]
line-length = 88
target-version = "py310"

[tool.mypy]
python_version = "3.10"
warn_unused_ignores = true
