[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "nanoinfer"
version = "0.1.0"
description = "Transformer inference building blocks in NumPy: attention, rotary embeddings, RMSNorm, parallel linear layers and safetensors loading"
requires-python = ">=3.10"
dependencies = [
    "numpy",
]
keywords = ["inference", "transformer", "llm", "attention", "rotary-embedding", "safetensors", "numpy"]
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
    "Topic :: Scientific/Engineering :: Artificial Intelligence",
]

[project.optional-dependencies]
test = [
    "pytest",
]

[tool.hatch.build.targets.wheel]
packages = ["nanoinfer"]

[tool.pytest.ini_options]
addopts = "-ra"

[tool.ruff]
line-length = 100
target-version = "py310"

[tool.ruff.lint]
select = ["E", "F", "W", "I", "B", "UP"]

[tool.mypy]
python_version = "3.10"
warn_unused_ignores = true
ignore_missing_imports = true
