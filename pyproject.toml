[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "greycdenoise"
version = "0.1.0"
description = "Anisotropic, edge-preserving image denoising with structure tensors and curvature-following blurs"
requires-python = ">=3.10"
dependencies = [
    "numpy",
]
keywords = ["denoise", "image", "anisotropic", "diffusion", "structure-tensor", "deriche"]
classifiers = [
    "Development Status :: 4 - Beta",
    "Intended Audience :: Developers",
    "Intended Audience :: Science/Research",
    "Operating System :: OS Independent",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: Scientific/Engineering :: Image Processing",
]

[project.optional-dependencies]
test = [
    "pytest",
]

[tool.hatch.build.targets.wheel]
packages = ["greycdenoise"]

[tool.pytest.ini_options]
testpaths = ["tests"]
addopts = "-ra"
