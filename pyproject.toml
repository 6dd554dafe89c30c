[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "kepwatt"
version = "0.1.0"
description = "Node energy readings from RAPL, ACPI and GPU sources, with linear-regression and sidecar power estimators"
requires-python = ">=3.10"
dependencies = []
keywords = ["power", "energy", "rapl", "acpi", "monitoring", "estimation"]
classifiers = [
    "Development Status :: 3 - Alpha",
    "Intended Audience :: System Administrators",
    "Intended Audience :: Developers",
    "Operating System :: POSIX :: Linux",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: System :: Monitoring",
    "Topic :: System :: Hardware",
]

[project.optional-dependencies]
test = ["pytest"]

[tool.hatch.build.targets.wheel]
packages = ["kepwatt"]

[tool.pytest.ini_options]
addopts = "-ra"
